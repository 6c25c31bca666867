from __future__ import annotations

import re
import smtplib
import unittest
from datetime import datetime, timedelta, timezone

from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from storefront.auth import (
    AccountLockedError,
    AuthService,
    ClientInfo,
    DuplicateError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotVerifiedError,
    OtpAttemptsExhaustedError,
    OtpExpiredError,
    OtpMismatchError,
    OtpPolicy,
    RateLimit,
    RateLimitedError,
    RateLimitGuard,
    TokenIssuer,
    UpstreamDeliveryError,
    ValidationError,
)
from storefront.auth.passwords import verify_secret
from storefront.logging import AuditLogger
from storefront.models import Account, AuthEventLog, Base
from storefront.services import ExternalIdentity, MailDelivery

PASSWORD = "Abc12345!"


class RecordingMailer:
    def __init__(self) -> None:
        self.messages = []
        self.fail = False

    def send(self, message) -> None:
        if self.fail:
            raise smtplib.SMTPException("relay down")
        self.messages.append(message)

    def last_code(self) -> str:
        return re.search(r"\b(\d{6})\b", self.messages[-1].html).group(1)


def _wrong(code: str) -> str:
    return "000000" if code != "000000" else "111111"


class AuthServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_engine("sqlite+pysqlite:///:memory:", future=True)
        Base.metadata.create_all(self.engine)
        self.session = Session(self.engine)
        self.mailer = RecordingMailer()
        self.tokens = TokenIssuer("secret")
        self.now = datetime.now(timezone.utc).replace(microsecond=0)
        self.client = ClientInfo(ip_address="10.0.0.1", user_agent="pytest")
        self.service = self._service(OtpPolicy(ttl_seconds=600))

    def tearDown(self) -> None:
        self.session.close()
        self.engine.dispose()

    def _service(self, policy: OtpPolicy, rate_limits: RateLimitGuard | None = None) -> AuthService:
        return AuthService(
            self.session,
            self.tokens,
            MailDelivery(self.mailer, max_attempts=2, sleep=lambda _: None),
            admin_secret="admin-key",
            otp_policy=policy,
            rate_limits=rate_limits or RateLimitGuard.fail_open(),
            audit=AuditLogger(self.session),
            client_url="https://shop.example.com/",
        )

    def _register(self, username: str = "alice", email: str = "alice@example.com") -> tuple[Account, str]:
        result = self.service.register(username, "Alice", email, PASSWORD, client=self.client, now=self.now)
        return result.account, self.mailer.last_code()

    def _verified(self, username: str = "alice", email: str = "alice@example.com") -> Account:
        _, code = self._register(username, email)
        return self.service.verify_otp(email, code, now=self.now).account

    def _actions(self, email: str = "alice@example.com") -> list[str]:
        rows = self.session.query(AuthEventLog).filter_by(email=email).order_by(AuthEventLog.id).all()
        return [row.action for row in rows]

    def test_register_stores_only_otp_hash(self) -> None:
        account, code = self._register(email="  Alice@Example.com ")

        self.assertEqual(account.email, "alice@example.com")
        self.assertFalse(account.is_verified)
        self.assertEqual(account.otp_attempts, 0)
        self.assertNotEqual(account.otp_hash, code)
        self.assertTrue(verify_secret(code, account.otp_hash))
        self.assertNotEqual(account.password_hash, PASSWORD)
        self.assertEqual(self._actions(), ["REGISTER_SUCCESS", "OTP_SENT"])

    def test_register_rejects_duplicate_email_and_username(self) -> None:
        self._register()
        with self.assertRaises(DuplicateError) as ctx:
            self.service.register("alice2", "Alice", "ALICE@example.com", PASSWORD, now=self.now)
        self.assertEqual(ctx.exception.status_code, 409)
        with self.assertRaises(DuplicateError):
            self.service.register("alice", "Alice", "other@example.com", PASSWORD, now=self.now)

    def test_register_validates_input(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            self.service.register("al", "Alice", "alice@example.com", "password", now=self.now)
        self.assertEqual(ctx.exception.status_code, 400)
        self.assertEqual(self.session.query(Account).count(), 0)

    def test_register_delivery_failure_keeps_account(self) -> None:
        self.mailer.fail = True
        result = self.service.register("alice", "Alice", "alice@example.com", PASSWORD, now=self.now)

        self.assertFalse(result.delivered)
        self.assertIsNotNone(result.warning)
        self.assertEqual(self.session.query(Account).filter_by(email="alice@example.com").count(), 1)
        self.assertIn("OTP_DELIVERY_FAILED", self._actions())

        self.mailer.fail = False
        self.service.resend_otp("alice@example.com", now=self.now)
        verified = self.service.verify_otp("alice@example.com", self.mailer.last_code(), now=self.now)
        self.assertTrue(verified.account.is_verified)

    def test_verify_success_clears_otp_fields(self) -> None:
        _, code = self._register()
        result = self.service.verify_otp("alice@example.com", code, client=self.client, now=self.now)

        account = result.account
        self.assertTrue(account.is_verified)
        self.assertIsNone(account.otp_hash)
        self.assertIsNone(account.otp_expires_at)
        self.assertEqual(account.otp_attempts, 0)
        self.assertIsNone(account.otp_locked_until)
        self.assertEqual(self.service.current_account(result.token).id, account.id)
        self.assertIn("OTP_VERIFY_SUCCESS", self._actions())

    def test_mismatch_increments_attempts(self) -> None:
        account, code = self._register()
        with self.assertRaises(OtpMismatchError) as ctx:
            self.service.verify_otp("alice@example.com", _wrong(code), now=self.now)
        self.assertEqual(ctx.exception.attempts_remaining, 4)
        self.session.refresh(account)
        self.assertEqual(account.otp_attempts, 1)

    def test_lock_after_five_mismatches_then_window_elapses(self) -> None:
        self.service = self._service(OtpPolicy(ttl_seconds=3600, max_attempts=5, lock_seconds=900))
        account, code = self._register()
        for _ in range(4):
            with self.assertRaises(OtpMismatchError):
                self.service.verify_otp("alice@example.com", _wrong(code), now=self.now)
        with self.assertRaises(AccountLockedError) as ctx:
            self.service.verify_otp("alice@example.com", _wrong(code), now=self.now)
        self.assertEqual(ctx.exception.retry_after, 900)

        with self.assertRaises(AccountLockedError):
            self.service.verify_otp("alice@example.com", code, now=self.now + timedelta(minutes=1))
        self.session.refresh(account)
        self.assertEqual(account.otp_attempts, 5)
        self.assertIn("ACCOUNT_LOCKED", self._actions())

        result = self.service.verify_otp("alice@example.com", code, now=self.now + timedelta(minutes=16))
        self.assertTrue(result.account.is_verified)
        self.assertIsInstance(result.token, str)

    def test_mismatch_after_lock_window_relocks(self) -> None:
        self.service = self._service(OtpPolicy(ttl_seconds=3600, max_attempts=5, lock_seconds=900))
        _, code = self._register()
        for _ in range(4):
            with self.assertRaises(OtpMismatchError):
                self.service.verify_otp("alice@example.com", _wrong(code), now=self.now)
        with self.assertRaises(AccountLockedError):
            self.service.verify_otp("alice@example.com", _wrong(code), now=self.now)
        with self.assertRaises(AccountLockedError):
            self.service.verify_otp("alice@example.com", _wrong(code), now=self.now + timedelta(minutes=16))

    def test_expired_code_then_resend(self) -> None:
        account, code = self._register()
        later = self.now + timedelta(minutes=11)
        with self.assertRaises(OtpExpiredError) as ctx:
            self.service.verify_otp("alice@example.com", code, now=later)
        self.assertEqual(ctx.exception.status_code, 410)
        self.session.refresh(account)
        self.assertEqual(account.otp_attempts, 0)

        self.service.resend_otp("alice@example.com", now=later)
        new_code = self.mailer.last_code()
        result = self.service.verify_otp("alice@example.com", new_code, now=later)
        self.assertTrue(result.account.is_verified)

    def test_resend_resets_attempts(self) -> None:
        account, code = self._register()
        with self.assertRaises(OtpMismatchError):
            self.service.verify_otp("alice@example.com", _wrong(code), now=self.now)
        self.service.resend_otp("alice@example.com", now=self.now)
        self.session.refresh(account)
        self.assertEqual(account.otp_attempts, 0)
        self.assertTrue(verify_secret(self.mailer.last_code(), account.otp_hash))

    def test_resend_rejected_while_locked(self) -> None:
        _, code = self._register()
        for _ in range(4):
            with self.assertRaises(OtpMismatchError):
                self.service.verify_otp("alice@example.com", _wrong(code), now=self.now)
        with self.assertRaises(AccountLockedError):
            self.service.verify_otp("alice@example.com", _wrong(code), now=self.now)
        sent = len(self.mailer.messages)
        with self.assertRaises(AccountLockedError):
            self.service.resend_otp("alice@example.com", now=self.now + timedelta(minutes=5))
        self.assertEqual(len(self.mailer.messages), sent)

    def test_resend_delivery_failure_keeps_previous_code(self) -> None:
        _, code = self._register()
        self.mailer.fail = True
        with self.assertRaises(UpstreamDeliveryError) as ctx:
            self.service.resend_otp("alice@example.com", now=self.now)
        self.assertEqual(ctx.exception.status_code, 502)
        result = self.service.verify_otp("alice@example.com", code, now=self.now)
        self.assertTrue(result.account.is_verified)

    def test_resend_unknown_and_verified_emails_look_the_same(self) -> None:
        self._verified()
        with self.assertRaises(ValidationError) as unknown:
            self.service.resend_otp("nobody@example.com", now=self.now)
        with self.assertRaises(ValidationError) as verified:
            self.service.resend_otp("alice@example.com", now=self.now)
        self.assertEqual(unknown.exception.to_dict(), verified.exception.to_dict())

    def test_verify_unknown_or_verified_email(self) -> None:
        with self.assertRaises(OtpMismatchError):
            self.service.verify_otp("nobody@example.com", "123456", now=self.now)
        self._verified()
        with self.assertRaises(ValidationError):
            self.service.verify_otp("alice@example.com", "123456", now=self.now)

    def test_unverified_login_rejected(self) -> None:
        self._register()
        with self.assertRaises(NotVerifiedError) as ctx:
            self.service.login("alice@example.com", PASSWORD, now=self.now)
        self.assertEqual(ctx.exception.status_code, 403)

    def test_unknown_email_and_wrong_password_are_indistinguishable(self) -> None:
        self._verified()
        with self.assertRaises(InvalidCredentialsError) as unknown:
            self.service.login("nobody@example.com", PASSWORD, now=self.now)
        with self.assertRaises(InvalidCredentialsError) as wrong:
            self.service.login("alice@example.com", "Wrong1234!", now=self.now)
        self.assertEqual(unknown.exception.to_dict(), wrong.exception.to_dict())
        self.assertEqual(unknown.exception.status_code, wrong.exception.status_code)

    def test_login_success(self) -> None:
        self._verified()
        result = self.service.login("Alice@Example.com", PASSWORD, client=self.client, now=self.now)
        self.assertEqual(self.tokens.verify(result.token)["sub"], str(result.account.id))
        self.assertIsNotNone(result.account.last_login)
        self.assertIn("LOGIN_SUCCESS", self._actions())

    def test_admin_login_requires_role_and_key(self) -> None:
        account = self._verified()
        with self.assertRaises(InvalidCredentialsError):
            self.service.admin_login("alice@example.com", PASSWORD, "admin-key", now=self.now)

        account.role = "admin"
        self.session.commit()
        with self.assertRaises(InvalidCredentialsError):
            self.service.admin_login("alice@example.com", PASSWORD, "wrong-key", now=self.now)
        with self.assertRaises(InvalidCredentialsError):
            self.service.admin_login("alice@example.com", "Wrong1234!", "admin-key", now=self.now)

        result = self.service.admin_login("alice@example.com", PASSWORD, "admin-key", now=self.now)
        payload = self.tokens.verify(result.token)
        self.assertEqual(payload["role"], "admin")
        self.assertTrue(payload["adm"])
        self.assertEqual(payload["exp"] - payload["iat"], 8 * 3600)

    def test_external_identity_creates_verified_account(self) -> None:
        identity = ExternalIdentity("google", "g-1", "Carol@Example.com", True, "Carol")
        result = self.service.login_with_external_identity(identity, now=self.now)

        self.assertTrue(result.account.is_verified)
        self.assertEqual(result.account.email, "carol@example.com")
        self.assertTrue(result.account.username.startswith("carol_"))
        again = self.service.login_with_external_identity(identity, now=self.now)
        self.assertEqual(again.account.id, result.account.id)

    def test_external_identity_requires_verified_email(self) -> None:
        identity = ExternalIdentity("google", "g-1", "carol@example.com", False)
        with self.assertRaises(InvalidCredentialsError):
            self.service.login_with_external_identity(identity, now=self.now)

    def test_external_identity_claims_unverified_account(self) -> None:
        account, _ = self._register()
        identity = ExternalIdentity("google", "g-7", "alice@example.com", True, "Alice")
        result = self.service.login_with_external_identity(identity, now=self.now)

        self.assertEqual(result.account.id, account.id)
        self.assertTrue(result.account.is_verified)
        self.assertIsNone(result.account.otp_hash)
        self.assertEqual(result.account.external_subject, "g-7")
        with self.assertRaises(InvalidCredentialsError):
            self.service.login("alice@example.com", PASSWORD, now=self.now)

    def test_current_account_rejects_bad_tokens(self) -> None:
        with self.assertRaises(InvalidTokenError):
            self.service.current_account("not-a-token")
        with self.assertRaises(InvalidTokenError):
            self.service.current_account("")

    def test_password_reset_flow(self) -> None:
        self._verified()
        self.service.request_password_reset("alice@example.com", now=self.now)
        token = re.search(r"token=([A-Za-z0-9_\-]+)", self.mailer.messages[-1].html).group(1)

        with self.assertRaises(ValidationError):
            self.service.reset_password("alice@example.com", "bogus", "NewPass123!", now=self.now)
        self.service.reset_password("alice@example.com", token, "NewPass123!", now=self.now)
        self.service.login("alice@example.com", "NewPass123!", now=self.now)
        with self.assertRaises(ValidationError):
            self.service.reset_password("alice@example.com", token, "Other123!", now=self.now)

    def test_password_reset_token_expires(self) -> None:
        self._verified()
        self.service.request_password_reset("alice@example.com", now=self.now)
        token = re.search(r"token=([A-Za-z0-9_\-]+)", self.mailer.messages[-1].html).group(1)
        with self.assertRaises(ValidationError):
            self.service.reset_password("alice@example.com", token, "NewPass123!", now=self.now + timedelta(hours=2))

    def test_password_reset_for_unknown_email_sends_nothing(self) -> None:
        self.service.request_password_reset("nobody@example.com", now=self.now)
        self.assertEqual(self.mailer.messages, [])

    def test_change_password(self) -> None:
        account = self._verified()
        with self.assertRaises(ValidationError):
            self.service.change_password(account, "Wrong1234!", "NewPass123!")
        with self.assertRaises(ValidationError):
            self.service.change_password(account, PASSWORD, "weak")
        self.service.change_password(account, PASSWORD, "NewPass123!")
        self.service.login("alice@example.com", "NewPass123!", now=self.now)
        self.assertIn("PASSWORD_CHANGED", self._actions())

    def test_check_verification(self) -> None:
        self.assertEqual(self.service.check_verification("nobody@example.com"), (False, False))
        _, code = self._register()
        self.assertEqual(self.service.check_verification("ALICE@example.com"), (True, False))
        self.service.verify_otp("alice@example.com", code, now=self.now)
        self.assertEqual(self.service.check_verification("alice@example.com"), (True, True))
        with self.assertRaises(ValidationError):
            self.service.check_verification("not-an-email")

    def test_update_profile(self) -> None:
        account = self._verified()
        self._register("bob", "bob@example.com")
        with self.assertRaises(DuplicateError):
            self.service.update_profile(account, "Alice B", "BOB@example.com")
        with self.assertRaises(ValidationError):
            self.service.update_profile(account, "A", "alice@example.com")

        updated = self.service.update_profile(account, " Alice B ", "Alice.B@Example.com", client=self.client)
        self.assertEqual(updated.name, "Alice B")
        self.assertEqual(updated.email, "alice.b@example.com")
        self.assertEqual(self._actions("alice.b@example.com"), ["PROFILE_UPDATED"])

    def _admin(self) -> Account:
        account = self._verified()
        account.role = "admin"
        self.session.commit()
        return account

    def test_admin_reset_link_requires_admin_role(self) -> None:
        self._verified()
        self.service.request_password_reset("alice@example.com", now=self.now, admin=True)
        self.assertEqual(len(self.mailer.messages), 1)
        self.assertEqual(self._actions()[-1], "ADMIN_PASSWORD_RESET_REQUESTED")

    def test_admin_reset_link_flow(self) -> None:
        self._admin()
        self.service.request_password_reset("alice@example.com", now=self.now, admin=True)
        self.assertIn("https://shop.example.com/admin-reset-password?token=", self.mailer.messages[-1].html)
        token = re.search(r"token=([A-Za-z0-9_\-]+)", self.mailer.messages[-1].html).group(1)

        self.service.validate_reset_token("alice@example.com", token, now=self.now, admin=True)
        self.service.reset_password("alice@example.com", token, "NewPass123!", now=self.now, admin=True)
        self.assertEqual(self.mailer.messages[-1].subject, "Password Changed Successfully")
        self.service.admin_login("alice@example.com", "NewPass123!", "admin-key", now=self.now)
        with self.assertRaises(ValidationError):
            self.service.validate_reset_token("alice@example.com", token, now=self.now, admin=True)
        self.assertIn("ADMIN_PASSWORD_RESET_SUCCESS", self._actions())

    def test_admin_reset_otp_flow(self) -> None:
        self._admin()
        self.service.send_admin_reset_otp("alice@example.com", now=self.now)
        code = self.mailer.last_code()
        self.assertEqual(self.mailer.messages[-1].subject, "Admin Password Reset Code")

        self.service.verify_admin_reset_otp("alice@example.com", code, now=self.now)
        account = self.service.reset_admin_password_with_otp("alice@example.com", code, "NewPass123!", now=self.now)
        self.assertIsNone(account.otp_hash)
        self.assertEqual(account.otp_attempts, 0)
        self.assertTrue(account.is_verified)
        self.service.login("alice@example.com", "NewPass123!", now=self.now)
        with self.assertRaises(OtpExpiredError):
            self.service.reset_admin_password_with_otp("alice@example.com", code, "Other123!", now=self.now)

    def test_admin_reset_otp_exhausts_after_three_mismatches(self) -> None:
        self._admin()
        self.service.send_admin_reset_otp("alice@example.com", now=self.now)
        code = self.mailer.last_code()
        remaining = []
        for _ in range(3):
            with self.assertRaises(OtpMismatchError) as ctx:
                self.service.verify_admin_reset_otp("alice@example.com", _wrong(code), now=self.now)
            remaining.append(ctx.exception.attempts_remaining)
        self.assertEqual(remaining, [2, 1, 0])
        with self.assertRaises(OtpAttemptsExhaustedError) as ctx:
            self.service.reset_admin_password_with_otp("alice@example.com", code, "NewPass123!", now=self.now)
        self.assertEqual(ctx.exception.status_code, 429)

        self.service.send_admin_reset_otp("alice@example.com", now=self.now)
        self.service.verify_admin_reset_otp("alice@example.com", self.mailer.last_code(), now=self.now)

    def test_admin_reset_otp_expires(self) -> None:
        self._admin()
        self.service.send_admin_reset_otp("alice@example.com", now=self.now)
        code = self.mailer.last_code()
        with self.assertRaises(OtpExpiredError):
            self.service.verify_admin_reset_otp("alice@example.com", code, now=self.now + timedelta(minutes=11))

    def test_admin_reset_otp_ignores_customers(self) -> None:
        self._verified()
        sent = len(self.mailer.messages)
        self.service.send_admin_reset_otp("alice@example.com", now=self.now)
        self.service.send_admin_reset_otp("nobody@example.com", now=self.now)
        self.assertEqual(len(self.mailer.messages), sent)
        with self.assertRaises(OtpMismatchError):
            self.service.verify_admin_reset_otp("alice@example.com", "123456", now=self.now)

    def test_verify_rate_limited_per_email(self) -> None:
        limits = RateLimitGuard.in_memory({"verify_otp": RateLimit(2, 900)})
        self.service = self._service(OtpPolicy(), rate_limits=limits)
        _, code = self._register()
        for _ in range(2):
            with self.assertRaises(OtpMismatchError):
                self.service.verify_otp("alice@example.com", _wrong(code), now=self.now)
        with self.assertRaises(RateLimitedError):
            self.service.verify_otp("alice@example.com", code, now=self.now)


if __name__ == "__main__":
    unittest.main()
