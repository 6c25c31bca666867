from __future__ import annotations

import hmac
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from storefront.logging import AuditLogger, get_logger, log_auth_event
from storefront.models import Account
from storefront.services.mail import (
    MailDelivery,
    admin_reset_otp_message,
    otp_message,
    password_changed_message,
    password_reset_message,
)

from .errors import (
    AccountLockedError,
    DuplicateError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotVerifiedError,
    OtpExpiredError,
    OtpAttemptsExhaustedError,
    OtpMismatchError,
    UpstreamDeliveryError,
    ValidationError,
)
from .otp import OtpOutcome, OtpPolicy, classify_attempt, issue_otp, lock_remaining, normalize_time
from .passwords import (
    burn_verification,
    hash_secret,
    normalize_email,
    validate_email,
    validate_password,
    validate_registration,
    verify_secret,
)
from .rate_limit import RateLimitGuard
from .tokens import TokenIssuer

if TYPE_CHECKING:
    from storefront.services.identity import ExternalIdentity

logger = get_logger("auth.service")

RESET_TOKEN_TTL = timedelta(hours=1)
ADMIN_RESET_OTP_MAX_ATTEMPTS = 3
DELIVERY_WARNING = "Account created but the verification email could not be sent. Request a new code to try again."
NO_PENDING_VERIFICATION = "no pending verification for this email"


@dataclass(frozen=True)
class ClientInfo:
    ip_address: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class RegistrationResult:
    account: Account
    delivered: bool
    warning: str | None = None


@dataclass(frozen=True)
class AuthResult:
    token: str
    account: Account


def _unlocked_at(moment: datetime):
    return or_(Account.otp_locked_until.is_(None), Account.otp_locked_until <= moment)


class AuthService:
    def __init__(
        self,
        session: Session,
        tokens: TokenIssuer,
        mail: MailDelivery,
        admin_secret: str,
        otp_policy: OtpPolicy | None = None,
        rate_limits: RateLimitGuard | None = None,
        audit: AuditLogger | None = None,
        client_url: str = "http://localhost:5173",
    ) -> None:
        self.session = session
        self.tokens = tokens
        self.mail = mail
        self.admin_secret = admin_secret
        self.otp_policy = otp_policy or OtpPolicy()
        self.rate_limits = rate_limits or RateLimitGuard.in_memory()
        self.audit = audit
        self.client_url = client_url.rstrip("/")

    def register(
        self,
        username: str,
        name: str,
        email: str,
        password: str,
        client: ClientInfo | None = None,
        now: datetime | None = None,
    ) -> RegistrationResult:
        moment = self._now(now)
        client = client or ClientInfo()
        self.rate_limits.check("register", moment, ip_address=client.ip_address)
        validate_registration(username, name, email, password)
        normalized_email = normalize_email(email)
        username = username.strip()

        if self._find_by_email(normalized_email) is not None:
            self._record("REGISTER_FAILED", normalized_email, "failure", client=client, details="email already registered")
            raise DuplicateError("Email already registered")
        if self.session.query(Account).filter_by(username=username).first() is not None:
            self._record("REGISTER_FAILED", normalized_email, "failure", client=client, details="username taken")
            raise DuplicateError("Username already taken")

        issued = issue_otp(self.otp_policy, moment)
        account = Account(
            username=username,
            name=name.strip(),
            email=normalized_email,
            password_hash=hash_secret(password),
            role="customer",
            is_verified=False,
            otp_hash=issued.code_hash,
            otp_expires_at=issued.expires_at,
            otp_attempts=0,
        )
        self.session.add(account)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise DuplicateError("Email or username already registered") from exc
        self.session.refresh(account)
        self._record("REGISTER_SUCCESS", normalized_email, "success", account=account, client=client)

        result = self.mail.deliver(otp_message(normalized_email, account.name, issued.code, self._ttl_minutes()))
        if not result.delivered:
            self._record(
                "OTP_DELIVERY_FAILED",
                normalized_email,
                "failure",
                account=account,
                client=client,
                details=result.error,
            )
            return RegistrationResult(account=account, delivered=False, warning=DELIVERY_WARNING)
        self._record("OTP_SENT", normalized_email, "success", account=account, client=client)
        return RegistrationResult(account=account, delivered=True)

    def verify_otp(
        self,
        email: str,
        code: str,
        client: ClientInfo | None = None,
        now: datetime | None = None,
    ) -> AuthResult:
        moment = self._now(now)
        client = client or ClientInfo()
        normalized_email = normalize_email(email)
        self.rate_limits.check("verify_otp", moment, ip_address=client.ip_address, email=normalized_email)
        code = (code or "").strip()
        if not code:
            raise ValidationError("Validation failed", [{"field": "otp", "message": "OTP is required"}])

        account = self._find_by_email(normalized_email)
        if account is None:
            self._record("OTP_VERIFY_FAILED", normalized_email, "failure", client=client, details="no account")
            raise OtpMismatchError()

        for _ in range(3):
            self.session.refresh(account)
            if account.is_verified:
                raise ValidationError("account already verified")
            outcome = classify_attempt(account, code, moment)
            if outcome is OtpOutcome.LOCKED:
                remaining = lock_remaining(account, moment)
                self._record("OTP_VERIFY_FAILED", normalized_email, "failure", account=account, client=client, details="locked")
                raise AccountLockedError(remaining)
            if outcome is OtpOutcome.EXPIRED:
                self._record("OTP_VERIFY_FAILED", normalized_email, "failure", account=account, client=client, details="expired")
                raise OtpExpiredError()
            if outcome is OtpOutcome.MISMATCH:
                # Returns only when a concurrent request changed the row first.
                self._record_mismatch(account, moment, client)
                continue
            if self._mark_verified(account, moment):
                self.session.refresh(account)
                token = self.tokens.issue(account, moment)
                self._record("OTP_VERIFY_SUCCESS", normalized_email, "success", account=account, client=client)
                return AuthResult(token=token, account=account)
        raise OtpMismatchError()

    def resend_otp(
        self,
        email: str,
        client: ClientInfo | None = None,
        now: datetime | None = None,
    ) -> Account:
        moment = self._now(now)
        client = client or ClientInfo()
        normalized_email = normalize_email(email)
        self.rate_limits.check("resend_otp", moment, ip_address=client.ip_address, email=normalized_email)
        account = self._find_by_email(normalized_email)
        if account is None or account.is_verified:
            self._record("OTP_RESEND", normalized_email, "failure", account=account, client=client, details="no pending verification")
            raise ValidationError(NO_PENDING_VERIFICATION)
        remaining = lock_remaining(account, moment)
        if remaining > 0:
            self._record("OTP_RESEND", normalized_email, "failure", account=account, client=client, details="locked")
            raise AccountLockedError(remaining)

        issued = issue_otp(self.otp_policy, moment)
        result = self.mail.deliver(otp_message(normalized_email, account.name, issued.code, self._ttl_minutes()))
        if not result.delivered:
            self._record(
                "OTP_DELIVERY_FAILED",
                normalized_email,
                "failure",
                account=account,
                client=client,
                details=result.error,
            )
            raise UpstreamDeliveryError()

        stmt = (
            update(Account)
            .where(
                Account.id == account.id,
                Account.is_verified.is_(False),
                _unlocked_at(moment),
            )
            .values(
                otp_hash=issued.code_hash,
                otp_expires_at=issued.expires_at,
                otp_attempts=0,
                otp_locked_until=None,
            )
            .execution_options(synchronize_session=False)
        )
        if self.session.execute(stmt).rowcount == 0:
            self.session.rollback()
            self.session.refresh(account)
            remaining = lock_remaining(account, moment)
            if remaining > 0:
                raise AccountLockedError(remaining)
            raise ValidationError(NO_PENDING_VERIFICATION)
        self.session.commit()
        self.session.refresh(account)
        self._record("OTP_RESEND", normalized_email, "success", account=account, client=client)
        self._record("OTP_SENT", normalized_email, "success", account=account, client=client)
        return account

    def login(
        self,
        email: str,
        password: str,
        client: ClientInfo | None = None,
        now: datetime | None = None,
    ) -> AuthResult:
        moment = self._now(now)
        client = client or ClientInfo()
        normalized_email = normalize_email(email)
        self.rate_limits.check("login", moment, ip_address=client.ip_address, email=normalized_email)
        account = self._check_credentials(normalized_email, password, "LOGIN_FAILED", client)
        token = self._complete_login(account, moment)
        self._record("LOGIN_SUCCESS", normalized_email, "success", account=account, client=client)
        return AuthResult(token=token, account=account)

    def admin_login(
        self,
        email: str,
        password: str,
        admin_key: str,
        client: ClientInfo | None = None,
        now: datetime | None = None,
    ) -> AuthResult:
        moment = self._now(now)
        client = client or ClientInfo()
        normalized_email = normalize_email(email)
        self.rate_limits.check("admin_login", moment, ip_address=client.ip_address, email=normalized_email)
        account = self._check_credentials(normalized_email, password, "ADMIN_LOGIN_FAILED", client)
        key_matches = hmac.compare_digest((admin_key or "").encode("utf-8"), self.admin_secret.encode("utf-8"))
        if account.role != "admin" or not key_matches:
            self._record(
                "ADMIN_LOGIN_FAILED",
                normalized_email,
                "failure",
                account=account,
                client=client,
                details="not admin" if account.role != "admin" else "admin key mismatch",
            )
            raise InvalidCredentialsError()
        token = self._complete_login(account, moment, admin_session=True)
        self._record("ADMIN_LOGIN_SUCCESS", normalized_email, "success", account=account, client=client)
        return AuthResult(token=token, account=account)

    def login_with_external_identity(
        self,
        identity: "ExternalIdentity",
        client: ClientInfo | None = None,
        now: datetime | None = None,
    ) -> AuthResult:
        moment = self._now(now)
        client = client or ClientInfo()
        if not identity.email_verified:
            raise InvalidCredentialsError("external identity email is not verified")
        normalized_email = validate_email(identity.email)

        account = (
            self.session.query(Account)
            .filter_by(external_provider=identity.provider, external_subject=identity.subject)
            .first()
        )
        if account is None:
            account = self._find_by_email(normalized_email)
        if account is None:
            account = Account(
                username=self._generate_username(normalized_email),
                name=(identity.name or normalized_email.split("@")[0])[:100],
                email=normalized_email,
                password_hash=hash_secret(secrets.token_urlsafe(32)),
                role="customer",
                is_verified=True,
                otp_attempts=0,
                external_provider=identity.provider,
                external_subject=identity.subject,
            )
            self.session.add(account)
        else:
            if not account.external_provider:
                account.external_provider = identity.provider
                account.external_subject = identity.subject
            if not account.is_verified:
                # Whoever registered this email never proved control of it.
                account.password_hash = hash_secret(secrets.token_urlsafe(32))
                account.is_verified = True
                account.otp_hash = None
                account.otp_expires_at = None
                account.otp_attempts = 0
                account.otp_locked_until = None
        account.last_login = moment
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise DuplicateError("account linkage conflict") from exc
        self.session.refresh(account)
        token = self.tokens.issue(account, moment)
        self._record(
            "EXTERNAL_LOGIN_SUCCESS",
            normalized_email,
            "success",
            account=account,
            client=client,
            details=identity.provider,
        )
        return AuthResult(token=token, account=account)

    def current_account(self, token: str) -> Account:
        payload = self.tokens.verify(token)
        try:
            account_id = int(payload["sub"])
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidTokenError() from exc
        account = self.session.get(Account, account_id)
        if account is None or not account.is_verified:
            raise InvalidTokenError()
        return account

    def check_verification(
        self,
        email: str,
        client: ClientInfo | None = None,
        now: datetime | None = None,
    ) -> tuple[bool, bool]:
        """Return ``(exists, is_verified)`` so a client can route to the OTP screen."""
        moment = self._now(now)
        client = client or ClientInfo()
        normalized_email = validate_email(email)
        self.rate_limits.check("check_verification", moment, ip_address=client.ip_address, email=normalized_email)
        account = self._find_by_email(normalized_email)
        if account is None:
            return False, False
        return True, bool(account.is_verified)

    def update_profile(
        self,
        account: Account,
        name: str,
        email: str,
        client: ClientInfo | None = None,
    ) -> Account:
        client = client or ClientInfo()
        name = (name or "").strip()
        if not 2 <= len(name) <= 100:
            raise ValidationError("Validation failed", [{"field": "name", "message": "Name must be 2-100 characters"}])
        normalized_email = validate_email(email)
        if normalized_email != account.email:
            taken = (
                self.session.query(Account)
                .filter(Account.email == normalized_email, Account.id != account.id)
                .first()
            )
            if taken is not None:
                raise DuplicateError("Email already in use")
        previous_email = account.email
        account.name = name
        account.email = normalized_email
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise DuplicateError("Email already in use") from exc
        details = f"email changed from {previous_email}" if previous_email != normalized_email else None
        self._record("PROFILE_UPDATED", normalized_email, "success", account=account, client=client, details=details)
        return account

    def request_password_reset(
        self,
        email: str,
        client: ClientInfo | None = None,
        now: datetime | None = None,
        admin: bool = False,
    ) -> None:
        moment = self._now(now)
        client = client or ClientInfo()
        normalized_email = normalize_email(email)
        route = "admin_recovery" if admin else "forgot_password"
        action = "ADMIN_PASSWORD_RESET_REQUESTED" if admin else "PASSWORD_RESET_REQUESTED"
        self.rate_limits.check(route, moment, ip_address=client.ip_address, email=normalized_email)
        account = self._find_by_email(normalized_email)
        if not self._eligible_for_reset(account, admin):
            self._record(action, normalized_email, "failure", account=account, client=client, details="no eligible account")
            return
        reset_token = secrets.token_urlsafe(32)
        path = "admin-reset-password" if admin else "reset-password"
        reset_url = f"{self.client_url}/{path}?token={reset_token}&email={normalized_email}"
        result = self.mail.deliver(password_reset_message(normalized_email, account.name, reset_url))
        if not result.delivered:
            self._record(action, normalized_email, "failure", account=account, client=client, details=result.error)
            return
        account.reset_token_hash = hash_secret(reset_token)
        account.reset_token_expires_at = moment + RESET_TOKEN_TTL
        self.session.commit()
        self._record(action, normalized_email, "success", account=account, client=client)

    def validate_reset_token(
        self,
        email: str,
        reset_token: str,
        client: ClientInfo | None = None,
        now: datetime | None = None,
        admin: bool = False,
    ) -> Account:
        moment = self._now(now)
        normalized_email = normalize_email(email)
        account = self._find_by_email(normalized_email)
        expires_at = normalize_time(account.reset_token_expires_at) if account else None
        if (
            not self._eligible_for_reset(account, admin)
            or expires_at is None
            or expires_at <= moment
            or not verify_secret(reset_token or "", account.reset_token_hash)
        ):
            action = "ADMIN_PASSWORD_RESET_FAILED" if admin else "PASSWORD_RESET_FAILED"
            self._record(action, normalized_email, "failure", account=account, client=client or ClientInfo())
            raise ValidationError("invalid or expired reset link")
        return account

    def reset_password(
        self,
        email: str,
        reset_token: str,
        new_password: str,
        client: ClientInfo | None = None,
        now: datetime | None = None,
        admin: bool = False,
    ) -> Account:
        client = client or ClientInfo()
        validate_password(new_password, field="newPassword")
        account = self.validate_reset_token(email, reset_token, client=client, now=now, admin=admin)
        account.password_hash = hash_secret(new_password)
        account.reset_token_hash = None
        account.reset_token_expires_at = None
        self.session.commit()
        action = "ADMIN_PASSWORD_RESET_SUCCESS" if admin else "PASSWORD_RESET_SUCCESS"
        self._record(action, account.email, "success", account=account, client=client)
        if admin:
            self._notify_password_changed(account)
        return account

    def send_admin_reset_otp(
        self,
        email: str,
        client: ClientInfo | None = None,
        now: datetime | None = None,
    ) -> None:
        """Mail a reset code to a verified admin. Unknown emails get the same silent success."""
        moment = self._now(now)
        client = client or ClientInfo()
        normalized_email = normalize_email(email)
        self.rate_limits.check("admin_recovery", moment, ip_address=client.ip_address, email=normalized_email)
        account = self._find_by_email(normalized_email)
        if not self._eligible_for_reset(account, admin=True):
            self._record("ADMIN_RESET_OTP_SENT", normalized_email, "failure", account=account, client=client, details="no eligible account")
            return
        issued = issue_otp(self.otp_policy, moment)
        result = self.mail.deliver(admin_reset_otp_message(normalized_email, account.name, issued.code, self._ttl_minutes()))
        if not result.delivered:
            self._record("ADMIN_RESET_OTP_SENT", normalized_email, "failure", account=account, client=client, details=result.error)
            return
        stmt = (
            update(Account)
            .where(Account.id == account.id, Account.is_verified.is_(True), Account.role == "admin")
            .values(otp_hash=issued.code_hash, otp_expires_at=issued.expires_at, otp_attempts=0)
            .execution_options(synchronize_session=False)
        )
        self.session.execute(stmt)
        self.session.commit()
        self._record("ADMIN_RESET_OTP_SENT", normalized_email, "success", account=account, client=client)

    def verify_admin_reset_otp(
        self,
        email: str,
        code: str,
        client: ClientInfo | None = None,
        now: datetime | None = None,
    ) -> Account:
        """Check a reset code without consuming it."""
        moment = self._now(now)
        client = client or ClientInfo()
        normalized_email = normalize_email(email)
        self.rate_limits.check("admin_reset_otp", moment, ip_address=client.ip_address, email=normalized_email)
        return self._check_admin_reset_otp(normalized_email, code, moment, client)

    def reset_admin_password_with_otp(
        self,
        email: str,
        code: str,
        new_password: str,
        client: ClientInfo | None = None,
        now: datetime | None = None,
    ) -> Account:
        moment = self._now(now)
        client = client or ClientInfo()
        normalized_email = normalize_email(email)
        self.rate_limits.check("admin_reset_otp", moment, ip_address=client.ip_address, email=normalized_email)
        validate_password(new_password, field="newPassword")
        account = self._check_admin_reset_otp(normalized_email, code, moment, client)
        stmt = (
            update(Account)
            .where(
                Account.id == account.id,
                Account.otp_hash == account.otp_hash,
                Account.otp_attempts < ADMIN_RESET_OTP_MAX_ATTEMPTS,
            )
            .values(
                password_hash=hash_secret(new_password),
                otp_hash=None,
                otp_expires_at=None,
                otp_attempts=0,
                reset_token_hash=None,
                reset_token_expires_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        if self.session.execute(stmt).rowcount == 0:
            self.session.rollback()
            raise OtpExpiredError()
        self.session.commit()
        self.session.refresh(account)
        self._record("ADMIN_PASSWORD_RESET_SUCCESS", normalized_email, "success", account=account, client=client, details="otp")
        self._notify_password_changed(account)
        return account

    def change_password(
        self,
        account: Account,
        current_password: str,
        new_password: str,
        client: ClientInfo | None = None,
    ) -> Account:
        client = client or ClientInfo()
        if not verify_secret(current_password or "", account.password_hash):
            raise ValidationError("current password is incorrect")
        validate_password(new_password, field="newPassword")
        account.password_hash = hash_secret(new_password)
        self.session.commit()
        self._record("PASSWORD_CHANGED", account.email, "success", account=account, client=client)
        return account

    def _eligible_for_reset(self, account: Account | None, admin: bool) -> bool:
        if account is None or not account.is_verified:
            return False
        return account.role == "admin" if admin else True

    def _check_admin_reset_otp(self, email: str, code: str, moment: datetime, client: ClientInfo) -> Account:
        code = (code or "").strip()
        account = self._find_by_email(email)
        if not self._eligible_for_reset(account, admin=True):
            self._record("ADMIN_RESET_OTP_FAILED", email, "failure", client=client, details="no eligible account")
            raise OtpMismatchError("invalid email or otp")
        expires_at = normalize_time(account.otp_expires_at)
        if not account.otp_hash or expires_at is None or expires_at <= moment:
            self._record("ADMIN_RESET_OTP_FAILED", email, "failure", account=account, client=client, details="expired")
            raise OtpExpiredError()
        if account.otp_attempts >= ADMIN_RESET_OTP_MAX_ATTEMPTS:
            self._record("ADMIN_RESET_OTP_FAILED", email, "failure", account=account, client=client, details="exhausted")
            raise OtpAttemptsExhaustedError()
        if code and verify_secret(code, account.otp_hash):
            return account

        stmt = (
            update(Account)
            .where(
                Account.id == account.id,
                Account.otp_hash == account.otp_hash,
                Account.otp_attempts < ADMIN_RESET_OTP_MAX_ATTEMPTS,
            )
            .values(otp_attempts=Account.otp_attempts + 1)
            .execution_options(synchronize_session=False)
        )
        if self.session.execute(stmt).rowcount == 0:
            self.session.rollback()
            raise OtpAttemptsExhaustedError()
        attempts = self.session.execute(select(Account.otp_attempts).where(Account.id == account.id)).scalar_one()
        self.session.commit()
        remaining = ADMIN_RESET_OTP_MAX_ATTEMPTS - attempts
        self._record(
            "ADMIN_RESET_OTP_FAILED",
            email,
            "failure",
            account=account,
            client=client,
            details=f"invalid otp, {remaining} attempts remaining",
        )
        raise OtpMismatchError(f"Invalid OTP. {remaining} attempt(s) remaining.", remaining)

    def _notify_password_changed(self, account: Account) -> None:
        result = self.mail.deliver(password_changed_message(account.email, account.name))
        if not result.delivered:
            logger.warning("Password change notice to %s not delivered: %s", account.email, result.error)

    def _check_credentials(self, email: str, password: str, failure_action: str, client: ClientInfo) -> Account:
        account = self._find_by_email(email)
        if account is None:
            burn_verification(password or "")
            self._record(failure_action, email, "failure", client=client, details="unknown email")
            raise InvalidCredentialsError()
        if not verify_secret(password or "", account.password_hash):
            self._record(failure_action, email, "failure", account=account, client=client, details="wrong password")
            raise InvalidCredentialsError()
        if not account.is_verified:
            self._record(failure_action, email, "failure", account=account, client=client, details="not verified")
            raise NotVerifiedError()
        return account

    def _complete_login(self, account: Account, moment: datetime, admin_session: bool = False) -> str:
        account.last_login = moment
        self.session.commit()
        self.session.refresh(account)
        return self.tokens.issue(account, moment, admin_session=admin_session)

    def _record_mismatch(self, account: Account, moment: datetime, client: ClientInfo) -> None:
        stmt = (
            update(Account)
            .where(
                Account.id == account.id,
                Account.is_verified.is_(False),
                Account.otp_hash == account.otp_hash,
                _unlocked_at(moment),
            )
            .values(otp_attempts=Account.otp_attempts + 1)
            .execution_options(synchronize_session=False)
        )
        if self.session.execute(stmt).rowcount == 0:
            self.session.rollback()
            return
        attempts = self.session.execute(select(Account.otp_attempts).where(Account.id == account.id)).scalar_one()
        max_attempts = self.otp_policy.max_attempts
        if attempts >= max_attempts:
            lock_stmt = (
                update(Account)
                .where(Account.id == account.id, _unlocked_at(moment))
                .values(otp_locked_until=self.otp_policy.locked_until(moment))
                .execution_options(synchronize_session=False)
            )
            self.session.execute(lock_stmt)
            self.session.commit()
            self._record(
                "ACCOUNT_LOCKED",
                account.email,
                "failure",
                account=account,
                client=client,
                details=f"failed attempt {attempts}",
            )
            raise AccountLockedError(self.otp_policy.lock_seconds)
        self.session.commit()
        remaining = max_attempts - attempts
        self._record(
            "OTP_VERIFY_FAILED",
            account.email,
            "failure",
            account=account,
            client=client,
            details=f"invalid otp, {remaining} attempts remaining",
        )
        raise OtpMismatchError(f"Invalid OTP. {remaining} attempt(s) remaining before account lock.", remaining)

    def _mark_verified(self, account: Account, moment: datetime) -> bool:
        stmt = (
            update(Account)
            .where(
                Account.id == account.id,
                Account.is_verified.is_(False),
                Account.otp_hash == account.otp_hash,
                _unlocked_at(moment),
            )
            .values(
                is_verified=True,
                otp_hash=None,
                otp_expires_at=None,
                otp_attempts=0,
                otp_locked_until=None,
                last_login=moment,
            )
            .execution_options(synchronize_session=False)
        )
        if self.session.execute(stmt).rowcount == 0:
            self.session.rollback()
            return False
        self.session.commit()
        return True

    def _find_by_email(self, email: str) -> Account | None:
        if not email:
            return None
        return self.session.query(Account).filter_by(email=email).first()

    def _generate_username(self, email: str) -> str:
        base = re.sub(r"[^A-Za-z0-9_]", "_", email.split("@")[0])[:20] or "user"
        while True:
            candidate = f"{base}_{secrets.token_hex(3)}"
            if self.session.query(Account).filter_by(username=candidate).first() is None:
                return candidate

    def _ttl_minutes(self) -> int:
        return max(1, self.otp_policy.ttl_seconds // 60)

    def _record(
        self,
        action: str,
        email: str,
        outcome: str,
        account: Account | None = None,
        client: ClientInfo | None = None,
        details: str | None = None,
    ) -> None:
        account_id = account.id if account is not None else None
        ip_address = client.ip_address if client else None
        log_auth_event(action, email, outcome, reason=details, metadata={"account_id": account_id, "ip": ip_address})
        if self.audit is not None:
            self.audit.record_event(
                action,
                email,
                account_id=account_id,
                ip_address=ip_address,
                user_agent=client.user_agent if client else None,
                details=details,
            )

    def _now(self, now: datetime | None) -> datetime:
        moment = now or datetime.now(timezone.utc)
        if moment.tzinfo is None:
            return moment.replace(tzinfo=timezone.utc)
        return moment
