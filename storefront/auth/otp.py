"""One-time passcode issuance and attempt classification."""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum

from storefront.models import Account

from .passwords import hash_secret, verify_secret

OTP_MIN = 100000
OTP_MAX = 999999


class OtpOutcome(str, Enum):
    MATCH = "match"
    MISMATCH = "mismatch"
    EXPIRED = "expired"
    LOCKED = "locked"


@dataclass(frozen=True)
class OtpPolicy:
    ttl_seconds: int = 600
    max_attempts: int = 5
    lock_seconds: int = 900

    def expires_at(self, now: datetime) -> datetime:
        return now + timedelta(seconds=self.ttl_seconds)

    def locked_until(self, now: datetime) -> datetime:
        return now + timedelta(seconds=self.lock_seconds)


@dataclass(frozen=True)
class IssuedOtp:
    code: str
    code_hash: str
    expires_at: datetime


def generate_code() -> str:
    return str(OTP_MIN + secrets.randbelow(OTP_MAX - OTP_MIN + 1))


def issue_otp(policy: OtpPolicy, now: datetime) -> IssuedOtp:
    code = generate_code()
    return IssuedOtp(code=code, code_hash=hash_secret(code), expires_at=policy.expires_at(now))


def normalize_time(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def lock_remaining(account: Account, now: datetime) -> float:
    locked_until = normalize_time(account.otp_locked_until)
    if locked_until is None or locked_until <= now:
        return 0.0
    return (locked_until - now).total_seconds()


def classify_attempt(account: Account, code: str, now: datetime) -> OtpOutcome:
    """Classify a submitted code against the account's stored OTP state.

    Lock is checked first and expiry second, so neither consumes an attempt;
    the result depends only on the account row, the code and ``now``.
    """
    if lock_remaining(account, now) > 0:
        return OtpOutcome.LOCKED
    expires_at = normalize_time(account.otp_expires_at)
    if not account.otp_hash or expires_at is None or expires_at <= now:
        return OtpOutcome.EXPIRED
    if verify_secret(code.strip(), account.otp_hash):
        return OtpOutcome.MATCH
    return OtpOutcome.MISMATCH
