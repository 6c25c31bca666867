from __future__ import annotations

import math
from typing import Any


class AuthError(Exception):
    status_code = 400
    code = "auth_error"
    default_msg = "request failed"

    def __init__(self, msg: str | None = None) -> None:
        self.msg = msg or self.default_msg
        super().__init__(self.msg)

    def to_dict(self) -> dict[str, Any]:
        return {"success": False, "msg": self.msg, "code": self.code}


class ValidationError(AuthError):
    status_code = 400
    code = "validation_error"
    default_msg = "validation failed"

    def __init__(self, msg: str | None = None, errors: list[dict[str, str]] | None = None) -> None:
        super().__init__(msg)
        self.errors = errors or []

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        if self.errors:
            payload["errors"] = self.errors
        return payload


class DuplicateError(ValidationError):
    status_code = 409
    code = "duplicate"
    default_msg = "account already exists"


class InvalidCredentialsError(AuthError):
    status_code = 401
    code = "invalid_credentials"
    default_msg = "invalid credentials"


class NotVerifiedError(AuthError):
    status_code = 403
    code = "not_verified"
    default_msg = "email not verified"


class OtpMismatchError(AuthError):
    status_code = 400
    code = "otp_mismatch"
    default_msg = "invalid otp"

    def __init__(self, msg: str | None = None, attempts_remaining: int | None = None) -> None:
        super().__init__(msg)
        self.attempts_remaining = attempts_remaining

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        if self.attempts_remaining is not None:
            payload["attemptsRemaining"] = self.attempts_remaining
        return payload


class OtpExpiredError(AuthError):
    status_code = 410
    code = "otp_expired"
    default_msg = "otp expired or not set, request a new one"


class _RetryAfterError(AuthError):
    def __init__(self, retry_after: float, msg: str | None = None) -> None:
        self.retry_after = max(1, int(math.ceil(retry_after)))
        super().__init__(msg)

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["retryAfter"] = self.retry_after
        return payload


class AccountLockedError(_RetryAfterError):
    status_code = 423
    code = "account_locked"
    default_msg = "too many failed attempts, account temporarily locked"


class RateLimitedError(_RetryAfterError):
    status_code = 429
    code = "rate_limited"
    default_msg = "too many requests, try again later"


class InvalidTokenError(AuthError):
    status_code = 401
    code = "invalid_token"
    default_msg = "token is not valid"


class UpstreamDeliveryError(AuthError):
    status_code = 502
    code = "delivery_failed"
    default_msg = "failed to deliver email, try again later"


class UpstreamIdentityError(AuthError):
    status_code = 502
    code = "identity_provider_error"
    default_msg = "identity provider request failed"


class OtpAttemptsExhaustedError(AuthError):
    status_code = 429
    code = "otp_attempts_exhausted"
    default_msg = "too many failed attempts, request a new code"
