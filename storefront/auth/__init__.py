from .errors import (
    AccountLockedError,
    AuthError,
    DuplicateError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotVerifiedError,
    OtpAttemptsExhaustedError,
    OtpExpiredError,
    OtpMismatchError,
    RateLimitedError,
    UpstreamDeliveryError,
    UpstreamIdentityError,
    ValidationError,
)
from .otp import OtpOutcome, OtpPolicy
from .rate_limit import DEFAULT_LIMITS, NullRateLimiter, RateLimit, RateLimiter, RateLimitGuard, RedisRateLimiter
from .service import AuthResult, AuthService, ClientInfo, RegistrationResult
from .tokens import TokenIssuer, bearer_token

__all__ = [
    "AccountLockedError",
    "AuthError",
    "AuthResult",
    "AuthService",
    "ClientInfo",
    "DEFAULT_LIMITS",
    "DuplicateError",
    "InvalidCredentialsError",
    "InvalidTokenError",
    "NotVerifiedError",
    "NullRateLimiter",
    "OtpAttemptsExhaustedError",
    "OtpExpiredError",
    "OtpMismatchError",
    "OtpOutcome",
    "OtpPolicy",
    "RateLimit",
    "RateLimitGuard",
    "RateLimitedError",
    "RateLimiter",
    "RedisRateLimiter",
    "RegistrationResult",
    "TokenIssuer",
    "UpstreamDeliveryError",
    "UpstreamIdentityError",
    "ValidationError",
    "bearer_token",
]
