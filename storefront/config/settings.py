"""Environment-backed application settings with strict validation."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Mapping

logger = logging.getLogger(__name__)

REQUIRED_ENV_VARS = (
    "DATABASE_URL",
    "JWT_SECRET",
    "ADMIN_SECRET",
)


def _read_env_var(name: str, env: Mapping[str, str | None]) -> str:
    value = env.get(name)
    if value is None or str(value).strip() == "":
        raise RuntimeError(f"Missing required environment variable: {name}")
    return str(value)


def _read_optional(name: str, env: Mapping[str, str | None]) -> str | None:
    value = env.get(name)
    if value is None or str(value).strip() == "":
        return None
    return str(value).strip()


def _read_int(name: str, env: Mapping[str, str | None], default: int) -> int:
    raw = _read_optional(name, env)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"Environment variable {name} must be an integer") from None


def _read_float(name: str, env: Mapping[str, str | None], default: float) -> float:
    raw = _read_optional(name, env)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        raise RuntimeError(f"Environment variable {name} must be a number") from None


@dataclass(frozen=True)
class Settings:
    database_url: str
    jwt_secret: str
    admin_secret: str
    app_env: str = "development"
    redis_url: str | None = None
    token_ttl_seconds: int = 7 * 24 * 3600
    admin_token_ttl_seconds: int = 8 * 3600
    otp_ttl_seconds: int = 600
    otp_max_attempts: int = 5
    otp_lock_seconds: int = 900
    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_user: str | None = None
    smtp_password: str | None = None
    smtp_from: str | None = None
    mail_max_attempts: int = 3
    mail_backoff_seconds: float = 1.0
    google_client_id: str | None = None
    google_client_secret: str | None = None
    google_redirect_uri: str | None = None
    client_url: str = "http://localhost:5173"
    cors_origins: tuple[str, ...] = ("http://localhost:5173",)

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def smtp_enabled(self) -> bool:
        return bool(self.smtp_host and self.smtp_user and self.smtp_password)

    @property
    def google_enabled(self) -> bool:
        return bool(self.google_client_id and self.google_client_secret and self.google_redirect_uri)


def load_settings(env: Mapping[str, str | None] | None = None) -> Settings:
    """Load and validate environment variables into a Settings object."""
    source_env = os.environ if env is None else env

    missing = [key for key in REQUIRED_ENV_VARS if not str(source_env.get(key) or "").strip()]
    if missing:
        raise RuntimeError(f"Missing required environment variables: {', '.join(missing)}")

    app_env = str(source_env.get("APP_ENV", "development") or "").strip() or "development"
    client_url = _read_optional("CLIENT_URL", source_env) or "http://localhost:5173"
    cors_raw = _read_optional("CORS_ORIGINS", source_env)
    cors_origins = tuple(o.strip() for o in cors_raw.split(",") if o.strip()) if cors_raw else (client_url,)

    settings = Settings(
        database_url=_read_env_var("DATABASE_URL", source_env),
        jwt_secret=_read_env_var("JWT_SECRET", source_env),
        admin_secret=_read_env_var("ADMIN_SECRET", source_env),
        app_env=app_env,
        redis_url=_read_optional("REDIS_URL", source_env),
        token_ttl_seconds=_read_int("TOKEN_TTL_SECONDS", source_env, 7 * 24 * 3600),
        admin_token_ttl_seconds=_read_int("ADMIN_TOKEN_TTL_SECONDS", source_env, 8 * 3600),
        otp_ttl_seconds=_read_int("OTP_TTL_SECONDS", source_env, 600),
        otp_max_attempts=_read_int("OTP_MAX_ATTEMPTS", source_env, 5),
        otp_lock_seconds=_read_int("OTP_LOCK_SECONDS", source_env, 900),
        smtp_host=_read_optional("SMTP_HOST", source_env),
        smtp_port=_read_int("SMTP_PORT", source_env, 587),
        smtp_user=_read_optional("SMTP_USER", source_env),
        smtp_password=_read_optional("SMTP_PASS", source_env),
        smtp_from=_read_optional("SMTP_FROM", source_env),
        mail_max_attempts=_read_int("MAIL_MAX_ATTEMPTS", source_env, 3),
        mail_backoff_seconds=_read_float("MAIL_BACKOFF_SECONDS", source_env, 1.0),
        google_client_id=_read_optional("GOOGLE_CLIENT_ID", source_env),
        google_client_secret=_read_optional("GOOGLE_CLIENT_SECRET", source_env),
        google_redirect_uri=_read_optional("GOOGLE_REDIRECT_URI", source_env),
        client_url=client_url,
        cors_origins=cors_origins,
    )

    logger.info("Loaded application settings for env=%s", settings.app_env)
    return settings
