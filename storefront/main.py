from __future__ import annotations

from typing import Any

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from storefront.api import register_error_handlers, router
from storefront.auth import OtpPolicy, RateLimitGuard, TokenIssuer
from storefront.config import Settings, load_settings
from storefront.logging import get_logger
from storefront.models import Base
from storefront.services import (
    GoogleIdentityClient,
    MailDelivery,
    build_mail_delivery,
    build_rate_limit_guard,
    connect_fast_store,
)

logger = get_logger("main")


def build_engine(database_url: str) -> Engine:
    options: dict[str, Any] = {"future": True, "pool_pre_ping": True}
    if database_url.startswith("sqlite"):
        options["connect_args"] = {"check_same_thread": False}
        if ":memory:" in database_url:
            options["poolclass"] = StaticPool
    return create_engine(database_url, **options)


def create_app(
    settings: Settings | None = None,
    mail_delivery: MailDelivery | None = None,
    rate_limits: RateLimitGuard | None = None,
    identity_client: Any = None,
) -> FastAPI:
    settings = settings or load_settings()
    app = FastAPI(title="Storefront Auth API", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    engine = build_engine(settings.database_url)
    Base.metadata.create_all(engine)

    if rate_limits is None:
        rate_limits = build_rate_limit_guard(settings, connect_fast_store(settings.redis_url))
    if identity_client is None and settings.google_enabled:
        identity_client = GoogleIdentityClient(
            settings.google_client_id,
            settings.google_client_secret,
            settings.google_redirect_uri,
        )

    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = sessionmaker(bind=engine, expire_on_commit=False, future=True)
    app.state.tokens = TokenIssuer(settings.jwt_secret, settings.token_ttl_seconds, settings.admin_token_ttl_seconds)
    app.state.otp_policy = OtpPolicy(settings.otp_ttl_seconds, settings.otp_max_attempts, settings.otp_lock_seconds)
    app.state.mail_delivery = mail_delivery or build_mail_delivery(settings)
    app.state.rate_limits = rate_limits
    app.state.identity_client = identity_client

    register_error_handlers(app)
    app.include_router(router)

    @app.get("/health")
    def health():
        try:
            with app.state.engine.connect() as connection:
                connection.execute(text("select 1"))
        except SQLAlchemyError as exc:
            raise HTTPException(status_code=503, detail="database_unavailable") from exc
        return {"status": "ok"}

    logger.info("Storefront auth API ready env=%s", settings.app_env)
    return app
