from __future__ import annotations

import logging

import redis

from storefront.auth.rate_limit import DEFAULT_LIMITS, RateLimitGuard
from storefront.config import Settings

logger = logging.getLogger("storefront.fast_store")


def connect_fast_store(redis_url: str | None, timeout_seconds: float = 2.0) -> redis.Redis | None:
    if not redis_url:
        return None
    try:
        client = redis.Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=timeout_seconds,
            socket_timeout=timeout_seconds,
        )
        client.ping()
    except redis.RedisError as exc:
        logger.warning("Fast store unavailable at startup, rate limiting disabled: %s", exc)
        return None
    logger.info("Fast store connection established")
    return client


def build_rate_limit_guard(settings: Settings, client: redis.Redis | None = None) -> RateLimitGuard:
    """Pick the limiter backend: Redis when reachable, no-op when configured but down, in-process otherwise."""
    if client is not None:
        return RateLimitGuard.redis_backed(client, DEFAULT_LIMITS)
    if settings.redis_url:
        return RateLimitGuard.fail_open(DEFAULT_LIMITS)
    return RateLimitGuard.in_memory(DEFAULT_LIMITS)
