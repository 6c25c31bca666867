"""Per-route request limiting keyed by client IP and account email.

Backends share the ``allow`` / ``retry_after`` / ``reset`` interface. The
Redis backend fails open: a store error lets the request through.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Mapping, Protocol

import redis

from .errors import RateLimitedError

logger = logging.getLogger("storefront.rate_limit")


@dataclass(frozen=True)
class RateLimit:
    max_attempts: int
    window_seconds: int


DEFAULT_LIMITS: Mapping[str, RateLimit] = {
    "login": RateLimit(10, 15 * 60),
    "admin_login": RateLimit(10, 15 * 60),
    "verify_otp": RateLimit(10, 15 * 60),
    "resend_otp": RateLimit(3, 5 * 60),
    "register": RateLimit(5, 60 * 60),
    "forgot_password": RateLimit(3, 15 * 60),
    "check_verification": RateLimit(10, 15 * 60),
    "admin_recovery": RateLimit(5, 15 * 60),
    "admin_reset_otp": RateLimit(10, 15 * 60),
}


class Limiter(Protocol):
    def allow(self, key: str, now: datetime) -> bool: ...

    def retry_after(self, key: str, now: datetime) -> float: ...

    def reset(self, key: str) -> None: ...


class RateLimiter:
    def __init__(self, max_attempts: int, window_seconds: int) -> None:
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self._attempts: dict[str, list[datetime]] = {}
        self._lock = threading.Lock()

    def allow(self, key: str, now: datetime) -> bool:
        with self._lock:
            items = self._attempts.get(key, [])
            cutoff = now - timedelta(seconds=self.window_seconds)
            filtered = [ts for ts in items if ts > cutoff]
            if len(filtered) >= self.max_attempts:
                self._attempts[key] = filtered
                return False
            filtered.append(now)
            self._attempts[key] = filtered
            return True

    def retry_after(self, key: str, now: datetime) -> float:
        with self._lock:
            items = self._attempts.get(key, [])
            if len(items) < self.max_attempts:
                return 0.0
            oldest = items[-self.max_attempts]
            release = oldest + timedelta(seconds=self.window_seconds)
            return max(0.0, (release - now).total_seconds())

    def reset(self, key: str) -> None:
        with self._lock:
            self._attempts.pop(key, None)


class RedisRateLimiter:
    def __init__(self, client: Any, max_attempts: int, window_seconds: int, prefix: str = "rate_limit") -> None:
        self.client = client
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self.prefix = prefix

    def allow(self, key: str, now: datetime) -> bool:
        redis_key = self._key(key, now)
        try:
            with self.client.pipeline() as pipe:
                pipe.incr(redis_key)
                pipe.expire(redis_key, self.window_seconds)
                count, _ = pipe.execute()
        except redis.RedisError as exc:
            logger.warning("Rate limit store unavailable, allowing request: %s", exc)
            return True
        return int(count) <= self.max_attempts

    def retry_after(self, key: str, now: datetime) -> float:
        window_end = (self._bucket(now) + 1) * self.window_seconds
        return max(0.0, window_end - now.timestamp())

    def reset(self, key: str) -> None:
        try:
            for redis_key in self.client.scan_iter(match=f"{self.prefix}:{key}:*"):
                self.client.delete(redis_key)
        except redis.RedisError as exc:
            logger.warning("Rate limit reset skipped: %s", exc)

    def _bucket(self, now: datetime) -> int:
        return int(math.floor(now.timestamp() / self.window_seconds))

    def _key(self, key: str, now: datetime) -> str:
        return f"{self.prefix}:{key}:{self._bucket(now)}"


class NullRateLimiter:
    def allow(self, key: str, now: datetime) -> bool:
        return True

    def retry_after(self, key: str, now: datetime) -> float:
        return 0.0

    def reset(self, key: str) -> None:
        return None


class RateLimitGuard:
    def __init__(self, limiters: Mapping[str, Limiter]) -> None:
        self.limiters = dict(limiters)

    @classmethod
    def in_memory(cls, limits: Mapping[str, RateLimit] | None = None) -> "RateLimitGuard":
        resolved = limits or DEFAULT_LIMITS
        return cls({route: RateLimiter(rule.max_attempts, rule.window_seconds) for route, rule in resolved.items()})

    @classmethod
    def redis_backed(cls, client: Any, limits: Mapping[str, RateLimit] | None = None) -> "RateLimitGuard":
        resolved = limits or DEFAULT_LIMITS
        return cls(
            {
                route: RedisRateLimiter(client, rule.max_attempts, rule.window_seconds, prefix=f"rate_limit:{route}")
                for route, rule in resolved.items()
            }
        )

    @classmethod
    def fail_open(cls, limits: Mapping[str, RateLimit] | None = None) -> "RateLimitGuard":
        resolved = limits or DEFAULT_LIMITS
        return cls({route: NullRateLimiter() for route in resolved})

    def check(self, route: str, now: datetime, ip_address: str | None = None, email: str | None = None) -> None:
        limiter = self.limiters.get(route)
        if limiter is None:
            return
        keys = []
        if ip_address:
            keys.append(f"ip:{ip_address}")
        if email:
            keys.append(f"email:{email}")
        for key in keys:
            if not limiter.allow(key, now):
                retry_after = limiter.retry_after(key, now)
                logger.warning("Rate limit exceeded route=%s key=%s", route, key)
                raise RateLimitedError(retry_after)
