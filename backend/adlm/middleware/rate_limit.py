"""
Sliding window rate limiting backed by Redis.

Guards the credential and activation endpoints (signup, login, refresh,
device activation). Callers are keyed by user id when the request is
authenticated and by client IP otherwise.

Environment:
- RATE_LIMIT_ENABLED        kill switch (default "true")
- RATE_LIMIT_AUTH           requests per window (default 20)
- RATE_LIMIT_WINDOW_SECONDS window length (default 60)
- REDIS_URL                 default "redis://localhost:6379/0"

When Redis cannot be reached the request is allowed and a warning logged.

Usage:
    @router.post("/login", dependencies=[Depends(rate_limit_dependency("auth_login"))])
"""

import logging
import os
import time
from dataclasses import dataclass
from typing import Callable, Optional

import redis
from fastapi import Request

from adlm.platform.errors import RateLimitError

logger = logging.getLogger(__name__)

KEY_PREFIX = "ratelimit"
KEY_TTL_GRACE_SECONDS = 10


def _is_rate_limit_enabled() -> bool:
    return os.getenv("RATE_LIMIT_ENABLED", "true").lower() in ("true", "1", "yes")


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


@dataclass
class RateLimitResult:
    """Outcome of one check; retry_after is 0 when allowed."""

    allowed: bool
    remaining: int
    limit: int
    reset_at: float
    retry_after: int

    @classmethod
    def open(cls, limit: int, window: int) -> "RateLimitResult":
        return cls(allowed=True, remaining=limit, limit=limit, reset_at=time.time() + window, retry_after=0)


class RateLimiter:
    """
    Each accepted request is a sorted-set member scored by its timestamp.
    A check trims members older than the window and compares the count.
    """

    def __init__(self, redis_url: str, default_limit: int = 20, window_seconds: int = 60):
        self.redis_url = redis_url
        self.default_limit = default_limit
        self.window_seconds = window_seconds
        self._redis: Optional[redis.Redis] = None

    def _get_redis(self) -> redis.Redis:
        # Lazy so the app starts without Redis
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_connect_timeout=2,
                socket_timeout=2,
            )
        return self._redis

    def check_rate_limit(
        self,
        caller: str,
        endpoint: str,
        limit: Optional[int] = None,
        window: Optional[int] = None,
    ) -> RateLimitResult:
        limit = self.default_limit if limit is None else limit
        window = self.window_seconds if window is None else window
        key = f"{KEY_PREFIX}:{endpoint}:{caller}"
        now = time.time()

        try:
            client = self._get_redis()
            trim = client.pipeline(transaction=True)
            trim.zremrangebyscore(key, "-inf", now - window)
            trim.zrange(key, 0, 0, withscores=True)
            trim.zcard(key)
            _, oldest, count = trim.execute()

            if count >= limit:
                first_seen = oldest[0][1] if oldest else now
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    limit=limit,
                    reset_at=first_seen + window,
                    retry_after=max(1, int(first_seen + window - now)),
                )

            record = client.pipeline(transaction=True)
            record.zadd(key, {f"{now}:{count}": now})
            record.expire(key, window + KEY_TTL_GRACE_SECONDS)
            record.execute()
        except redis.RedisError as exc:
            logger.warning(
                "Rate limiter unavailable, allowing request",
                extra={"endpoint": endpoint, "error_type": type(exc).__name__, "error": str(exc)},
            )
            return RateLimitResult.open(limit, window)

        return RateLimitResult(
            allowed=True,
            remaining=max(0, limit - count - 1),
            limit=limit,
            reset_at=now + window,
            retry_after=0,
        )


def get_rate_limiter(request: Request) -> RateLimiter:
    """The app-wide limiter lives on app.state next to the database."""
    limiter = getattr(request.app.state, "rate_limiter", None)
    if limiter is None:
        limiter = RateLimiter(
            redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
            default_limit=_env_int("RATE_LIMIT_AUTH", 20),
            window_seconds=_env_int("RATE_LIMIT_WINDOW_SECONDS", 60),
        )
        request.app.state.rate_limiter = limiter
    return limiter


def caller_identity(request: Request) -> str:
    user_id = getattr(request.state, "user_id", None)
    if user_id:
        return f"user:{user_id}"
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return "ip:" + forwarded_for.split(",")[0].strip()
    return "ip:" + (request.client.host if request.client else "unknown")


def rate_limit_dependency(
    endpoint_name: str,
    limit: Optional[int] = None,
    window: Optional[int] = None,
) -> Callable:
    """Build a dependency that raises RateLimitError (429) once the window is full."""

    def _dependency(request: Request) -> RateLimitResult:
        if not _is_rate_limit_enabled():
            return RateLimitResult.open(
                limit or _env_int("RATE_LIMIT_AUTH", 20),
                window or _env_int("RATE_LIMIT_WINDOW_SECONDS", 60),
            )

        caller = caller_identity(request)
        result = get_rate_limiter(request).check_rate_limit(
            caller=caller,
            endpoint=endpoint_name,
            limit=limit,
            window=window,
        )
        if not result.allowed:
            logger.warning(
                "Rate limit triggered",
                extra={
                    "caller": caller,
                    "endpoint": endpoint_name,
                    "limit": result.limit,
                    "retry_after": result.retry_after,
                    "path": request.url.path,
                },
            )
            raise RateLimitError(
                "Too many requests. Please wait before retrying.",
                retry_after=result.retry_after,
            )
        return result

    return _dependency
