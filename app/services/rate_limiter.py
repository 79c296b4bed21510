"""Fixed-window rate limiting: "N requests per M minutes" per client.

FIXED WINDOW
------------
Time is cut into windows of ``window_seconds``.  Each client gets a
counter per window; the counter expires with the window.  Request N+1
inside the same window is rejected until the window rolls over.

The known weakness is the boundary burst: N requests at the end of one
window plus N at the start of the next.  For these limits (10 enrollment
attempts or 60 API calls a minute per IP) that is acceptable, and the
Redis form is a single INCR + EXPIRE per request.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Protocol, runtime_checkable


@dataclass(frozen=True, slots=True)
class RateLimitResult:
    """The outcome of a rate limit check.

    allowed:      True if the request may proceed.
    remaining:    Requests left in the current window.
    limit:        The window's maximum.
    retry_after:  Seconds until the window resets (0 if allowed).
    """

    allowed: bool
    remaining: int
    limit: int
    retry_after: float


@dataclass(frozen=True, slots=True)
class RateLimitConfig:
    """``max_requests`` per ``window_seconds``; ``name`` labels metrics and keys."""

    name: str = "api"
    max_requests: int = 60
    window_seconds: int = 60


@runtime_checkable
class RateLimiter(Protocol):
    async def check(self, key: str, config: RateLimitConfig) -> RateLimitResult: ...
    async def reset(self, key: str) -> None: ...


def _window(config: RateLimitConfig, now: float) -> tuple[int, float]:
    """Return (window number, seconds until it ends)."""
    window = int(now // config.window_seconds)
    ends_at = (window + 1) * config.window_seconds
    return window, ends_at - now


class InMemoryRateLimiter:
    """Per-process counters.  Behind a load balancer each instance counts
    separately, which is why production uses the Redis limiter."""

    def __init__(self) -> None:
        # key -> (window number, count)
        self._buckets: dict[str, tuple[int, int]] = {}

    async def check(self, key: str, config: RateLimitConfig) -> RateLimitResult:
        window, remaining_time = _window(config, time.time())
        bucket_key = f"{config.name}:{key}"
        current_window, count = self._buckets.get(bucket_key, (window, 0))
        if current_window != window:
            count = 0
        count += 1
        self._buckets[bucket_key] = (window, count)
        return _result(config, count, remaining_time)

    async def reset(self, key: str) -> None:
        for bucket_key in [k for k in self._buckets if k.endswith(f":{key}")]:
            del self._buckets[bucket_key]


class RedisRateLimiter:
    """Redis counters shared by every API instance.

    INCR and EXPIRE go in one MULTI/EXEC pipeline so a counter can never
    be left behind without a TTL.
    """

    _PREFIX = "ratelimit:"

    def __init__(self, redis_client) -> None:
        self._redis = redis_client

    async def check(self, key: str, config: RateLimitConfig) -> RateLimitResult:
        window, remaining_time = _window(config, time.time())
        redis_key = f"{self._PREFIX}{config.name}:{key}:{window}"
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.incr(redis_key)
            pipe.expire(redis_key, config.window_seconds + 1)
            count, _ = await pipe.execute()
        return _result(config, int(count), remaining_time)

    async def reset(self, key: str) -> None:
        cursor = 0
        while True:
            cursor, keys = await self._redis.scan(
                cursor, match=f"{self._PREFIX}*:{key}:*", count=100
            )
            if keys:
                await self._redis.delete(*keys)
            if cursor == 0:
                break


def _result(config: RateLimitConfig, count: int, remaining_time: float) -> RateLimitResult:
    allowed = count <= config.max_requests
    return RateLimitResult(
        allowed=allowed,
        remaining=max(config.max_requests - count, 0),
        limit=config.max_requests,
        retry_after=0 if allowed else remaining_time,
    )
