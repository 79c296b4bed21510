"""Rate limiting dependency for FastAPI routes.

A dependency rather than middleware, so each router picks its limit and
the probes (/health, /ready, /metrics) are never limited:

  POST /v1/enrollments  -> 10/min per IP (ENROLLMENT_LIMIT)
  other /v1 routes      -> 60/min per IP (API_LIMIT)

X-RateLimit-* headers go on every limited response, not only on 429s,
so clients can throttle themselves before being rejected.
"""

from __future__ import annotations

import logging

from fastapi import HTTPException, Request, status

from app.core.metrics import RATE_LIMIT_HITS
from app.db.redis import redis_pool
from app.services.rate_limiter import (
    InMemoryRateLimiter,
    RateLimitConfig,
    RateLimiter,
    RateLimitResult,
    RedisRateLimiter,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

if redis_pool is not None:
    _rate_limiter: RateLimiter = RedisRateLimiter(redis_pool)
else:
    _rate_limiter = InMemoryRateLimiter()


ENROLLMENT_LIMIT = RateLimitConfig(name="enrollments", max_requests=10, window_seconds=60)
API_LIMIT = RateLimitConfig(name="api", max_requests=60, window_seconds=60)


def require_rate_limit(config: RateLimitConfig = API_LIMIT):
    """Dependency factory: enforce ``config`` on a route or router.

        @router.post("", dependencies=[Depends(require_rate_limit(ENROLLMENT_LIMIT))])
    """

    async def _check(request: Request) -> None:
        key = _client_key(request)
        result: RateLimitResult = await _rate_limiter.check(key, config)

        request.state.rate_limit_headers = {
            "X-RateLimit-Limit": str(result.limit),
            "X-RateLimit-Remaining": str(result.remaining),
        }

        if not result.allowed:
            RATE_LIMIT_HITS.labels(limit=config.name).inc()
            logger.warning("Rate limit %s exceeded key=%s", config.name, key)
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Too many requests. Please try again later.",
                headers={
                    "Retry-After": str(int(result.retry_after) + 1),
                    "X-RateLimit-Limit": str(result.limit),
                    "X-RateLimit-Remaining": "0",
                },
            )

    return _check


def _client_key(request: Request) -> str:
    client_ip = request.client.host if request.client else "unknown"
    return f"ip:{client_ip}"
