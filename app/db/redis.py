"""Redis connection pool, shared by everything that needs cross-process state.

Three consumers read ``redis_pool``:

  - app/services/cache.py: course details, availability, search pages
    and enrollment lists, each with its own TTL
  - app/services/rate_limiter.py: fixed-window counters for the
    enrollment and API limits
  - app/services/task_queue.py: the emails, course_access and events
    lists the worker pops from

Like engine.py, the pool only exists when REDIS_URL is set.  With no
REDIS_URL (local dev, tests) ``redis_pool`` is None and every consumer
picks its in-memory implementation, so one process behaves the same
without a Redis server.

None of this data is the system of record.  Losing Redis costs cache
hits, rate limit history and queued follow-up jobs; enrollments,
payments and seat counts live in the database.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import redis.asyncio as aioredis

from app.core.config import SETTINGS

logger = logging.getLogger(__name__)

if SETTINGS.redis_url:
    redis_pool: aioredis.Redis | None = aioredis.from_url(  # type: ignore[type-arg]
        SETTINGS.redis_url,
        decode_responses=True,  # cache values and queue payloads are JSON text
        max_connections=20,
    )
else:
    redis_pool = None


async def ping_redis() -> bool:
    if redis_pool is None:
        return False
    try:
        await redis_pool.ping()  # type: ignore[misc]  # redis stubs mistype async ping as bool
    except (aioredis.RedisError, OSError):
        logger.warning("Redis ping failed", exc_info=True)
        return False
    return True


@asynccontextmanager
async def lifespan_redis():
    """Startup/shutdown hook for the Redis pool.

    An unreachable Redis at startup is logged, not fatal: the API can
    still take enrollments, and the health check reports "degraded"
    until Redis comes back.
    """
    if redis_pool is None:
        logger.info("No REDIS_URL configured, using in-memory cache, limiter and queue")
        yield
        return

    if await ping_redis():
        logger.info("Redis connected: %s", SETTINGS.redis_url)
    else:
        logger.error("Redis unreachable on startup: %s", SETTINGS.redis_url)

    try:
        yield
    finally:
        await redis_pool.aclose()
        logger.info("Redis connection pool closed")
