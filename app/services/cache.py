"""Read-through cache for course and enrollment reads.

READ-THROUGH
------------
   Client -> Cache -> hit  -> return
   Client -> Cache -> miss -> committed DB state -> populate cache -> return

Loaders passed to ``read_through`` read through the stores' committed-state
methods, never through an open unit of work, so a cache entry can only
ever hold data that has been committed.

INVALIDATION
------------
Two complementary mechanisms:

  1. TTL on every entry (the safety net).  Even a missed invalidation
     heals itself after at most the key's TTL.

  2. Explicit deletes after a write.  These are registered on the
     transaction's outbox and run AFTER COMMIT.  Deleting inside the
     transaction would open a window where a concurrent reader misses,
     reloads the still-uncommitted (old) row and re-caches it for a full
     TTL.

KEYS
----
  course:{id}:availability                     60s
  course:{id}:details                          300s
  courses:search:{digest}                      300s
  enrollments:list:{status}:{page}:{per_page}  300s
  enrollment:{id}:{access|learning_path|notifications|welcome_email_sent}
                                               written by background jobs
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, runtime_checkable

from app.core.metrics import CACHE_OPERATIONS
from app.db.redis import redis_pool

AVAILABILITY_TTL = 60
DETAILS_TTL = 300
SEARCH_TTL = 300
ENROLLMENT_LIST_TTL = 300
JOB_DATA_TTL = 30 * 24 * 3600

COURSE_SEARCH_PATTERN = "courses:search:*"
ENROLLMENT_LISTS_PATTERN = "enrollments:*"


def course_availability_key(course_id: int) -> str:
    return f"course:{course_id}:availability"


def course_details_key(course_id: int) -> str:
    return f"course:{course_id}:details"


def course_search_key(params: dict[str, Any]) -> str:
    canonical = json.dumps(params, sort_keys=True, default=str)
    digest = hashlib.sha256(canonical.encode()).hexdigest()[:16]
    return f"courses:search:{digest}"


def enrollment_list_key(status: str | None, page: int, per_page: int) -> str:
    return f"enrollments:list:{status or 'all'}:{page}:{per_page}"


def enrollment_data_key(enrollment_id: int, name: str) -> str:
    return f"enrollment:{enrollment_id}:{name}"


@runtime_checkable
class CacheService(Protocol):
    async def get(self, key: str) -> str | None:
        """Fetch a cached value.  Returns None on cache miss."""
        ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        """Store a value with a TTL (time to live)."""
        ...

    async def delete(self, key: str) -> None:
        """Explicitly invalidate a cached entry."""
        ...

    async def delete_pattern(self, pattern: str) -> None:
        """Delete all keys matching a glob pattern (e.g., 'courses:search:*')."""
        ...


class InMemoryCacheService:
    """In-memory cache for local dev and tests; TTLs are not enforced.

    The autouse fixture in conftest.py clears the store between tests.
    """

    def __init__(self) -> None:
        self._store: dict[str, str] = {}

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._store[key] = value

    async def delete(self, key: str) -> None:
        self._store.pop(key, None)

    async def delete_pattern(self, pattern: str) -> None:
        prefix = pattern.rstrip("*")
        for k in [k for k in self._store if k.startswith(prefix)]:
            del self._store[k]


class RedisCacheService:
    """Redis-backed cache, shared by every API instance and the worker."""

    # Keeps cache keys apart from the rate limiter's and the task queues'
    _PREFIX = "cache:"

    def __init__(self, redis_client) -> None:
        self._redis = redis_client

    async def get(self, key: str) -> str | None:
        return await self._redis.get(f"{self._PREFIX}{key}")

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._redis.setex(f"{self._PREFIX}{key}", ttl_seconds, value)

    async def delete(self, key: str) -> None:
        await self._redis.delete(f"{self._PREFIX}{key}")

    async def delete_pattern(self, pattern: str) -> None:
        # SCAN, not KEYS: KEYS blocks the server for the whole keyspace walk.
        cursor = 0
        while True:
            cursor, keys = await self._redis.scan(
                cursor, match=f"{self._PREFIX}{pattern}", count=100
            )
            if keys:
                await self._redis.delete(*keys)
            if cursor == 0:
                break


async def read_through(
    cache: CacheService,
    key: str,
    ttl_seconds: int,
    loader: Callable[[], Awaitable[Any]],
) -> Any:
    """Return the cached JSON value for ``key``, loading it on a miss.

    A loader returning None is not cached (e.g. "not found" stays
    uncached so the record shows up as soon as it is committed).
    """
    cached = await cache.get(key)
    if cached is not None:
        CACHE_OPERATIONS.labels(operation="hit").inc()
        return json.loads(cached)

    CACHE_OPERATIONS.labels(operation="miss").inc()
    value = await loader()
    if value is not None:
        await cache.set(key, json.dumps(value, default=str), ttl_seconds)
    return value


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

if redis_pool is not None:
    cache_service: CacheService = RedisCacheService(redis_pool)
else:
    cache_service = InMemoryCacheService()
