"""Health and readiness endpoints.

  /health (liveness): is the process alive?  Always 200; ``status`` says
  whether a dependency is degraded.  A 503 here would get the container
  restarted, which is too aggressive for a Redis blip.

  /ready (readiness): can this instance take traffic?  503 when the
  database is configured but unreachable, so the load balancer stops
  routing enrollments to an instance that cannot commit them.  Redis is
  not critical: cache misses fall through to the database.
"""

from __future__ import annotations

from fastapi import APIRouter, Response, status

from app.db.engine import engine, ping_database
from app.db.redis import ping_redis, redis_pool

router = APIRouter(tags=["health"])


async def _redis_status() -> str:
    if redis_pool is None:
        return "not_configured"
    return "ok" if await ping_redis() else "degraded"


async def _database_status() -> str:
    if engine is None:
        return "not_configured"
    return "ok" if await ping_database() else "degraded"


@router.get("/health")
async def health() -> dict:
    checks = {
        "redis": await _redis_status(),
        "database": await _database_status(),
    }
    overall = "degraded" if "degraded" in checks.values() else "ok"
    return {"status": overall, "checks": checks}


@router.get("/ready")
async def ready() -> Response:
    if await _database_status() == "degraded":
        return Response(status_code=status.HTTP_503_SERVICE_UNAVAILABLE)
    return Response(status_code=status.HTTP_200_OK)
