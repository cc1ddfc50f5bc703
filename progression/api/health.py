"""Health and readiness endpoints.

  /health   liveness plus dependency status.  Always 200; the body's
            status field says "degraded" when a dependency is down.
  /ready    readiness.  503 when the database is configured but
            unreachable, since no write can succeed without it.  Redis
            is not critical: the ranking cache degrades to misses.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Response, status
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from progression.db import redis
from progression.db.engine import engine

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


async def _database_ok() -> bool:
    if engine is None:
        return True
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError):
        logger.warning("Database health check failed", exc_info=True)
        return False
    return True


@router.get("/health")
async def health() -> dict:
    checks: dict[str, str] = {}
    overall = "ok"

    if redis.redis_pool is None:
        checks["redis"] = "not_configured"
    elif await redis.ping():
        checks["redis"] = "ok"
    else:
        checks["redis"] = "degraded"
        overall = "degraded"

    if engine is None:
        checks["database"] = "in_memory"
    elif await _database_ok():
        checks["database"] = "ok"
    else:
        checks["database"] = "degraded"
        overall = "degraded"

    return {"status": overall, "checks": checks}


@router.get("/ready")
async def ready() -> Response:
    if not await _database_ok():
        return Response(status_code=status.HTTP_503_SERVICE_UNAVAILABLE)
    return Response(status_code=status.HTTP_200_OK)
