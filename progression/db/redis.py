"""Redis connection management.

Mirrors engine.py: when REDIS_URL is configured a connection pool is
created at import time; when it is unset redis_pool is None and the
ranking cache falls back to an in-process dict.

Redis only ever holds derived, disposable data here (cached
leaderboards).  Losing it costs a recomputation, never correctness;
the ledger and profiles live in PostgreSQL.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from progression.core.config import SETTINGS

logger = logging.getLogger(__name__)

if SETTINGS.redis_url:
    redis_pool: aioredis.Redis | None = aioredis.from_url(  # type: ignore[type-arg]
        SETTINGS.redis_url,
        decode_responses=True,  # cached values are JSON strings
        max_connections=20,
    )
else:
    redis_pool = None


async def ping() -> bool:
    """True when Redis answers; False when unreachable or not configured."""
    if redis_pool is None:
        return False
    try:
        await redis_pool.ping()  # type: ignore[misc]
    except (RedisError, OSError):
        logger.warning("Redis ping failed", exc_info=True)
        return False
    return True


@asynccontextmanager
async def lifespan_redis():
    """Startup/shutdown hook for Redis, nested inside lifespan_db()."""
    if redis_pool is None:
        logger.info("No REDIS_URL configured: ranking cache is in-process")
        yield
        return

    # An unreachable Redis degrades to cache misses; the app still starts.
    if await ping():
        logger.info("Redis connected: %s", SETTINGS.redis_url)
    else:
        logger.error("Redis unreachable on startup; ranking cache will miss")

    yield

    await redis_pool.aclose()
    logger.info("Redis connection pool closed")
