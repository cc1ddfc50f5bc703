"""Read-through cache for computed leaderboards.

  GET /v1/ranking ─▶ cache.get(key) ─ hit ─▶ return
                          │
                         miss ─▶ ranking_service ─▶ cache.set(key, ttl) ─▶ return

Leaderboards are the expensive read (a full sort per scope/window), and
they tolerate read-committed staleness: a query issued right after a
grant may or may not include it.  Two mechanisms bound that staleness:

  1. TTL (RANKING_CACHE_TTL): every entry expires on its own.  A TTL of
     0 turns caching off.
  2. Explicit invalidation: any endpoint that writes to the ledger drops
     every "ranking:*" key once its unit of work has committed
     (registered on the request's AfterCommit, run by get_store).

Values are JSON strings so the same code path works against Redis and
the in-process dict used in dev and tests.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Protocol, runtime_checkable

from progression.core.metrics import CACHE_OPERATIONS
from progression.db.redis import redis_pool

logger = logging.getLogger(__name__)

RANKING_PREFIX = "ranking:"


@runtime_checkable
class CacheService(Protocol):
    async def get(self, key: str) -> str | None:
        """Fetch a cached value.  Returns None on a miss."""
        ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def delete_pattern(self, pattern: str) -> None:
        """Delete all keys matching a trailing-* glob, e.g. 'ranking:*'."""
        ...


class InMemoryCacheService:
    """Process-local cache honouring TTLs like Redis SETEX.

    Entries hold (value, expires_at) on a monotonic clock; an expired entry
    is dropped on read and counted as a miss.  The autouse fixture in
    tests/conftest.py clears it between tests.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._store: dict[str, tuple[str, float]] = {}
        self._clock = clock

    async def get(self, key: str) -> str | None:
        value: str | None = None
        entry = self._store.get(key)
        if entry is not None:
            if entry[1] > self._clock():
                value = entry[0]
            else:
                del self._store[key]
        CACHE_OPERATIONS.labels(operation="hit" if value is not None else "miss").inc()
        return value

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        self._store[key] = (value, self._clock() + ttl_seconds)

    async def delete(self, key: str) -> None:
        self._store.pop(key, None)

    async def delete_pattern(self, pattern: str) -> None:
        prefix = pattern.rstrip("*")
        for key in [k for k in self._store if k.startswith(prefix)]:
            del self._store[key]

    def clear(self) -> None:
        self._store.clear()


class RedisCacheService:
    """Redis-backed cache shared by every API instance."""

    _PREFIX = "progression:cache:"

    def __init__(self, redis_client) -> None:
        self._redis = redis_client

    async def get(self, key: str) -> str | None:
        value = await self._redis.get(f"{self._PREFIX}{key}")
        CACHE_OPERATIONS.labels(operation="hit" if value is not None else "miss").inc()
        return value

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        await self._redis.setex(f"{self._PREFIX}{key}", ttl_seconds, value)

    async def delete(self, key: str) -> None:
        await self._redis.delete(f"{self._PREFIX}{key}")

    async def delete_pattern(self, pattern: str) -> None:
        # SCAN, not KEYS: KEYS blocks the server for the whole keyspace.
        cursor = 0
        while True:
            cursor, keys = await self._redis.scan(
                cursor, match=f"{self._PREFIX}{pattern}", count=100
            )
            if keys:
                await self._redis.delete(*keys)
            if cursor == 0:
                break


async def invalidate_rankings() -> None:
    """Drop every cached leaderboard after a committed ledger write."""
    await cache_service.delete_pattern(f"{RANKING_PREFIX}*")
    logger.debug("Ranking cache invalidated")


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

if redis_pool is not None:
    cache_service: CacheService = RedisCacheService(redis_pool)
else:
    cache_service = InMemoryCacheService()
