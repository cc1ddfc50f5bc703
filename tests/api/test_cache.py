"""Ranking cache: read-through hits, invalidation, TTL 0, Redis key handling.

1. First GET /v1/ranking is a miss and populates the cache
2. Identical queries are hits; different limit/window/scope are separate keys
3. Any ledger write drops every cached leaderboard
4. RANKING_CACHE_TTL=0 disables caching altogether
5. Entries expire once their TTL has elapsed
"""

from __future__ import annotations

import asyncio
from dataclasses import replace

import pytest
from fastapi.testclient import TestClient

from progression.api import ranking as ranking_api
from progression.core.config import SETTINGS
from progression.services import cache
from progression.services.cache import (
    InMemoryCacheService,
    RedisCacheService,
    cache_service,
    invalidate_rankings,
)
from tests.conftest import auth

ADMIN = auth("root", roles=["admin"])


def _cached_keys() -> list[str]:
    return sorted(cache_service._store)  # type: ignore[union-attr]


def test_each_query_shape_gets_its_own_key(client: TestClient) -> None:
    client.put("/v1/profile/me", json={}, headers=auth("a"))

    client.get("/v1/ranking", headers=auth("a"))
    client.get("/v1/ranking", params={"limit": 5}, headers=auth("a"))
    client.get("/v1/ranking", params={"window": "weekly"}, headers=auth("a"))
    client.get(
        "/v1/ranking", params={"course_id": "linux-fundamentals"}, headers=auth("a")
    )

    assert len(_cached_keys()) == 4
    assert all(k.startswith("ranking:") for k in _cached_keys())


def test_lesson_completion_invalidates(client: TestClient) -> None:
    client.put("/v1/profile/me", json={}, headers=auth("a"))
    client.get("/v1/ranking", headers=auth("a"))
    assert _cached_keys()

    client.post("/v1/progress/lessons/linux-basics-1/complete", headers=auth("a"))
    assert _cached_keys() == []

    body = client.get("/v1/ranking", headers=auth("a")).json()
    assert body["entries"][0]["xp"] == 10


def test_position_is_never_cached(client: TestClient) -> None:
    client.put("/v1/profile/me", json={}, headers=auth("a"))
    client.get("/v1/ranking/me", headers=auth("a"))
    assert _cached_keys() == []


def test_zero_ttl_disables_caching(
    client: TestClient, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(ranking_api, "SETTINGS", replace(SETTINGS, ranking_cache_ttl=0))
    client.put("/v1/profile/me", json={}, headers=auth("a"))
    client.get("/v1/ranking", headers=auth("a"))
    assert _cached_keys() == []


def test_delete_pattern_only_touches_prefix() -> None:
    svc = InMemoryCacheService()

    async def scenario() -> tuple[str | None, str | None]:
        await svc.set("ranking:global:all_time:50", "[]", 60)
        await svc.set("other:key", "x", 60)
        await svc.delete_pattern("ranking:*")
        return await svc.get("ranking:global:all_time:50"), await svc.get("other:key")

    assert asyncio.run(scenario()) == (None, "x")


class _FakeRedis:
    """Just enough of redis.asyncio.Redis for RedisCacheService."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.ttls: dict[str, int] = {}

    async def get(self, key):
        return self.data.get(key)

    async def setex(self, key, ttl, value):
        self.data[key] = value
        self.ttls[key] = ttl

    async def delete(self, *keys):
        for key in keys:
            self.data.pop(key, None)

    async def scan(self, cursor, match, count):
        prefix = match.rstrip("*")
        return 0, [k for k in self.data if k.startswith(prefix)]


def test_redis_cache_prefixes_keys_and_scans_on_invalidate(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    fake = _FakeRedis()
    svc = RedisCacheService(fake)
    monkeypatch.setattr(cache, "cache_service", svc)

    async def scenario() -> None:
        await svc.set("ranking:global:all_time:50", "[]", 30)
        await svc.set("ranking:course:x:weekly:10", "[]", 0)
        await invalidate_rankings()

    fake.data["progression:cache:unrelated"] = "keep"
    asyncio.run(scenario())

    assert fake.ttls == {"progression:cache:ranking:global:all_time:50": 30}
    assert fake.data == {"progression:cache:unrelated": "keep"}


def test_entries_expire_after_their_ttl() -> None:
    now = [100.0]
    svc = InMemoryCacheService(clock=lambda: now[0])

    async def scenario() -> tuple[str | None, str | None]:
        await svc.set("ranking:global:all_time:50", "[]", 30)
        fresh = await svc.get("ranking:global:all_time:50")
        now[0] += 30
        return fresh, await svc.get("ranking:global:all_time:50")

    assert asyncio.run(scenario()) == ("[]", None)
    assert svc._store == {}
