"""Leaderboard endpoints, served through the read-through ranking cache.

GET /v1/ranking?course_id=&window=all_time|weekly&limit=
GET /v1/ranking/me?course_id=&window=

Only the leaderboard itself is cached; a user's own position is always
computed fresh since it is what a learner checks right after earning XP.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from progression.api.dependencies import get_store, require_user
from progression.core.config import SETTINGS
from progression.models.principal import Principal
from progression.models.ranking import RankingEntry, RankingScope, RankingWindow
from progression.repos.progression_store import ProgressionStore
from progression.services import ranking_service
from progression.services.cache import RANKING_PREFIX, cache_service

router = APIRouter(prefix="/v1/ranking", tags=["ranking"])


class RankingEntryOut(BaseModel):
    rank: int
    user_id: str
    display_name: str
    xp: int
    level: int


class RankingOut(BaseModel):
    scope: str
    course_id: str | None
    window: RankingWindow
    entries: list[RankingEntryOut]


class PositionOut(BaseModel):
    user_id: str
    rank: int | None
    total_participants: int
    percentile: int
    xp: int
    xp_to_next_rank: int | None
    next_rank_user: RankingEntryOut | None


def _entry_out(entry: RankingEntry) -> RankingEntryOut:
    return RankingEntryOut(
        rank=entry.rank,
        user_id=entry.user_id,
        display_name=entry.display_name,
        xp=entry.xp,
        level=entry.level,
    )


@router.get("", response_model=RankingOut)
async def get_ranking(
    principal: Annotated[Principal, Depends(require_user)],
    store: Annotated[ProgressionStore, Depends(get_store)],
    course_id: str | None = None,
    window: RankingWindow = RankingWindow.ALL_TIME,
    limit: Annotated[int | None, Query(ge=1, le=ranking_service.MAX_RANKING_LIMIT)] = None,
) -> RankingOut:
    scope = RankingScope(course_id=course_id)
    limit = limit or SETTINGS.ranking_default_limit
    cache_key = f"{RANKING_PREFIX}{scope.cache_key}:{window.value}:{limit}"

    cached = await cache_service.get(cache_key)
    if cached is not None:
        return RankingOut.model_validate_json(cached)

    entries = await ranking_service.compute_ranking(store, scope, window, limit)
    result = RankingOut(
        scope=scope.label,
        course_id=course_id,
        window=window,
        entries=[_entry_out(e) for e in entries],
    )
    await cache_service.set(
        cache_key, result.model_dump_json(), SETTINGS.ranking_cache_ttl
    )
    return result


@router.get("/me", response_model=PositionOut)
async def get_my_position(
    principal: Annotated[Principal, Depends(require_user)],
    store: Annotated[ProgressionStore, Depends(get_store)],
    course_id: str | None = None,
    window: RankingWindow = RankingWindow.ALL_TIME,
) -> PositionOut:
    position = await ranking_service.get_user_position(
        store, principal.user_id, RankingScope(course_id=course_id), window
    )
    return PositionOut(
        user_id=position.user_id,
        rank=position.rank,
        total_participants=position.total_participants,
        percentile=position.percentile,
        xp=position.xp,
        xp_to_next_rank=position.xp_to_next_rank,
        next_rank_user=(
            _entry_out(position.next_rank_user)
            if position.next_rank_user is not None
            else None
        ),
    )
