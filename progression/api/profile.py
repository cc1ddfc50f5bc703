"""Profile and XP ledger endpoints.

PUT  /v1/profile/me           create own profile (idempotent)
GET  /v1/profile/me           own profile with level title / progress
GET  /v1/profile/{user_id}    someone's profile (self or platform admin)
GET  /v1/xp/grants/me         own ledger history, newest first
POST /v1/xp/grants            grant XP to any user (admin role)
"""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from progression.api.access import check_owner_or_admin
from progression.api.dependencies import (
    AfterCommit,
    get_after_commit,
    get_store,
    require_role,
    require_user,
)
from progression.models.principal import Principal
from progression.models.xp import Profile, XPGrant, xp_for_level
from progression.repos.progression_store import ProgressionStore
from progression.services import ledger_service
from progression.services.cache import invalidate_rankings

logger = logging.getLogger(__name__)

router = APIRouter(tags=["profile"])


class ProfileIn(BaseModel):
    display_name: str = Field(default="", max_length=255)


class ProfileOut(BaseModel):
    user_id: str
    display_name: str
    xp: int
    level: int
    level_title: str
    level_progress: int
    xp_for_next_level: int
    streak_days: int
    last_activity_at: int | None


class GrantIn(BaseModel):
    user_id: str
    amount: int
    source_type: str = "manual"
    source_id: str | None = None
    description: str | None = None
    idempotency_key: str | None = Field(default=None, max_length=255)


class GrantOut(BaseModel):
    id: str
    user_id: str
    amount: int
    source_type: str
    source_id: str | None
    description: str | None
    created_at: int


def _profile_out(profile: Profile) -> ProfileOut:
    return ProfileOut(
        user_id=profile.user_id,
        display_name=profile.display_name,
        xp=profile.xp,
        level=profile.level,
        level_title=profile.level_title,
        level_progress=profile.level_progress,
        xp_for_next_level=xp_for_level(profile.level + 1),
        streak_days=profile.streak_days,
        last_activity_at=profile.last_activity_at,
    )


def _grant_out(grant: XPGrant) -> GrantOut:
    return GrantOut(
        id=str(grant.id),
        user_id=grant.user_id,
        amount=grant.amount,
        source_type=grant.source_type,
        source_id=grant.source_id,
        description=grant.description,
        created_at=grant.created_at,
    )


@router.put("/v1/profile/me", response_model=ProfileOut)
async def create_my_profile(
    body: ProfileIn,
    principal: Annotated[Principal, Depends(require_user)],
    store: Annotated[ProgressionStore, Depends(get_store)],
    after_commit: Annotated[AfterCommit, Depends(get_after_commit)],
) -> ProfileOut:
    profile = await ledger_service.create_profile(
        store, principal.user_id, body.display_name
    )
    after_commit.add(invalidate_rankings)
    return _profile_out(profile)


@router.get("/v1/profile/me", response_model=ProfileOut)
async def get_my_profile(
    principal: Annotated[Principal, Depends(require_user)],
    store: Annotated[ProgressionStore, Depends(get_store)],
) -> ProfileOut:
    return _profile_out(await ledger_service.get_profile(store, principal.user_id))


@router.get("/v1/profile/{user_id}", response_model=ProfileOut)
async def get_user_profile(
    user_id: str,
    principal: Annotated[Principal, Depends(require_user)],
    store: Annotated[ProgressionStore, Depends(get_store)],
) -> ProfileOut:
    check_owner_or_admin(principal, user_id)
    return _profile_out(await ledger_service.get_profile(store, user_id))


@router.get("/v1/xp/grants/me", response_model=list[GrantOut])
async def list_my_grants(
    principal: Annotated[Principal, Depends(require_user)],
    store: Annotated[ProgressionStore, Depends(get_store)],
    limit: Annotated[int, Query(ge=1, le=500)] = 100,
) -> list[GrantOut]:
    grants = await ledger_service.list_grants(store, principal.user_id)
    return [_grant_out(g) for g in grants[:limit]]


@router.post(
    "/v1/xp/grants",
    response_model=GrantOut,
    status_code=status.HTTP_201_CREATED,
)
async def grant_xp(
    body: GrantIn,
    principal: Annotated[Principal, Depends(require_role("admin"))],
    store: Annotated[ProgressionStore, Depends(get_store)],
    after_commit: Annotated[AfterCommit, Depends(get_after_commit)],
) -> GrantOut:
    grant = await ledger_service.grant_xp(
        store,
        body.user_id,
        body.amount,
        body.source_type,
        body.source_id,
        body.description,
        idempotency_key=body.idempotency_key,
    )
    logger.info(
        "Manual grant by admin=%s to user=%s amount=%d",
        principal.user_id,
        body.user_id,
        body.amount,
    )
    after_commit.add(invalidate_rankings)
    return _grant_out(grant)
