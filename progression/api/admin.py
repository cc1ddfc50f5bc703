"""Administrative endpoints (``admin`` role).

The authorization decision comes from the identity provider's roles
claim; the services below trust whoever the router lets through.
"""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from progression.api.dependencies import (
    AfterCommit,
    get_after_commit,
    get_store,
    require_role,
)
from progression.models.principal import Principal
from progression.repos.progression_store import ProgressionStore
from progression.services import ledger_service, progress_service
from progression.services.cache import invalidate_rankings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


class AssignModulesIn(BaseModel):
    module_ids: list[str] = Field(min_length=1)
    expires_at: int | None = None
    notes: str | None = Field(default=None, max_length=1000)


class AssignModulesOut(BaseModel):
    user_id: str
    assigned: int


class ProfileDriftOut(BaseModel):
    user_id: str
    stored_xp: int
    ledger_xp: int
    stored_level: int
    ledger_level: int


class ReconcileOut(BaseModel):
    repaired: bool
    drifted: list[ProfileDriftOut]


@router.post(
    "/users/{user_id}/modules",
    response_model=AssignModulesOut,
    status_code=status.HTTP_201_CREATED,
)
async def assign_modules(
    user_id: str,
    body: AssignModulesIn,
    principal: Annotated[Principal, Depends(require_role("admin"))],
    store: Annotated[ProgressionStore, Depends(get_store)],
) -> AssignModulesOut:
    assigned = await progress_service.assign_modules(
        store,
        user_id,
        body.module_ids,
        assigned_by=principal.user_id,
        expires_at=body.expires_at,
        notes=body.notes,
    )
    return AssignModulesOut(user_id=user_id, assigned=assigned)


@router.delete(
    "/users/{user_id}/modules/{module_id}",
    status_code=status.HTTP_204_NO_CONTENT,
)
async def remove_assignment(
    user_id: str,
    module_id: str,
    principal: Annotated[Principal, Depends(require_role("admin"))],
    store: Annotated[ProgressionStore, Depends(get_store)],
) -> None:
    await progress_service.remove_assignment(store, user_id, module_id)
    logger.info(
        "Assignment removed by admin=%s user=%s module=%s",
        principal.user_id,
        user_id,
        module_id,
    )


@router.post("/reconcile", response_model=ReconcileOut)
async def reconcile(
    principal: Annotated[Principal, Depends(require_role("admin"))],
    store: Annotated[ProgressionStore, Depends(get_store)],
    after_commit: Annotated[AfterCommit, Depends(get_after_commit)],
    repair: bool = False,
) -> ReconcileOut:
    logger.info("Reconciliation requested by admin=%s repair=%s", principal.user_id, repair)
    drifts = await ledger_service.reconcile_profiles(store, repair=repair)
    if repair and drifts:
        after_commit.add(invalidate_rankings)
    return ReconcileOut(
        repaired=repair,
        drifted=[
            ProfileDriftOut(
                user_id=d.user_id,
                stored_xp=d.stored_xp,
                ledger_xp=d.ledger_xp,
                stored_level=d.stored_level,
                ledger_level=d.ledger_level,
            )
            for d in drifts
        ],
    )
