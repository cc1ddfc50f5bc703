"""Learner progress endpoints.

POST /v1/progress/lessons/{lesson_id}/complete   idempotent completion
POST /v1/progress/quizzes/{lesson_id}            latest attempt wins
POST /v1/progress/modules/{module_id}/start      Unlocked → InProgress
GET  /v1/progress/modules                        every module + state
POST /v1/progress/labs/{lab_id}/submit           one terminal command

Every write endpoint may create ledger grants, so it drops the cached
leaderboards after the service call returns.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from progression.api.dependencies import (
    AfterCommit,
    get_after_commit,
    get_store,
    require_user,
)
from progression.models.principal import Principal
from progression.models.progress import ModuleProgress
from progression.repos.progression_store import ProgressionStore
from progression.services import progress_service
from progression.services.cache import invalidate_rankings
from progression.services.progress_service import MAX_COMMAND_LENGTH, ModuleOverview

router = APIRouter(prefix="/v1/progress", tags=["progress"])


class LessonCompletionOut(BaseModel):
    lesson_id: str
    is_completed: bool
    completed_at: int


class QuizIn(BaseModel):
    score: int
    total_questions: int
    xp_earned: int = 0


class QuizOut(BaseModel):
    lesson_id: str
    score: int
    total_questions: int
    xp_earned: int
    xp_awarded: int
    xp_granted: int
    completed_at: int


class ModuleProgressOut(BaseModel):
    module_id: str
    course_id: str
    title: str
    prerequisite_module_id: str | None
    status: str
    is_unlocked: bool
    is_assigned: bool
    is_completed: bool
    progress_percentage: int
    started_at: int | None
    completed_at: int | None


class LabCommandIn(BaseModel):
    # Longer input is truncated by the service, not rejected.
    command: str = Field(min_length=1, max_length=MAX_COMMAND_LENGTH * 4)


class LabSubmissionOut(BaseModel):
    lab_id: str
    is_correct: bool
    is_completed: bool
    attempts: int
    xp_granted: int


def _module_out(overview: ModuleOverview) -> ModuleProgressOut:
    module, progress = overview.module, overview.progress
    return ModuleProgressOut(
        module_id=module.id,
        course_id=module.course_id,
        title=module.title,
        prerequisite_module_id=module.prerequisite_module_id,
        status=progress.status.value,
        is_unlocked=progress.is_unlocked,
        is_assigned=overview.is_assigned,
        is_completed=progress.is_completed,
        progress_percentage=progress.progress_percentage,
        started_at=progress.started_at,
        completed_at=progress.completed_at,
    )


@router.post("/lessons/{lesson_id}/complete", response_model=LessonCompletionOut)
async def complete_lesson(
    lesson_id: str,
    principal: Annotated[Principal, Depends(require_user)],
    store: Annotated[ProgressionStore, Depends(get_store)],
    after_commit: Annotated[AfterCommit, Depends(get_after_commit)],
) -> LessonCompletionOut:
    record = await progress_service.complete_lesson(store, principal.user_id, lesson_id)
    after_commit.add(invalidate_rankings)
    return LessonCompletionOut(
        lesson_id=record.lesson_id,
        is_completed=record.is_completed,
        completed_at=record.completed_at,
    )


@router.post("/quizzes/{lesson_id}", response_model=QuizOut)
async def submit_quiz(
    lesson_id: str,
    body: QuizIn,
    principal: Annotated[Principal, Depends(require_user)],
    store: Annotated[ProgressionStore, Depends(get_store)],
    after_commit: Annotated[AfterCommit, Depends(get_after_commit)],
) -> QuizOut:
    attempt, grant = await progress_service.complete_quiz(
        store,
        principal.user_id,
        lesson_id,
        body.score,
        body.total_questions,
        body.xp_earned,
    )
    if grant is not None:
        after_commit.add(invalidate_rankings)
    return QuizOut(
        lesson_id=attempt.lesson_id,
        score=attempt.score,
        total_questions=attempt.total_questions,
        xp_earned=attempt.xp_earned,
        xp_awarded=attempt.xp_awarded,
        xp_granted=grant.amount if grant is not None else 0,
        completed_at=attempt.completed_at,
    )


@router.post("/modules/{module_id}/start", response_model=ModuleProgressOut)
async def start_module(
    module_id: str,
    principal: Annotated[Principal, Depends(require_user)],
    store: Annotated[ProgressionStore, Depends(get_store)],
) -> ModuleProgressOut:
    progress: ModuleProgress = await progress_service.start_module(
        store, principal.user_id, module_id
    )
    overview = next(
        o
        for o in await progress_service.get_module_progress(store, principal.user_id)
        if o.module.id == progress.module_id
    )
    return _module_out(overview)


@router.get("/modules", response_model=list[ModuleProgressOut])
async def list_module_progress(
    principal: Annotated[Principal, Depends(require_user)],
    store: Annotated[ProgressionStore, Depends(get_store)],
) -> list[ModuleProgressOut]:
    overview = await progress_service.get_module_progress(store, principal.user_id)
    return [_module_out(o) for o in overview]


@router.post("/labs/{lab_id}/submit", response_model=LabSubmissionOut)
async def submit_lab_command(
    lab_id: str,
    body: LabCommandIn,
    principal: Annotated[Principal, Depends(require_user)],
    store: Annotated[ProgressionStore, Depends(get_store)],
    after_commit: Annotated[AfterCommit, Depends(get_after_commit)],
) -> LabSubmissionOut:
    result = await progress_service.submit_lab_command(
        store, principal.user_id, lab_id, body.command
    )
    if result.grant is not None:
        after_commit.add(invalidate_rankings)
    return LabSubmissionOut(
        lab_id=lab_id,
        is_correct=result.is_correct,
        is_completed=result.progress.is_completed,
        attempts=result.progress.attempts,
        xp_granted=result.grant.amount if result.grant is not None else 0,
    )
