"""Lesson, quiz, lab and module progress for one learner.

Per (user, module) the state machine is

    Locked ──prereq completed──▶ Unlocked ──first lesson / start──▶ InProgress
                                                                      │
                                        progress_percentage == 100 ◀──┘
                                                    │
                                                    ▼
                                                Completed ──▶ unlock every module
                                                              whose prerequisite
                                                              is this one

Each public operation is one unit of work for the acting user: the
completion record, the recomputed module row, the cascade of unlocks and
any XP grants either all land or none do.  Grants created here use
deterministic idempotency keys so a replayed request never pays twice.

Lessons, quizzes and labs are all gated the same way: the owning module
must be organically unlocked or force-assigned to the user.
"""

from __future__ import annotations

import datetime
import logging
import re
from dataclasses import dataclass, replace

from progression.core.errors import (
    InvalidInputError,
    ModuleLockedError,
    NotFoundError,
)
from progression.core.metrics import LESSON_COMPLETIONS, MODULE_COMPLETIONS
from progression.models.catalog import Lab, Lesson, Module
from progression.models.progress import (
    LabProgress,
    LessonProgress,
    ModuleAssignment,
    ModuleProgress,
    QuizProgress,
)
from progression.models.xp import XPGrant
from progression.repos.progression_store import ProgressionStore
from progression.services.ledger_service import apply_grant, record_committed

logger = logging.getLogger(__name__)

MAX_COMMAND_LENGTH = 500
_TAG_RE = re.compile(r"<[^>]*>")


def _now() -> int:
    return int(datetime.datetime.now(datetime.UTC).timestamp())


@dataclass(frozen=True, slots=True)
class ModuleOverview:
    module: Module
    progress: ModuleProgress
    is_assigned: bool = False

    @property
    def can_access(self) -> bool:
        return self.progress.is_unlocked or self.is_assigned


@dataclass(frozen=True, slots=True)
class LabSubmission:
    is_correct: bool
    progress: LabProgress
    grant: XPGrant | None = None


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


async def _require_lesson(store: ProgressionStore, lesson_id: str) -> Lesson:
    lesson = await store.get_lesson(lesson_id)
    if lesson is None:
        raise NotFoundError("lesson", lesson_id)
    return lesson


async def _require_module(store: ProgressionStore, module_id: str) -> Module:
    module = await store.get_module(module_id)
    if module is None:
        raise NotFoundError("module", module_id)
    return module


async def _require_profile(store: ProgressionStore, user_id: str) -> None:
    if await store.get_profile(user_id, for_update=True) is None:
        raise NotFoundError("profile", user_id)


async def _organically_unlocked(
    store: ProgressionStore, user_id: str, module: Module
) -> bool:
    if module.prerequisite_module_id is None:
        return True
    prereq = await store.get_module_progress(user_id, module.prerequisite_module_id)
    return prereq is not None and prereq.is_completed


async def _current_progress(
    store: ProgressionStore, user_id: str, module: Module
) -> ModuleProgress:
    """Stored row, or the row the user would have; is_unlocked re-derived."""
    progress = await store.get_module_progress(user_id, module.id)
    if progress is None:
        progress = ModuleProgress(user_id=user_id, module_id=module.id)
    if not progress.is_unlocked and await _organically_unlocked(
        store, user_id, module
    ):
        progress = replace(progress, is_unlocked=True)
    return progress


async def _has_active_assignment(
    store: ProgressionStore, user_id: str, module_id: str, now: int
) -> bool:
    assignment = await store.get_assignment(user_id, module_id)
    return assignment is not None and assignment.is_active(now)


async def _require_access(
    store: ProgressionStore, progress: ModuleProgress, now: int
) -> None:
    if progress.is_unlocked:
        return
    if await _has_active_assignment(store, progress.user_id, progress.module_id, now):
        return
    logger.warning(
        "Rejected activity on locked module=%s user=%s",
        progress.module_id,
        progress.user_id,
        extra={"user_id": progress.user_id, "module_id": progress.module_id},
    )
    raise ModuleLockedError(progress.user_id, progress.module_id)


async def _grant_once(
    store: ProgressionStore,
    *,
    user_id: str,
    amount: int,
    source_type: str,
    source_id: str,
    event: str,
    description: str,
    now: int,
) -> XPGrant | None:
    if amount <= 0:
        return None
    grant, created = await apply_grant(
        store,
        user_id=user_id,
        amount=amount,
        source_type=source_type,
        source_id=source_id,
        description=description,
        now=now,
        idempotency_key=f"{user_id}:{source_type}:{source_id}:{event}",
    )
    return grant if created else None


# ---------------------------------------------------------------------------
# Module state transitions
# ---------------------------------------------------------------------------


async def _unlock_dependents(
    store: ProgressionStore, user_id: str, module_id: str
) -> list[str]:
    unlocked: list[str] = []
    for dependent in await store.modules_requiring(module_id):
        progress = await store.get_module_progress(user_id, dependent.id)
        if progress is None:
            progress = ModuleProgress(user_id=user_id, module_id=dependent.id)
        if not progress.is_unlocked:
            await store.save_module_progress(replace(progress, is_unlocked=True))
            unlocked.append(dependent.id)
    return unlocked


async def _recompute_module(
    store: ProgressionStore,
    user_id: str,
    module: Module,
    progress: ModuleProgress,
    now: int,
) -> tuple[ModuleProgress, list[XPGrant]]:
    """Recompute progress_percentage and fire the Completed transition."""
    completed = await store.count_completed_lessons(user_id, module.id)
    if module.total_lessons > 0:
        percentage = min(completed * 100 // module.total_lessons, 100)
    else:
        percentage = 0

    updated = replace(
        progress,
        progress_percentage=percentage,
        started_at=progress.started_at if progress.started_at is not None else now,
    )
    grants: list[XPGrant] = []

    if percentage >= 100 and not progress.is_completed:
        updated = replace(updated, is_completed=True, completed_at=now)
        await store.save_module_progress(updated)
        grant = await _grant_once(
            store,
            user_id=user_id,
            amount=module.xp_reward,
            source_type="module",
            source_id=module.id,
            event="module_complete",
            description=f"Module completed: {module.title or module.id}",
            now=now,
        )
        if grant is not None:
            grants.append(grant)
        unlocked = await _unlock_dependents(store, user_id, module.id)
        logger.info(
            "Module completed module=%s user=%s unlocked=%s",
            module.id,
            user_id,
            unlocked,
            extra={"user_id": user_id, "module_id": module.id},
        )
    else:
        await store.save_module_progress(updated)

    return updated, grants


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


async def complete_lesson(
    store: ProgressionStore,
    user_id: str,
    lesson_id: str,
    *,
    now: int | None = None,
) -> LessonProgress:
    """Mark a lesson complete.  Idempotent: a repeat returns the first record."""
    now = now if now is not None else _now()
    lesson = await _require_lesson(store, lesson_id)
    module = await _require_module(store, lesson.module_id)

    grants: list[XPGrant] = []
    module_completed = False
    async with store.transaction(user_id):
        existing = await store.get_lesson_progress(user_id, lesson_id)
        if existing is not None:
            logger.debug("Lesson already completed lesson=%s user=%s", lesson_id, user_id)
            return existing

        await _require_profile(store, user_id)
        progress = await _current_progress(store, user_id, module)
        await _require_access(store, progress, now)

        record = LessonProgress(
            user_id=user_id, lesson_id=lesson_id, is_completed=True, completed_at=now
        )
        await store.add_lesson_progress(record)

        grant = await _grant_once(
            store,
            user_id=user_id,
            amount=lesson.xp_reward,
            source_type="lesson",
            source_id=lesson.id,
            event="lesson_complete",
            description=f"Lesson completed: {lesson.title or lesson.id}",
            now=now,
        )
        if grant is not None:
            grants.append(grant)

        updated, module_grants = await _recompute_module(
            store, user_id, module, progress, now
        )
        grants.extend(module_grants)
        module_completed = updated.is_completed and not progress.is_completed

    LESSON_COMPLETIONS.inc()
    if module_completed:
        MODULE_COMPLETIONS.inc()
    record_committed(grants)
    return record


async def complete_quiz(
    store: ProgressionStore,
    user_id: str,
    lesson_id: str,
    score: int,
    total_questions: int,
    xp_earned: int,
    *,
    now: int | None = None,
) -> tuple[QuizProgress, XPGrant | None]:
    """Upsert the latest quiz attempt for (user, lesson).

    The stored score always reflects the latest attempt.  XP is paid as a
    delta over what this quiz already paid, so resubmitting can raise the
    total up to the best attempt's xp_earned but never beyond it.
    """
    if total_questions <= 0:
        raise InvalidInputError("total_questions must be positive")
    if not 0 <= score <= total_questions:
        raise InvalidInputError(
            f"score must be between 0 and {total_questions} (got {score})"
        )
    if xp_earned < 0:
        raise InvalidInputError(f"xp_earned must not be negative (got {xp_earned})")

    now = now if now is not None else _now()
    lesson = await _require_lesson(store, lesson_id)
    module = await _require_module(store, lesson.module_id)

    grant: XPGrant | None = None
    async with store.transaction(user_id):
        await _require_profile(store, user_id)
        await _require_access(
            store, await _current_progress(store, user_id, module), now
        )
        previous = await store.get_quiz_progress(user_id, lesson_id)
        already_awarded = previous.xp_awarded if previous is not None else 0
        awarded = max(already_awarded, xp_earned)

        attempt = QuizProgress(
            user_id=user_id,
            lesson_id=lesson_id,
            score=score,
            total_questions=total_questions,
            xp_earned=xp_earned,
            xp_awarded=awarded,
            completed_at=now,
        )
        await store.save_quiz_progress(attempt)

        if awarded > already_awarded:
            # Keyed on the new cumulative total: a retried request for the
            # same attempt maps to the same key.
            grant, created = await apply_grant(
                store,
                user_id=user_id,
                amount=awarded - already_awarded,
                source_type="quiz",
                source_id=lesson_id,
                description=f"Quiz completed with {score}/{total_questions} correct",
                now=now,
                idempotency_key=f"{user_id}:quiz:{lesson_id}:awarded-{awarded}",
            )
            if not created:
                grant = None

    if grant is not None:
        record_committed([grant])
    return attempt, grant


async def start_module(
    store: ProgressionStore,
    user_id: str,
    module_id: str,
    *,
    now: int | None = None,
) -> ModuleProgress:
    """Unlocked → InProgress.  Starting an already-started module is a no-op."""
    now = now if now is not None else _now()
    module = await _require_module(store, module_id)

    async with store.transaction(user_id):
        await _require_profile(store, user_id)
        progress = await _current_progress(store, user_id, module)
        await _require_access(store, progress, now)
        if progress.started_at is None:
            progress = replace(progress, started_at=now)
        await store.save_module_progress(progress)
    return progress


async def get_module_progress(
    store: ProgressionStore, user_id: str, *, now: int | None = None
) -> list[ModuleOverview]:
    """Every catalogue module with this user's state, stored or derived."""
    now = now if now is not None else _now()
    assigned = {
        a.module_id for a in await store.list_assignments(user_id) if a.is_active(now)
    }
    overview: list[ModuleOverview] = []
    for module in await store.list_modules():
        progress = await _current_progress(store, user_id, module)
        overview.append(
            ModuleOverview(
                module=module,
                progress=progress,
                is_assigned=module.id in assigned,
            )
        )
    return overview


def sanitize_command(command: str) -> str:
    """Trim, cap at MAX_COMMAND_LENGTH and drop anything tag-shaped."""
    cleaned = command.strip()[:MAX_COMMAND_LENGTH]
    return _TAG_RE.sub("", cleaned).strip()


def _is_expected(lab: Lab, command: str) -> bool:
    normalized = command.lower()
    return any(normalized == expected.lower() for expected in lab.expected_commands)


async def submit_lab_command(
    store: ProgressionStore,
    user_id: str,
    lab_id: str,
    command: str,
    *,
    now: int | None = None,
) -> LabSubmission:
    """Record one lab attempt; the first correct one pays the lab's XP."""
    sanitized = sanitize_command(command)
    if not sanitized:
        raise InvalidInputError("command must not be empty")

    now = now if now is not None else _now()
    lab = await store.get_lab(lab_id)
    if lab is None:
        raise NotFoundError("lab", lab_id)
    module = await _require_module(store, lab.module_id)

    is_correct = _is_expected(lab, sanitized)
    grant: XPGrant | None = None
    async with store.transaction(user_id):
        await _require_profile(store, user_id)
        await _require_access(
            store, await _current_progress(store, user_id, module), now
        )
        previous = await store.get_lab_progress(user_id, lab_id)
        if previous is None:
            previous = LabProgress(user_id=user_id, lab_id=lab_id)

        first_success = is_correct and not previous.is_completed
        progress = replace(
            previous,
            attempts=previous.attempts + 1,
            commands_used=previous.commands_used + (sanitized,),
            is_completed=previous.is_completed or is_correct,
            completed_at=now if first_success else previous.completed_at,
        )
        await store.save_lab_progress(progress)

        if first_success:
            grant = await _grant_once(
                store,
                user_id=user_id,
                amount=lab.xp_reward,
                source_type="lab",
                source_id=lab.id,
                event="lab_complete",
                description=f"Lab completed: {lab.title or lab.id}",
                now=now,
            )

    if grant is not None:
        record_committed([grant])
    return LabSubmission(is_correct=is_correct, progress=progress, grant=grant)


# ---------------------------------------------------------------------------
# Administrative access (ForceAssign)
# ---------------------------------------------------------------------------


async def assign_modules(
    store: ProgressionStore,
    user_id: str,
    module_ids: list[str],
    *,
    assigned_by: str,
    expires_at: int | None = None,
    notes: str | None = None,
    now: int | None = None,
) -> int:
    """Grant access to modules regardless of prerequisites.

    Modules the user is already assigned are skipped.  Returns the number
    of new assignments.  Authorization is decided by the caller.
    """
    now = now if now is not None else _now()
    for module_id in module_ids:
        await _require_module(store, module_id)

    inserted = 0
    async with store.transaction(user_id):
        for module_id in dict.fromkeys(module_ids):
            if await store.get_assignment(user_id, module_id) is not None:
                continue
            await store.add_assignment(
                ModuleAssignment(
                    user_id=user_id,
                    module_id=module_id,
                    assigned_by=assigned_by,
                    assigned_at=now,
                    expires_at=expires_at,
                    notes=notes,
                )
            )
            inserted += 1

    logger.info(
        "Assigned %d module(s) to user=%s by=%s",
        inserted,
        user_id,
        assigned_by,
        extra={"user_id": user_id},
    )
    return inserted


async def remove_assignment(
    store: ProgressionStore, user_id: str, module_id: str
) -> None:
    async with store.transaction(user_id):
        removed = await store.delete_assignment(user_id, module_id)
    if not removed:
        raise NotFoundError("assignment", f"{user_id}/{module_id}")
