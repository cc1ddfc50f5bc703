from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class ModuleStatus(StrEnum):
    LOCKED = "locked"
    UNLOCKED = "unlocked"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


@dataclass(frozen=True, slots=True)
class ModuleProgress:
    """Per-(user, module) state.

    is_unlocked is the organic unlock only: true iff the module has no
    prerequisite or the prerequisite is completed.  Administrative access
    is recorded separately as a ModuleAssignment.
    """

    user_id: str
    module_id: str
    is_unlocked: bool = False
    is_completed: bool = False
    progress_percentage: int = 0
    started_at: int | None = None
    completed_at: int | None = None

    @property
    def status(self) -> ModuleStatus:
        if self.is_completed:
            return ModuleStatus.COMPLETED
        if self.started_at is not None:
            return ModuleStatus.IN_PROGRESS
        if self.is_unlocked:
            return ModuleStatus.UNLOCKED
        return ModuleStatus.LOCKED


@dataclass(frozen=True, slots=True)
class LessonProgress:
    user_id: str
    lesson_id: str
    is_completed: bool
    completed_at: int


@dataclass(frozen=True, slots=True)
class QuizProgress:
    """Latest quiz attempt for (user, lesson).

    score/total_questions/xp_earned describe the latest attempt;
    xp_awarded is the XP actually granted so far for this quiz, which
    never exceeds the best xp_earned across attempts.
    """

    user_id: str
    lesson_id: str
    score: int
    total_questions: int
    xp_earned: int
    xp_awarded: int
    completed_at: int


@dataclass(frozen=True, slots=True)
class LabProgress:
    user_id: str
    lab_id: str
    attempts: int = 0
    commands_used: tuple[str, ...] = ()
    is_completed: bool = False
    completed_at: int | None = None


@dataclass(frozen=True, slots=True)
class ModuleAssignment:
    """Administrative access grant that bypasses prerequisite evaluation."""

    user_id: str
    module_id: str
    assigned_by: str
    assigned_at: int
    expires_at: int | None = None
    notes: str | None = None

    def is_active(self, now: int) -> bool:
        return self.expires_at is None or self.expires_at > now
