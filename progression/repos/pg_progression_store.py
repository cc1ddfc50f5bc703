"""PostgreSQL implementation of ProgressionStore.

One instance wraps one request-scoped AsyncSession.  A unit of work is a
SAVEPOINT plus ``SELECT ... FOR UPDATE`` on the user's profile row: the
row lock serializes concurrent units for the same user across every API
instance, and a failure inside the unit rolls the savepoint back so no
partial grant or half-applied transition survives.  Any SQLAlchemy
failure surfaces as StoreError; nothing here retries.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from progression.core.errors import StoreError
from progression.db.tables import (
    CourseRow,
    LabProgressRow,
    LabRow,
    LessonProgressRow,
    LessonRow,
    ModuleAssignmentRow,
    ModuleProgressRow,
    ModuleRow,
    ProfileRow,
    QuizProgressRow,
    XPGrantRow,
)
from progression.models.catalog import Course, Lab, Lesson, Module
from progression.models.progress import (
    LabProgress,
    LessonProgress,
    ModuleAssignment,
    ModuleProgress,
    QuizProgress,
)
from progression.models.xp import Profile, XPGrant


class PgProgressionStore:
    """Satisfies the ProgressionStore Protocol using PostgreSQL."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    @asynccontextmanager
    async def transaction(self, user_id: str) -> AsyncIterator[None]:
        try:
            async with self._session.begin_nested():
                await self._session.execute(
                    select(ProfileRow.user_id)
                    .where(ProfileRow.user_id == user_id)
                    .with_for_update()
                )
                yield
        except SQLAlchemyError as e:
            raise StoreError(f"transaction for user {user_id} failed: {e}") from e

    async def _execute(self, stmt):
        try:
            return await self._session.execute(stmt)
        except SQLAlchemyError as e:
            raise StoreError(str(e)) from e

    async def _upsert(self, table, values: dict, keys: list[str]) -> None:
        stmt = pg_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=keys,
            set_={k: v for k, v in values.items() if k not in keys},
        )
        await self._execute(stmt)

    # --- catalogue ---

    async def get_course(self, course_id: str) -> Course | None:
        row = (
            await self._execute(select(CourseRow).where(CourseRow.id == course_id))
        ).scalar_one_or_none()
        return None if row is None else Course(id=row.id, title=row.title)

    async def get_module(self, module_id: str) -> Module | None:
        row = (
            await self._execute(select(ModuleRow).where(ModuleRow.id == module_id))
        ).scalar_one_or_none()
        return None if row is None else _row_to_module(row)

    async def list_modules(self) -> list[Module]:
        stmt = select(ModuleRow).order_by(ModuleRow.course_id, ModuleRow.position)
        return [_row_to_module(r) for r in (await self._execute(stmt)).scalars()]

    async def modules_requiring(self, module_id: str) -> list[Module]:
        stmt = select(ModuleRow).where(ModuleRow.prerequisite_module_id == module_id)
        return [_row_to_module(r) for r in (await self._execute(stmt)).scalars()]

    async def get_lesson(self, lesson_id: str) -> Lesson | None:
        row = (
            await self._execute(select(LessonRow).where(LessonRow.id == lesson_id))
        ).scalar_one_or_none()
        return None if row is None else _row_to_lesson(row)

    async def list_lessons(self) -> list[Lesson]:
        return [
            _row_to_lesson(r)
            for r in (await self._execute(select(LessonRow))).scalars()
        ]

    async def get_lab(self, lab_id: str) -> Lab | None:
        row = (
            await self._execute(select(LabRow).where(LabRow.id == lab_id))
        ).scalar_one_or_none()
        return None if row is None else _row_to_lab(row)

    async def list_labs(self) -> list[Lab]:
        return [_row_to_lab(r) for r in (await self._execute(select(LabRow))).scalars()]

    # --- profiles and ledger ---

    async def get_profile(
        self, user_id: str, *, for_update: bool = False
    ) -> Profile | None:
        stmt = select(ProfileRow).where(ProfileRow.user_id == user_id)
        if for_update:
            stmt = stmt.with_for_update()
        row = (await self._execute(stmt)).scalar_one_or_none()
        return None if row is None else _row_to_profile(row)

    async def list_profiles(self) -> list[Profile]:
        return [
            _row_to_profile(r)
            for r in (await self._execute(select(ProfileRow))).scalars()
        ]

    async def insert_profile(self, profile: Profile) -> bool:
        # ON CONFLICT DO NOTHING: a concurrent first-time creation must never
        # overwrite a row another session has already committed grants into.
        stmt = (
            pg_insert(ProfileRow)
            .values(**_profile_values(profile))
            .on_conflict_do_nothing(index_elements=["user_id"])
        )
        result = await self._execute(stmt)
        return result.rowcount == 1

    async def save_profile(self, profile: Profile) -> None:
        await self._upsert(ProfileRow, _profile_values(profile), ["user_id"])

    async def get_grant_by_key(self, idempotency_key: str) -> XPGrant | None:
        stmt = select(XPGrantRow).where(XPGrantRow.idempotency_key == idempotency_key)
        row = (await self._execute(stmt)).scalar_one_or_none()
        return None if row is None else _row_to_grant(row)

    async def append_grant(self, grant: XPGrant) -> None:
        self._session.add(
            XPGrantRow(
                id=grant.id,
                user_id=grant.user_id,
                amount=grant.amount,
                source_type=grant.source_type,
                source_id=grant.source_id,
                description=grant.description,
                created_at=grant.created_at,
                idempotency_key=grant.idempotency_key,
            )
        )
        try:
            await self._session.flush()
        except SQLAlchemyError as e:
            raise StoreError(f"could not append grant {grant.id}: {e}") from e

    async def list_grants(
        self, *, user_id: str | None = None, since: int | None = None
    ) -> list[XPGrant]:
        stmt = select(XPGrantRow).order_by(XPGrantRow.created_at)
        if user_id is not None:
            stmt = stmt.where(XPGrantRow.user_id == user_id)
        if since is not None:
            stmt = stmt.where(XPGrantRow.created_at >= since)
        return [_row_to_grant(r) for r in (await self._execute(stmt)).scalars()]

    # --- progress ---

    async def get_module_progress(
        self, user_id: str, module_id: str
    ) -> ModuleProgress | None:
        stmt = select(ModuleProgressRow).where(
            ModuleProgressRow.user_id == user_id,
            ModuleProgressRow.module_id == module_id,
        )
        row = (await self._execute(stmt)).scalar_one_or_none()
        return None if row is None else _row_to_module_progress(row)

    async def save_module_progress(self, progress: ModuleProgress) -> None:
        await self._upsert(
            ModuleProgressRow,
            {
                "user_id": progress.user_id,
                "module_id": progress.module_id,
                "is_unlocked": progress.is_unlocked,
                "is_completed": progress.is_completed,
                "progress_percentage": progress.progress_percentage,
                "started_at": progress.started_at,
                "completed_at": progress.completed_at,
            },
            ["user_id", "module_id"],
        )

    async def get_lesson_progress(
        self, user_id: str, lesson_id: str
    ) -> LessonProgress | None:
        stmt = select(LessonProgressRow).where(
            LessonProgressRow.user_id == user_id,
            LessonProgressRow.lesson_id == lesson_id,
        )
        row = (await self._execute(stmt)).scalar_one_or_none()
        if row is None:
            return None
        return LessonProgress(
            user_id=row.user_id,
            lesson_id=row.lesson_id,
            is_completed=row.is_completed,
            completed_at=row.completed_at,
        )

    async def add_lesson_progress(self, progress: LessonProgress) -> None:
        self._session.add(
            LessonProgressRow(
                user_id=progress.user_id,
                lesson_id=progress.lesson_id,
                is_completed=progress.is_completed,
                completed_at=progress.completed_at,
            )
        )
        try:
            await self._session.flush()
        except SQLAlchemyError as e:
            raise StoreError(f"could not record lesson completion: {e}") from e

    async def count_completed_lessons(self, user_id: str, module_id: str) -> int:
        stmt = (
            select(func.count())
            .select_from(LessonProgressRow)
            .join(LessonRow, LessonRow.id == LessonProgressRow.lesson_id)
            .where(
                LessonProgressRow.user_id == user_id,
                LessonProgressRow.is_completed.is_(True),
                LessonRow.module_id == module_id,
            )
        )
        return int((await self._execute(stmt)).scalar_one())

    async def get_quiz_progress(
        self, user_id: str, lesson_id: str
    ) -> QuizProgress | None:
        stmt = select(QuizProgressRow).where(
            QuizProgressRow.user_id == user_id,
            QuizProgressRow.lesson_id == lesson_id,
        )
        row = (await self._execute(stmt)).scalar_one_or_none()
        if row is None:
            return None
        return QuizProgress(
            user_id=row.user_id,
            lesson_id=row.lesson_id,
            score=row.score,
            total_questions=row.total_questions,
            xp_earned=row.xp_earned,
            xp_awarded=row.xp_awarded,
            completed_at=row.completed_at,
        )

    async def save_quiz_progress(self, progress: QuizProgress) -> None:
        await self._upsert(
            QuizProgressRow,
            {
                "user_id": progress.user_id,
                "lesson_id": progress.lesson_id,
                "score": progress.score,
                "total_questions": progress.total_questions,
                "xp_earned": progress.xp_earned,
                "xp_awarded": progress.xp_awarded,
                "completed_at": progress.completed_at,
            },
            ["user_id", "lesson_id"],
        )

    async def get_lab_progress(self, user_id: str, lab_id: str) -> LabProgress | None:
        stmt = select(LabProgressRow).where(
            LabProgressRow.user_id == user_id,
            LabProgressRow.lab_id == lab_id,
        )
        row = (await self._execute(stmt)).scalar_one_or_none()
        if row is None:
            return None
        return LabProgress(
            user_id=row.user_id,
            lab_id=row.lab_id,
            attempts=row.attempts,
            commands_used=tuple(row.commands_used or ()),
            is_completed=row.is_completed,
            completed_at=row.completed_at,
        )

    async def save_lab_progress(self, progress: LabProgress) -> None:
        await self._upsert(
            LabProgressRow,
            {
                "user_id": progress.user_id,
                "lab_id": progress.lab_id,
                "attempts": progress.attempts,
                "commands_used": list(progress.commands_used),
                "is_completed": progress.is_completed,
                "completed_at": progress.completed_at,
            },
            ["user_id", "lab_id"],
        )

    # --- administrative assignments ---

    async def get_assignment(
        self, user_id: str, module_id: str
    ) -> ModuleAssignment | None:
        stmt = select(ModuleAssignmentRow).where(
            ModuleAssignmentRow.user_id == user_id,
            ModuleAssignmentRow.module_id == module_id,
        )
        row = (await self._execute(stmt)).scalar_one_or_none()
        return None if row is None else _row_to_assignment(row)

    async def list_assignments(self, user_id: str) -> list[ModuleAssignment]:
        stmt = select(ModuleAssignmentRow).where(
            ModuleAssignmentRow.user_id == user_id
        )
        return [_row_to_assignment(r) for r in (await self._execute(stmt)).scalars()]

    async def add_assignment(self, assignment: ModuleAssignment) -> None:
        await self._upsert(
            ModuleAssignmentRow,
            {
                "user_id": assignment.user_id,
                "module_id": assignment.module_id,
                "assigned_by": assignment.assigned_by,
                "assigned_at": assignment.assigned_at,
                "expires_at": assignment.expires_at,
                "notes": assignment.notes,
            },
            ["user_id", "module_id"],
        )

    async def delete_assignment(self, user_id: str, module_id: str) -> bool:
        stmt = delete(ModuleAssignmentRow).where(
            ModuleAssignmentRow.user_id == user_id,
            ModuleAssignmentRow.module_id == module_id,
        )
        result = await self._execute(stmt)
        return result.rowcount > 0


def _row_to_module(row: ModuleRow) -> Module:
    return Module(
        id=row.id,
        course_id=row.course_id,
        title=row.title or "",
        prerequisite_module_id=row.prerequisite_module_id,
        total_lessons=row.total_lessons,
        xp_reward=row.xp_reward,
        position=row.position,
    )


def _row_to_lesson(row: LessonRow) -> Lesson:
    return Lesson(
        id=row.id,
        module_id=row.module_id,
        title=row.title or "",
        xp_reward=row.xp_reward,
        position=row.position,
    )


def _row_to_lab(row: LabRow) -> Lab:
    return Lab(
        id=row.id,
        module_id=row.module_id,
        title=row.title or "",
        expected_commands=tuple(row.expected_commands or ()),
        xp_reward=row.xp_reward,
    )


def _profile_values(profile: Profile) -> dict:
    return {
        "user_id": profile.user_id,
        "display_name": profile.display_name,
        "xp": profile.xp,
        "level": profile.level,
        "streak_days": profile.streak_days,
        "last_activity_at": profile.last_activity_at,
    }


def _row_to_profile(row: ProfileRow) -> Profile:
    return Profile(
        user_id=row.user_id,
        display_name=row.display_name or "",
        xp=row.xp,
        level=row.level,
        streak_days=row.streak_days,
        last_activity_at=row.last_activity_at,
    )


def _row_to_grant(row: XPGrantRow) -> XPGrant:
    return XPGrant(
        id=row.id,
        user_id=row.user_id,
        amount=row.amount,
        source_type=row.source_type,
        source_id=row.source_id,
        description=row.description,
        created_at=row.created_at,
        idempotency_key=row.idempotency_key,
    )


def _row_to_module_progress(row: ModuleProgressRow) -> ModuleProgress:
    return ModuleProgress(
        user_id=row.user_id,
        module_id=row.module_id,
        is_unlocked=row.is_unlocked,
        is_completed=row.is_completed,
        progress_percentage=row.progress_percentage,
        started_at=row.started_at,
        completed_at=row.completed_at,
    )


def _row_to_assignment(row: ModuleAssignmentRow) -> ModuleAssignment:
    return ModuleAssignment(
        user_id=row.user_id,
        module_id=row.module_id,
        assigned_by=row.assigned_by,
        assigned_at=row.assigned_at,
        expires_at=row.expires_at,
        notes=row.notes,
    )
