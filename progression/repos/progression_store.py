"""Storage contract for the progression core, plus the in-memory store.

Every write path in the services runs inside ``store.transaction(user_id)``:

  - operations for the same user are serialized (per-user lock / row lock)
  - operations for different users never wait on each other
  - if the body raises, every write made inside it is undone

The in-memory store keeps an undo log per transaction in a ContextVar,
so two users' transactions interleaving on one event loop each roll back
only what they wrote.  It is the store used in dev and tests;
PgProgressionStore (pg_progression_store.py) satisfies the same Protocol
against PostgreSQL.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from contextvars import ContextVar
from dataclasses import replace
from typing import Any, Protocol

from progression.core.errors import NotFoundError
from progression.models.catalog import (
    Course,
    Lab,
    Lesson,
    Module,
    check_prerequisite,
)
from progression.models.progress import (
    LabProgress,
    LessonProgress,
    ModuleAssignment,
    ModuleProgress,
    QuizProgress,
)
from progression.models.xp import Profile, XPGrant


class ProgressionStore(Protocol):
    def transaction(self, user_id: str) -> AbstractAsyncContextManager[None]: ...

    # --- catalogue (read-only for the core) ---
    async def get_course(self, course_id: str) -> Course | None: ...
    async def get_module(self, module_id: str) -> Module | None: ...
    async def list_modules(self) -> list[Module]: ...
    async def modules_requiring(self, module_id: str) -> list[Module]: ...
    async def get_lesson(self, lesson_id: str) -> Lesson | None: ...
    async def list_lessons(self) -> list[Lesson]: ...
    async def get_lab(self, lab_id: str) -> Lab | None: ...
    async def list_labs(self) -> list[Lab]: ...

    # --- profiles and ledger ---
    async def get_profile(
        self, user_id: str, *, for_update: bool = False
    ) -> Profile | None: ...
    async def list_profiles(self) -> list[Profile]: ...
    async def insert_profile(self, profile: Profile) -> bool:
        """Insert only if absent.  Returns False when the user already has one."""
        ...

    async def save_profile(self, profile: Profile) -> None: ...
    async def get_grant_by_key(self, idempotency_key: str) -> XPGrant | None: ...
    async def append_grant(self, grant: XPGrant) -> None: ...
    async def list_grants(
        self, *, user_id: str | None = None, since: int | None = None
    ) -> list[XPGrant]: ...

    # --- progress ---
    async def get_module_progress(
        self, user_id: str, module_id: str
    ) -> ModuleProgress | None: ...
    async def save_module_progress(self, progress: ModuleProgress) -> None: ...
    async def get_lesson_progress(
        self, user_id: str, lesson_id: str
    ) -> LessonProgress | None: ...
    async def add_lesson_progress(self, progress: LessonProgress) -> None: ...
    async def count_completed_lessons(self, user_id: str, module_id: str) -> int: ...
    async def get_quiz_progress(
        self, user_id: str, lesson_id: str
    ) -> QuizProgress | None: ...
    async def save_quiz_progress(self, progress: QuizProgress) -> None: ...
    async def get_lab_progress(self, user_id: str, lab_id: str) -> LabProgress | None: ...
    async def save_lab_progress(self, progress: LabProgress) -> None: ...

    # --- administrative assignments ---
    async def get_assignment(
        self, user_id: str, module_id: str
    ) -> ModuleAssignment | None: ...
    async def list_assignments(self, user_id: str) -> list[ModuleAssignment]: ...
    async def add_assignment(self, assignment: ModuleAssignment) -> None: ...
    async def delete_assignment(self, user_id: str, module_id: str) -> bool: ...


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------

_MISSING = object()

# (table, key, previous value) for every write made by the current task's
# open transaction.  None outside a transaction.
_undo_log: ContextVar[list[tuple[dict, Any, Any]] | None] = ContextVar(
    "progression_undo_log", default=None
)


class InMemoryProgressionStore:
    def __init__(self) -> None:
        self._courses: dict[str, Course] = {}
        self._modules: dict[str, Module] = {}
        self._lessons: dict[str, Lesson] = {}
        self._labs: dict[str, Lab] = {}

        self._profiles: dict[str, Profile] = {}
        self._grants: dict[Any, XPGrant] = {}  # insertion-ordered
        self._grants_by_key: dict[str, XPGrant] = {}
        self._module_progress: dict[tuple[str, str], ModuleProgress] = {}
        self._lesson_progress: dict[tuple[str, str], LessonProgress] = {}
        self._quiz_progress: dict[tuple[str, str], QuizProgress] = {}
        self._lab_progress: dict[tuple[str, str], LabProgress] = {}
        self._assignments: dict[tuple[str, str], ModuleAssignment] = {}

        self._locks: dict[str, asyncio.Lock] = {}

    # --- transactions ---

    @asynccontextmanager
    async def transaction(self, user_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        async with lock:
            log: list[tuple[dict, Any, Any]] = []
            token = _undo_log.set(log)
            try:
                yield
            except BaseException:
                for table, key, previous in reversed(log):
                    if previous is _MISSING:
                        table.pop(key, None)
                    else:
                        table[key] = previous
                raise
            finally:
                _undo_log.reset(token)

    def _put(self, table: dict, key: Any, value: Any) -> None:
        log = _undo_log.get()
        if log is not None:
            log.append((table, key, table.get(key, _MISSING)))
        table[key] = value

    def _remove(self, table: dict, key: Any) -> bool:
        if key not in table:
            return False
        log = _undo_log.get()
        if log is not None:
            log.append((table, key, table[key]))
        del table[key]
        return True

    # --- catalogue authoring (in-memory only; Postgres is fed by the CMS) ---

    def add_course(self, course: Course) -> None:
        self._courses[course.id] = course

    def add_module(self, module: Module) -> None:
        if module.course_id not in self._courses:
            raise NotFoundError("course", module.course_id)
        check_prerequisite(self._modules, module)
        self._modules[module.id] = module

    def add_lesson(self, lesson: Lesson) -> None:
        module = self._modules.get(lesson.module_id)
        if module is None:
            raise NotFoundError("module", lesson.module_id)
        if lesson.id not in self._lessons:
            self._modules[module.id] = replace(
                module, total_lessons=module.total_lessons + 1
            )
        self._lessons[lesson.id] = lesson

    def add_lab(self, lab: Lab) -> None:
        if lab.module_id not in self._modules:
            raise NotFoundError("module", lab.module_id)
        self._labs[lab.id] = lab

    # --- catalogue reads ---

    async def get_course(self, course_id: str) -> Course | None:
        return self._courses.get(course_id)

    async def get_module(self, module_id: str) -> Module | None:
        return self._modules.get(module_id)

    async def list_modules(self) -> list[Module]:
        return sorted(self._modules.values(), key=lambda m: (m.course_id, m.position))

    async def modules_requiring(self, module_id: str) -> list[Module]:
        return [
            m for m in self._modules.values() if m.prerequisite_module_id == module_id
        ]

    async def get_lesson(self, lesson_id: str) -> Lesson | None:
        return self._lessons.get(lesson_id)

    async def list_lessons(self) -> list[Lesson]:
        return list(self._lessons.values())

    async def get_lab(self, lab_id: str) -> Lab | None:
        return self._labs.get(lab_id)

    async def list_labs(self) -> list[Lab]:
        return list(self._labs.values())

    # --- profiles and ledger ---

    async def get_profile(
        self, user_id: str, *, for_update: bool = False
    ) -> Profile | None:
        # for_update is implied: the per-user lock is already held
        return self._profiles.get(user_id)

    async def list_profiles(self) -> list[Profile]:
        return list(self._profiles.values())

    async def insert_profile(self, profile: Profile) -> bool:
        if profile.user_id in self._profiles:
            return False
        self._put(self._profiles, profile.user_id, profile)
        return True

    async def save_profile(self, profile: Profile) -> None:
        self._put(self._profiles, profile.user_id, profile)

    async def get_grant_by_key(self, idempotency_key: str) -> XPGrant | None:
        return self._grants_by_key.get(idempotency_key)

    async def append_grant(self, grant: XPGrant) -> None:
        if grant.id in self._grants:
            raise ValueError(f"grant {grant.id} already recorded")
        if grant.idempotency_key is not None:
            if grant.idempotency_key in self._grants_by_key:
                raise ValueError(f"idempotency key reused: {grant.idempotency_key}")
            self._put(self._grants_by_key, grant.idempotency_key, grant)
        self._put(self._grants, grant.id, grant)

    async def list_grants(
        self, *, user_id: str | None = None, since: int | None = None
    ) -> list[XPGrant]:
        return [
            g
            for g in self._grants.values()
            if (user_id is None or g.user_id == user_id)
            and (since is None or g.created_at >= since)
        ]

    # --- progress ---

    async def get_module_progress(
        self, user_id: str, module_id: str
    ) -> ModuleProgress | None:
        return self._module_progress.get((user_id, module_id))

    async def save_module_progress(self, progress: ModuleProgress) -> None:
        self._put(
            self._module_progress, (progress.user_id, progress.module_id), progress
        )

    async def get_lesson_progress(
        self, user_id: str, lesson_id: str
    ) -> LessonProgress | None:
        return self._lesson_progress.get((user_id, lesson_id))

    async def add_lesson_progress(self, progress: LessonProgress) -> None:
        key = (progress.user_id, progress.lesson_id)
        if key in self._lesson_progress:
            raise ValueError(f"lesson progress already recorded: {key}")
        self._put(self._lesson_progress, key, progress)

    async def count_completed_lessons(self, user_id: str, module_id: str) -> int:
        return sum(
            1
            for (uid, lesson_id), p in self._lesson_progress.items()
            if uid == user_id
            and p.is_completed
            and lesson_id in self._lessons
            and self._lessons[lesson_id].module_id == module_id
        )

    async def get_quiz_progress(
        self, user_id: str, lesson_id: str
    ) -> QuizProgress | None:
        return self._quiz_progress.get((user_id, lesson_id))

    async def save_quiz_progress(self, progress: QuizProgress) -> None:
        self._put(self._quiz_progress, (progress.user_id, progress.lesson_id), progress)

    async def get_lab_progress(self, user_id: str, lab_id: str) -> LabProgress | None:
        return self._lab_progress.get((user_id, lab_id))

    async def save_lab_progress(self, progress: LabProgress) -> None:
        self._put(self._lab_progress, (progress.user_id, progress.lab_id), progress)

    # --- administrative assignments ---

    async def get_assignment(
        self, user_id: str, module_id: str
    ) -> ModuleAssignment | None:
        return self._assignments.get((user_id, module_id))

    async def list_assignments(self, user_id: str) -> list[ModuleAssignment]:
        return [a for (uid, _), a in self._assignments.items() if uid == user_id]

    async def add_assignment(self, assignment: ModuleAssignment) -> None:
        self._put(
            self._assignments, (assignment.user_id, assignment.module_id), assignment
        )

    async def delete_assignment(self, user_id: str, module_id: str) -> bool:
        return self._remove(self._assignments, (user_id, module_id))


def seed_sample_catalog(store: InMemoryProgressionStore) -> None:
    """Seed a small two-module course for development."""
    if store._courses:
        return
    store.add_course(Course(id="linux-fundamentals", title="Linux Fundamentals"))
    store.add_module(
        Module(
            id="linux-basics",
            course_id="linux-fundamentals",
            title="Shell Basics",
            xp_reward=100,
            position=1,
        )
    )
    store.add_module(
        Module(
            id="linux-permissions",
            course_id="linux-fundamentals",
            title="Users and Permissions",
            prerequisite_module_id="linux-basics",
            xp_reward=150,
            position=2,
        )
    )
    for i, title in enumerate(("Navigating the filesystem", "Working with files"), 1):
        store.add_lesson(
            Lesson(
                id=f"linux-basics-{i}",
                module_id="linux-basics",
                title=title,
                xp_reward=10,
                position=i,
            )
        )
    store.add_lesson(
        Lesson(
            id="linux-permissions-1",
            module_id="linux-permissions",
            title="chmod and chown",
            xp_reward=15,
            position=1,
        )
    )
    store.add_lab(
        Lab(
            id="linux-basics-lab",
            module_id="linux-basics",
            title="List a directory",
            expected_commands=("ls -la", "ls -al"),
            xp_reward=20,
        )
    )
