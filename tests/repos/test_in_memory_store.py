from __future__ import annotations

import asyncio

import pytest

from progression.core.errors import InvalidInputError, NotFoundError
from progression.models.catalog import Course, Lesson, Module
from progression.models.xp import Profile
from progression.repos.progression_store import InMemoryProgressionStore

# ---- catalogue authoring ----


def test_add_lesson_counts_towards_total_lessons(
    store: InMemoryProgressionStore,
) -> None:
    store.add_lesson(Lesson(id="linux-basics-3", module_id="linux-basics"))
    module = asyncio.run(store.get_module("linux-basics"))
    assert module is not None
    assert module.total_lessons == 3


def test_add_module_rejects_unknown_course(store: InMemoryProgressionStore) -> None:
    with pytest.raises(NotFoundError):
        store.add_module(Module(id="m", course_id="nope"))


def test_add_module_rejects_self_prerequisite(store: InMemoryProgressionStore) -> None:
    with pytest.raises(InvalidInputError, match="cannot require itself"):
        store.add_module(
            Module(id="m", course_id="linux-fundamentals", prerequisite_module_id="m")
        )


def test_add_module_rejects_unknown_prerequisite(
    store: InMemoryProgressionStore,
) -> None:
    with pytest.raises(InvalidInputError, match="unknown prerequisite"):
        store.add_module(
            Module(id="m", course_id="linux-fundamentals", prerequisite_module_id="x")
        )


def test_re_adding_module_cannot_close_a_cycle() -> None:
    store = InMemoryProgressionStore()
    store.add_course(Course(id="c", title="C"))
    store.add_module(Module(id="a", course_id="c"))
    store.add_module(Module(id="b", course_id="c", prerequisite_module_id="a"))
    with pytest.raises(InvalidInputError, match="cycle"):
        store.add_module(Module(id="a", course_id="c", prerequisite_module_id="b"))


# ---- transactions ----


def test_transaction_rolls_back_every_write_on_error(
    store: InMemoryProgressionStore,
) -> None:
    async def scenario() -> None:
        await store.save_profile(Profile(user_id="u", xp=10, level=1))
        with pytest.raises(RuntimeError):
            async with store.transaction("u"):
                await store.save_profile(Profile(user_id="u", xp=99, level=2))
                await store.save_profile(Profile(user_id="v"))
                raise RuntimeError("boom")

        profile = await store.get_profile("u")
        assert profile is not None and profile.xp == 10
        assert await store.get_profile("v") is None

    asyncio.run(scenario())


def test_rollback_leaves_other_users_writes_alone(
    store: InMemoryProgressionStore,
) -> None:
    async def failing() -> None:
        async with store.transaction("a"):
            await store.save_profile(Profile(user_id="a", xp=5))
            await asyncio.sleep(0)
            await asyncio.sleep(0)
            raise RuntimeError("a fails")

    async def succeeding() -> None:
        async with store.transaction("b"):
            await asyncio.sleep(0)
            await store.save_profile(Profile(user_id="b", xp=7))

    async def scenario() -> None:
        results = await asyncio.gather(failing(), succeeding(), return_exceptions=True)
        assert isinstance(results[0], RuntimeError)
        assert await store.get_profile("a") is None
        b = await store.get_profile("b")
        assert b is not None and b.xp == 7

    asyncio.run(scenario())


def test_insert_profile_never_overwrites(store: InMemoryProgressionStore) -> None:
    async def scenario() -> None:
        assert await store.insert_profile(Profile(user_id="u")) is True
        await store.save_profile(Profile(user_id="u", xp=40, level=1))
        assert await store.insert_profile(Profile(user_id="u")) is False
        profile = await store.get_profile("u")
        assert profile is not None and profile.xp == 40

    asyncio.run(scenario())


def test_delete_assignment_reports_missing(store: InMemoryProgressionStore) -> None:
    assert asyncio.run(store.delete_assignment("u", "linux-basics")) is False
