"""get_store: after-commit hooks run only once the session has committed."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager

import pytest

from progression.api import dependencies
from progression.api.dependencies import AfterCommit, get_store


@pytest.fixture
def events(monkeypatch: pytest.MonkeyPatch) -> list[str]:
    """Route get_store through a fake Postgres session that records its fate."""
    seen: list[str] = []

    @asynccontextmanager
    async def fake_session_scope():
        try:
            yield object()
        except Exception:
            seen.append("rollback")
            raise
        seen.append("commit")

    monkeypatch.setattr(dependencies, "async_session_factory", object())
    monkeypatch.setattr(dependencies, "session_scope", fake_session_scope)
    monkeypatch.setattr(dependencies, "PgProgressionStore", lambda session: session)
    return seen


def _hooks(events: list[str]) -> AfterCommit:
    async def invalidate() -> None:
        events.append("invalidate")

    after_commit = AfterCommit()
    after_commit.add(invalidate)
    after_commit.add(invalidate)
    return after_commit


def test_hooks_run_after_commit(events: list[str]) -> None:
    async def scenario() -> None:
        gen = get_store(_hooks(events))
        await gen.__anext__()
        assert events == []
        with pytest.raises(StopAsyncIteration):
            await gen.__anext__()

    asyncio.run(scenario())
    assert events == ["commit", "invalidate"]


def test_hooks_skipped_on_rollback(events: list[str]) -> None:
    async def scenario() -> None:
        gen = get_store(_hooks(events))
        await gen.__anext__()
        with pytest.raises(RuntimeError):
            await gen.athrow(RuntimeError("endpoint failed"))

    asyncio.run(scenario())
    assert events == ["rollback"]


def test_failing_hook_does_not_stop_the_rest() -> None:
    ran: list[str] = []

    async def broken() -> None:
        raise ConnectionError("redis down")

    async def fine() -> None:
        ran.append("fine")

    after_commit = AfterCommit()
    after_commit.add(broken)
    after_commit.add(fine)
    asyncio.run(after_commit.run())
    assert ran == ["fine"]
