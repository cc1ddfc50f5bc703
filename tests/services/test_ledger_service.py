from __future__ import annotations

import asyncio
import logging
from dataclasses import replace

import pytest
from prometheus_client import REGISTRY

from progression.core.errors import (
    InvalidAmountError,
    InvalidInputError,
    NotFoundError,
)
from progression.repos.progression_store import InMemoryProgressionStore
from progression.services import ledger_service

NOW = 1_760_000_000


def _sample(name: str, labels: dict | None = None) -> float:
    value = REGISTRY.get_sample_value(name, labels=labels or {})
    return value if value is not None else 0.0


def _with_profiles(store: InMemoryProgressionStore, *user_ids: str) -> None:
    async def create() -> None:
        for user_id in user_ids:
            await ledger_service.create_profile(store, user_id)

    asyncio.run(create())


# ---- profiles ----


def test_create_profile_starts_empty(store: InMemoryProgressionStore) -> None:
    profile = asyncio.run(ledger_service.create_profile(store, "alice", " Alice "))
    assert (profile.xp, profile.level, profile.streak_days) == (0, 1, 0)
    assert profile.display_name == "Alice"


def test_create_profile_is_idempotent(store: InMemoryProgressionStore) -> None:
    _with_profiles(store, "alice")
    asyncio.run(ledger_service.grant_xp(store, "alice", 30, "manual", now=NOW))

    again = asyncio.run(ledger_service.create_profile(store, "alice", "Other"))

    assert again.xp == 30
    assert again.display_name == ""


def test_create_profile_racing_a_committed_creation_keeps_its_xp(
    store: InMemoryProgressionStore, monkeypatch: pytest.MonkeyPatch
) -> None:
    # Another session created the profile and granted XP after this call's
    # existence check ran; the late insert must not reset the row.
    _with_profiles(store, "alice")
    asyncio.run(ledger_service.grant_xp(store, "alice", 10, "manual", now=NOW))

    original = store.get_profile

    async def stale_first_read(user_id: str, *, for_update: bool = False):
        if for_update:
            return None
        return await original(user_id)

    monkeypatch.setattr(store, "get_profile", stale_first_read)
    profile = asyncio.run(ledger_service.create_profile(store, "alice", "Late"))

    assert (profile.xp, profile.display_name) == (10, "")
    assert asyncio.run(original("alice")).xp == 10


def test_get_profile_unknown_user(store: InMemoryProgressionStore) -> None:
    with pytest.raises(NotFoundError, match="profile not found: ghost"):
        asyncio.run(ledger_service.get_profile(store, "ghost"))


# ---- grants ----


def test_grants_accumulate_into_profile(store: InMemoryProgressionStore) -> None:
    _with_profiles(store, "alice")

    async def scenario() -> None:
        await ledger_service.grant_xp(store, "alice", 10, "quiz", "q1", now=NOW)
        await ledger_service.grant_xp(store, "alice", 25, "module", "m1", now=NOW)

    asyncio.run(scenario())
    profile = asyncio.run(ledger_service.get_profile(store, "alice"))
    assert profile.xp == 35
    assert profile.level == 1


def test_grant_recomputes_level(store: InMemoryProgressionStore) -> None:
    _with_profiles(store, "alice")
    asyncio.run(ledger_service.grant_xp(store, "alice", 200, "manual", now=NOW))
    assert asyncio.run(ledger_service.get_profile(store, "alice")).level == 3


@pytest.mark.parametrize("amount", [0, -5])
def test_non_positive_amount_rejected_without_writes(
    store: InMemoryProgressionStore, amount: int
) -> None:
    _with_profiles(store, "alice")
    with pytest.raises(InvalidAmountError):
        asyncio.run(ledger_service.grant_xp(store, "alice", amount, "manual"))
    assert asyncio.run(store.list_grants(user_id="alice")) == []


def test_grant_without_profile_leaves_ledger_untouched(
    store: InMemoryProgressionStore,
) -> None:
    with pytest.raises(NotFoundError):
        asyncio.run(ledger_service.grant_xp(store, "ghost", 10, "manual"))
    assert asyncio.run(store.list_grants()) == []


def test_idempotency_key_prevents_double_grant(
    store: InMemoryProgressionStore,
) -> None:
    _with_profiles(store, "alice")

    async def scenario():
        first = await ledger_service.grant_xp(
            store, "alice", 40, "bonus", idempotency_key="promo-1", now=NOW
        )
        second = await ledger_service.grant_xp(
            store, "alice", 40, "bonus", idempotency_key="promo-1", now=NOW
        )
        return first, second

    first, second = asyncio.run(scenario())
    assert first.id == second.id
    assert asyncio.run(ledger_service.get_profile(store, "alice")).xp == 40


def test_idempotency_key_of_another_user_is_rejected(
    store: InMemoryProgressionStore,
) -> None:
    _with_profiles(store, "alice", "bob")
    asyncio.run(
        ledger_service.grant_xp(
            store, "alice", 10, "bonus", idempotency_key="k1", now=NOW
        )
    )

    with pytest.raises(InvalidInputError, match="belongs to another user"):
        asyncio.run(
            ledger_service.grant_xp(
                store, "bob", 99, "bonus", idempotency_key="k1", now=NOW
            )
        )

    assert asyncio.run(ledger_service.get_profile(store, "bob")).xp == 0
    assert asyncio.run(store.list_grants(user_id="bob")) == []
    assert asyncio.run(ledger_service.get_profile(store, "alice")).xp == 10


def test_grant_updates_streak(store: InMemoryProgressionStore) -> None:
    _with_profiles(store, "alice")
    day = 24 * 60 * 60

    async def scenario() -> None:
        await ledger_service.grant_xp(store, "alice", 5, "manual", now=NOW)
        await ledger_service.grant_xp(store, "alice", 5, "manual", now=NOW + day)

    asyncio.run(scenario())
    profile = asyncio.run(ledger_service.get_profile(store, "alice"))
    assert profile.streak_days == 2
    assert profile.last_activity_at == NOW + day


def test_concurrent_grants_do_not_lose_updates(
    store: InMemoryProgressionStore,
) -> None:
    _with_profiles(store, "alice", "bob")

    async def scenario() -> None:
        await asyncio.gather(
            *(ledger_service.grant_xp(store, "alice", 3, "manual") for _ in range(25)),
            *(ledger_service.grant_xp(store, "bob", 2, "manual") for _ in range(25)),
        )

    asyncio.run(scenario())
    assert asyncio.run(ledger_service.get_profile(store, "alice")).xp == 75
    assert asyncio.run(ledger_service.get_profile(store, "bob")).xp == 50


def test_failed_profile_write_rolls_back_grant(
    store: InMemoryProgressionStore, monkeypatch: pytest.MonkeyPatch
) -> None:
    _with_profiles(store, "alice")

    async def broken_save(profile) -> None:
        raise OSError("disk full")

    monkeypatch.setattr(store, "save_profile", broken_save)
    with pytest.raises(OSError):
        asyncio.run(ledger_service.grant_xp(store, "alice", 10, "manual"))

    assert asyncio.run(store.list_grants(user_id="alice")) == []
    assert asyncio.run(ledger_service.get_profile(store, "alice")).xp == 0


def test_grant_metrics_count_committed_grants(
    store: InMemoryProgressionStore,
) -> None:
    _with_profiles(store, "alice")
    grants_before = _sample("xp_grants_total", {"source_type": "bonus"})
    xp_before = _sample("xp_awarded_total")

    asyncio.run(ledger_service.grant_xp(store, "alice", 12, "bonus"))

    assert _sample("xp_grants_total", {"source_type": "bonus"}) - grants_before == 1
    assert _sample("xp_awarded_total") - xp_before == 12


def test_list_grants_newest_first(store: InMemoryProgressionStore) -> None:
    _with_profiles(store, "alice")

    async def scenario():
        await ledger_service.grant_xp(store, "alice", 1, "manual", now=NOW)
        await ledger_service.grant_xp(store, "alice", 2, "manual", now=NOW + 10)
        return await ledger_service.list_grants(store, "alice")

    assert [g.amount for g in asyncio.run(scenario())] == [2, 1]


def test_profile_xp_equals_ledger_sum(store: InMemoryProgressionStore) -> None:
    _with_profiles(store, "alice")
    amounts = [1, 7, 13, 50, 3]

    async def scenario() -> None:
        for amount in amounts:
            await ledger_service.grant_xp(store, "alice", amount, "manual")

    asyncio.run(scenario())
    ledger_total = sum(g.amount for g in asyncio.run(store.list_grants(user_id="alice")))
    assert asyncio.run(ledger_service.get_profile(store, "alice")).xp == ledger_total
    assert ledger_total == sum(amounts)


# ---- reconciliation ----


def test_reconcile_reports_no_drift_for_consistent_store(
    store: InMemoryProgressionStore,
) -> None:
    _with_profiles(store, "alice")
    asyncio.run(ledger_service.grant_xp(store, "alice", 10, "manual"))
    assert asyncio.run(ledger_service.reconcile_profiles(store)) == []


def test_reconcile_detects_and_repairs_drift(
    store: InMemoryProgressionStore, caplog: pytest.LogCaptureFixture
) -> None:
    _with_profiles(store, "alice")
    asyncio.run(ledger_service.grant_xp(store, "alice", 60, "manual"))
    profile = asyncio.run(store.get_profile("alice"))
    asyncio.run(store.save_profile(replace(profile, xp=999, level=5)))

    with caplog.at_level(logging.WARNING, logger="progression.services.ledger_service"):
        drifts = asyncio.run(ledger_service.reconcile_profiles(store))
    assert [(d.user_id, d.stored_xp, d.ledger_xp) for d in drifts] == [
        ("alice", 999, 60)
    ]
    assert "Profile drift user=alice" in caplog.text
    assert asyncio.run(store.get_profile("alice")).xp == 999  # report only

    asyncio.run(ledger_service.reconcile_profiles(store, repair=True))
    repaired = asyncio.run(store.get_profile("alice"))
    assert (repaired.xp, repaired.level) == (60, 2)
    assert asyncio.run(ledger_service.reconcile_profiles(store)) == []
