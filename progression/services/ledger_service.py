"""XP ledger and the profile aggregate kept on top of it.

The ledger (xp_grants) is the only source of truth for XP.  A profile's
xp/level/streak is a cached read model that is only ever changed in the
same unit of work as the grant that justifies it:

    async with store.transaction(user_id):
        append grant            ─┐  both or neither
        profile.xp += amount    ─┘

reconcile_profiles() is the offline check for that promise: it rebuilds
every aggregate from the ledger and reports (optionally repairs) drift.
"""

from __future__ import annotations

import datetime
import logging
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, replace

from progression.core.errors import (
    InvalidAmountError,
    InvalidInputError,
    NotFoundError,
)
from progression.core.metrics import XP_AWARDED, XP_GRANTS
from progression.models.xp import Profile, XPGrant, level_for_xp, next_streak
from progression.repos.progression_store import ProgressionStore

logger = logging.getLogger(__name__)


def _now() -> int:
    return int(datetime.datetime.now(datetime.UTC).timestamp())


@dataclass(frozen=True, slots=True)
class ProfileDrift:
    user_id: str
    stored_xp: int
    ledger_xp: int
    stored_level: int
    ledger_level: int


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------


async def create_profile(
    store: ProgressionStore, user_id: str, display_name: str = ""
) -> Profile:
    """Create an empty profile.  Returns the existing one unchanged if present."""
    async with store.transaction(user_id):
        existing = await store.get_profile(user_id, for_update=True)
        if existing is not None:
            return existing
        created = await store.insert_profile(
            Profile.new(user_id=user_id, display_name=display_name.strip())
        )
        profile = await store.get_profile(user_id)

    if not created:
        return profile
    logger.info("Created profile user=%s", user_id, extra={"user_id": user_id})
    return profile


async def get_profile(store: ProgressionStore, user_id: str) -> Profile:
    profile = await store.get_profile(user_id)
    if profile is None:
        raise NotFoundError("profile", user_id)
    return profile


# ---------------------------------------------------------------------------
# Grants
# ---------------------------------------------------------------------------


async def apply_grant(
    store: ProgressionStore,
    *,
    user_id: str,
    amount: int,
    source_type: str,
    source_id: str | None,
    description: str | None,
    now: int,
    idempotency_key: str | None = None,
) -> tuple[XPGrant, bool]:
    """Append a grant and fold it into the profile.

    Must be called inside ``store.transaction(user_id)``.  Returns
    ``(grant, created)``; when the idempotency key was already used the
    original grant comes back with created=False and nothing is written.
    A key already recorded for a different user is an InvalidInputError.
    """
    if amount <= 0:
        raise InvalidAmountError(amount)

    if idempotency_key is not None:
        existing = await store.get_grant_by_key(idempotency_key)
        if existing is not None:
            if existing.user_id != user_id:
                raise InvalidInputError(
                    f"idempotency key {idempotency_key!r} belongs to another user"
                )
            return existing, False

    profile = await store.get_profile(user_id, for_update=True)
    if profile is None:
        raise NotFoundError("profile", user_id)

    grant = XPGrant.new(
        user_id=user_id,
        amount=amount,
        source_type=source_type,
        source_id=source_id,
        description=description,
        created_at=now,
        idempotency_key=idempotency_key,
    )
    await store.append_grant(grant)

    xp = profile.xp + amount
    await store.save_profile(
        replace(
            profile,
            xp=xp,
            level=level_for_xp(xp),
            streak_days=next_streak(profile.streak_days, profile.last_activity_at, now),
            last_activity_at=now,
        )
    )
    if level_for_xp(xp) > profile.level:
        logger.info(
            "Level up user=%s %d -> %d",
            user_id,
            profile.level,
            level_for_xp(xp),
            extra={"user_id": user_id},
        )
    return grant, True


def record_committed(grants: Iterable[XPGrant]) -> None:
    """Count and log grants once their unit of work has committed."""
    for grant in grants:
        XP_GRANTS.labels(source_type=grant.source_type).inc()
        XP_AWARDED.inc(grant.amount)
        logger.info(
            "Granted %d XP to user=%s source=%s:%s",
            grant.amount,
            grant.user_id,
            grant.source_type,
            grant.source_id,
            extra={
                "user_id": grant.user_id,
                "source_type": grant.source_type,
                "amount": grant.amount,
            },
        )


async def grant_xp(
    store: ProgressionStore,
    user_id: str,
    amount: int,
    source_type: str,
    source_id: str | None = None,
    description: str | None = None,
    *,
    idempotency_key: str | None = None,
    now: int | None = None,
) -> XPGrant:
    """Record a grant and update the user's profile as one atomic unit.

    Raises InvalidAmountError for amount <= 0 and NotFoundError when the
    user has no profile; in both cases nothing is written.
    """
    if amount <= 0:
        logger.warning(
            "Rejected non-positive XP amount=%d user=%s",
            amount,
            user_id,
            extra={"user_id": user_id},
        )
        raise InvalidAmountError(amount)

    async with store.transaction(user_id):
        grant, created = await apply_grant(
            store,
            user_id=user_id,
            amount=amount,
            source_type=source_type,
            source_id=source_id,
            description=description,
            now=now if now is not None else _now(),
            idempotency_key=idempotency_key,
        )

    if created:
        record_committed([grant])
    else:
        logger.info(
            "Idempotent replay of grant key=%s user=%s",
            idempotency_key,
            user_id,
            extra={"user_id": user_id},
        )
    return grant


async def list_grants(store: ProgressionStore, user_id: str) -> list[XPGrant]:
    """Ledger history for one user, newest first."""
    grants = await store.list_grants(user_id=user_id)
    return sorted(grants, key=lambda g: g.created_at, reverse=True)


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


async def reconcile_profiles(
    store: ProgressionStore, *, repair: bool = False
) -> list[ProfileDrift]:
    """Compare every profile with the sum of its ledger grants.

    With repair=True each drifted profile is rewritten from the ledger
    inside its own unit of work; the ledger itself is never modified.
    """
    totals: dict[str, int] = defaultdict(int)
    for grant in await store.list_grants():
        totals[grant.user_id] += grant.amount

    profiles = {p.user_id: p for p in await store.list_profiles()}
    orphans = sorted(set(totals) - set(profiles))
    if orphans:
        logger.warning("Ledger grants without a profile for users=%s", orphans)

    drifts: list[ProfileDrift] = []
    for user_id, profile in sorted(profiles.items()):
        ledger_xp = totals.get(user_id, 0)
        ledger_level = level_for_xp(ledger_xp)
        if profile.xp != ledger_xp or profile.level != ledger_level:
            drifts.append(
                ProfileDrift(
                    user_id=user_id,
                    stored_xp=profile.xp,
                    ledger_xp=ledger_xp,
                    stored_level=profile.level,
                    ledger_level=ledger_level,
                )
            )

    for drift in drifts:
        logger.warning(
            "Profile drift user=%s stored_xp=%d ledger_xp=%d",
            drift.user_id,
            drift.stored_xp,
            drift.ledger_xp,
            extra={"user_id": drift.user_id},
        )
        if repair:
            await _repair_profile(store, drift.user_id)

    return drifts


async def _repair_profile(store: ProgressionStore, user_id: str) -> None:
    async with store.transaction(user_id):
        profile = await store.get_profile(user_id, for_update=True)
        if profile is None:
            return
        # Re-read under the lock: grants may have landed since the scan.
        ledger_xp = sum(g.amount for g in await store.list_grants(user_id=user_id))
        await store.save_profile(
            replace(profile, xp=ledger_xp, level=level_for_xp(ledger_xp))
        )
    logger.info(
        "Repaired profile user=%s xp=%d", user_id, ledger_xp, extra={"user_id": user_id}
    )
