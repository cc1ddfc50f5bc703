from __future__ import annotations

import datetime
import math
from dataclasses import dataclass
from uuid import UUID, uuid4

# Cumulative XP needed for level L is (L - 1)^2 * XP_PER_LEVEL_UNIT.
XP_PER_LEVEL_UNIT = 50

_LEVEL_TITLES: tuple[tuple[int, str], ...] = (
    (5, "Novice"),
    (10, "Apprentice"),
    (20, "Technician"),
    (35, "Specialist"),
    (50, "Master"),
)


def level_for_xp(xp: int) -> int:
    """Level reached with ``xp`` cumulative points.  level_for_xp(0) == 1."""
    if xp <= 0:
        return 1
    return math.isqrt(xp // XP_PER_LEVEL_UNIT) + 1


def xp_for_level(level: int) -> int:
    """Cumulative XP at which ``level`` is reached."""
    return (max(level, 1) - 1) ** 2 * XP_PER_LEVEL_UNIT


def level_progress(xp: int) -> int:
    """Percentage (0-100) of the way from the current level to the next."""
    level = level_for_xp(xp)
    floor_xp = xp_for_level(level)
    ceiling_xp = xp_for_level(level + 1)
    pct = (xp - floor_xp) * 100 // (ceiling_xp - floor_xp)
    return min(max(pct, 0), 100)


def level_title(level: int) -> str:
    for upper, title in _LEVEL_TITLES:
        if level < upper:
            return title
    return "Legend"


def next_streak(
    streak_days: int, last_activity_at: int | None, activity_at: int
) -> int:
    """Streak after an activity at ``activity_at`` (epoch seconds, UTC days)."""
    if last_activity_at is None:
        return 1
    last_day = datetime.datetime.fromtimestamp(last_activity_at, datetime.UTC).date()
    today = datetime.datetime.fromtimestamp(activity_at, datetime.UTC).date()
    gap = (today - last_day).days
    if gap <= 0:
        return max(streak_days, 1)
    if gap == 1:
        return streak_days + 1
    return 1


@dataclass(frozen=True, slots=True)
class XPGrant:
    """One immutable entry of the append-only XP ledger."""

    id: UUID
    user_id: str
    amount: int
    source_type: str  # quiz|lesson|module|lab|manual|...
    source_id: str | None
    description: str | None
    created_at: int
    idempotency_key: str | None = None

    @staticmethod
    def new(
        *,
        user_id: str,
        amount: int,
        source_type: str,
        source_id: str | None,
        description: str | None,
        created_at: int,
        idempotency_key: str | None = None,
    ) -> XPGrant:
        return XPGrant(
            id=uuid4(),
            user_id=user_id,
            amount=amount,
            source_type=source_type,
            source_id=source_id,
            description=description,
            created_at=created_at,
            idempotency_key=idempotency_key,
        )


@dataclass(frozen=True, slots=True)
class Profile:
    """Read model over the ledger: xp is always the sum of the user's grants."""

    user_id: str
    display_name: str = ""
    xp: int = 0
    level: int = 1
    streak_days: int = 0
    last_activity_at: int | None = None

    @staticmethod
    def new(*, user_id: str, display_name: str = "") -> Profile:
        return Profile(user_id=user_id, display_name=display_name)

    @property
    def level_title(self) -> str:
        return level_title(self.level)

    @property
    def level_progress(self) -> int:
        return level_progress(self.xp)
