from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class RankingWindow(StrEnum):
    ALL_TIME = "all_time"
    LAST_7_DAYS = "weekly"


@dataclass(frozen=True, slots=True)
class RankingScope:
    """Global when course_id is None, otherwise a single course."""

    course_id: str | None = None

    @property
    def is_global(self) -> bool:
        return self.course_id is None

    @property
    def label(self) -> str:
        return "global" if self.course_id is None else "course"

    @property
    def cache_key(self) -> str:
        return "global" if self.course_id is None else f"course:{self.course_id}"


GLOBAL = RankingScope()


@dataclass(frozen=True, slots=True)
class RankingEntry:
    """Computed fresh per query; never persisted."""

    user_id: str
    display_name: str
    xp: int  # score inside the queried scope/window
    level: int
    rank: int


@dataclass(frozen=True, slots=True)
class UserPosition:
    user_id: str
    rank: int | None
    total_participants: int
    percentile: int
    xp: int
    xp_to_next_rank: int | None
    next_rank_user: RankingEntry | None = None
