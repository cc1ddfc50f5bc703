"""Leaderboards: order participants by score inside a scope and window.

Scoring
-------
  Global / all_time   profile.xp for every profile (xp = 0 included)
  Course / *          sum of grants attributed to the course
  * / weekly          sum of grants with created_at >= now - 7 days

Attribution follows the catalogue: lesson and quiz grants belong to the
lesson's module's course, module grants to the module's course, lab
grants to the lab's module's course.  Anything else (manual, bonus...)
has no course and only ever counts globally.

Ordering
--------
Entries sort by (score DESC, user_id ASC).  Rank is competition ranking,
1 + number of participants with a strictly greater score, so ties share
a rank and the next score skips ("1, 2, 2, 4").

The ordering itself sits behind RankingStrategy.  SortedRanking sorts
the whole participant set per query, O(N log N); an order-statistics
structure can replace it without changing compute_ranking's contract.
"""

from __future__ import annotations

import datetime
import logging
import time
from collections import defaultdict
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Protocol

from progression.core.errors import InvalidInputError, NotFoundError
from progression.core.metrics import RANKING_QUERY_DURATION
from progression.models.ranking import (
    GLOBAL,
    RankingEntry,
    RankingScope,
    RankingWindow,
    UserPosition,
)
from progression.models.xp import Profile
from progression.repos.progression_store import ProgressionStore

logger = logging.getLogger(__name__)

WEEK_SECONDS = 7 * 24 * 60 * 60
MAX_RANKING_LIMIT = 500


def _now() -> int:
    return int(datetime.datetime.now(datetime.UTC).timestamp())


# ---------------------------------------------------------------------------
# Ordering strategy
# ---------------------------------------------------------------------------


class RankingStrategy(Protocol):
    def order(self, scores: Mapping[str, int]) -> list[tuple[str, int, int]]:
        """Return (user_id, score, rank) for every participant, best first."""
        ...


class SortedRanking:
    def order(self, scores: Mapping[str, int]) -> list[tuple[str, int, int]]:
        ordered = sorted(scores.items(), key=lambda item: (-item[1], item[0]))
        ranked: list[tuple[str, int, int]] = []
        rank = 0
        previous: int | None = None
        for position, (user_id, score) in enumerate(ordered, 1):
            if score != previous:
                rank = position
                previous = score
            ranked.append((user_id, score, rank))
        return ranked


ranking_strategy: RankingStrategy = SortedRanking()


# ---------------------------------------------------------------------------
# Source attribution
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class SourceAttribution:
    """Maps a grant's (source_type, source_id) to its owning course."""

    module_course: Mapping[str, str]
    lesson_module: Mapping[str, str]
    lab_module: Mapping[str, str]

    def course_for(self, source_type: str, source_id: str | None) -> str | None:
        if source_id is None:
            return None
        if source_type in ("lesson", "quiz"):
            module_id = self.lesson_module.get(source_id)
        elif source_type == "lab":
            module_id = self.lab_module.get(source_id)
        elif source_type == "module":
            module_id = source_id
        else:
            return None
        if module_id is None:
            return None
        return self.module_course.get(module_id)


async def load_attribution(store: ProgressionStore) -> SourceAttribution:
    return SourceAttribution(
        module_course={m.id: m.course_id for m in await store.list_modules()},
        lesson_module={l.id: l.module_id for l in await store.list_lessons()},
        lab_module={l.id: l.module_id for l in await store.list_labs()},
    )


# ---------------------------------------------------------------------------
# Scores
# ---------------------------------------------------------------------------


async def _scores(
    store: ProgressionStore,
    scope: RankingScope,
    window: RankingWindow,
    now: int,
) -> tuple[dict[str, int], dict[str, Profile]]:
    if not scope.is_global and await store.get_course(scope.course_id) is None:
        raise NotFoundError("course", scope.course_id)

    profiles = {p.user_id: p for p in await store.list_profiles()}

    if scope.is_global and window is RankingWindow.ALL_TIME:
        return {uid: p.xp for uid, p in profiles.items()}, profiles

    since = now - WEEK_SECONDS if window is RankingWindow.LAST_7_DAYS else None
    grants = await store.list_grants(since=since)
    attribution = None if scope.is_global else await load_attribution(store)

    scores: dict[str, int] = defaultdict(int)
    for grant in grants:
        if attribution is not None and (
            attribution.course_for(grant.source_type, grant.source_id)
            != scope.course_id
        ):
            continue
        scores[grant.user_id] += grant.amount
    return dict(scores), profiles


def _entry(user_id: str, score: int, rank: int, profiles: Mapping[str, Profile]):
    profile = profiles.get(user_id)
    return RankingEntry(
        user_id=user_id,
        display_name=(profile.display_name if profile else "") or user_id,
        xp=score,
        level=profile.level if profile else 1,
        rank=rank,
    )


async def compute_ranking(
    store: ProgressionStore,
    scope: RankingScope = GLOBAL,
    window: RankingWindow = RankingWindow.ALL_TIME,
    limit: int = 50,
    *,
    now: int | None = None,
) -> list[RankingEntry]:
    """Top ``limit`` entries for the scope/window, best first."""
    if not 1 <= limit <= MAX_RANKING_LIMIT:
        raise InvalidInputError(
            f"limit must be between 1 and {MAX_RANKING_LIMIT} (got {limit})"
        )
    now = now if now is not None else _now()

    started = time.perf_counter()
    scores, profiles = await _scores(store, scope, window, now)
    ranked = ranking_strategy.order(scores)
    entries = [_entry(uid, score, rank, profiles) for uid, score, rank in ranked[:limit]]
    RANKING_QUERY_DURATION.labels(scope=scope.label, window=window.value).observe(
        time.perf_counter() - started
    )

    logger.debug(
        "Computed ranking scope=%s window=%s participants=%d returned=%d",
        scope.cache_key,
        window.value,
        len(ranked),
        len(entries),
    )
    return entries


async def get_user_position(
    store: ProgressionStore,
    user_id: str,
    scope: RankingScope = GLOBAL,
    window: RankingWindow = RankingWindow.ALL_TIME,
    *,
    now: int | None = None,
) -> UserPosition:
    """Rank, percentile and distance to the next rank for one user.

    percentile = round((total - rank) / total * 100), half-up.
    xp_to_next_rank = (lowest score strictly above the user) - score + 1.
    """
    now = now if now is not None else _now()
    scores, profiles = await _scores(store, scope, window, now)
    ranked = ranking_strategy.order(scores)
    total = len(ranked)

    if user_id not in scores:
        return UserPosition(
            user_id=user_id,
            rank=None,
            total_participants=total,
            percentile=0,
            xp=0,
            xp_to_next_rank=None,
        )

    score = scores[user_id]
    rank = next(r for uid, _, r in ranked if uid == user_id)
    percentile = (200 * (total - rank) + total) // (2 * total)

    next_rank_user = None
    xp_to_next_rank = None
    if rank > 1:
        # ranked is score-descending; the last strictly greater score is the
        # nearest one above this user.  Among ties, the lowest user_id.
        above = [(uid, s, r) for uid, s, r in ranked if s > score]
        target_score = above[-1][1]
        target = next((uid, s, r) for uid, s, r in above if s == target_score)
        next_rank_user = _entry(*target, profiles)
        xp_to_next_rank = target_score - score + 1

    return UserPosition(
        user_id=user_id,
        rank=rank,
        total_participants=total,
        percentile=percentile,
        xp=score,
        xp_to_next_rank=xp_to_next_rank,
        next_rank_user=next_rank_user,
    )
