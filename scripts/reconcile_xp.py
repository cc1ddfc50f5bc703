"""Offline check: rebuild every profile's XP from the ledger and report drift.

Run with:
    DATABASE_URL=postgresql+asyncpg://... python scripts/reconcile_xp.py
    DATABASE_URL=... python scripts/reconcile_xp.py --repair

Exit status is 1 when drift was found and not repaired, so the script
can run from cron or CI and alert.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from progression.core.config import SETTINGS
from progression.core.logging import setup_logging
from progression.db.engine import session_scope
from progression.repos.pg_progression_store import PgProgressionStore
from progression.services import ledger_service

logger = logging.getLogger("reconcile_xp")


async def run(repair: bool) -> int:
    async with session_scope() as session:
        drifts = await ledger_service.reconcile_profiles(
            PgProgressionStore(session), repair=repair
        )

    for d in drifts:
        print(
            f"{d.user_id:<40} xp {d.stored_xp:>8} → {d.ledger_xp:<8} "
            f"level {d.stored_level:>3} → {d.ledger_level}"
        )
    print(f"{len(drifts)} profile(s) drifted{' and repaired' if repair else ''}")
    return 1 if drifts and not repair else 0


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument(
        "--repair",
        action="store_true",
        help="rewrite drifted profiles from the ledger",
    )
    args = parser.parse_args()

    setup_logging(SETTINGS.log_level, json_format=SETTINGS.log_json)
    if not SETTINGS.database_url:
        logger.error("DATABASE_URL is not set; nothing to reconcile")
        sys.exit(2)

    sys.exit(asyncio.run(run(args.repair)))


if __name__ == "__main__":
    main()
