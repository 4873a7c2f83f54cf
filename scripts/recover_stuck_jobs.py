# scripts/recover_stuck_jobs.py
"""
Recover jobs whose worker stopped reporting (crash, OOM, deploy).
Meant for cron; workers also run this on their own interval.

Run: python scripts/recover_stuck_jobs.py [--stale-after SECONDS]
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from api.app.config import get_settings
from db.engine import dispose_engine
from db.session import get_db
from jobs.reaper import recover_stale_jobs

logger = logging.getLogger("recover_stuck_jobs")


async def recover(stale_after: int) -> int:
    recovered = 0
    try:
        async for db in get_db():
            recovered = await recover_stale_jobs(db, stale_after)
    finally:
        await dispose_engine()
    return recovered


def main() -> None:
    settings = get_settings()
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument(
        "--stale-after",
        type=int,
        default=settings.job_lease_timeout_seconds,
        help="seconds without a lease refresh before a running job is recovered",
    )
    args = parser.parse_args()
    if args.stale_after <= 0:
        parser.error("--stale-after must be positive")

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    logger.info("Recovering jobs stale for more than %ds", args.stale_after)
    recovered = asyncio.run(recover(args.stale_after))
    print(f"Recovered {recovered} stuck job(s).")


if __name__ == "__main__":
    main()
