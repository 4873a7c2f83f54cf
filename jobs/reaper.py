# jobs/reaper.py
"""
Stale-lock recovery.

A running job whose lease clock (updated_at) stopped longer than the lease
timeout ago is treated as failed-without-report and goes through the normal
fail path, so backoff and max_attempts still apply. The original handler may
still be running somewhere; handlers must tolerate duplicate execution.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from jobs import store
from jobs.errors import InvalidTransitionError
from jobs.queue import fail_job
from models.base import utcnow

logger = logging.getLogger(__name__)


async def recover_stale_jobs(
    db: AsyncSession,
    lease_timeout_seconds: float,
    *,
    now: datetime | None = None,
    limit: int = 100,
) -> int:
    """Fail every expired lease. Returns how many jobs were recovered."""
    now = now or utcnow()
    cutoff = now - timedelta(seconds=lease_timeout_seconds)

    stale = await store.find_stale(db, cutoff, limit=limit)
    recovered = 0

    for job in stale:
        holder = job.locked_by
        message = (
            f"Lease expired: no report from {holder} within {int(lease_timeout_seconds)}s"
        )
        try:
            await fail_job(
                db,
                job,
                message,
                now=now,
                detail={
                    "reason": "lease_expired",
                    "locked_by": holder,
                    "stale_since": job.updated_at.isoformat(),
                },
            )
        except InvalidTransitionError as exc:
            # the holder reported in between; nothing to recover
            logger.info("Skipping stale job %s: %s", job.id, exc)
            continue
        recovered += 1

    if recovered:
        logger.warning("Recovered %d stale job(s) older than %s", recovered, cutoff.isoformat())
    return recovered
