# jobs/events.py
"""
Append-only job event log.

Best-effort observability: an event that fails to persist is logged and
dropped, never allowed to roll back the job transition it describes.
"""
from __future__ import annotations

import logging
import uuid

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from models.job_event import JobEvent, JobStage

logger = logging.getLogger(__name__)


async def record(
    db: AsyncSession,
    job_id: uuid.UUID,
    stage: JobStage | str,
    detail: dict | None = None,
) -> JobEvent | None:
    """Append one lifecycle event inside a savepoint."""
    stage_value = JobStage(stage).value

    try:
        async with db.begin_nested():
            event = JobEvent(job_id=job_id, stage=stage_value, detail=detail or {})
            db.add(event)
    except SQLAlchemyError:
        logger.exception("Failed to record event %s for job %s", stage_value, job_id)
        return None

    logger.debug("job=%s event=%s %s", job_id, stage_value, detail or {})
    return event


async def list_events(db: AsyncSession, job_id: uuid.UUID) -> list[JobEvent]:
    stmt = select(JobEvent).where(JobEvent.job_id == job_id).order_by(JobEvent.id.asc())
    return list((await db.execute(stmt)).scalars().all())
