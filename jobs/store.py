# jobs/store.py
"""
Job store: the only code that mutates job state, lease, attempts and run_at.

Every transition is one conditional UPDATE (WHERE on the expected state and
lease holder) so concurrent workers can never both win. Callers own the
transaction and commit.
"""
from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta

from sqlalchemy import func, select, update
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from jobs.errors import ClaimConflict, InvalidTransitionError, StoreUnavailable, ValidationError
from models.base import utcnow
from models.job import DEFAULT_MAX_ATTEMPTS, DEFAULT_PRIORITY, Job, JobKind, JobState

logger = logging.getLogger(__name__)

# how many times a claimer re-picks a candidate after losing a race
CLAIM_CONFLICT_RETRIES = 3

_RETURNING_OPTS = {"synchronize_session": False, "populate_existing": True}


@contextmanager
def translate_store_errors() -> Iterator[None]:
    """Connection-level database failures surface as StoreUnavailable."""
    try:
        yield
    except (OperationalError, InterfaceError) as exc:
        raise StoreUnavailable(str(exc)) from exc


def _coerce_uuid(value: uuid.UUID | str | None, field: str) -> uuid.UUID:
    if value is None or value == "":
        raise ValidationError(f"{field} is required")
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise ValidationError(f"{field} is not a valid UUID: {value!r}") from None


def coerce_kind(kind: JobKind | str | None) -> JobKind:
    try:
        return JobKind(kind)
    except ValueError:
        raise ValidationError(f"Unknown job kind: {kind!r}") from None


# ─────────────────────────────────────────────
# insert
# ─────────────────────────────────────────────

async def insert_job(db: AsyncSession, job: Job) -> Job:
    """Persist a new job in `queued` with no attempts and no lease."""
    job.workspace_id = _coerce_uuid(job.workspace_id, "workspace_id")
    job.kind = coerce_kind(job.kind)

    if job.max_attempts is None:
        job.max_attempts = DEFAULT_MAX_ATTEMPTS
    if job.max_attempts < 1:
        raise ValidationError(f"max_attempts must be >= 1, got {job.max_attempts}")

    now = utcnow()
    job.state = JobState.QUEUED
    job.attempts = 0
    job.locked_by = None
    job.locked_at = None
    if job.priority is None:
        job.priority = DEFAULT_PRIORITY
    if job.payload is None:
        job.payload = {}
    if job.run_at is None:
        job.run_at = now
    if job.created_at is None:
        job.created_at = now
    job.updated_at = job.created_at

    db.add(job)
    await db.flush()

    logger.info(
        "Inserted job %s [%s] workspace=%s priority=%d run_at=%s",
        job.id,
        job.kind.value,
        job.workspace_id,
        job.priority,
        job.run_at.isoformat(),
    )
    return job


# ─────────────────────────────────────────────
# claim
# ─────────────────────────────────────────────

async def _select_candidate(
    db: AsyncSession,
    now: datetime,
    kinds: Iterable[JobKind] | None,
    workspace_id: uuid.UUID | None = None,
) -> uuid.UUID | None:
    stmt = select(Job.id).where(
        Job.state == JobState.QUEUED,
        Job.run_at <= now,
    )
    if kinds is not None:
        stmt = stmt.where(Job.kind.in_(list(kinds)))
    if workspace_id is not None:
        stmt = stmt.where(Job.workspace_id == workspace_id)

    stmt = (
        stmt.order_by(Job.priority.asc(), Job.created_at.asc())
        .limit(1)
        .with_for_update(skip_locked=True)
    )
    return (await db.execute(stmt)).scalar_one_or_none()


async def _take(db: AsyncSession, job_id: uuid.UUID, worker_id: str, now: datetime) -> Job:
    stmt = (
        update(Job)
        .where(
            Job.id == job_id,
            Job.state == JobState.QUEUED,
            Job.run_at <= now,
        )
        .values(
            state=JobState.RUNNING,
            locked_by=worker_id,
            locked_at=now,
            attempts=Job.attempts + 1,
            updated_at=now,
        )
        .returning(Job)
        .execution_options(**_RETURNING_OPTS)
    )
    job = (await db.execute(stmt)).scalar_one_or_none()
    if job is None:
        raise ClaimConflict(job_id)
    return job


async def claim_next(
    db: AsyncSession,
    worker_id: str,
    *,
    kinds: Iterable[JobKind] | None = None,
    workspace_id: uuid.UUID | str | None = None,
    now: datetime | None = None,
) -> Job | None:
    """
    Atomically move the next eligible queued job to running for `worker_id`.

    Eligible: queued and run_at <= now, ordered by priority then age.
    `kinds` and `workspace_id` narrow the candidates when given.
    Returns None when nothing is eligible or every candidate was lost to
    another worker.
    """
    if not worker_id:
        raise ValueError("worker_id is required to claim a job")

    now = now or utcnow()
    if kinds is not None:
        kinds = [coerce_kind(k) for k in kinds]
        if not kinds:
            return None
    if workspace_id is not None:
        workspace_id = _coerce_uuid(workspace_id, "workspace_id")

    for _ in range(CLAIM_CONFLICT_RETRIES):
        candidate = await _select_candidate(db, now, kinds, workspace_id)
        if candidate is None:
            return None
        try:
            return await _take(db, candidate, worker_id, now)
        except ClaimConflict as exc:
            logger.debug("Worker %s lost claim race: %s", worker_id, exc)

    return None


# ─────────────────────────────────────────────
# report outcome
# ─────────────────────────────────────────────

async def _rejection(
    db: AsyncSession,
    job_id: uuid.UUID,
    worker_id: str,
    action: str,
) -> InvalidTransitionError:
    row = (
        await db.execute(select(Job.state, Job.locked_by).where(Job.id == job_id))
    ).one_or_none()

    if row is None:
        return InvalidTransitionError(job_id, f"cannot {action}: job not found")

    state, locked_by = row
    if state != JobState.RUNNING:
        return InvalidTransitionError(job_id, f"cannot {action} from state {state.value}")
    return InvalidTransitionError(
        job_id,
        f"cannot {action}: lease held by {locked_by!r}, not {worker_id!r}",
    )


def _owned_by(job_id: uuid.UUID, worker_id: str) -> tuple:
    return (
        Job.id == job_id,
        Job.state == JobState.RUNNING,
        Job.locked_by == worker_id,
    )


async def complete(
    db: AsyncSession,
    job_id: uuid.UUID,
    worker_id: str,
    result: dict | None = None,
    *,
    now: datetime | None = None,
) -> Job:
    """running -> done, only while `worker_id` still holds the lease."""
    now = now or utcnow()
    stmt = (
        update(Job)
        .where(*_owned_by(job_id, worker_id))
        .values(
            state=JobState.DONE,
            result=result if result is not None else {},
            locked_by=None,
            locked_at=None,
            updated_at=now,
        )
        .returning(Job)
        .execution_options(**_RETURNING_OPTS)
    )
    job = (await db.execute(stmt)).scalar_one_or_none()
    if job is None:
        raise await _rejection(db, job_id, worker_id, "complete")
    return job


async def fail(
    db: AsyncSession,
    job_id: uuid.UUID,
    worker_id: str,
    error: str,
    backoff_seconds: float,
    *,
    now: datetime | None = None,
) -> Job:
    """
    running -> queued (run_at pushed out by backoff) while attempts remain,
    otherwise running -> error. Both paths clear the lease.
    """
    now = now or utcnow()

    retry = (
        update(Job)
        .where(*_owned_by(job_id, worker_id), Job.attempts < Job.max_attempts)
        .values(
            state=JobState.QUEUED,
            run_at=now + timedelta(seconds=backoff_seconds),
            locked_by=None,
            locked_at=None,
            last_error=error,
            updated_at=now,
        )
        .returning(Job)
        .execution_options(**_RETURNING_OPTS)
    )
    job = (await db.execute(retry)).scalar_one_or_none()
    if job is not None:
        return job

    terminal = (
        update(Job)
        .where(*_owned_by(job_id, worker_id), Job.attempts >= Job.max_attempts)
        .values(
            state=JobState.ERROR,
            locked_by=None,
            locked_at=None,
            last_error=error,
            updated_at=now,
        )
        .returning(Job)
        .execution_options(**_RETURNING_OPTS)
    )
    job = (await db.execute(terminal)).scalar_one_or_none()
    if job is None:
        raise await _rejection(db, job_id, worker_id, "fail")
    return job


async def heartbeat(
    db: AsyncSession,
    job_id: uuid.UUID,
    worker_id: str,
    *,
    now: datetime | None = None,
) -> bool:
    """
    Refresh the lease clock (updated_at) of a running job.
    False when the job is no longer running under this worker.
    """
    now = now or utcnow()
    stmt = (
        update(Job)
        .where(*_owned_by(job_id, worker_id))
        .values(updated_at=now)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    return result.rowcount == 1


# ─────────────────────────────────────────────
# reads
# ─────────────────────────────────────────────

async def get_job(
    db: AsyncSession,
    job_id: uuid.UUID,
    workspace_id: uuid.UUID | None = None,
) -> Job | None:
    stmt = select(Job).where(Job.id == job_id)
    if workspace_id is not None:
        stmt = stmt.where(Job.workspace_id == workspace_id)
    return (await db.execute(stmt)).scalar_one_or_none()


async def list_jobs(
    db: AsyncSession,
    workspace_id: uuid.UUID,
    *,
    state: JobState | None = None,
    kind: JobKind | None = None,
    limit: int = 50,
) -> list[Job]:
    stmt = select(Job).where(Job.workspace_id == workspace_id)
    if state is not None:
        stmt = stmt.where(Job.state == state)
    if kind is not None:
        stmt = stmt.where(Job.kind == kind)
    stmt = stmt.order_by(Job.created_at.desc()).limit(limit)
    return list((await db.execute(stmt)).scalars().all())


async def find_stale(
    db: AsyncSession,
    cutoff: datetime,
    limit: int = 100,
) -> list[Job]:
    """Running jobs whose lease clock stopped before `cutoff`, row-locked."""
    stmt = (
        select(Job)
        .where(
            Job.state == JobState.RUNNING,
            Job.updated_at < cutoff,
        )
        .order_by(Job.updated_at.asc())
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    return list((await db.execute(stmt)).scalars().all())


async def queue_stats(db: AsyncSession) -> dict[str, dict[str, int]]:
    """Job counts as {state: {kind: n}}."""
    stmt = select(Job.state, Job.kind, func.count()).group_by(Job.state, Job.kind)
    stats: dict[str, dict[str, int]] = {state.value: {} for state in JobState}
    for state, kind, count in (await db.execute(stmt)).all():
        stats[state.value][kind.value] = count
    return stats
