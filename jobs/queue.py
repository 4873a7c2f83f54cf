# jobs/queue.py
from __future__ import annotations

import hashlib
import logging
import uuid
from collections.abc import Iterable
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from api.app.config import get_settings
from jobs import events, store
from jobs.backoff import compute_backoff
from jobs.errors import ValidationError
from jobs.payloads import validate_payload
from models.base import utcnow
from models.idempotency_key import IdempotencyKey
from models.job import MAX_PRIORITY, MIN_PRIORITY, Job, JobKind, JobState
from models.job_event import JobStage

logger = logging.getLogger(__name__)

ENQUEUE_ROUTE = "jobs/enqueue"

# keep last_error readable; full tracebacks belong in the worker log
MAX_ERROR_LENGTH = 4000


def clamp_priority(priority: int | None) -> int:
    if priority is None:
        return get_settings().job_default_priority
    return min(MAX_PRIORITY, max(MIN_PRIORITY, int(priority)))


def _normalize_run_at(run_at: datetime | None) -> datetime | None:
    if run_at is None:
        return None
    if run_at.tzinfo is None:
        return run_at.replace(tzinfo=timezone.utc)
    return run_at


def dedupe_hash(kind: JobKind, dedupe_key: str) -> str:
    return hashlib.sha256(f"{kind.value}|{dedupe_key}".encode("utf-8")).hexdigest()


async def _stored_response(
    db: AsyncSession,
    workspace_id: uuid.UUID,
    key_hash: str,
) -> dict | None:
    stmt = select(IdempotencyKey.response).where(
        IdempotencyKey.workspace_id == workspace_id,
        IdempotencyKey.route == ENQUEUE_ROUTE,
        IdempotencyKey.key_hash == key_hash,
    )
    return (await db.execute(stmt)).scalar_one_or_none()


def _replayed_job_id(response: dict) -> uuid.UUID:
    return uuid.UUID(response["job_id"])


async def enqueue(
    db: AsyncSession,
    workspace_id: uuid.UUID | str,
    kind: JobKind | str,
    payload: dict | None = None,
    *,
    priority: int | None = None,
    run_at: datetime | None = None,
    max_attempts: int | None = None,
    dedupe_key: str | None = None,
) -> uuid.UUID:
    """
    Create a queued job and return its id.

    With a dedupe_key, a second enqueue of the same (workspace, kind, key)
    replays the first response instead of inserting another job.
    """
    settings = get_settings()

    kind = store.coerce_kind(kind)
    payload = validate_payload(kind, payload)
    if workspace_id is None or workspace_id == "":
        raise ValidationError("workspace_id is required")
    try:
        workspace_id = workspace_id if isinstance(workspace_id, uuid.UUID) else uuid.UUID(str(workspace_id))
    except ValueError:
        raise ValidationError(f"workspace_id is not a valid UUID: {workspace_id!r}") from None

    job = Job(
        workspace_id=workspace_id,
        kind=kind,
        payload=payload,
        priority=clamp_priority(priority),
        run_at=_normalize_run_at(run_at),
        max_attempts=max_attempts if max_attempts is not None else settings.job_default_max_attempts,
    )

    if not dedupe_key:
        await store.insert_job(db, job)
        await events.record(db, job.id, JobStage.ENQUEUED, {"kind": kind.value})
        logger.info("Enqueued job %s [%s]", job.id, kind.value)
        return job.id

    key_hash = dedupe_hash(kind, dedupe_key)
    existing = await _stored_response(db, workspace_id, key_hash)
    if existing is not None:
        logger.info("Replayed enqueue for dedupe key %s -> job %s", key_hash[:12], existing["job_id"])
        return _replayed_job_id(existing)

    try:
        # job row and idempotency row land together or not at all
        async with db.begin_nested():
            await store.insert_job(db, job)
            db.add(
                IdempotencyKey(
                    workspace_id=workspace_id,
                    route=ENQUEUE_ROUTE,
                    key_hash=key_hash,
                    response={"ok": True, "job_id": str(job.id)},
                )
            )
    except IntegrityError:
        # a concurrent enqueue with the same key won the race
        existing = await _stored_response(db, workspace_id, key_hash)
        if existing is None:
            raise
        logger.info("Replayed enqueue after race for dedupe key %s", key_hash[:12])
        return _replayed_job_id(existing)

    await events.record(db, job.id, JobStage.ENQUEUED, {"kind": kind.value, "dedupe": True})
    logger.info("Enqueued job %s [%s] dedupe=%s", job.id, kind.value, key_hash[:12])
    return job.id


async def dequeue(
    db: AsyncSession,
    worker_id: str,
    kinds: Iterable[JobKind] | None = None,
    *,
    workspace_id: uuid.UUID | str | None = None,
    now: datetime | None = None,
) -> Job | None:
    """
    Claims next runnable job for `worker_id`.
    Stale leases are recovered separately by jobs.reaper.
    """
    job = await store.claim_next(db, worker_id, kinds=kinds, workspace_id=workspace_id, now=now)
    if job is None:
        return None

    await events.record(
        db,
        job.id,
        JobStage.CLAIMED,
        {"worker_id": worker_id, "attempt": job.attempts},
    )

    logger.info(
        "Worker %s claimed job %s [%s] attempt %d/%d",
        worker_id,
        job.id,
        job.kind.value,
        job.attempts,
        job.max_attempts,
    )
    return job


async def complete_job(
    db: AsyncSession,
    job_id: uuid.UUID,
    worker_id: str,
    result: dict | None = None,
    *,
    now: datetime | None = None,
) -> Job:
    job = await store.complete(db, job_id, worker_id, result, now=now)
    await events.record(db, job.id, JobStage.DONE, {"worker_id": worker_id})
    logger.info("Job %s completed by %s", job_id, worker_id)
    return job


async def fail_job(
    db: AsyncSession,
    job: Job,
    error: str,
    *,
    now: datetime | None = None,
    detail: dict | None = None,
) -> Job:
    """
    Schedules retry with backoff or marks permanently failed.
    No sleeping here; the delay lives in run_at.
    """
    settings = get_settings()
    now = now or utcnow()
    error = (error or "unknown error")[:MAX_ERROR_LENGTH]

    backoff_seconds = compute_backoff(
        job.attempts,
        base=settings.job_backoff_base_seconds,
        cap=settings.job_backoff_cap_seconds,
    )
    updated = await store.fail(db, job.id, job.locked_by, error, backoff_seconds, now=now)

    info = {"error": error, "attempts": updated.attempts, **(detail or {})}

    if updated.state == JobState.QUEUED:
        retry_at = now + timedelta(seconds=backoff_seconds)
        await events.record(
            db,
            updated.id,
            JobStage.RETRY_SCHEDULED,
            {**info, "backoff_seconds": backoff_seconds, "retry_at": retry_at.isoformat()},
        )
        logger.warning(
            "Job %s retry %d/%d in %ds",
            updated.id,
            updated.attempts,
            updated.max_attempts,
            backoff_seconds,
        )
    else:
        await events.record(db, updated.id, JobStage.ERROR, info)
        logger.error(
            "Job %s permanently failed after %d attempts: %s",
            updated.id,
            updated.attempts,
            error.splitlines()[0] if error else "",
        )

    return updated
