"""
Stale-lease recovery goes through the normal fail path.
"""
from __future__ import annotations

from datetime import timedelta

import pytest

from jobs import events, store
from jobs.errors import InvalidTransitionError
from jobs.queue import complete_job, dequeue, enqueue
from jobs.reaper import recover_stale_jobs
from models.base import utcnow
from models.job import JobKind, JobState


@pytest.mark.asyncio
async def test_fresh_lease_is_left_alone(db_session, workspace_id, transcribe_payload):
    await enqueue(db_session, workspace_id, JobKind.TRANSCRIBE, transcribe_payload)
    t0 = utcnow()
    job = await dequeue(db_session, "w", now=t0)

    assert await recover_stale_jobs(db_session, 900, now=t0 + timedelta(seconds=899)) == 0
    assert (await store.get_job(db_session, job.id)).state == JobState.RUNNING


@pytest.mark.asyncio
async def test_expired_lease_is_requeued_with_backoff(db_session, workspace_id, transcribe_payload):
    job_id = await enqueue(db_session, workspace_id, JobKind.TRANSCRIBE, transcribe_payload)
    t0 = utcnow()
    await dequeue(db_session, "worker-gone", now=t0)

    reaped_at = t0 + timedelta(seconds=901)
    assert await recover_stale_jobs(db_session, 900, now=reaped_at) == 1

    job = await store.get_job(db_session, job_id)
    assert job.state == JobState.QUEUED
    assert job.locked_by is None
    assert job.attempts == 1
    assert job.run_at == reaped_at + timedelta(seconds=10)
    assert "worker-gone" in job.last_error
    assert job.last_error.startswith("Lease expired")

    retry = (await events.list_events(db_session, job_id))[-1]
    assert retry.stage == "retry_scheduled"
    assert retry.detail["reason"] == "lease_expired"
    assert retry.detail["locked_by"] == "worker-gone"


@pytest.mark.asyncio
async def test_expired_lease_on_last_attempt_is_terminal(db_session, workspace_id, transcribe_payload):
    job_id = await enqueue(
        db_session, workspace_id, JobKind.TRANSCRIBE, transcribe_payload, max_attempts=1
    )
    t0 = utcnow()
    await dequeue(db_session, "w", now=t0)

    assert await recover_stale_jobs(db_session, 60, now=t0 + timedelta(minutes=5)) == 1
    assert (await store.get_job(db_session, job_id)).state == JobState.ERROR


@pytest.mark.asyncio
async def test_heartbeat_keeps_lease_alive(db_session, workspace_id, transcribe_payload):
    job_id = await enqueue(db_session, workspace_id, JobKind.TRANSCRIBE, transcribe_payload)
    t0 = utcnow()
    await dequeue(db_session, "w", now=t0)
    assert await store.heartbeat(db_session, job_id, "w", now=t0 + timedelta(seconds=800))

    assert await recover_stale_jobs(db_session, 900, now=t0 + timedelta(seconds=1000)) == 0


@pytest.mark.asyncio
async def test_original_holder_cannot_report_after_recovery(
    db_session, workspace_id, transcribe_payload
):
    job_id = await enqueue(db_session, workspace_id, JobKind.TRANSCRIBE, transcribe_payload)
    t0 = utcnow()
    await dequeue(db_session, "worker-a", now=t0)

    await recover_stale_jobs(db_session, 900, now=t0 + timedelta(seconds=1000))
    taken = await dequeue(db_session, "worker-b", now=t0 + timedelta(seconds=1010))
    assert taken.id == job_id
    assert taken.attempts == 2

    with pytest.raises(InvalidTransitionError, match="lease held by 'worker-b'"):
        await complete_job(db_session, job_id, "worker-a", {"ok": True})

    job = await store.get_job(db_session, job_id)
    assert job.state == JobState.RUNNING
    assert job.locked_by == "worker-b"

    done = await complete_job(db_session, job_id, "worker-b", {"ok": True})
    assert done.state == JobState.DONE
