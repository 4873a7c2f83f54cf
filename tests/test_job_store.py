"""
Job store: insert validation, claim ordering/eligibility, and the
conditional complete/fail transitions.
"""
from __future__ import annotations

import uuid
from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from jobs import store
from jobs.errors import InvalidTransitionError, StoreUnavailable, ValidationError
from models.base import utcnow
from models.job import Job, JobKind, JobState


def _job(workspace_id, **kwargs) -> Job:
    defaults = dict(
        workspace_id=workspace_id,
        kind=JobKind.TRANSCRIBE,
        payload={"projectId": str(uuid.uuid4())},
    )
    defaults.update(kwargs)
    return Job(**defaults)


@pytest.mark.asyncio
async def test_insert_defaults(db_session, workspace_id):
    job = await store.insert_job(db_session, _job(workspace_id))
    await db_session.commit()

    assert job.state == JobState.QUEUED
    assert job.attempts == 0
    assert job.priority == 5
    assert job.max_attempts == 5
    assert job.locked_by is None
    assert job.run_at <= utcnow()


@pytest.mark.asyncio
async def test_insert_rejects_unknown_kind(db_session, workspace_id):
    with pytest.raises(ValidationError):
        await store.insert_job(db_session, _job(workspace_id, kind="MINE_BITCOIN"))


@pytest.mark.asyncio
async def test_insert_rejects_missing_workspace(db_session):
    with pytest.raises(ValidationError):
        await store.insert_job(db_session, _job(None))


@pytest.mark.asyncio
async def test_insert_rejects_zero_max_attempts(db_session, workspace_id):
    with pytest.raises(ValidationError):
        await store.insert_job(db_session, _job(workspace_id, max_attempts=0))


@pytest.mark.asyncio
async def test_claim_sets_lease_and_increments_attempts(db_session, workspace_id):
    job = await store.insert_job(db_session, _job(workspace_id))

    claimed = await store.claim_next(db_session, "worker-a")
    await db_session.commit()

    assert claimed is not None
    assert claimed.id == job.id
    assert claimed.state == JobState.RUNNING
    assert claimed.locked_by == "worker-a"
    assert claimed.locked_at is not None
    assert claimed.attempts == 1


@pytest.mark.asyncio
async def test_claim_returns_none_when_empty(db_session):
    assert await store.claim_next(db_session, "worker-a") is None


@pytest.mark.asyncio
async def test_claim_orders_by_priority_then_age(db_session, workspace_id):
    t0 = utcnow() - timedelta(minutes=10)
    low = await store.insert_job(db_session, _job(workspace_id, priority=7, created_at=t0))
    old = await store.insert_job(db_session, _job(workspace_id, priority=1, created_at=t0))
    new = await store.insert_job(
        db_session, _job(workspace_id, priority=1, created_at=t0 + timedelta(seconds=1))
    )
    mid = await store.insert_job(db_session, _job(workspace_id, priority=5, created_at=t0))

    order = []
    for _ in range(4):
        order.append((await store.claim_next(db_session, "w")).id)
    await db_session.commit()

    assert order == [old.id, new.id, mid.id, low.id]


@pytest.mark.asyncio
async def test_future_run_at_is_not_claimable(db_session, workspace_id):
    later = utcnow() + timedelta(hours=1)
    await store.insert_job(db_session, _job(workspace_id, run_at=later))

    assert await store.claim_next(db_session, "w") is None
    assert await store.claim_next(db_session, "w", now=later) is not None


@pytest.mark.asyncio
async def test_claim_filters_by_kind(db_session, workspace_id):
    await store.insert_job(db_session, _job(workspace_id))
    render = await store.insert_job(
        db_session,
        _job(workspace_id, kind=JobKind.CLIP_RENDER, payload={"clipId": str(uuid.uuid4())}),
    )

    claimed = await store.claim_next(db_session, "w", kinds=[JobKind.CLIP_RENDER])
    assert claimed.id == render.id
    assert await store.claim_next(db_session, "w", kinds=[JobKind.CLIP_RENDER]) is None
    assert await store.claim_next(db_session, "w", kinds=[]) is None


@pytest.mark.asyncio
async def test_attempts_increase_by_one_per_claim(db_session, workspace_id):
    await store.insert_job(db_session, _job(workspace_id, max_attempts=5))

    seen = []
    now = utcnow()
    for _ in range(3):
        job = await store.claim_next(db_session, "w", now=now)
        seen.append(job.attempts)
        await store.fail(db_session, job.id, "w", "boom", 0, now=now)

    assert seen == [1, 2, 3]


@pytest.mark.asyncio
async def test_lost_race_does_not_overwrite_holder(db_session, workspace_id, monkeypatch):
    job = await store.insert_job(db_session, _job(workspace_id))
    await store.claim_next(db_session, "worker-a")

    # every claimer keeps picking a row someone else already took
    async def stale_candidate(db, now, kinds, workspace_id=None):
        return job.id

    monkeypatch.setattr(store, "_select_candidate", stale_candidate)

    assert await store.claim_next(db_session, "worker-b") is None

    current = await store.get_job(db_session, job.id)
    assert current.locked_by == "worker-a"
    assert current.attempts == 1


@pytest.mark.asyncio
async def test_complete_sets_result_and_clears_lease(db_session, workspace_id):
    job = await store.insert_job(db_session, _job(workspace_id))
    await store.claim_next(db_session, "w")

    done = await store.complete(db_session, job.id, "w", {"ok": True})
    await db_session.commit()

    assert done.state == JobState.DONE
    assert done.result == {"ok": True}
    assert done.locked_by is None


@pytest.mark.asyncio
async def test_complete_requires_lease_holder(db_session, workspace_id):
    job = await store.insert_job(db_session, _job(workspace_id))
    await store.claim_next(db_session, "worker-a")

    with pytest.raises(InvalidTransitionError, match="lease held by"):
        await store.complete(db_session, job.id, "worker-b", {"ok": True})

    current = await store.get_job(db_session, job.id)
    assert current.state == JobState.RUNNING
    assert current.locked_by == "worker-a"
    assert current.result is None


@pytest.mark.asyncio
async def test_terminal_job_rejects_transitions(db_session, workspace_id):
    job = await store.insert_job(db_session, _job(workspace_id))
    await store.claim_next(db_session, "w")
    await store.complete(db_session, job.id, "w", {})

    with pytest.raises(InvalidTransitionError, match="state done"):
        await store.complete(db_session, job.id, "w", {})
    with pytest.raises(InvalidTransitionError):
        await store.fail(db_session, job.id, "w", "late failure", 10)

    assert (await store.get_job(db_session, job.id)).state == JobState.DONE


@pytest.mark.asyncio
async def test_complete_unknown_job(db_session):
    with pytest.raises(InvalidTransitionError, match="not found"):
        await store.complete(db_session, uuid.uuid4(), "w", {})


@pytest.mark.asyncio
async def test_fail_requeues_with_backoff(db_session, workspace_id):
    job = await store.insert_job(db_session, _job(workspace_id, max_attempts=3))
    now = utcnow()
    await store.claim_next(db_session, "w", now=now)

    failed = await store.fail(db_session, job.id, "w", "timeout", 20, now=now)

    assert failed.state == JobState.QUEUED
    assert failed.locked_by is None
    assert failed.last_error == "timeout"
    assert failed.run_at == now + timedelta(seconds=20)
    assert await store.claim_next(db_session, "w", now=now + timedelta(seconds=19)) is None


@pytest.mark.asyncio
async def test_fail_at_max_attempts_is_terminal(db_session, workspace_id):
    job = await store.insert_job(db_session, _job(workspace_id, max_attempts=1))
    await store.claim_next(db_session, "w")

    failed = await store.fail(db_session, job.id, "w", "bad input", 10)

    assert failed.state == JobState.ERROR
    assert failed.locked_by is None
    assert failed.last_error == "bad input"
    assert await store.claim_next(db_session, "w", now=utcnow() + timedelta(days=1)) is None


@pytest.mark.asyncio
async def test_heartbeat_only_for_lease_holder(db_session, workspace_id):
    job = await store.insert_job(db_session, _job(workspace_id))
    claimed = await store.claim_next(db_session, "w")
    claimed_at = claimed.updated_at

    later = claimed_at + timedelta(seconds=30)
    assert await store.heartbeat(db_session, job.id, "w", now=later) is True
    assert await store.heartbeat(db_session, job.id, "other", now=later) is False

    stale = await store.find_stale(db_session, claimed_at + timedelta(seconds=10))
    assert stale == []

    await store.complete(db_session, job.id, "w", {})
    assert await store.heartbeat(db_session, job.id, "w") is False


@pytest.mark.asyncio
async def test_list_jobs_is_workspace_scoped(db_session, workspace_id):
    other = uuid.uuid4()
    mine = await store.insert_job(db_session, _job(workspace_id))
    await store.insert_job(db_session, _job(other))

    rows = await store.list_jobs(db_session, workspace_id)
    assert [j.id for j in rows] == [mine.id]
    assert await store.get_job(db_session, mine.id, other) is None
    assert await store.list_jobs(db_session, workspace_id, state=JobState.DONE) == []


@pytest.mark.asyncio
async def test_queue_stats_counts_by_state_and_kind(db_session, workspace_id):
    await store.insert_job(db_session, _job(workspace_id))
    await store.insert_job(db_session, _job(workspace_id))
    await store.insert_job(
        db_session,
        _job(workspace_id, kind=JobKind.CLIP_RENDER, payload={"clipId": str(uuid.uuid4())}),
    )
    await store.claim_next(db_session, "w", kinds=[JobKind.CLIP_RENDER])

    stats = await store.queue_stats(db_session)
    assert stats["queued"] == {"TRANSCRIBE": 2}
    assert stats["running"] == {"CLIP_RENDER": 1}
    assert stats["done"] == {}


def test_connection_errors_surface_as_store_unavailable():
    with pytest.raises(StoreUnavailable, match="connection refused") as info:
        with store.translate_store_errors():
            raise OperationalError("SELECT 1", {}, ConnectionRefusedError("connection refused"))
    assert isinstance(info.value.__cause__, OperationalError)


def test_other_errors_pass_through_store_translation():
    with pytest.raises(InvalidTransitionError):
        with store.translate_store_errors():
            raise InvalidTransitionError(uuid.uuid4(), "cannot complete from state done")


@pytest.mark.asyncio
async def test_claim_filters_by_workspace(db_session, workspace_id):
    other = uuid.uuid4()
    t0 = utcnow() - timedelta(minutes=5)
    # the other workspace's job is older and would win without the filter
    await store.insert_job(db_session, _job(other, created_at=t0))
    mine = await store.insert_job(db_session, _job(workspace_id))

    claimed = await store.claim_next(db_session, "w", workspace_id=workspace_id)
    assert claimed.id == mine.id
    assert await store.claim_next(db_session, "w", workspace_id=str(workspace_id)) is None

    theirs = await store.claim_next(db_session, "w")
    assert theirs.workspace_id == other


@pytest.mark.asyncio
async def test_claim_rejects_malformed_workspace(db_session):
    with pytest.raises(ValidationError):
        await store.claim_next(db_session, "w", workspace_id="acme")
