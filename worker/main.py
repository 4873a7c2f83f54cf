# worker/main.py
"""
Background worker: polls the job queue and dispatches to handlers.

Run any number of these side by side; they coordinate only through the
jobs table.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
import platform
import signal
import time
import traceback
import uuid

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.app.config import get_settings
from db.engine import dispose_engine
from db.session import get_session_factory
from jobs import store
from jobs.backoff import jittered
from jobs.errors import InvalidTransitionError, StoreUnavailable, TaskFailure
from jobs.handlers import TaskRegistry, build_default_registry
from jobs.queue import complete_job, dequeue, fail_job
from jobs.reaper import recover_stale_jobs
from models.job import Job

logger = logging.getLogger("worker")


WORKER_ID = f"worker-{platform.node()}-{uuid.uuid4().hex[:8]}"


async def _keep_lease(
    session_factory: async_sessionmaker[AsyncSession],
    job: Job,
    worker_id: str,
    interval: float,
) -> None:
    """Refresh the lease clock until cancelled or the lease is lost."""
    while True:
        await asyncio.sleep(interval)
        try:
            async with session_factory() as db:
                with store.translate_store_errors():
                    alive = await store.heartbeat(db, job.id, worker_id)
                    await db.commit()
        except StoreUnavailable as exc:
            logger.warning("Heartbeat for job %s failed: %s", job.id, exc)
            continue
        if not alive:
            logger.warning("Worker %s lost lease on job %s", worker_id, job.id)
            return


async def _report_failure(
    session_factory: async_sessionmaker[AsyncSession],
    job: Job,
    error: str,
) -> None:
    async with session_factory() as db:
        try:
            with store.translate_store_errors():
                await fail_job(db, job, error)
                await db.commit()
        except InvalidTransitionError as exc:
            await db.rollback()
            logger.warning("Dropped failure report: %s", exc)


async def _report_success(
    session_factory: async_sessionmaker[AsyncSession],
    job: Job,
    worker_id: str,
    result: dict | None,
) -> None:
    async with session_factory() as db:
        try:
            with store.translate_store_errors():
                await complete_job(db, job.id, worker_id, result)
                await db.commit()
        except InvalidTransitionError as exc:
            await db.rollback()
            logger.warning("Dropped completion (lease lost): %s", exc)


async def process_next(
    registry: TaskRegistry,
    *,
    worker_id: str = WORKER_ID,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    heartbeat_interval: float | None = None,
) -> bool:
    """
    Claim one job, run it, report the outcome.
    Returns False when there was nothing to claim.
    """
    settings = get_settings()
    session_factory = session_factory or get_session_factory()
    if heartbeat_interval is None:
        heartbeat_interval = settings.worker_heartbeat_interval

    # claim and commit straight away: no transaction stays open while the
    # handler runs
    async with session_factory() as db:
        with store.translate_store_errors():
            job = await dequeue(db, worker_id, kinds=registry.kinds)
            await db.commit()

    if job is None:
        return False

    lease_keeper = None
    if heartbeat_interval > 0:
        lease_keeper = asyncio.create_task(
            _keep_lease(session_factory, job, worker_id, heartbeat_interval)
        )

    try:
        try:
            result = await registry.execute(job.kind, job.payload)
        finally:
            # stop heartbeating before the report clears the lease
            if lease_keeper is not None:
                lease_keeper.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await lease_keeper
    except TaskFailure as exc:
        cause = exc.__cause__
        if cause is not None:
            tb = "".join(traceback.format_exception(type(cause), cause, cause.__traceback__))
            logger.error("Job %s [%s] failed: %s\n%s", job.id, job.kind.value, exc, tb)
        else:
            logger.error("Job %s [%s] failed: %s", job.id, job.kind.value, exc)
        await _report_failure(session_factory, job, str(exc))
        return True

    await _report_success(session_factory, job, worker_id, result)
    return True


async def reap_once(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> int:
    settings = get_settings()
    session_factory = session_factory or get_session_factory()
    async with session_factory() as db:
        with store.translate_store_errors():
            recovered = await recover_stale_jobs(db, settings.job_lease_timeout_seconds)
            await db.commit()
    return recovered


async def run_loop(
    registry: TaskRegistry | None = None,
    *,
    worker_id: str = WORKER_ID,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    stop: asyncio.Event | None = None,
) -> None:
    settings = get_settings()
    registry = registry or build_default_registry()
    stop = stop or asyncio.Event()

    logger.info(
        "Worker %s starting (poll=%.1fs, kinds=%s)",
        worker_id,
        settings.worker_poll_interval,
        ",".join(k.value for k in registry.kinds),
    )

    interval = settings.worker_poll_interval
    last_reap = float("-inf")

    while not stop.is_set():
        processed = False
        try:
            if time.monotonic() - last_reap >= settings.worker_reaper_interval:
                await reap_once(session_factory)
                last_reap = time.monotonic()

            processed = await process_next(
                registry,
                worker_id=worker_id,
                session_factory=session_factory,
            )
            interval = settings.worker_poll_interval

        except StoreUnavailable as exc:
            interval = min(interval * 2, settings.worker_max_poll_interval)
            logger.warning("Job store unavailable, backing off %.1fs: %s", interval, exc)

        except Exception as exc:
            logger.exception("Worker loop error: %s", exc)

        if processed:
            continue  # drain the queue before sleeping

        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(stop.wait(), timeout=jittered(interval))

    logger.info("Worker %s stopped", worker_id)


async def _serve() -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    try:
        await run_loop(stop=stop)
    finally:
        await dispose_engine()


def main() -> None:
    logging.basicConfig(
        level=get_settings().log_level.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    asyncio.run(_serve())


if __name__ == "__main__":
    main()
