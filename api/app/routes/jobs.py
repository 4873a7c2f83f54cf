# api/app/routes/jobs.py
from __future__ import annotations

import logging
import uuid

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from api.app.dependencies import get_session, get_workspace_id
from api.app.schemas.jobs import EnqueueRequest, EnqueueResponse, JobDetail, JobEventDetail
from jobs import events, store
from jobs.errors import ValidationError
from jobs.queue import enqueue
from models.job import JobKind, JobState

logger = logging.getLogger(__name__)

router = APIRouter(tags=["jobs"])


def compose_dedupe_key(idempotency_key: str | None, body_key: str | None) -> str | None:
    """Header and body keys scope each other when both are sent."""
    if idempotency_key and body_key:
        return f"{idempotency_key}:{body_key}"
    return idempotency_key or body_key


@router.post("/jobs", response_model=EnqueueResponse, response_model_by_alias=True)
async def enqueue_job(
    body: EnqueueRequest,
    workspace_id: uuid.UUID = Depends(get_workspace_id),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    db: AsyncSession = Depends(get_session),
):
    """Enqueue a job. Outcomes are observed later through GET /jobs/{id}."""
    try:
        job_id = await enqueue(
            db,
            workspace_id,
            body.kind,
            body.payload,
            priority=body.priority,
            run_at=body.run_at,
            max_attempts=body.max_attempts,
            dedupe_key=compose_dedupe_key(idempotency_key, body.dedupe_key),
        )
    except ValidationError as exc:
        logger.info("Rejected enqueue for workspace %s: %s", workspace_id, exc)
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"ok": False, "error": str(exc)},
        )

    return EnqueueResponse(ok=True, job_id=job_id)


@router.get("/jobs", response_model=list[JobDetail])
async def search_jobs(
    state: JobState | None = Query(default=None),
    kind: JobKind | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    workspace_id: uuid.UUID = Depends(get_workspace_id),
    db: AsyncSession = Depends(get_session),
):
    rows = await store.list_jobs(db, workspace_id, state=state, kind=kind, limit=limit)
    return [JobDetail.model_validate(job) for job in rows]


@router.get("/jobs/{job_id}", response_model=JobDetail)
async def get_job(
    job_id: uuid.UUID,
    workspace_id: uuid.UUID = Depends(get_workspace_id),
    db: AsyncSession = Depends(get_session),
):
    job = await store.get_job(db, job_id, workspace_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return JobDetail.model_validate(job)


@router.get("/jobs/{job_id}/events", response_model=list[JobEventDetail])
async def get_job_events(
    job_id: uuid.UUID,
    workspace_id: uuid.UUID = Depends(get_workspace_id),
    db: AsyncSession = Depends(get_session),
):
    job = await store.get_job(db, job_id, workspace_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return [JobEventDetail.model_validate(e) for e in await events.list_events(db, job_id)]
