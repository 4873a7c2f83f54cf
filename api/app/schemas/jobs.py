# api/app/schemas/jobs.py
from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel, Field

from models.job import JobKind, JobState


class EnqueueRequest(BaseModel):
    kind: str
    payload: dict = Field(default_factory=dict)
    priority: int | None = None
    run_at: datetime | None = Field(default=None, alias="runAt")
    max_attempts: int | None = Field(default=None, alias="maxAttempts", ge=1)
    dedupe_key: str | None = Field(default=None, alias="dedupeKey", max_length=256)

    class Config:
        populate_by_name = True


class EnqueueResponse(BaseModel):
    ok: bool
    job_id: uuid.UUID | None = Field(default=None, serialization_alias="jobId")
    error: str | None = None


class JobDetail(BaseModel):
    id: uuid.UUID
    workspace_id: uuid.UUID
    kind: JobKind
    state: JobState
    payload: dict
    priority: int
    attempts: int
    max_attempts: int
    run_at: datetime
    locked_by: str | None = None
    last_error: str | None = None
    result: dict | None = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class JobEventDetail(BaseModel):
    id: int
    job_id: uuid.UUID
    stage: str
    detail: dict | None = None
    created_at: datetime

    class Config:
        from_attributes = True
