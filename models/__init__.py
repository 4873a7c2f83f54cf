from models.base import Base
from models.job import Job, JobKind, JobState
from models.job_event import JobEvent, JobStage
from models.idempotency_key import IdempotencyKey

__all__ = [
    "Base",
    "Job",
    "JobKind",
    "JobState",
    "JobEvent",
    "JobStage",
    "IdempotencyKey",
]
