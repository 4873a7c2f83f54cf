"""
Error taxonomy for the job queue.

ValidationError and InvalidTransitionError are never retried.
ClaimConflict stays inside the store; a losing claimer just sees "no job".
TaskFailure is routed through the retry/backoff policy.
StoreUnavailable makes the worker back off its polling.
"""
from __future__ import annotations

import uuid


class JobQueueError(Exception):
    """Base class for job queue errors."""


class ValidationError(JobQueueError):
    """Malformed job definition (unknown kind, missing workspace, bad payload)."""


class ClaimConflict(JobQueueError):
    """Another worker took the candidate row between select and update."""

    def __init__(self, job_id: uuid.UUID):
        self.job_id = job_id
        super().__init__(f"Job {job_id} was claimed by another worker")


class TaskFailure(JobQueueError):
    """A task handler raised or reported failure."""

    def __init__(self, kind: str, message: str):
        self.kind = kind
        super().__init__(message)


class InvalidTransitionError(JobQueueError):
    """Requested state transition is not allowed from the job's current state."""

    def __init__(self, job_id: uuid.UUID, message: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id}: {message}")


class StoreUnavailable(JobQueueError):
    """The job store could not be reached."""
