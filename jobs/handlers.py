# jobs/handlers.py
"""
Task dispatch: one async handler per job kind.

Handlers receive the stored payload and return a JSON-able result.
Jobs are delivered at least once, so handlers must be idempotent.
"""
from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

from jobs.errors import TaskFailure, ValidationError
from jobs.store import coerce_kind
from models.job import JobKind

logger = logging.getLogger(__name__)

Handler = Callable[[dict], Awaitable[dict | None]]


class TaskRegistry:
    def __init__(self) -> None:
        self._handlers: dict[JobKind, Handler] = {}

    def register(self, kind: JobKind | str) -> Callable[[Handler], Handler]:
        """Decorator; unknown kinds fail here, not when a job shows up."""
        job_kind = coerce_kind(kind)

        def decorator(handler: Handler) -> Handler:
            self.add(job_kind, handler)
            return handler

        return decorator

    def add(self, kind: JobKind | str, handler: Handler) -> None:
        job_kind = coerce_kind(kind)
        if not callable(handler):
            raise ValidationError(f"Handler for {job_kind.value} is not callable")
        if job_kind in self._handlers:
            logger.info("Replacing handler for %s", job_kind.value)
        self._handlers[job_kind] = handler

    @property
    def kinds(self) -> list[JobKind]:
        return list(self._handlers)

    def __contains__(self, kind: object) -> bool:
        return kind in self._handlers

    async def execute(self, kind: JobKind | str, payload: dict) -> dict | None:
        job_kind = coerce_kind(kind)
        handler = self._handlers.get(job_kind)
        if handler is None:
            raise TaskFailure(job_kind.value, f"No handler registered for {job_kind.value}")

        try:
            return await handler(payload)
        except TaskFailure:
            raise
        except Exception as exc:
            raise TaskFailure(job_kind.value, f"{type(exc).__name__}: {exc}") from exc


async def dry_run(payload: dict) -> dict:
    """Acknowledges the job without doing work. Stands in for unwired pipelines."""
    logger.info("dry-run handler received payload keys=%s", sorted(payload))
    return {"ok": True, "dry_run": True}


def build_default_registry() -> TaskRegistry:
    """
    Registry with a dry-run handler for every kind.
    Deployments register the real pipelines over these.
    """
    registry = TaskRegistry()
    for kind in JobKind:
        registry.add(kind, dry_run)
    return registry
