from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import CheckConstraint, Enum, Index, Integer, String, Text, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, JSONType, TimestampMixin, UTCDateTime, UUIDPrimaryKey, utcnow


class JobState(str, enum.Enum):
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.DONE, JobState.ERROR)


class JobKind(str, enum.Enum):
    TRANSCRIBE = "TRANSCRIBE"
    HIGHLIGHT_DETECT = "HIGHLIGHT_DETECT"
    CLIP_RENDER = "CLIP_RENDER"
    THUMBNAIL_GEN = "THUMBNAIL_GEN"
    PUBLISH_TIKTOK = "PUBLISH_TIKTOK"
    PUBLISH_YOUTUBE = "PUBLISH_YOUTUBE"
    YOUTUBE_DOWNLOAD = "YOUTUBE_DOWNLOAD"
    CLEANUP_STORAGE = "CLEANUP_STORAGE"


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


DEFAULT_PRIORITY = 5
MIN_PRIORITY = 1
MAX_PRIORITY = 9
DEFAULT_MAX_ATTEMPTS = 5


class Job(Base, UUIDPrimaryKey, TimestampMixin):
    __tablename__ = "jobs"
    __table_args__ = (
        Index(
            "ix_jobs_queued_priority",
            "priority",
            "created_at",
            postgresql_where=text("state = 'queued'"),
        ),
        Index("ix_jobs_state_updated_at", "state", "updated_at"),
        Index("ix_jobs_workspace_id", "workspace_id"),
        # running <=> leased
        CheckConstraint(
            "(state = 'running') = (locked_by IS NOT NULL)",
            name="jobs_lease_check",
        ),
    )

    workspace_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    kind: Mapped[JobKind] = mapped_column(
        Enum(JobKind, native_enum=False, length=64, values_callable=_enum_values),
        nullable=False,
    )
    payload: Mapped[dict] = mapped_column(JSONType, default=dict)

    # queued | running | done | error
    state: Mapped[JobState] = mapped_column(
        Enum(JobState, native_enum=False, length=32, values_callable=_enum_values),
        default=JobState.QUEUED,
        nullable=False,
    )
    priority: Mapped[int] = mapped_column(Integer, default=DEFAULT_PRIORITY, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=DEFAULT_MAX_ATTEMPTS, nullable=False)
    run_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

    # lease
    locked_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    locked_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    result: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    def __repr__(self) -> str:
        return f"<Job {self.id} {self.kind} {self.state} attempts={self.attempts}/{self.max_attempts}>"
