from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import BigInteger, ForeignKey, Integer, String, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, JSONType, UTCDateTime, utcnow


class JobStage(str, enum.Enum):
    ENQUEUED = "enqueued"
    CLAIMED = "claimed"
    RETRY_SCHEDULED = "retry_scheduled"
    DONE = "done"
    ERROR = "error"


class JobEvent(Base):
    """Append-only; rows are never updated or deleted by the application."""

    __tablename__ = "job_events"

    # bigserial on postgres; sqlite only autoincrements INTEGER primary keys
    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    stage: Mapped[str] = mapped_column(String(32), nullable=False)
    detail: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utcnow, server_default=func.now(), nullable=False
    )
