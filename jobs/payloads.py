# jobs/payloads.py
"""
Per-kind payload schemas, checked at enqueue time so malformed work is
rejected before it ever reaches a worker.
"""
from __future__ import annotations

import uuid
from typing import Literal

import pydantic
from pydantic import BaseModel, ConfigDict, Field

from jobs.errors import ValidationError
from models.job import JobKind


class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class TranscribePayload(_Payload):
    project_id: uuid.UUID = Field(alias="projectId")
    source_ext: Literal["mp4", "mov", "mkv", "webm"] | None = Field(default=None, alias="sourceExt")


class HighlightDetectPayload(_Payload):
    project_id: uuid.UUID = Field(alias="projectId")
    max_clips: int = Field(default=8, ge=1, le=20, alias="maxClips")
    min_gap_sec: float = Field(default=2, ge=0, le=10, alias="minGapSec")
    keywords: list[str] = Field(
        default_factory=lambda: ["wow", "insane", "tip", "secret", "how to", "trick"]
    )


class ClipRenderPayload(_Payload):
    clip_id: uuid.UUID = Field(alias="clipId")


class ThumbnailGenPayload(_Payload):
    clip_id: uuid.UUID = Field(alias="clipId")
    at_sec: float = Field(default=1, ge=0, alias="atSec")


class PublishTikTokPayload(_Payload):
    clip_id: uuid.UUID = Field(alias="clipId")
    connected_account_id: uuid.UUID | None = Field(default=None, alias="connectedAccountId")
    caption: str | None = Field(default=None, max_length=2200)
    privacy_level: Literal["PUBLIC_TO_EVERYONE", "MUTUAL_FOLLOW_FRIEND", "SELF_ONLY"] | None = Field(
        default=None, alias="privacyLevel"
    )


class PublishYouTubePayload(_Payload):
    clip_id: uuid.UUID = Field(alias="clipId")
    title: str | None = Field(default=None, max_length=120)
    description: str | None = Field(default=None, max_length=5000)
    tags: list[str] | None = None
    visibility: Literal["public", "unlisted", "private"] | None = None


class YouTubeDownloadPayload(_Payload):
    project_id: uuid.UUID = Field(alias="projectId")
    youtube_url: pydantic.HttpUrl = Field(alias="youtubeUrl")


class CleanupStoragePayload(_Payload):
    workspace_id: uuid.UUID | None = Field(default=None, alias="workspaceId")
    project_id: uuid.UUID | None = Field(default=None, alias="projectId")
    retention_days: int | None = Field(default=None, ge=1, alias="retentionDays")


PAYLOAD_SCHEMAS: dict[JobKind, type[_Payload]] = {
    JobKind.TRANSCRIBE: TranscribePayload,
    JobKind.HIGHLIGHT_DETECT: HighlightDetectPayload,
    JobKind.CLIP_RENDER: ClipRenderPayload,
    JobKind.THUMBNAIL_GEN: ThumbnailGenPayload,
    JobKind.PUBLISH_TIKTOK: PublishTikTokPayload,
    JobKind.PUBLISH_YOUTUBE: PublishYouTubePayload,
    JobKind.YOUTUBE_DOWNLOAD: YouTubeDownloadPayload,
    JobKind.CLEANUP_STORAGE: CleanupStoragePayload,
}


def validate_payload(kind: JobKind, payload: dict | None) -> dict:
    """
    Validate `payload` against the schema for `kind`.
    Returns the payload as stored (original keys, nothing added).
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError(f"{kind.value} payload must be an object")

    schema = PAYLOAD_SCHEMAS[kind]
    try:
        schema.model_validate(payload)
    except pydantic.ValidationError as exc:
        raise ValidationError(f"Invalid {kind.value} payload: {exc}") from exc
    return payload
