"""Pydantic DTOs shared across endpoints."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ExportFormat(str, Enum):
    """Artifact kinds a caller can request."""

    VIDEO = "video"
    IMAGE = "image"

    @property
    def artifact_name(self) -> str:
        return "output.gif" if self is ExportFormat.IMAGE else "output.mp4"

    @property
    def media_type(self) -> str:
        return "image/gif" if self is ExportFormat.IMAGE else "video/mp4"


_FORMAT_ALIASES = {"mp4": ExportFormat.VIDEO, "gif": ExportFormat.IMAGE}


class ExportRequest(BaseModel):
    """Payload clients submit to kick off an export."""

    model_config = ConfigDict(populate_by_name=True)

    format: ExportFormat = Field(default=ExportFormat.VIDEO, description="video (mp4) or image (gif)")
    render_data: str = Field(alias="renderData", description="Opaque render payload placed in the URL fragment")
    wait: int = Field(default=1000, ge=0, description="Pre-roll delay the render target waits (ms)")
    duration: int = Field(default=1000, ge=1, description="Recording window (ms)")
    fps: int = Field(default=60, ge=1, description="Capture frame rate")

    @field_validator("format", mode="before")
    @classmethod
    def _accept_legacy_formats(cls, value: Any) -> Any:
        if isinstance(value, str):
            return _FORMAT_ALIASES.get(value.strip().lower(), value.strip().lower())
        return value


class ExportCreatedResponse(BaseModel):
    """Handle returned once an artifact is ready for download."""

    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(serialization_alias="jobId")
    expires_in: int = Field(serialization_alias="expiresIn", description="Seconds until the artifact is discarded")
    artifact: str = Field(description="Artifact path relative to the job")
    download_url: str = Field(serialization_alias="downloadUrl")
