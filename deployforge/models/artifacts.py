"""Artifact models — immutable packaged units and their stored references."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field


class OutputFormat(str, Enum):
    """Deployable unit produced by the packager."""

    ARCHIVE = "archive"
    IMAGE = "image"


class Artifact(BaseModel):
    """A packaged, immutable deployable unit.

    ``content_hash`` is ``sha256:<hex>`` of the archive bytes, or the image
    digest for image output.  ``local_path`` points at the ephemeral copy
    written by the packager.
    """

    model_config = ConfigDict(frozen=True)

    content_hash: str
    size_bytes: int
    output_format: OutputFormat = OutputFormat.ARCHIVE
    runtime: str = ""
    source_commit: str = ""
    local_path: Path | None = None
    image_ref: str = ""  # repository:tag, image output only
    file_count: int = 0
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @property
    def digest(self) -> str:
        return self.content_hash.removeprefix("sha256:")


class StoredArtifactRef(BaseModel):
    """Reference returned by the artifact store for a persisted artifact."""

    model_config = ConfigDict(frozen=True)

    reference: str  # "<scheme>://<location>/<key>"
    destination_key: str
    object_key: str
    content_hash: str
    size_bytes: int
    bucket: str = ""  # set for object storage that addresses by bucket


class ArtifactMetadata(BaseModel):
    """Audit record persisted alongside each deployed artifact."""

    model_config = ConfigDict(frozen=True)

    content_refs: list[str]
    version: str = ""
    source_commit: str = ""
    repository: str = ""
    ci_run_id: str = ""
    actor: str = ""
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    retention_days: int = 90

    @property
    def expires_at(self) -> datetime:
        return self.timestamp + timedelta(days=self.retention_days)
