"""Release Ledger record model (append-only, hash-chained per target).

A ``ReleaseRecord`` combines a deploy request, its result, and the actor
that triggered it.  Records are never updated or deleted; a newer record
for the same target supersedes older ones.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field

from deployforge.models.deployments import (
    DeploymentRequest,
    DeploymentResult,
    DeploymentStatus,
)
from deployforge.models.targets import TargetKind


class ReleaseRecord(BaseModel):
    """A single entry in the Release Ledger."""

    model_config = ConfigDict(frozen=True)

    record_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    target_key: str
    kind: TargetKind
    request_id: str
    status: DeploymentStatus
    final_state: str
    version: int | None = None
    previous_version: int | None = None
    attempted_version: int | None = None
    artifact_hash: str = ""
    stored_reference: str = ""
    values_hash: str = ""
    error: str | None = None
    error_kind: str | None = None
    actor: str = ""
    duration_seconds: float = 0.0
    timestamp_utc: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    previous_record_hash: str = ""  # record_hash of the prior record for this target
    record_hash: str = ""  # computed on append, seals this record

    @classmethod
    def from_deployment(
        cls,
        request: DeploymentRequest,
        result: DeploymentResult,
        *,
        actor: str = "",
    ) -> ReleaseRecord:
        return cls(
            target_key=request.target.key,
            kind=request.target.kind,
            request_id=request.request_id,
            status=result.status,
            final_state=result.final_state,
            version=result.version,
            previous_version=result.previous_version,
            attempted_version=result.attempted_version,
            artifact_hash=request.artifact.content_hash,
            stored_reference=request.stored_ref.reference if request.stored_ref else "",
            values_hash=result.values_hash,
            error=result.error,
            error_kind=result.error_kind,
            actor=actor or request.actor,
            duration_seconds=result.duration_seconds,
            timestamp_utc=result.finished_at,
        )
