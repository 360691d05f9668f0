"""Pipeline configuration models."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class PollPolicy(BaseModel):
    """Poll-with-backoff parameters for readiness and verification waits."""

    model_config = ConfigDict(frozen=True)

    initial_interval: float = Field(default=2.0, gt=0)
    max_interval: float = Field(default=30.0, gt=0)
    backoff_factor: float = Field(default=2.0, ge=1.0)


class PipelineConfig(BaseModel):
    """Explicit configuration handed to ``DeploymentPipeline``.

    Built from ``DeployforgeSettings.pipeline_config()`` by the CLI, or
    constructed directly by embedding code and tests.
    """

    model_config = ConfigDict(frozen=True)

    ledger_db_path: Path = Path(".deployforge/releases.db")
    artifact_store_path: Path = Path(".deployforge/artifacts")
    artifact_bucket: str = ""
    work_dir: Path = Path(".deployforge/work")
    inline_deploy_limit_bytes: int = 50 * 1024 * 1024
    audit_retention_days: int = 90
    conflict_policy: Literal["queue", "reject"] = "queue"
    poll: PollPolicy = PollPolicy()
    rollback_on_verification_failure: bool = True
    actor: str = ""
    repository: str = ""
    ci_run_id: str = ""
