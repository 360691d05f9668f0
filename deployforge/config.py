"""Process configuration — env-driven via pydantic-settings.

Settings are read once by the CLI (or by the caller embedding deployforge)
and passed explicitly into components.  No component reads this module on
its own.

Examples
--------
Override via environment::

    export DEPLOYFORGE_ENVIRONMENT=production
    export DEPLOYFORGE_LEDGER_PATH=/data/releases.db
    export DEPLOYFORGE_ARTIFACT_BUCKET=my-deploy-artifacts

Or via .env file::

    DEPLOYFORGE_TARGETS_FILE=deploy/targets.yaml
    DEPLOYFORGE_CONFLICT_POLICY=reject
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from deployforge.models.config import PipelineConfig, PollPolicy

# Artifacts at or above this size must go through the artifact store
# before deployment; the function API refuses larger inline payloads.
DEFAULT_INLINE_DEPLOY_LIMIT_BYTES = 50 * 1024 * 1024


class DeployforgeSettings(BaseSettings):
    """Settings with ``DEPLOYFORGE_*`` environment variable overrides."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="DEPLOYFORGE_",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Runtime environment
    environment: str = "development"
    log_level: str = "INFO"
    debug: bool = False

    # Storage paths
    ledger_path: Path = Path(".deployforge/releases.db")
    artifact_store_path: Path = Path(".deployforge/artifacts")
    artifact_bucket: str = ""  # when set, artifacts go to S3 via the cloud CLI
    artifact_bucket_region: str = ""
    artifact_store_role: str = ""  # role assumed for bucket writes; empty uses the ambient identity
    work_dir: Path = Path(".deployforge/work")
    targets_file: Path = Path("deploy/targets.yaml")

    # Policy
    inline_deploy_limit_bytes: int = DEFAULT_INLINE_DEPLOY_LIMIT_BYTES
    audit_retention_days: int = 90
    conflict_policy: Literal["queue", "reject"] = "queue"
    default_timeout_seconds: float = 300.0

    # Polling
    poll_initial_interval: float = 2.0
    poll_max_interval: float = 30.0
    poll_backoff_factor: float = Field(default=2.0, ge=1.0)

    # Vendor CLIs
    aws_cli: str = "aws"
    helm_cli: str = "helm"
    kubectl_cli: str = "kubectl"
    docker_cli: str = "docker"

    # Provenance recorded with every release
    actor: str = ""
    repository: str = ""
    ci_run_id: str = ""
    source_commit: str = ""

    @property
    def is_production(self) -> bool:
        """Whether running in production mode."""
        return self.environment == "production"

    def pipeline_config(self) -> PipelineConfig:
        """Project the settings onto the frozen per-pipeline config."""
        return PipelineConfig(
            ledger_db_path=self.ledger_path,
            artifact_store_path=self.artifact_store_path,
            artifact_bucket=self.artifact_bucket,
            work_dir=self.work_dir,
            inline_deploy_limit_bytes=self.inline_deploy_limit_bytes,
            audit_retention_days=self.audit_retention_days,
            conflict_policy=self.conflict_policy,
            poll=PollPolicy(
                initial_interval=self.poll_initial_interval,
                max_interval=self.poll_max_interval,
                backoff_factor=self.poll_backoff_factor,
            ),
            actor=self.actor,
            repository=self.repository,
            ci_run_id=self.ci_run_id,
        )
