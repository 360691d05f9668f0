"""Deployment request/result models and executor state machines.

Each target kind has its own state enum and transition table.  Executors
walk these tables through ``StateTracker``; any transition not listed here
is rejected.  ``Failed`` is reachable from every non-terminal state.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from deployforge.errors import ExitCode
from deployforge.models.artifacts import Artifact, StoredArtifactRef
from deployforge.models.targets import DeploymentTarget, TargetKind


# ---------------------------------------------------------------------------
# State machines
# ---------------------------------------------------------------------------


class FunctionState(str, Enum):
    PENDING = "pending"
    CODE_UPDATING = "code_updating"
    CONFIG_UPDATING = "config_updating"
    VERSION_PUBLISHING = "version_publishing"
    ALIAS_UPDATING = "alias_updating"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ClusterReleaseState(str, Enum):
    PENDING = "pending"
    VALUES_RESOLVED = "values_resolved"
    DIFF_PREVIEWED = "diff_previewed"
    UPGRADING = "upgrading"
    WAITING_FOR_READINESS = "waiting_for_readiness"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


FUNCTION_TRANSITIONS: dict[FunctionState, set[FunctionState]] = {
    FunctionState.PENDING: {FunctionState.CODE_UPDATING, FunctionState.FAILED},
    FunctionState.CODE_UPDATING: {
        FunctionState.CONFIG_UPDATING,
        FunctionState.VERSION_PUBLISHING,
        FunctionState.SUCCEEDED,
        FunctionState.FAILED,
    },
    FunctionState.CONFIG_UPDATING: {
        FunctionState.VERSION_PUBLISHING,
        FunctionState.SUCCEEDED,
        FunctionState.FAILED,
    },
    FunctionState.VERSION_PUBLISHING: {
        FunctionState.ALIAS_UPDATING,
        FunctionState.SUCCEEDED,
        FunctionState.FAILED,
    },
    FunctionState.ALIAS_UPDATING: {FunctionState.SUCCEEDED, FunctionState.FAILED},
    FunctionState.SUCCEEDED: set(),  # terminal
    FunctionState.FAILED: set(),  # terminal
}

CLUSTER_RELEASE_TRANSITIONS: dict[ClusterReleaseState, set[ClusterReleaseState]] = {
    ClusterReleaseState.PENDING: {
        ClusterReleaseState.VALUES_RESOLVED,
        ClusterReleaseState.FAILED,
    },
    ClusterReleaseState.VALUES_RESOLVED: {
        ClusterReleaseState.DIFF_PREVIEWED,
        ClusterReleaseState.UPGRADING,
        ClusterReleaseState.FAILED,
    },
    ClusterReleaseState.DIFF_PREVIEWED: {
        ClusterReleaseState.UPGRADING,
        ClusterReleaseState.FAILED,
    },
    ClusterReleaseState.UPGRADING: {
        ClusterReleaseState.WAITING_FOR_READINESS,
        ClusterReleaseState.SUCCEEDED,
        ClusterReleaseState.ROLLING_BACK,
        ClusterReleaseState.FAILED,
    },
    ClusterReleaseState.WAITING_FOR_READINESS: {
        ClusterReleaseState.SUCCEEDED,
        ClusterReleaseState.ROLLING_BACK,
        ClusterReleaseState.FAILED,
    },
    ClusterReleaseState.ROLLING_BACK: {
        ClusterReleaseState.ROLLED_BACK,
        ClusterReleaseState.FAILED,
    },
    ClusterReleaseState.ROLLED_BACK: set(),  # terminal
    ClusterReleaseState.SUCCEEDED: set(),  # terminal
    ClusterReleaseState.FAILED: set(),  # terminal
}

# States in which a cancellation request is honoured.  Everything else is
# either a quick local step or an in-flight mutation against the target.
CANCELLABLE_STATES: frozenset[str] = frozenset({
    FunctionState.PENDING.value,
    ClusterReleaseState.PENDING.value,
    ClusterReleaseState.WAITING_FOR_READINESS.value,
})


# ---------------------------------------------------------------------------
# Kind-specific settings
# ---------------------------------------------------------------------------


class FunctionSettings(BaseModel):
    """Deploy inputs for a function target."""

    model_config = ConfigDict(frozen=True)

    runtime: str = ""
    memory_size: int | None = Field(default=None, ge=128, le=10240)
    timeout_seconds: int | None = Field(default=None, ge=1, le=900)
    layers: list[str] = []
    architecture: str = ""  # "x86_64" or "arm64"; empty leaves it unchanged
    publish_version: bool = False
    update_alias: str = ""

    @model_validator(mode="after")
    def _alias_needs_version(self) -> FunctionSettings:
        if self.update_alias and not self.publish_version:
            raise ValueError("update_alias requires publish_version")
        if self.architecture not in ("", "x86_64", "arm64"):
            raise ValueError(f"unsupported architecture: {self.architecture!r}")
        return self


class ClusterReleaseSettings(BaseModel):
    """Deploy inputs for a cluster-release target."""

    model_config = ConfigDict(frozen=True)

    wait: bool = True
    dry_run: bool = False
    diff_preview: bool = False
    create_namespace: bool = True


# ---------------------------------------------------------------------------
# Request / result
# ---------------------------------------------------------------------------


class DeploymentRequest(BaseModel):
    """A single, immutable deploy attempt.

    Configuration tiers, highest precedence first: ``overrides`` (per-key,
    dotted keys allowed), ``inline_values``, ``values_file``, then
    ``defaults`` (the target's stored defaults).  For cluster releases the
    chart's built-in defaults sit below all four.
    """

    model_config = ConfigDict(frozen=True)

    request_id: str = Field(default_factory=lambda: f"dr-{uuid.uuid4().hex[:12]}")
    target: DeploymentTarget
    artifact: Artifact
    stored_ref: StoredArtifactRef | None = None
    overrides: dict[str, Any] = {}
    inline_values: dict[str, Any] = {}
    values_file: Path | None = None
    defaults: dict[str, Any] = {}
    timeout_seconds: float = Field(default=300.0, gt=0)
    atomic: bool = True
    function: FunctionSettings | None = None
    cluster_release: ClusterReleaseSettings | None = None
    actor: str = ""
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @model_validator(mode="after")
    def _settings_match_kind(self) -> DeploymentRequest:
        if self.target.kind == TargetKind.FUNCTION and self.cluster_release is not None:
            raise ValueError("function target cannot take cluster-release settings")
        if self.target.kind == TargetKind.CLUSTER_RELEASE and self.function is not None:
            raise ValueError("cluster-release target cannot take function settings")
        return self

    @property
    def function_settings(self) -> FunctionSettings:
        return self.function or FunctionSettings()

    @property
    def cluster_settings(self) -> ClusterReleaseSettings:
        return self.cluster_release or ClusterReleaseSettings()


class DeploymentStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


_EXIT_CODES_BY_KIND: dict[str, ExitCode] = {
    "deploy_timed_out": ExitCode.DEPLOY_TIMED_OUT,
    "authorization_denied": ExitCode.AUTHORIZATION_DENIED,
    "store_unavailable": ExitCode.STORE_UNAVAILABLE,
    "verification_failed": ExitCode.VERIFICATION_FAILED,
}


class DeploymentResult(BaseModel):
    """Outcome of a ``DeploymentRequest``.  Never mutated after creation."""

    model_config = ConfigDict(frozen=True)

    request_id: str
    target_key: str
    kind: TargetKind
    status: DeploymentStatus
    final_state: str
    version: int | None = None  # running version after this attempt
    previous_version: int | None = None  # running version before this attempt
    attempted_version: int | None = None  # set when a rollback discarded it
    error: str | None = None
    error_kind: str | None = None
    failed_state: str | None = None
    transitions: list[str] = []
    deployed_by_reference: bool = False
    values_hash: str = ""
    diff: str = ""
    started_at: datetime
    finished_at: datetime
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status == DeploymentStatus.SUCCEEDED

    @property
    def exit_code(self) -> ExitCode:
        if self.status == DeploymentStatus.SUCCEEDED:
            return ExitCode.SUCCEEDED
        if self.status == DeploymentStatus.ROLLED_BACK:
            return ExitCode.DEPLOY_ROLLED_BACK
        return _EXIT_CODES_BY_KIND.get(self.error_kind or "", ExitCode.DEPLOY_FAILED)
