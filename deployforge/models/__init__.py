"""Deployforge data models — all Pydantic v2, all frozen (immutable)."""

from deployforge.models.artifacts import (
    Artifact,
    ArtifactMetadata,
    OutputFormat,
    StoredArtifactRef,
)
from deployforge.models.config import PipelineConfig, PollPolicy
from deployforge.models.deployments import (
    CANCELLABLE_STATES,
    CLUSTER_RELEASE_TRANSITIONS,
    FUNCTION_TRANSITIONS,
    ClusterReleaseSettings,
    ClusterReleaseState,
    DeploymentRequest,
    DeploymentResult,
    DeploymentStatus,
    FunctionSettings,
    FunctionState,
)
from deployforge.models.ledger import ReleaseRecord
from deployforge.models.targets import (
    ClusterReleaseCoordinates,
    DeploymentTarget,
    FunctionCoordinates,
    TargetKind,
)

__all__ = [
    # artifacts
    "Artifact",
    "ArtifactMetadata",
    "OutputFormat",
    "StoredArtifactRef",
    # config
    "PipelineConfig",
    "PollPolicy",
    # targets
    "TargetKind",
    "FunctionCoordinates",
    "ClusterReleaseCoordinates",
    "DeploymentTarget",
    # deployments
    "FunctionState",
    "ClusterReleaseState",
    "FUNCTION_TRANSITIONS",
    "CLUSTER_RELEASE_TRANSITIONS",
    "CANCELLABLE_STATES",
    "FunctionSettings",
    "ClusterReleaseSettings",
    "DeploymentRequest",
    "DeploymentStatus",
    "DeploymentResult",
    # ledger
    "ReleaseRecord",
]
