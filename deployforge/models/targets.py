"""Deployment target models — a tagged variant over target kinds.

A ``DeploymentTarget`` carries exactly one coordinate block matching its
``kind``.  Validation rejects a target whose coordinates are missing or
belong to the other kind, so an executor never acts on a partially
populated target.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator


class TargetKind(str, Enum):
    """Kinds of deployment destinations."""

    FUNCTION = "function"
    CLUSTER_RELEASE = "cluster-release"


class FunctionCoordinates(BaseModel):
    """Where a serverless function deploy lands."""

    model_config = ConfigDict(frozen=True)

    function_name: str = Field(min_length=1)
    alias: str = ""


class ClusterReleaseCoordinates(BaseModel):
    """Where a chart-based cluster release lands."""

    model_config = ConfigDict(frozen=True)

    cluster_name: str = Field(min_length=1)
    namespace: str = Field(min_length=1)
    release_name: str = Field(min_length=1)
    chart_ref: str = Field(min_length=1)  # local path or repo/chart
    chart_version: str = ""


class DeploymentTarget(BaseModel):
    """A resolved deployment destination for one (service, environment)."""

    model_config = ConfigDict(frozen=True)

    kind: TargetKind
    service: str = Field(min_length=1)
    environment: str = Field(min_length=1)
    region: str = Field(min_length=1)
    role: str = Field(min_length=1)  # federated role reference
    function: FunctionCoordinates | None = None
    cluster_release: ClusterReleaseCoordinates | None = None

    @model_validator(mode="after")
    def _coordinates_match_kind(self) -> DeploymentTarget:
        if self.kind == TargetKind.FUNCTION:
            if self.function is None:
                raise ValueError("function target requires function coordinates")
            if self.cluster_release is not None:
                raise ValueError("function target must not carry cluster coordinates")
        else:
            if self.cluster_release is None:
                raise ValueError(
                    "cluster-release target requires cluster coordinates"
                )
            if self.function is not None:
                raise ValueError(
                    "cluster-release target must not carry function coordinates"
                )
        return self

    @property
    def key(self) -> str:
        """Stable identity used for locking and ledger history."""
        return f"{self.service}/{self.environment}"

    def describe(self) -> str:
        if self.function is not None:
            alias = f":{self.function.alias}" if self.function.alias else ""
            return f"function {self.function.function_name}{alias} ({self.region})"
        cr = self.cluster_release
        assert cr is not None
        return (
            f"release {cr.release_name} in {cr.cluster_name}/{cr.namespace} "
            f"({self.region})"
        )
