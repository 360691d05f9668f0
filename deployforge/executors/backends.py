"""Protocols for the external collaborators the executors drive.

Any object with the right methods satisfies these; the AWS CLI and Helm
implementations live in ``aws_cli`` and ``helm_cli``, and tests supply
in-memory fakes.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict

from deployforge.models.deployments import FunctionSettings
from deployforge.models.targets import DeploymentTarget


class Credentials(BaseModel):
    """Short-lived, federation-issued credentials for one role."""

    model_config = ConfigDict(frozen=True)

    access_key_id: str
    secret_access_key: str
    session_token: str
    expiration: datetime | None = None

    def as_env(self) -> dict[str, str]:
        return {
            "AWS_ACCESS_KEY_ID": self.access_key_id,
            "AWS_SECRET_ACCESS_KEY": self.secret_access_key,
            "AWS_SESSION_TOKEN": self.session_token,
        }


class InvokeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    status_code: int
    function_error: str = ""
    body: str = ""


class ReadinessStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    ready: bool
    detail: str = ""


@runtime_checkable
class CredentialProvider(Protocol):
    def credentials_for(self, role: str, region: str) -> Credentials:
        """Return credentials scoped to *role*; raises AuthorizationDeniedError."""
        ...


@runtime_checkable
class FunctionBackend(Protocol):
    """Serverless function API."""

    def update_code(
        self,
        target: DeploymentTarget,
        *,
        zip_bytes: bytes | None = None,
        s3_bucket: str = "",
        s3_key: str = "",
        image_uri: str = "",
        architecture: str = "",
    ) -> None:
        """Replace the function code and wait until the update settles."""
        ...

    def update_configuration(
        self,
        target: DeploymentTarget,
        settings: FunctionSettings,
        environment: dict[str, str],
    ) -> None:
        ...

    def publish_version(self, target: DeploymentTarget, description: str = "") -> int:
        ...

    def get_alias_version(self, target: DeploymentTarget, alias: str) -> int | None:
        """Version the alias points at, or None if the alias does not exist."""
        ...

    def update_alias(self, target: DeploymentTarget, alias: str, version: int) -> None:
        """Point *alias* at *version*, creating the alias if needed."""
        ...

    def invoke(self, target: DeploymentTarget, payload: dict[str, Any]) -> InvokeResponse:
        ...


@runtime_checkable
class ClusterBackend(Protocol):
    """Chart manager plus cluster API."""

    def ensure_namespace(self, target: DeploymentTarget) -> None:
        """Create the namespace; already existing is not an error."""
        ...

    def chart_defaults(self, target: DeploymentTarget) -> dict[str, Any]:
        ...

    def current_revision(self, target: DeploymentTarget) -> int | None:
        ...

    def diff(self, target: DeploymentTarget, values: dict[str, Any]) -> str:
        ...

    def upgrade(
        self,
        target: DeploymentTarget,
        values: dict[str, Any],
        *,
        dry_run: bool = False,
        timeout_seconds: float = 300.0,
    ) -> int:
        """Install or upgrade the release; returns the new revision."""
        ...

    def readiness(self, target: DeploymentTarget) -> ReadinessStatus:
        ...

    def rollback(
        self,
        target: DeploymentTarget,
        revision: int | None,
        *,
        timeout_seconds: float = 300.0,
    ) -> None:
        """Revert to *revision*; ``None`` means there was no prior release."""
        ...
