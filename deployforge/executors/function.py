"""Function-kind executor.

    Pending -> CodeUpdating -> [ConfigUpdating] -> [VersionPublishing]
            -> [AliasUpdating] -> Succeeded

``Failed`` is reachable from every non-terminal state.  There is no
rollback state: the alias only moves after every earlier step succeeded,
so on any failure it still points at the last good version.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import yaml

from deployforge.core.values import load_values_file, resolve_values
from deployforge.errors import AuthorizationDeniedError, DeployFailedError, DeployforgeError
from deployforge.executors.backends import FunctionBackend
from deployforge.executors.base import (
    BaseExecutor,
    DeploymentCancelled,
    DeploymentControl,
    StateTracker,
)
from deployforge.models.artifacts import OutputFormat
from deployforge.models.config import PollPolicy
from deployforge.models.deployments import (
    FUNCTION_TRANSITIONS,
    DeploymentRequest,
    DeploymentResult,
    DeploymentStatus,
    FunctionState,
)
from deployforge.models.targets import TargetKind

logger = logging.getLogger(__name__)


def flatten_environment(values: dict[str, Any]) -> dict[str, str]:
    """Render resolved config as function environment variables.

    Scalars become strings (booleans lower-case); nested structures are
    JSON-encoded.
    """
    env: dict[str, str] = {}
    for key, value in values.items():
        if isinstance(value, bool):
            env[key] = "true" if value else "false"
        elif value is None:
            env[key] = ""
        elif isinstance(value, (dict, list)):
            env[key] = json.dumps(value, sort_keys=True, separators=(",", ":"))
        else:
            env[key] = str(value)
    return env


class FunctionExecutor(BaseExecutor):
    """Drives a function target through its state machine.

    Parameters
    ----------
    backend:
        Function API implementation.
    inline_deploy_limit_bytes:
        Archives at or above this size deploy by storage reference.
    """

    kind = TargetKind.FUNCTION

    def __init__(
        self,
        backend: FunctionBackend,
        *,
        inline_deploy_limit_bytes: int = 50 * 1024 * 1024,
        poll_policy: PollPolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], object] | None = None,
    ) -> None:
        super().__init__(poll_policy=poll_policy, clock=clock, sleep=sleep)
        self.backend = backend
        self._limit = inline_deploy_limit_bytes

    def execute(
        self, request: DeploymentRequest, control: DeploymentControl | None = None
    ) -> DeploymentResult:
        target = request.target
        settings = request.function_settings
        alias = settings.update_alias
        tracker = StateTracker(target.key, FunctionState.PENDING, FUNCTION_TRANSITIONS, control)
        started_at = datetime.now(timezone.utc)
        t0 = self._clock()

        previous_version: int | None = None
        version: int | None = None
        by_reference = False
        try:
            environment = self._resolve_environment(request)
            if alias:
                previous_version = self.backend.get_alias_version(target, alias)

            tracker.advance(FunctionState.CODE_UPDATING)
            by_reference = self._update_code(request)

            if environment or self._has_configuration(request):
                tracker.advance(FunctionState.CONFIG_UPDATING)
                self.backend.update_configuration(target, settings, environment)

            if settings.publish_version:
                tracker.advance(FunctionState.VERSION_PUBLISHING)
                version = self.backend.publish_version(
                    target, description=f"{request.artifact.content_hash} {request.request_id}"
                )
                if previous_version is not None and version <= previous_version:
                    raise DeployFailedError(
                        f"published version {version} is not newer than "
                        f"alias {alias!r} version {previous_version}"
                    )

            if alias:
                assert version is not None
                tracker.advance(FunctionState.ALIAS_UPDATING)
                self.backend.update_alias(target, alias, version)

            tracker.advance(FunctionState.SUCCEEDED)
        except DeploymentCancelled:
            return self._failed(
                request, tracker, "cancelled", "cancelled before deployment started",
                started_at=started_at, t0=t0, previous_version=previous_version,
            )
        except AuthorizationDeniedError as exc:
            return self._failed(
                request, tracker, exc.kind, self._wrap(target, tracker.state, exc),
                started_at=started_at, t0=t0, previous_version=previous_version,
            )
        except (DeployforgeError, OSError, ValueError, yaml.YAMLError) as exc:
            kind = exc.kind if isinstance(exc, DeployforgeError) else "deploy_failed"
            return self._failed(
                request, tracker, kind, self._wrap(target, tracker.state, exc),
                started_at=started_at, t0=t0, previous_version=previous_version,
            )

        return self._result(
            request, tracker, DeploymentStatus.SUCCEEDED,
            started_at=started_at, t0=t0,
            version=version if version is not None else previous_version,
            previous_version=previous_version,
            deployed_by_reference=by_reference,
        )

    def revert(self, request: DeploymentRequest, result: DeploymentResult) -> DeploymentResult:
        """Re-point the alias at the version it held before *result*."""
        target = request.target
        alias = request.function_settings.update_alias
        started_at = datetime.now(timezone.utc)
        t0 = self._clock()
        tracker = StateTracker(target.key, FunctionState.PENDING, FUNCTION_TRANSITIONS)
        fields: dict[str, Any] = {
            "previous_version": result.version,
            "attempted_version": result.version,
        }
        if not alias or result.previous_version is None:
            tracker.advance(FunctionState.FAILED)
            return self._result(
                request, tracker, DeploymentStatus.FAILED, started_at=started_at, t0=t0,
                version=result.version, error_kind="deploy_failed",
                error=f"{target.key}: no previous alias version to revert to", **fields,
            )
        try:
            tracker.advance(FunctionState.CODE_UPDATING)
            tracker.advance(FunctionState.VERSION_PUBLISHING)
            tracker.advance(FunctionState.ALIAS_UPDATING)
            self.backend.update_alias(target, alias, result.previous_version)
        except (DeployforgeError, OSError) as exc:
            tracker.advance(FunctionState.FAILED)
            return self._result(
                request, tracker, DeploymentStatus.FAILED, started_at=started_at, t0=t0,
                version=result.version, error_kind=getattr(exc, "kind", "deploy_failed"),
                error=self._wrap(target, FunctionState.ALIAS_UPDATING, exc), **fields,
            )
        tracker.advance(FunctionState.SUCCEEDED)
        return self._result(
            request, tracker, DeploymentStatus.ROLLED_BACK, started_at=started_at, t0=t0,
            version=result.previous_version, **fields,
        )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    @staticmethod
    def _resolve_environment(request: DeploymentRequest) -> dict[str, str]:
        file_values = load_values_file(request.values_file) if request.values_file else {}
        resolved = resolve_values(
            overrides=request.overrides,
            inline=request.inline_values,
            file_values=file_values,
            defaults=request.defaults,
        )
        return flatten_environment(resolved)

    @staticmethod
    def _has_configuration(request: DeploymentRequest) -> bool:
        s = request.function_settings
        return bool(
            s.runtime or s.memory_size
            or s.timeout_seconds or s.layers
        )

    def _update_code(self, request: DeploymentRequest) -> bool:
        """Push the artifact; returns True when deployed by store reference."""
        target = request.target
        artifact = request.artifact
        settings = request.function_settings

        if artifact.output_format == OutputFormat.IMAGE:
            self.backend.update_code(
                target, image_uri=artifact.image_ref, architecture=settings.architecture
            )
            return False

        stored = request.stored_ref
        if artifact.size_bytes >= self._limit or artifact.local_path is None:
            if stored is None or not stored.bucket:
                raise DeployFailedError(
                    f"artifact {artifact.content_hash} ({artifact.size_bytes} bytes) "
                    "must be deployed from a bucket-backed artifact store"
                )
            self.backend.update_code(
                target, s3_bucket=stored.bucket, s3_key=stored.object_key,
                architecture=settings.architecture,
            )
            return True

        self.backend.update_code(
            target, zip_bytes=Path(artifact.local_path).read_bytes(),
            architecture=settings.architecture,
        )
        return False

    def _failed(
        self,
        request: DeploymentRequest,
        tracker: StateTracker,
        error_kind: str,
        error: str,
        *,
        started_at: datetime,
        t0: float,
        previous_version: int | None,
    ) -> DeploymentResult:
        failed_state = tracker.state.value
        tracker.advance(FunctionState.FAILED)
        return self._result(
            request, tracker, DeploymentStatus.FAILED,
            started_at=started_at, t0=t0,
            version=previous_version,
            previous_version=previous_version,
            error=error,
            error_kind=error_kind,
            failed_state=failed_state,
        )
