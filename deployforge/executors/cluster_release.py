"""Cluster-release executor.

    Pending -> ValuesResolved -> [DiffPreviewed] -> Upgrading
            -> WaitingForReadiness -> Succeeded
                                   -> RollingBack -> RolledBack   (atomic)
                                   -> Failed                      (non-atomic)

A readiness timeout under ``atomic`` reverts to the revision that was
running before the attempt; with no prior revision the release is
uninstalled.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import yaml

from deployforge.core.cli_runner import CliCommandError
from deployforge.core.hasher import compute_values_hash
from deployforge.core.polling import poll_until
from deployforge.core.values import load_values_file, resolve_values
from deployforge.errors import AuthorizationDeniedError, DeployforgeError
from deployforge.executors.backends import ClusterBackend
from deployforge.executors.base import (
    BaseExecutor,
    DeploymentCancelled,
    DeploymentControl,
    StateTracker,
)
from deployforge.models.config import PollPolicy
from deployforge.models.deployments import (
    CLUSTER_RELEASE_TRANSITIONS,
    ClusterReleaseState,
    DeploymentRequest,
    DeploymentResult,
    DeploymentStatus,
)
from deployforge.models.targets import TargetKind

if TYPE_CHECKING:
    from deployforge.core.release_ledger import ReleaseLedger

logger = logging.getLogger(__name__)


class _ReadinessNotReached(Exception):
    """Readiness wait ended without the release becoming ready."""

    def __init__(self, error_kind: str, detail: str) -> None:
        super().__init__(detail)
        self.error_kind = error_kind


class ClusterReleaseExecutor(BaseExecutor):
    """Drives a chart release through its state machine.

    Parameters
    ----------
    backend:
        Chart manager and cluster API implementation.
    ledger:
        Optional Release Ledger, consulted first for the revision running
        before the attempt.
    """

    kind = TargetKind.CLUSTER_RELEASE

    def __init__(
        self,
        backend: ClusterBackend,
        *,
        ledger: ReleaseLedger | None = None,
        poll_policy: PollPolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], object] | None = None,
    ) -> None:
        super().__init__(poll_policy=poll_policy, clock=clock, sleep=sleep)
        self.backend = backend
        self._ledger = ledger

    def prior_revision(self, request: DeploymentRequest) -> int | None:
        target = request.target
        if self._ledger is not None:
            version = self._ledger.running_version(target.key)
            if version is not None:
                return version
        return self.backend.current_revision(target)

    def execute(
        self, request: DeploymentRequest, control: DeploymentControl | None = None
    ) -> DeploymentResult:
        target = request.target
        settings = request.cluster_settings
        tracker = StateTracker(
            target.key, ClusterReleaseState.PENDING, CLUSTER_RELEASE_TRANSITIONS, control
        )
        started_at = datetime.now(timezone.utc)
        t0 = self._clock()
        deadline = t0 + request.timeout_seconds

        previous: int | None = None
        new_revision: int | None = None
        values_hash = ""
        diff = ""
        common: dict[str, Any] = {"started_at": started_at, "t0": t0}

        try:
            previous = self.prior_revision(request)
            values = self.resolve_values(request)
            values_hash = compute_values_hash(values)
            tracker.advance(ClusterReleaseState.VALUES_RESOLVED)

            if settings.diff_preview:
                diff = self.backend.diff(target, values)
                logger.info("Diff for %s:\n%s", target.key, diff or "(no changes)")
                tracker.advance(ClusterReleaseState.DIFF_PREVIEWED)

            tracker.advance(ClusterReleaseState.UPGRADING)
        except DeploymentCancelled:
            return self._fail(request, tracker, "cancelled", "cancelled before deployment started",
                              previous=previous, values_hash=values_hash, **common)
        except (DeployforgeError, OSError, ValueError, yaml.YAMLError) as exc:
            kind = exc.kind if isinstance(exc, DeployforgeError) else "deploy_failed"
            return self._fail(request, tracker, kind, self._wrap(target, tracker.state, exc),
                              previous=previous, values_hash=values_hash, **common)

        common.update(values_hash=values_hash, diff=diff)
        try:
            if settings.create_namespace:
                self.backend.ensure_namespace(target)
            new_revision = self.backend.upgrade(
                target, values,
                dry_run=settings.dry_run,
                timeout_seconds=max(deadline - self._clock(), 1.0),
            )
            if settings.dry_run:
                tracker.advance(ClusterReleaseState.SUCCEEDED)
                return self._result(
                    request, tracker, DeploymentStatus.SUCCEEDED,
                    version=previous, previous_version=previous, **common,
                )
            if settings.wait:
                tracker.advance(ClusterReleaseState.WAITING_FOR_READINESS)
                self._await_readiness(request, control, deadline)
            tracker.advance(ClusterReleaseState.SUCCEEDED)
        except AuthorizationDeniedError as exc:
            return self._fail(request, tracker, exc.kind, self._wrap(target, tracker.state, exc),
                              previous=previous, **common)
        except _ReadinessNotReached as exc:
            return self._abandon(request, tracker, exc.error_kind, str(exc),
                                 previous=previous, attempted=new_revision, **common)
        except DeploymentCancelled:
            return self._abandon(request, tracker, "cancelled",
                                 f"{target.key} [{tracker.state.value}]: cancelled",
                                 previous=previous, attempted=new_revision, **common)
        except (DeployforgeError, OSError) as exc:
            return self._abandon(request, tracker, exc.kind if isinstance(exc, DeployforgeError)
                                 else "deploy_failed", self._wrap(target, tracker.state, exc),
                                 previous=previous, attempted=new_revision, **common)

        return self._result(
            request, tracker, DeploymentStatus.SUCCEEDED,
            version=new_revision, previous_version=previous, **common,
        )

    def revert(self, request: DeploymentRequest, result: DeploymentResult) -> DeploymentResult:
        """Roll the release back to the revision that preceded *result*."""
        target = request.target
        started_at = datetime.now(timezone.utc)
        t0 = self._clock()
        tracker = StateTracker(
            target.key, ClusterReleaseState.PENDING, CLUSTER_RELEASE_TRANSITIONS
        )
        tracker.advance(ClusterReleaseState.VALUES_RESOLVED)
        tracker.advance(ClusterReleaseState.UPGRADING)
        tracker.advance(ClusterReleaseState.ROLLING_BACK)
        fields: dict[str, Any] = {
            "previous_version": result.version,
            "attempted_version": result.version,
            "values_hash": result.values_hash,
        }
        try:
            self.backend.rollback(
                target, result.previous_version, timeout_seconds=request.timeout_seconds
            )
        except (DeployforgeError, OSError) as exc:
            tracker.advance(ClusterReleaseState.FAILED)
            return self._result(
                request, tracker, DeploymentStatus.FAILED, started_at=started_at, t0=t0,
                version=result.version, error_kind=getattr(exc, "kind", "deploy_failed"),
                error=self._wrap(target, ClusterReleaseState.ROLLING_BACK, exc), **fields,
            )
        tracker.advance(ClusterReleaseState.ROLLED_BACK)
        return self._result(
            request, tracker, DeploymentStatus.ROLLED_BACK, started_at=started_at, t0=t0,
            version=result.previous_version, **fields,
        )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def resolve_values(self, request: DeploymentRequest) -> dict[str, Any]:
        """Merge every configuration tier into the final release values."""
        file_values = load_values_file(request.values_file) if request.values_file else {}
        return resolve_values(
            overrides=request.overrides,
            inline=request.inline_values,
            file_values=file_values,
            defaults=request.defaults,
            chart_defaults=self.backend.chart_defaults(request.target),
        )

    def _await_readiness(
        self,
        request: DeploymentRequest,
        control: DeploymentControl | None,
        deadline: float,
    ) -> None:
        target = request.target

        def _check() -> tuple[bool, str]:
            try:
                status = self.backend.readiness(target)
            except AuthorizationDeniedError:
                raise
            except CliCommandError as exc:
                return False, f"readiness query failed: {exc}"
            return status.ready, status.detail

        outcome = poll_until(
            _check,
            timeout=max(deadline - self._clock(), 0.0),
            policy=self._poll_policy,
            cancel_event=control.cancel_event if control is not None else None,
            clock=self._clock,
            sleep=self._sleep,
        )
        if outcome.satisfied:
            return
        if outcome.cancelled:
            raise _ReadinessNotReached(
                "cancelled", f"{target.key} [waiting_for_readiness]: cancelled"
            )
        raise _ReadinessNotReached(
            "deploy_timed_out",
            f"{target.key} [waiting_for_readiness]: not ready after "
            f"{request.timeout_seconds:g}s ({outcome.attempts} checks): {outcome.detail}",
        )

    def _abandon(
        self,
        request: DeploymentRequest,
        tracker: StateTracker,
        error_kind: str,
        error: str,
        *,
        previous: int | None,
        attempted: int | None,
        **common: Any,
    ) -> DeploymentResult:
        """Handle a failure after the release may have been mutated."""
        target = request.target
        if not request.atomic:
            return self._fail(request, tracker, error_kind, error,
                              previous=previous, attempted=attempted, **common)

        failed_state = tracker.state.value
        tracker.advance(ClusterReleaseState.ROLLING_BACK)
        logger.warning("Rolling back %s to revision %s: %s", target.key, previous, error)
        try:
            self.backend.rollback(target, previous, timeout_seconds=request.timeout_seconds)
        except (DeployforgeError, OSError) as exc:
            tracker.advance(ClusterReleaseState.FAILED)
            return self._result(
                request, tracker, DeploymentStatus.FAILED,
                version=attempted, previous_version=previous, attempted_version=attempted,
                error=f"{error}; rollback failed: {exc}",
                error_kind=error_kind, failed_state=failed_state, **common,
            )
        tracker.advance(ClusterReleaseState.ROLLED_BACK)
        return self._result(
            request, tracker, DeploymentStatus.ROLLED_BACK,
            version=previous, previous_version=previous, attempted_version=attempted,
            error=error, error_kind=error_kind, failed_state=failed_state, **common,
        )

    def _fail(
        self,
        request: DeploymentRequest,
        tracker: StateTracker,
        error_kind: str,
        error: str,
        *,
        previous: int | None,
        attempted: int | None = None,
        **common: Any,
    ) -> DeploymentResult:
        failed_state = tracker.state.value
        tracker.advance(ClusterReleaseState.FAILED)
        return self._result(
            request, tracker, DeploymentStatus.FAILED,
            version=attempted if attempted is not None else previous,
            previous_version=previous,
            attempted_version=attempted,
            error=error, error_kind=error_kind, failed_state=failed_state, **common,
        )
