"""Verification Gate — post-deploy health checking.

The gate runs a caller-supplied check until it reports healthy or the
timeout expires, and reports the outcome with diagnostic detail.  It does
not decide what happens on failure: rolling back is the pipeline's call,
since what counts as healthy is domain-specific.

Built-in checks:
    ``CommandCheck``          shell command, healthy on exit 0
    ``FunctionInvokeCheck``   invoke the function alias, healthy on a clean response
    ``ReleaseReadinessCheck`` cluster workloads report ready
"""

from __future__ import annotations

import logging
import os
import subprocess
import threading
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict

from deployforge.core.cli_runner import tail
from deployforge.core.polling import poll_until
from deployforge.errors import AuthorizationDeniedError, DeployforgeError
from deployforge.models.config import PollPolicy
from deployforge.models.targets import DeploymentTarget

if TYPE_CHECKING:
    from deployforge.executors.backends import ClusterBackend, FunctionBackend

logger = logging.getLogger(__name__)


class CheckOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    healthy: bool
    detail: str = ""


@runtime_checkable
class HealthCheck(Protocol):
    """Any callable taking a target and returning a ``CheckOutcome``."""

    def __call__(self, target: DeploymentTarget) -> CheckOutcome:
        ...


class VerificationResult(BaseModel):
    """``Healthy`` or ``Unhealthy(detail)``, plus how long it took to decide."""

    model_config = ConfigDict(frozen=True)

    target_key: str
    healthy: bool
    detail: str = ""
    attempts: int = 0
    elapsed_seconds: float = 0.0
    cancelled: bool = False

    @property
    def status(self) -> str:
        return "healthy" if self.healthy else "unhealthy"


class VerificationGate:
    """Polls a health check with backoff until healthy or timed out."""

    def __init__(
        self,
        *,
        policy: PollPolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], object] | None = None,
    ) -> None:
        self._policy = policy or PollPolicy()
        self._clock = clock
        self._sleep = sleep

    def verify(
        self,
        target: DeploymentTarget,
        timeout: float,
        check: HealthCheck,
        *,
        cancel_event: threading.Event | None = None,
    ) -> VerificationResult:
        """Run *check* against *target* for up to *timeout* seconds.

        Errors raised by the check count as an unhealthy attempt, except
        ``AuthorizationDeniedError`` which propagates.
        """

        def _attempt() -> tuple[bool, str]:
            try:
                outcome = check(target)
            except AuthorizationDeniedError:
                raise
            except (DeployforgeError, OSError) as exc:
                return False, f"check error: {exc}"
            return outcome.healthy, outcome.detail

        outcome = poll_until(
            _attempt,
            timeout=timeout,
            policy=self._policy,
            cancel_event=cancel_event,
            clock=self._clock,
            sleep=self._sleep,
        )
        result = VerificationResult(
            target_key=target.key,
            healthy=outcome.satisfied,
            detail=outcome.detail,
            attempts=outcome.attempts,
            elapsed_seconds=outcome.elapsed_seconds,
            cancelled=outcome.cancelled,
        )
        if result.healthy:
            logger.info("Verification of %s passed after %d attempt(s)", target.key, result.attempts)
        else:
            logger.warning(
                "Verification of %s failed after %d attempt(s): %s",
                target.key, result.attempts, result.detail,
            )
        return result


# ---------------------------------------------------------------------------
# Built-in checks
# ---------------------------------------------------------------------------


class CommandCheck:
    """Healthy when a shell command exits 0.

    The command sees ``DEPLOY_SERVICE``, ``DEPLOY_ENVIRONMENT`` and
    ``DEPLOY_REGION`` in its environment.
    """

    def __init__(self, command: str, *, timeout: float = 60.0, cwd: str | None = None) -> None:
        self.command = command
        self._timeout = timeout
        self._cwd = cwd

    def __call__(self, target: DeploymentTarget) -> CheckOutcome:
        env = dict(os.environ)
        env.update({
            "DEPLOY_SERVICE": target.service,
            "DEPLOY_ENVIRONMENT": target.environment,
            "DEPLOY_REGION": target.region,
        })
        try:
            proc = subprocess.run(
                self.command,
                shell=True,
                capture_output=True,
                text=True,
                env=env,
                cwd=self._cwd,
                timeout=self._timeout,
            )
        except subprocess.TimeoutExpired:
            return CheckOutcome(healthy=False, detail=f"check timed out after {self._timeout}s")
        output = tail(proc.stdout or proc.stderr or "", 5)
        if proc.returncode == 0:
            return CheckOutcome(healthy=True, detail=output)
        return CheckOutcome(healthy=False, detail=f"exit {proc.returncode}: {output}")


class FunctionInvokeCheck:
    """Invokes the function (through its alias) and inspects the response."""

    def __init__(
        self,
        backend: FunctionBackend,
        *,
        payload: dict[str, Any] | None = None,
        expect: Callable[[str], bool] | None = None,
    ) -> None:
        self._backend = backend
        self._payload = payload or {}
        self._expect = expect

    def __call__(self, target: DeploymentTarget) -> CheckOutcome:
        response = self._backend.invoke(target, self._payload)
        if response.function_error:
            return CheckOutcome(
                healthy=False,
                detail=f"function error {response.function_error}: {response.body[:200]}",
            )
        if not 200 <= response.status_code < 300:
            return CheckOutcome(healthy=False, detail=f"status {response.status_code}")
        if self._expect is not None and not self._expect(response.body):
            return CheckOutcome(healthy=False, detail=f"unexpected body: {response.body[:200]}")
        return CheckOutcome(healthy=True, detail=f"status {response.status_code}")


class ReleaseReadinessCheck:
    """Healthy when every workload in the release reports ready."""

    def __init__(self, backend: ClusterBackend) -> None:
        self._backend = backend

    def __call__(self, target: DeploymentTarget) -> CheckOutcome:
        status = self._backend.readiness(target)
        return CheckOutcome(healthy=status.ready, detail=status.detail)
