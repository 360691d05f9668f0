"""Single entry point that routes a request to its kind's executor.

Every deployment runs under the target's lock, so two requests for the
same (service, environment) never interleave their mutations.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from deployforge.core.target_lock import TargetLockRegistry
from deployforge.errors import TargetBusyError
from deployforge.executors.base import BaseExecutor, DeploymentControl
from deployforge.models.deployments import DeploymentRequest, DeploymentResult
from deployforge.models.targets import TargetKind

logger = logging.getLogger(__name__)


class DeploymentExecutor:
    """Dispatches deployments by target kind.

    Parameters
    ----------
    executors:
        One executor per supported kind.
    locks:
        Per-target lock registry; defaults to the ``queue`` policy.
    """

    def __init__(
        self,
        executors: list[BaseExecutor],
        *,
        locks: TargetLockRegistry | None = None,
    ) -> None:
        self._executors: dict[TargetKind, BaseExecutor] = {e.kind: e for e in executors}
        self.locks = locks or TargetLockRegistry()

    def executor_for(self, kind: TargetKind) -> BaseExecutor:
        try:
            return self._executors[kind]
        except KeyError:
            raise ValueError(f"No executor registered for target kind {kind.value!r}") from None

    def execute(
        self,
        request: DeploymentRequest,
        control: DeploymentControl | None = None,
        *,
        record: Callable[[DeploymentResult], object] | None = None,
    ) -> DeploymentResult:
        """Run *request* to a terminal state.

        *record* is called with the result before the target's lock is
        released, so the next queued request sees it.

        Raises ``TargetBusyError`` if the target is locked under the
        ``reject`` policy, or if *control* is cancelled while queued.
        """
        executor = self.executor_for(request.target.kind)
        control = control or DeploymentControl()
        target_key = request.target.key
        logger.info(
            "Deploying %s (%s) to %s",
            request.artifact.digest, request.request_id, request.target.describe(),
        )
        with self.locks.hold(target_key, cancel_event=control.cancel_event):
            result = executor.execute(request, control)
            if record is not None:
                record(result)
            return result

    def revert(
        self,
        request: DeploymentRequest,
        result: DeploymentResult,
        *,
        record: Callable[[DeploymentResult], object] | None = None,
    ) -> DeploymentResult:
        """Undo a completed deployment, holding the target's lock."""
        executor = self.executor_for(request.target.kind)
        try:
            with self.locks.hold(request.target.key):
                reverted = executor.revert(request, result)
                if record is not None:
                    record(reverted)
                return reverted
        except TargetBusyError:
            logger.error("Cannot revert %s: target is busy", request.target.key)
            raise
