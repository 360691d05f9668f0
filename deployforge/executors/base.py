"""Executor scaffolding — state tracking, cancellation, result assembly.

``StateTracker`` walks a kind's transition table and logs every step.
``DeploymentControl`` is the caller's handle on an in-flight deployment:
cancellation is honoured only in a waiting state (queued in ``Pending`` or
polling in ``WaitingForReadiness``) and refused while a mutation against
the target is in flight.
"""

from __future__ import annotations

import abc
import logging
import threading
import time
from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from enum import Enum
from typing import ClassVar

from deployforge.errors import CancellationRefusedError, InvalidTransitionError
from deployforge.models.config import PollPolicy
from deployforge.models.deployments import (
    CANCELLABLE_STATES,
    DeploymentRequest,
    DeploymentResult,
    DeploymentStatus,
)
from deployforge.models.targets import DeploymentTarget, TargetKind

logger = logging.getLogger(__name__)

# Transitions still allowed once cancellation has been requested.
_RECOVERY_STATES: frozenset[str] = frozenset({"failed", "rolling_back", "rolled_back"})


class DeploymentCancelled(Exception):
    """Internal signal: a cancelled deployment tried to leave a waiting state."""


class DeploymentControl:
    """Caller handle for one deployment: current state and cancellation."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._state = "pending"
        self.cancel_event = threading.Event()

    @property
    def state(self) -> str:
        return self._state

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self) -> None:
        """Request cancellation.

        Raises ``CancellationRefusedError`` unless the deployment is queued
        or polling.
        """
        with self._lock:
            if self._state not in CANCELLABLE_STATES:
                raise CancellationRefusedError(
                    f"Cannot cancel while in state {self._state!r}; "
                    "the in-flight operation must finish first"
                )
            self.cancel_event.set()

    def _enter(self, state: str) -> None:
        with self._lock:
            if self.cancel_event.is_set() and state not in _RECOVERY_STATES:
                raise DeploymentCancelled(state)
            self._state = state


class StateTracker:
    """Validates and records transitions through one state table.

    Parameters
    ----------
    target_key:
        Used in log lines and wrapped errors.
    initial:
        Starting state.
    transitions:
        ``{state: allowed_next_states}`` table.
    control:
        Optional caller handle kept in sync with the current state.
    """

    def __init__(
        self,
        target_key: str,
        initial: Enum,
        transitions: Mapping[Enum, set],
        control: DeploymentControl | None = None,
    ) -> None:
        self.target_key = target_key
        self._table = transitions
        self._state = initial
        self._control = control
        self.history: list[str] = []
        if control is not None:
            with control._lock:
                control._state = initial.value

    @property
    def state(self) -> Enum:
        return self._state

    def advance(self, target_state: Enum) -> None:
        allowed = self._table.get(self._state, set())
        if target_state not in allowed:
            raise InvalidTransitionError(
                f"{self.target_key}: cannot transition from {self._state.value} "
                f"to {target_state.value}. Allowed: {sorted(s.value for s in allowed)}"
            )
        if self._control is not None:
            self._control._enter(target_state.value)
        transition = f"{self._state.value}->{target_state.value}"
        logger.info("%s %s", self.target_key, transition)
        self.history.append(transition)
        self._state = target_state


class BaseExecutor(abc.ABC):
    """Base for kind-specific executors.

    Subclasses implement ``execute()`` (the kind's state machine) and
    ``revert()`` (undo a completed deployment on the pipeline's behalf).
    Neither raises for deploy-phase failures; both return a
    ``DeploymentResult``.
    """

    kind: ClassVar[TargetKind]

    def __init__(
        self,
        *,
        poll_policy: PollPolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], object] | None = None,
    ) -> None:
        self._poll_policy = poll_policy or PollPolicy()
        self._clock = clock
        self._sleep = sleep

    @abc.abstractmethod
    def execute(
        self, request: DeploymentRequest, control: DeploymentControl | None = None
    ) -> DeploymentResult:
        ...

    @abc.abstractmethod
    def revert(self, request: DeploymentRequest, result: DeploymentResult) -> DeploymentResult:
        ...

    # ------------------------------------------------------------------
    # Result helpers
    # ------------------------------------------------------------------

    def _result(
        self,
        request: DeploymentRequest,
        tracker: StateTracker,
        status: DeploymentStatus,
        *,
        started_at: datetime,
        t0: float,
        **fields: object,
    ) -> DeploymentResult:
        finished_at = datetime.now(timezone.utc)
        result = DeploymentResult(
            request_id=request.request_id,
            target_key=request.target.key,
            kind=request.target.kind,
            status=status,
            final_state=tracker.state.value,
            transitions=list(tracker.history),
            started_at=started_at,
            finished_at=finished_at,
            duration_seconds=round(self._clock() - t0, 3),
            **fields,
        )
        log = logger.info if status == DeploymentStatus.SUCCEEDED else logger.error
        log(
            "Deployment %s to %s finished: %s%s",
            request.request_id,
            request.target.key,
            status.value,
            f" ({result.error})" if result.error else "",
        )
        return result

    @staticmethod
    def _wrap(target: DeploymentTarget, state: Enum, exc: BaseException) -> str:
        """Error detail carrying the target identity and machine state."""
        return f"{target.key} [{state.value}]: {exc}"
