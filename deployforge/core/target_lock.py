"""Per-target mutual exclusion.

One deployment runs against a given target at a time; deployments to
different targets never contend.  Under the ``queue`` policy a second
request waits for the first to reach a terminal state; under ``reject``
it fails immediately with ``TargetBusyError``.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager

from deployforge.errors import TargetBusyError

logger = logging.getLogger(__name__)


class TargetLockRegistry:
    """Hands out one lock per target key.

    Parameters
    ----------
    policy:
        ``"queue"`` (block until free) or ``"reject"`` (fail if busy).
    """

    def __init__(self, policy: str = "queue") -> None:
        if policy not in ("queue", "reject"):
            raise ValueError(f"Unknown conflict policy: {policy!r}")
        self.policy = policy
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def _lock_for(self, target_key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(target_key)
            if lock is None:
                lock = self._locks[target_key] = threading.Lock()
            return lock

    def is_locked(self, target_key: str) -> bool:
        return self._lock_for(target_key).locked()

    @contextmanager
    def hold(self, target_key: str, *, cancel_event: threading.Event | None = None) -> Iterator[None]:
        """Hold the lock for *target_key* for the duration of the block.

        While queued, a set *cancel_event* aborts the wait with
        ``TargetBusyError``.
        """
        lock = self._lock_for(target_key)
        if self.policy == "reject":
            if not lock.acquire(blocking=False):
                raise TargetBusyError(f"A deployment to {target_key} is already in progress")
        else:
            if not lock.acquire(blocking=False):
                logger.info("Deployment to %s queued behind an in-flight deployment", target_key)
                while not lock.acquire(timeout=0.5):
                    if cancel_event is not None and cancel_event.is_set():
                        raise TargetBusyError(
                            f"Cancelled while queued for {target_key}"
                        )
        try:
            yield
        finally:
            lock.release()
