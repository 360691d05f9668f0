"""Poll-with-backoff, bounded by a caller timeout and cancellable.

Used by the cluster executor's readiness wait and by the verification
gate; these are the only operations allowed to block beyond a short
fixed bound.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable

from pydantic import BaseModel, ConfigDict

from deployforge.models.config import PollPolicy

logger = logging.getLogger(__name__)

Check = Callable[[], tuple[bool, str]]


class PollOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    satisfied: bool
    cancelled: bool = False
    attempts: int
    elapsed_seconds: float
    detail: str = ""

    @property
    def timed_out(self) -> bool:
        return not self.satisfied and not self.cancelled


def poll_until(
    check: Check,
    *,
    timeout: float,
    policy: PollPolicy | None = None,
    cancel_event: threading.Event | None = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], object] | None = None,
) -> PollOutcome:
    """Call *check* until it reports success, *timeout* expires, or cancel.

    *check* returns ``(ok, detail)``.  Exceptions from *check* propagate.
    The interval starts at ``policy.initial_interval`` and grows by
    ``policy.backoff_factor`` up to ``policy.max_interval``; the final
    wait is clipped so the deadline is never overshot.
    """
    policy = policy or PollPolicy()
    if sleep is None:
        sleep = cancel_event.wait if cancel_event is not None else time.sleep

    start = clock()
    interval = policy.initial_interval
    attempts = 0
    detail = ""
    while True:
        if cancel_event is not None and cancel_event.is_set():
            return PollOutcome(
                satisfied=False, cancelled=True, attempts=attempts,
                elapsed_seconds=clock() - start, detail=detail or "cancelled",
            )
        attempts += 1
        ok, detail = check()
        elapsed = clock() - start
        if ok:
            return PollOutcome(
                satisfied=True, attempts=attempts, elapsed_seconds=elapsed, detail=detail,
            )
        remaining = timeout - elapsed
        if remaining <= 0:
            return PollOutcome(
                satisfied=False, attempts=attempts, elapsed_seconds=elapsed, detail=detail,
            )
        wait = min(interval, remaining)
        logger.debug("Not ready after attempt %d (%s); next check in %.1fs", attempts, detail, wait)
        sleep(wait)
        interval = min(interval * policy.backoff_factor, policy.max_interval)
