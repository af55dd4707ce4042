"""
fleet_scheduler/shared/retry.py
───────────────────────────────
RetryPolicy: bounded exponential backoff as an explicit value.

Writes to the store can fail with a conflict (someone else updated the
object) or a transient error (store unavailable, timed out, throttled).
Instead of sprinkling sleep loops around every call site, callers build a
RetryPolicy once and run each write through it:

    policy = RetryPolicy(max_attempts=5, base_delay_s=0.01, retryable=is_conflict)
    policy.run(lambda: store.update_status(placement))

The delay before attempt n (n >= 2) is
    min(base_delay_s * factor ** (n - 2), max_delay_s)

Errors the predicate rejects propagate immediately. When the attempts run
out the last error propagates unchanged, so callers can still tell a
conflict from a transient failure.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, TypeVar

from fleet_scheduler.shared.errors import CycleCancelledError, is_retryable_write_error

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Parameters:
        max_attempts → total attempts including the first one (>= 1).
        base_delay_s → delay before the second attempt.
        factor       → multiplier applied per further attempt.
        max_delay_s  → cap on any single delay.
        retryable    → predicate deciding whether an error is worth retrying.
    """
    max_attempts: int = 5
    base_delay_s: float = 0.01
    factor: float = 2.0
    max_delay_s: float = 1.0
    retryable: Callable[[BaseException], bool] = field(default=is_retryable_write_error)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay_s < 0 or self.max_delay_s < 0:
            raise ValueError("delays must be non-negative")

    def delay_for(self, attempt: int) -> float:
        """Delay to wait before `attempt` (1-based). The first attempt never waits."""
        if attempt <= 1:
            return 0.0
        return min(self.base_delay_s * (self.factor ** (attempt - 2)), self.max_delay_s)

    def run(
        self,
        fn: Callable[[], T],
        *,
        cancel_event: Optional[threading.Event] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> T:
        """
        Call fn until it succeeds, a non-retryable error occurs, or the
        attempts are exhausted.

        Raises:
            CycleCancelledError: cancel_event was set while waiting.
            The last error raised by fn otherwise.
        """
        attempt = 1
        while True:
            try:
                return fn()
            except Exception as err:
                if not self.retryable(err) or attempt >= self.max_attempts:
                    raise
                attempt += 1
                delay = self.delay_for(attempt)
                logger.debug(
                    "retrying after %s (attempt %d/%d, delay %.3fs)",
                    err.__class__.__name__, attempt, self.max_attempts, delay,
                )
                if cancel_event is not None:
                    if cancel_event.wait(delay):
                        raise CycleCancelledError("cancelled while backing off") from err
                elif delay > 0:
                    sleep(delay)
