"""
fleet_scheduler/control_plane/work_queue.py
───────────────────────────────────────────
WorkQueue: a deduplicating, rate-limited queue of placement keys.

Guarantees
───────────
  1. A key is queued at most once. Ten events for the same placement before
     a worker picks it up produce one cycle.
  2. A key is never handed to two workers at once. A key added while it is
     being processed is marked dirty and re-queued when the worker calls
     done(key).
  3. add_after(key, delay) parks the key until the delay has passed. Parking
     an already parked key keeps the earlier deadline.
  4. add_rate_limited(key) parks the key for
         min(base_delay_s × 2 ** (failures - 1), max_delay_s)
     and counts the failure. forget(key) resets the count after a success.
  5. After shut_down() no key is accepted and get() returns None once the
     ready keys are drained.

Delayed keys are kept in a heap and promoted by get() itself; no timer
threads are started.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Set, Tuple

from fleet_scheduler.shared.config import REQUEUE_BASE_DELAY_S, REQUEUE_MAX_DELAY_S

logger = logging.getLogger(__name__)


class WorkQueue:
    """
    Usage:
        queue = WorkQueue()
        queue.add("team-a/web")
        key = queue.get(timeout=1.0)
        try:
            ...
        finally:
            queue.done(key)
    """

    def __init__(
        self,
        base_delay_s: float = REQUEUE_BASE_DELAY_S,
        max_delay_s: float = REQUEUE_MAX_DELAY_S,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._base_delay = base_delay_s
        self._max_delay = max_delay_s
        self._clock = clock
        self._cond = threading.Condition()

        self._queue: Deque[str] = deque()
        self._dirty: Set[str] = set()
        self._processing: Set[str] = set()

        self._waiting: Dict[str, float] = {}
        self._heap: List[Tuple[float, int, str]] = []
        self._seq = itertools.count()

        self._failures: Dict[str, int] = {}
        self._shutting_down = False

    # ── Adding ────────────────────────────────────────────────────────────────

    def add(self, key: str) -> None:
        with self._cond:
            self._add_locked(key)

    def add_after(self, key: str, delay_s: float) -> None:
        if delay_s <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            ready_at = self._clock() + delay_s
            parked = self._waiting.get(key)
            if parked is not None and parked <= ready_at:
                return
            self._waiting[key] = ready_at
            heapq.heappush(self._heap, (ready_at, next(self._seq), key))
            self._cond.notify()

    def add_rate_limited(self, key: str) -> float:
        """Park the key with per-key exponential backoff. Returns the delay used."""
        with self._cond:
            failures = self._failures.get(key, 0) + 1
            self._failures[key] = failures
        delay = min(self._base_delay * (2 ** (failures - 1)), self._max_delay)
        logger.debug("requeueing %s in %.2fs (failure %d)", key, delay, failures)
        self.add_after(key, delay)
        return delay

    def forget(self, key: str) -> None:
        with self._cond:
            self._failures.pop(key, None)

    def num_requeues(self, key: str) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    # ── Consuming ─────────────────────────────────────────────────────────────

    def get(self, timeout: Optional[float] = None) -> Optional[str]:
        """
        Block until a key is ready and mark it as processing.

        Returns None on timeout, or once the queue is shut down and drained.
        """
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                self._promote_due()
                if self._queue:
                    key = self._queue.popleft()
                    self._processing.add(key)
                    self._dirty.discard(key)
                    return key
                if self._shutting_down:
                    return None

                now = self._clock()
                wait_for = None
                if self._heap:
                    wait_for = max(self._heap[0][0] - now, 0.0)
                if deadline is not None:
                    remaining = deadline - now
                    if remaining <= 0:
                        return None
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                self._cond.wait(wait_for)

    def done(self, key: str) -> None:
        """Release a key taken with get(). Re-queues it if it was added meanwhile."""
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify()

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._heap.clear()
            self._waiting.clear()
            self._cond.notify_all()

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def __len__(self) -> int:
        """Keys ready to be handed out. Parked and processing keys are not counted."""
        with self._cond:
            return len(self._queue)

    def parked(self) -> int:
        with self._cond:
            return len(self._waiting)

    # ── Private helpers ───────────────────────────────────────────────────────

    def _add_locked(self, key: str) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._cond.notify()

    def _promote_due(self) -> None:
        now = self._clock()
        while self._heap and self._heap[0][0] <= now:
            ready_at, _, key = heapq.heappop(self._heap)
            if self._waiting.get(key) != ready_at:
                continue   # superseded by an earlier deadline
            del self._waiting[key]
            self._add_locked(key)
