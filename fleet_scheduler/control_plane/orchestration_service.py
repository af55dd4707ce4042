"""
fleet_scheduler/control_plane/orchestration_service.py
──────────────────────────────────────────────────────
SchedulerService: the long-running control loop around the Scheduler.

Wiring
───────
    store ──watch──▶ EventDispatcher ──add──▶ WorkQueue ──get──▶ workers
                                                 ▲                 │
                                                 └─ rate-limited ──┘
                                                    requeue on failure

  • attach() registers the dispatcher on the store. Events from that point
    on become queue keys.
  • start() additionally enqueues every placement once, then starts
    `workers` threads on a ThreadPoolExecutor and one resync thread.
  • Each worker loops get() → Scheduler.schedule_once() → done().
  • stop() sets the shared cancel event (in-flight cycles stop at the next
    stage boundary), shuts the queue down and joins every thread.

Per-key outcome handling
─────────────────────────
  CycleResult.requeue        → add_rate_limited(key)   (store failure)
  CycleResult.requeue_after  → forget(key), add_after(key, delay)
  anything else              → forget(key)
  unexpected exception       → logged with traceback, add_rate_limited(key)

Thread safety
──────────────
The queue hands a key to one worker at a time, so two cycles never run for
the same placement concurrently. Different placements run in parallel.
Counters are guarded by an internal lock.

Tests drive the same code synchronously with process_next() / drain().
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional

from fleet_scheduler.control_plane.scheduler import CyclePhase, CycleResult, Scheduler
from fleet_scheduler.control_plane.work_queue import WorkQueue
from fleet_scheduler.shared.config import SchedulerConfig
from fleet_scheduler.shared.errors import CycleCancelledError
from fleet_scheduler.shared.store import InMemoryObjectStore
from fleet_scheduler.watchers.dispatcher import EventDispatcher

logger = logging.getLogger(__name__)

WORKER_POLL_INTERVAL_S: float = 0.2
"""How long an idle worker blocks in get() before re-checking the cancel event."""


class SchedulerService:
    """
    Public API:
        attach()                    → None   register the store watch
        start()                     → None   attach + worker pool + resync
        stop(timeout)               → None   cancel, drain threads
        process_next(timeout)       → Optional[CycleResult]
        drain(max_cycles)           → List[CycleResult]
        resync()                    → int    placements enqueued
        get_metrics()               → Dict[str, int]

    Attributes:
        queue      : WorkQueue        — placement keys awaiting a cycle
        scheduler  : Scheduler        — runs one cycle per key
        dispatcher : EventDispatcher  — store events → queue keys
    """

    def __init__(
        self,
        store: InMemoryObjectStore,
        scheduler: Optional[Scheduler] = None,
        config: Optional[SchedulerConfig] = None,
        queue: Optional[WorkQueue] = None,
    ) -> None:
        self._config = config or SchedulerConfig()
        self._store = store
        self.scheduler = scheduler or Scheduler(store, config=self._config)
        self.queue = queue or WorkQueue(
            base_delay_s=self._config.requeue_base_delay_s,
            max_delay_s=self._config.requeue_max_delay_s,
        )
        self.dispatcher = EventDispatcher(self.queue, store)

        self._cancel = threading.Event()
        self._pool: Optional[ThreadPoolExecutor] = None
        self._resync_thread: Optional[threading.Thread] = None
        self._attached = False
        self._lock = threading.Lock()
        self._metrics: Dict[str, int] = {
            "cycles": 0,
            "succeeded": 0,
            "partially_succeeded": 0,
            "failed": 0,
            "requeued": 0,
            "errors": 0,
        }

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def attach(self) -> None:
        with self._lock:
            if self._attached:
                return
            self._attached = True
        self._store.watch(self.dispatcher.handle)

    def start(self) -> None:
        if self._pool is not None:
            raise RuntimeError("SchedulerService is already running")
        self.attach()
        self.resync()

        workers = self._config.workers
        self._pool = ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="scheduler-worker"
        )
        for _ in range(workers):
            self._pool.submit(self._worker_loop)

        self._resync_thread = threading.Thread(
            target=self._resync_loop, name="scheduler-resync", daemon=True
        )
        self._resync_thread.start()
        logger.info("SchedulerService started with %d worker(s).", workers)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._cancel.set()
        self.queue.shut_down()
        if self._pool is not None:
            self._pool.shutdown(wait=True)
            self._pool = None
        if self._resync_thread is not None:
            self._resync_thread.join(timeout)
            self._resync_thread = None
        logger.info("SchedulerService stopped.")

    @property
    def running(self) -> bool:
        return self._pool is not None and not self._cancel.is_set()

    # ── Processing ────────────────────────────────────────────────────────────

    def process_next(self, timeout: Optional[float] = 0.0) -> Optional[CycleResult]:
        """Take one key from the queue and run its cycle. None when no key was ready."""
        key = self.queue.get(timeout=timeout)
        if key is None:
            return None
        try:
            return self._process(key)
        finally:
            self.queue.done(key)

    def drain(self, max_cycles: int = 1000) -> List[CycleResult]:
        """Run cycles on the calling thread until no key is ready."""
        results: List[CycleResult] = []
        for _ in range(max_cycles):
            result = self.process_next(timeout=0.0)
            if result is None and len(self.queue) == 0:
                break
            if result is not None:
                results.append(result)
        return results

    def resync(self) -> int:
        count = self.dispatcher.requeue_all()
        logger.debug("resync enqueued %d placement(s)", count)
        return count

    def get_metrics(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._metrics)

    # ── Private helpers ───────────────────────────────────────────────────────

    def _process(self, key: str) -> Optional[CycleResult]:
        self._count("cycles")
        try:
            result = self.scheduler.schedule_once(key, self._cancel)
        except CycleCancelledError:
            logger.debug("cycle for %s abandoned on shutdown", key)
            return None
        except Exception:
            logger.exception("Unexpected error while scheduling %s", key)
            self._count("errors")
            self._count("requeued")
            self.queue.add_rate_limited(key)
            return None

        if result.phase == CyclePhase.FAILED:
            self._count("failed")
        elif result.phase == CyclePhase.PARTIALLY_SUCCEEDED:
            self._count("partially_succeeded")
        elif result.phase == CyclePhase.SUCCEEDED:
            self._count("succeeded")

        if result.requeue:
            delay = self.queue.add_rate_limited(key)
            self._count("requeued")
            logger.warning(
                "placement %s failed (%s), retrying in %.2fs", key, result.reason, delay
            )
            return result

        self.queue.forget(key)
        if result.requeue_after is not None:
            self.queue.add_after(key, result.requeue_after)
        return result

    def _worker_loop(self) -> None:
        while not self._cancel.is_set():
            try:
                self.process_next(timeout=WORKER_POLL_INTERVAL_S)
            except Exception:
                logger.exception("scheduler worker crashed on a cycle; continuing")
            if self.queue.shutting_down and len(self.queue) == 0:
                return

    def _resync_loop(self) -> None:
        while not self._cancel.wait(self._config.resync_interval_s):
            try:
                self.resync()
            except Exception:
                logger.exception("periodic resync failed")

    def _count(self, name: str) -> None:
        with self._lock:
            self._metrics[name] += 1
