"""
tests/test_work_queue.py
────────────────────────
Test suite for fleet_scheduler/control_plane/work_queue.py

A fake clock drives every delayed key, so no test sleeps. get(timeout=0)
never blocks: it promotes whatever is due and returns None otherwise.

Test groups
────────────
Group 1: deduplication
Group 2: processing        — one worker per key, dirty re-queue on done()
Group 3: delays            — add_after, earlier deadline wins
Group 4: rate limiting     — exponential backoff, cap, forget()
Group 5: shutdown
Group 6: blocking get      — a worker thread wakes up on add()
"""

from __future__ import annotations

import threading

from fleet_scheduler.control_plane.work_queue import WorkQueue


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _make_queue(base: float = 1.0, cap: float = 8.0):
    clock = FakeClock()
    return WorkQueue(base_delay_s=base, max_delay_s=cap, clock=clock), clock


# ─────────────────────────────────────────────────────────────────────────────
# Group 1: deduplication
# ─────────────────────────────────────────────────────────────────────────────

class TestDeduplication:

    def test_same_key_queued_once(self) -> None:
        queue, _ = _make_queue()
        for _ in range(10):
            queue.add("team-a/web")
        assert len(queue) == 1
        assert queue.get(timeout=0) == "team-a/web"
        assert queue.get(timeout=0) is None

    def test_keys_come_out_in_insertion_order(self) -> None:
        queue, _ = _make_queue()
        for key in ("c", "a", "b"):
            queue.add(key)
        assert [queue.get(timeout=0) for _ in range(3)] == ["c", "a", "b"]


# ─────────────────────────────────────────────────────────────────────────────
# Group 2: processing
# ─────────────────────────────────────────────────────────────────────────────

class TestProcessing:

    def test_key_added_while_processing_waits_for_done(self) -> None:
        queue, _ = _make_queue()
        queue.add("k")
        assert queue.get(timeout=0) == "k"

        queue.add("k")
        assert len(queue) == 0
        assert queue.get(timeout=0) is None

        queue.done("k")
        assert queue.get(timeout=0) == "k"

    def test_done_without_new_add_does_not_requeue(self) -> None:
        queue, _ = _make_queue()
        queue.add("k")
        queue.done(queue.get(timeout=0))
        assert len(queue) == 0


# ─────────────────────────────────────────────────────────────────────────────
# Group 3: delays
# ─────────────────────────────────────────────────────────────────────────────

class TestDelays:

    def test_add_after_parks_until_due(self) -> None:
        queue, clock = _make_queue()
        queue.add_after("k", 5.0)
        assert queue.parked() == 1
        assert queue.get(timeout=0) is None

        clock.advance(4.9)
        assert queue.get(timeout=0) is None
        clock.advance(0.1)
        assert queue.get(timeout=0) == "k"
        assert queue.parked() == 0

    def test_earlier_deadline_wins(self) -> None:
        queue, clock = _make_queue()
        queue.add_after("k", 10.0)
        queue.add_after("k", 2.0)
        queue.add_after("k", 30.0)

        clock.advance(2.0)
        assert queue.get(timeout=0) == "k"
        queue.done("k")

        clock.advance(30.0)
        assert queue.get(timeout=0) is None

    def test_zero_delay_is_immediate(self) -> None:
        queue, _ = _make_queue()
        queue.add_after("k", 0)
        assert queue.get(timeout=0) == "k"

    def test_parked_key_already_queued_is_not_duplicated(self) -> None:
        queue, clock = _make_queue()
        queue.add("k")
        queue.add_after("k", 1.0)
        clock.advance(1.0)
        assert queue.get(timeout=0) == "k"
        assert queue.get(timeout=0) is None


# ─────────────────────────────────────────────────────────────────────────────
# Group 4: rate limiting
# ─────────────────────────────────────────────────────────────────────────────

class TestRateLimiting:

    def test_backoff_doubles_and_caps(self) -> None:
        queue, _ = _make_queue(base=1.0, cap=8.0)
        delays = [queue.add_rate_limited("k") for _ in range(6)]
        assert delays == [1.0, 2.0, 4.0, 8.0, 8.0, 8.0]
        assert queue.num_requeues("k") == 6

    def test_forget_resets_backoff(self) -> None:
        queue, _ = _make_queue()
        queue.add_rate_limited("k")
        queue.add_rate_limited("k")
        queue.forget("k")
        assert queue.num_requeues("k") == 0
        assert queue.add_rate_limited("k") == 1.0

    def test_backoff_is_per_key(self) -> None:
        queue, _ = _make_queue()
        queue.add_rate_limited("a")
        queue.add_rate_limited("a")
        assert queue.add_rate_limited("b") == 1.0

    def test_rate_limited_key_becomes_ready(self) -> None:
        queue, clock = _make_queue()
        queue.add_rate_limited("k")
        assert queue.get(timeout=0) is None
        clock.advance(1.0)
        assert queue.get(timeout=0) == "k"


# ─────────────────────────────────────────────────────────────────────────────
# Group 5: shutdown
# ─────────────────────────────────────────────────────────────────────────────

class TestShutdown:

    def test_ready_keys_drain_after_shutdown(self) -> None:
        queue, _ = _make_queue()
        queue.add("k")
        queue.shut_down()
        assert queue.shutting_down
        assert queue.get(timeout=None) == "k"
        assert queue.get(timeout=None) is None

    def test_adds_after_shutdown_are_dropped(self) -> None:
        queue, _ = _make_queue()
        queue.shut_down()
        queue.add("k")
        queue.add_after("k", 1.0)
        assert len(queue) == 0
        assert queue.parked() == 0

    def test_parked_keys_are_discarded(self) -> None:
        queue, _ = _make_queue()
        queue.add_after("k", 5.0)
        queue.shut_down()
        assert queue.parked() == 0


# ─────────────────────────────────────────────────────────────────────────────
# Group 6: blocking get
# ─────────────────────────────────────────────────────────────────────────────

class TestBlockingGet:

    def test_blocked_worker_wakes_on_add(self) -> None:
        queue = WorkQueue()
        got = []
        worker = threading.Thread(target=lambda: got.append(queue.get(timeout=5.0)))
        worker.start()
        queue.add("k")
        worker.join(timeout=5.0)
        assert got == ["k"]

    def test_blocked_worker_wakes_on_shutdown(self) -> None:
        queue = WorkQueue()
        got = []
        worker = threading.Thread(target=lambda: got.append(queue.get()))
        worker.start()
        queue.shut_down()
        worker.join(timeout=5.0)
        assert got == [None]
