"""
fleet_scheduler/shared/errors.py
────────────────────────────────
Error taxonomy shared by the store, the scheduler and the reconciler.

  NotFoundError        → the object vanished. Cycles abort quietly.
  ConflictError        → stale resource_version on write. Re-read and retry
                         that one object; never blindly reapply.
  AlreadyExistsError   → create of a name that is taken.
  TransientStoreError  → unavailable / timeout / throttled. Retried with
                         exponential backoff, then surfaced as a condition.
  PolicyViolationError → the policy cannot be satisfied or is malformed.
                         Recorded as SchedulingFailed; not retried faster
                         than the normal resync.
  CycleCancelledError  → the enclosing context was cancelled mid-cycle.
"""

from __future__ import annotations


class StoreError(Exception):
    """Base class for every object-store failure."""


class NotFoundError(StoreError):
    def __init__(self, kind: str, key: str) -> None:
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} {key!r} not found")


class AlreadyExistsError(StoreError):
    def __init__(self, kind: str, key: str) -> None:
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} {key!r} already exists")


class ConflictError(StoreError):
    """
    Raised when a write carries a resource_version that is no longer current.

    Attributes:
        expected: resource_version the caller sent.
        actual:   resource_version currently stored.
    """

    def __init__(self, kind: str, key: str, expected: int, actual: int) -> None:
        self.kind = kind
        self.key = key
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"{kind} {key!r} was modified concurrently "
            f"(sent resource_version={expected}, current={actual})"
        )


class TransientStoreError(StoreError):
    """
    The store is temporarily unable to serve the request.

    reason is one of "unavailable", "timeout", "throttled".
    """

    def __init__(self, reason: str, message: str = "") -> None:
        self.reason = reason
        super().__init__(message or f"object store {reason}")


class PolicyViolationError(Exception):
    """
    Raised when a placement policy is malformed or cannot be met.

    Attributes:
        reason: Human-readable explanation, copied into the placement status.
    """

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class CycleCancelledError(Exception):
    """The scheduling cycle was abandoned because shutdown was requested."""


def is_conflict(err: BaseException) -> bool:
    return isinstance(err, ConflictError)


def is_transient(err: BaseException) -> bool:
    return isinstance(err, TransientStoreError)


def is_retryable_write_error(err: BaseException) -> bool:
    """Conflicts and transient failures are both worth another attempt."""
    return is_conflict(err) or is_transient(err)


def raise_if_cancelled(cancel_event) -> None:
    """Checkpoint between cycle stages. cancel_event may be None."""
    if cancel_event is not None and cancel_event.is_set():
        raise CycleCancelledError("scheduling cycle cancelled")
