"""
fleet_scheduler/shared/store.py
───────────────────────────────
ObjectStore: the declarative object store the scheduler runs against.

The real store is an external collaborator. This module pins down the
contract the scheduler depends on and ships a thread-safe in-memory
implementation used by the service and the tests.

Contract
─────────
  get(kind, name, namespace)           → deep copy, NotFoundError if absent
  list(kind, namespace, labels)        → deep copies, label-equality selection
  create(obj)                          → stored copy, AlreadyExistsError
  update(obj)                          → spec/metadata write
  update_status(obj)                   → status-only write
  delete(kind, name, namespace)        → removes, or marks deleting when the
                                         object still carries finalizers
  watch(handler)                       → handler(WatchEvent) after every write

Optimistic concurrency
───────────────────────
Every stored object carries meta.resource_version. update(), update_status()
and delete(..., resource_version=...) compare the caller's copy with the
stored one and raise ConflictError when they differ. A successful write bumps
the version. Callers must re-read and recompute; the store never merges.

Generation
───────────
meta.generation starts at 1 and is bumped by update() only when the spec
changed. update_status() never touches it, and never changes the spec.
update() never changes the status.

Fault injection
────────────────
inject_error(op, kind, error, times) makes the next `times` calls of `op`
on `kind` raise `error`. Used by tests to exercise conflict and transient
failure handling without threads racing each other.
"""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel

from fleet_scheduler.shared.errors import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
)
from fleet_scheduler.shared.models import object_key, utcnow

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

_StoreKey = Tuple[str, Optional[str], str]   # (kind, namespace, name)


class EventType(str, Enum):
    ADDED = "Added"
    MODIFIED = "Modified"
    DELETED = "Deleted"


@dataclass(frozen=True)
class WatchEvent:
    """
    One change delivered to watchers.

    old is None for ADDED; new is None for DELETED. Both are private copies.
    """
    type: EventType
    kind: str
    old: Optional[BaseModel]
    new: Optional[BaseModel]


WatchHandler = Callable[[WatchEvent], None]


class InMemoryObjectStore:
    """
    Thread-safe in-memory implementation of the object store contract.

    Objects are pydantic models with a `meta: ObjectMeta` field and a `kind`
    class variable. Every read and write copies, so callers can never mutate
    stored state by accident.

    Watch handlers run synchronously on the writer's thread, after the store
    lock has been released, in write order per writer.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._objects: Dict[_StoreKey, BaseModel] = {}
        self._versions = itertools.count(1)
        self._handlers: List[WatchHandler] = []
        self._faults: Dict[Tuple[str, str], List] = {}
        self._write_count = 0

    # ── Watch ─────────────────────────────────────────────────────────────────

    def watch(self, handler: WatchHandler) -> None:
        with self._lock:
            self._handlers.append(handler)

    def _emit(self, events: List[WatchEvent]) -> None:
        with self._lock:
            handlers = list(self._handlers)
        for event in events:
            for handler in handlers:
                handler(event)

    # ── Reads ─────────────────────────────────────────────────────────────────

    def get(self, kind: Type[M], name: str, namespace: Optional[str] = None) -> M:
        self._maybe_fail("get", kind.kind)
        with self._lock:
            obj = self._objects.get((kind.kind, namespace, name))
            if obj is None:
                raise NotFoundError(kind.kind, object_key(namespace, name))
            return obj.model_copy(deep=True)

    def list(
        self,
        kind: Type[M],
        namespace: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
        all_namespaces: bool = False,
    ) -> List[M]:
        """
        List objects of one kind, sorted by (namespace, name).

        namespace=None lists cluster-scoped objects unless all_namespaces=True.
        labels selects objects carrying every given label with that value.
        """
        self._maybe_fail("list", kind.kind)
        labels = labels or {}
        with self._lock:
            out = []
            for (k, ns, _name), obj in self._objects.items():
                if k != kind.kind:
                    continue
                if not all_namespaces and ns != namespace:
                    continue
                obj_labels = obj.meta.labels
                if any(obj_labels.get(lk) != lv for lk, lv in labels.items()):
                    continue
                out.append(obj.model_copy(deep=True))
        out.sort(key=lambda o: (o.meta.namespace or "", o.meta.name))
        return out

    # ── Writes ────────────────────────────────────────────────────────────────

    def create(self, obj: M) -> M:
        self._maybe_fail("create", obj.kind)
        key = self._key(obj)
        with self._lock:
            if key in self._objects:
                raise AlreadyExistsError(obj.kind, object_key(key[1], key[2]))
            stored = obj.model_copy(deep=True)
            stored.meta.generation = 1
            stored.meta.resource_version = next(self._versions)
            stored.meta.creation_timestamp = utcnow()
            stored.meta.deletion_timestamp = None
            self._objects[key] = stored
            self._write_count += 1
            result = stored.model_copy(deep=True)
            event = WatchEvent(EventType.ADDED, obj.kind, None, stored.model_copy(deep=True))
        logger.debug("store: created %s %s", obj.kind, object_key(key[1], key[2]))
        self._emit([event])
        return result

    def update(self, obj: M) -> M:
        """
        Write spec and metadata. The stored status is preserved.

        Removing the last finalizer from a deleting object deletes it.
        """
        self._maybe_fail("update", obj.kind)
        key = self._key(obj)
        with self._lock:
            current = self._current_for_write(obj, key)
            stored = obj.model_copy(deep=True)
            if hasattr(current, "status"):
                stored.status = current.status.model_copy(deep=True)
            stored.meta.creation_timestamp = current.meta.creation_timestamp
            stored.meta.deletion_timestamp = current.meta.deletion_timestamp
            stored.meta.generation = current.meta.generation
            if _spec_of(stored) != _spec_of(current):
                stored.meta.generation += 1
            stored.meta.resource_version = next(self._versions)
            self._write_count += 1

            if stored.meta.deletion_timestamp is not None and not stored.meta.finalizers:
                del self._objects[key]
                event = WatchEvent(
                    EventType.DELETED, obj.kind, current.model_copy(deep=True), None
                )
            else:
                self._objects[key] = stored
                event = WatchEvent(
                    EventType.MODIFIED, obj.kind,
                    current.model_copy(deep=True), stored.model_copy(deep=True),
                )
            result = stored.model_copy(deep=True)
        self._emit([event])
        return result

    def update_status(self, obj: M) -> M:
        """Write the status only. Spec, metadata and generation are preserved."""
        self._maybe_fail("update_status", obj.kind)
        key = self._key(obj)
        with self._lock:
            current = self._current_for_write(obj, key)
            stored = current.model_copy(deep=True)
            stored.status = obj.status.model_copy(deep=True)
            stored.meta.resource_version = next(self._versions)
            self._objects[key] = stored
            self._write_count += 1
            result = stored.model_copy(deep=True)
            event = WatchEvent(
                EventType.MODIFIED, obj.kind,
                current.model_copy(deep=True), stored.model_copy(deep=True),
            )
        self._emit([event])
        return result

    def delete(
        self,
        kind: Type[M],
        name: str,
        namespace: Optional[str] = None,
        resource_version: Optional[int] = None,
    ) -> None:
        """
        Delete an object.

        With finalizers present the object is only marked (deletion_timestamp
        set, MODIFIED event); it disappears once the finalizers are removed.
        resource_version, when given, is checked like any other write.
        """
        self._maybe_fail("delete", kind.kind)
        key = (kind.kind, namespace, name)
        with self._lock:
            current = self._objects.get(key)
            if current is None:
                raise NotFoundError(kind.kind, object_key(namespace, name))
            if (
                resource_version is not None
                and resource_version != current.meta.resource_version
            ):
                raise ConflictError(
                    kind.kind, object_key(namespace, name),
                    resource_version, current.meta.resource_version,
                )
            if current.meta.finalizers and current.meta.deletion_timestamp is not None:
                return
            self._write_count += 1
            if current.meta.finalizers:
                stored = current.model_copy(deep=True)
                stored.meta.deletion_timestamp = utcnow()
                stored.meta.resource_version = next(self._versions)
                self._objects[key] = stored
                event = WatchEvent(
                    EventType.MODIFIED, kind.kind,
                    current.model_copy(deep=True), stored.model_copy(deep=True),
                )
            else:
                del self._objects[key]
                event = WatchEvent(EventType.DELETED, kind.kind, current.model_copy(deep=True), None)
        logger.debug("store: deleted %s %s", kind.kind, object_key(namespace, name))
        self._emit([event])

    # ── Test support ──────────────────────────────────────────────────────────

    def inject_error(self, op: str, kind: str, error: Exception, times: int = 1) -> None:
        """Make the next `times` calls of `op` on `kind` raise `error`."""
        with self._lock:
            self._faults.setdefault((op, kind), []).extend([error] * times)

    @property
    def write_count(self) -> int:
        """Number of successful writes so far. Used by idempotence tests."""
        with self._lock:
            return self._write_count

    # ── Private helpers ───────────────────────────────────────────────────────

    def _maybe_fail(self, op: str, kind: str) -> None:
        with self._lock:
            pending = self._faults.get((op, kind))
            if not pending:
                return
            err = pending.pop(0)
        raise err

    @staticmethod
    def _key(obj: BaseModel) -> _StoreKey:
        return (obj.kind, obj.meta.namespace, obj.meta.name)

    def _current_for_write(self, obj: BaseModel, key: _StoreKey) -> BaseModel:
        current = self._objects.get(key)
        if current is None:
            raise NotFoundError(obj.kind, object_key(key[1], key[2]))
        if obj.meta.resource_version != current.meta.resource_version:
            raise ConflictError(
                obj.kind, object_key(key[1], key[2]),
                obj.meta.resource_version, current.meta.resource_version,
            )
        return current


def _spec_of(obj: BaseModel):
    """The generation-relevant part of an object: its spec, or everything but meta/status."""
    if hasattr(obj, "spec"):
        return obj.spec
    return obj.model_dump(exclude={"meta", "status"})
