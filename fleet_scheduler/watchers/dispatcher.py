"""
fleet_scheduler/watchers/dispatcher.py
──────────────────────────────────────
EventDispatcher: routes store watch events into the work queue.

Each object kind has three decision functions (created / updated / deleted)
that return the placement key to enqueue and whether to enqueue it. Member
cluster decisions return a plain bool meaning "requeue every placement".
Kinds without decision functions (policy snapshots, for instance) are
ignored; the scheduler writes those itself.

Integration
───────────
    dispatcher = EventDispatcher(queue, store)
    store.watch(dispatcher.handle)
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable, Dict, Tuple

from fleet_scheduler.shared.models import (
    Binding,
    MemberCluster,
    Placement,
    ResourceSnapshot,
)
from fleet_scheduler.shared.store import EventType, InMemoryObjectStore, WatchEvent
from fleet_scheduler.watchers.binding import (
    on_binding_created,
    on_binding_deleted,
    on_binding_updated,
)
from fleet_scheduler.watchers.member_cluster import (
    on_cluster_created,
    on_cluster_deleted,
    on_cluster_updated,
)
from fleet_scheduler.watchers.placement import (
    on_placement_created,
    on_placement_deleted,
    on_placement_updated,
)
from fleet_scheduler.watchers.resource_snapshot import on_resource_snapshot_created

if TYPE_CHECKING:
    from fleet_scheduler.control_plane.work_queue import WorkQueue

logger = logging.getLogger(__name__)

_KeyedDecision = Callable[[WatchEvent], Tuple[str, bool]]

_KEYED: Dict[Tuple[str, EventType], _KeyedDecision] = {
    (Placement.kind, EventType.ADDED): lambda e: on_placement_created(e.new),
    (Placement.kind, EventType.MODIFIED): lambda e: on_placement_updated(e.old, e.new),
    (Placement.kind, EventType.DELETED): lambda e: on_placement_deleted(e.old),
    (Binding.kind, EventType.ADDED): lambda e: on_binding_created(e.new),
    (Binding.kind, EventType.MODIFIED): lambda e: on_binding_updated(e.old, e.new),
    (Binding.kind, EventType.DELETED): lambda e: on_binding_deleted(e.old),
    (ResourceSnapshot.kind, EventType.ADDED): lambda e: on_resource_snapshot_created(e.new),
}

_FLEET_WIDE: Dict[EventType, Callable[[WatchEvent], bool]] = {
    EventType.ADDED: lambda e: on_cluster_created(e.new),
    EventType.MODIFIED: lambda e: on_cluster_updated(e.old, e.new),
    EventType.DELETED: lambda e: on_cluster_deleted(e.old),
}


class EventDispatcher:
    def __init__(self, queue: WorkQueue, store: InMemoryObjectStore) -> None:
        self._queue = queue
        self._store = store

    def handle(self, event: WatchEvent) -> None:
        if event.kind == MemberCluster.kind:
            if _FLEET_WIDE[event.type](event):
                count = self.requeue_all()
                logger.debug(
                    "member cluster %s event requeued %d placement(s)",
                    event.type.value, count,
                )
            return

        decide = _KEYED.get((event.kind, event.type))
        if decide is None:
            return
        key, should_enqueue = decide(event)
        if should_enqueue and key:
            logger.debug("%s %s → enqueue %s", event.kind, event.type.value, key)
            self._queue.add(key)

    def requeue_all(self) -> int:
        """Enqueue every placement in every namespace. Also the periodic resync."""
        placements = self._store.list(Placement, all_namespaces=True)
        for placement in placements:
            self._queue.add(placement.key)
        return len(placements)
