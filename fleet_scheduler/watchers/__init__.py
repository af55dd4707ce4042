"""
fleet_scheduler/watchers — change detection for the scheduler.

Pure decision functions per object kind, plus the EventDispatcher that
feeds their verdicts into the WorkQueue.
"""

from fleet_scheduler.watchers.binding import (
    conditions_changed,
    on_binding_created,
    on_binding_deleted,
    on_binding_updated,
    placement_lists_changed,
)
from fleet_scheduler.watchers.dispatcher import EventDispatcher
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

__all__ = [
    "EventDispatcher",
    "on_placement_created",
    "on_placement_updated",
    "on_placement_deleted",
    "on_binding_created",
    "on_binding_updated",
    "on_binding_deleted",
    "conditions_changed",
    "placement_lists_changed",
    "on_resource_snapshot_created",
    "on_cluster_created",
    "on_cluster_updated",
    "on_cluster_deleted",
]
