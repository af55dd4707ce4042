"""
Resource snapshot watcher decisions.

A new resource snapshot makes every binding of its placement obsolete, so
creation requeues the owner. Snapshots are immutable; updates and deletes
(garbage collection of old revisions) never do.
"""

from __future__ import annotations

import logging
from typing import Optional, Tuple

from fleet_scheduler.shared.models import (
    PLACEMENT_TRACKING_LABEL,
    ResourceSnapshot,
    object_key,
)

logger = logging.getLogger(__name__)


def on_resource_snapshot_created(snapshot: Optional[ResourceSnapshot]) -> Tuple[str, bool]:
    if snapshot is None:
        logger.warning("resource snapshot create event carried no object")
        return "", False
    owner = snapshot.meta.labels.get(PLACEMENT_TRACKING_LABEL)
    if not owner:
        logger.warning(
            "resource snapshot %s has no owner label, ignoring", snapshot.meta.name
        )
        return "", False
    return object_key(snapshot.meta.namespace, owner), True
