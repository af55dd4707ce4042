"""
Member cluster watcher decisions.

Any placement may gain or lose a candidate when a cluster changes, so these
functions answer one question: should every placement be requeued?

  created / deleted                       → yes
  labels, properties or spec.state
  changed, or deletion started            → yes
  a condition status flipped (Joined,
  Healthy, ...)                           → yes
  heartbeat only                          → no

Heartbeat staleness is judged by the scheduler at cycle time; the periodic
resync picks up clusters that silently went stale.
"""

from __future__ import annotations

from typing import Dict, Optional

from fleet_scheduler.shared.models import ConditionStatus, MemberCluster


def on_cluster_created(cluster: Optional[MemberCluster]) -> bool:
    return cluster is not None


def on_cluster_deleted(cluster: Optional[MemberCluster]) -> bool:
    return cluster is not None


def on_cluster_updated(
    old: Optional[MemberCluster], new: Optional[MemberCluster],
) -> bool:
    if old is None or new is None:
        return False
    if (
        old.labels != new.labels
        or old.status.properties != new.status.properties
        or old.spec.state != new.spec.state
    ):
        return True
    if new.meta.deletion_timestamp is not None and old.meta.deletion_timestamp is None:
        return True
    return _condition_statuses(old) != _condition_statuses(new)


def _condition_statuses(cluster: MemberCluster) -> Dict[str, ConditionStatus]:
    return {c.type: c.status for c in cluster.status.conditions}
