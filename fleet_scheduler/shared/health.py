"""
fleet_scheduler/shared/health.py
────────────────────────────────
Cluster eligibility derived from the member-health signal.

The member-health collaborator keeps two conditions and a heartbeat on every
MemberCluster. The scheduler only ever asks one question of them, at cycle
start: "may new placements land on this cluster?"

  1. The cluster is not being deleted and its spec.state is not LEAVE.
  2. Joined condition is True.
  3. Healthy condition is not False (Unknown is tolerated: a freshly joined
     cluster has not been probed yet).
  4. If a heartbeat has been recorded, it is no older than
     heartbeat_period_seconds × staleness_factor.

Checks run in that order; the first failure's reason is returned so it can
be surfaced in the placement status.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Tuple

from fleet_scheduler.shared.config import HEARTBEAT_STALENESS_FACTOR
from fleet_scheduler.shared.models import (
    CLUSTER_HEALTHY_CONDITION,
    CLUSTER_JOINED_CONDITION,
    ClusterState,
    ConditionStatus,
    MemberCluster,
    get_condition,
    utcnow,
)


def is_leaving(cluster: MemberCluster) -> bool:
    """True when the cluster is on its way out of the fleet."""
    return (
        cluster.meta.deletion_timestamp is not None
        or cluster.spec.state == ClusterState.LEAVE
    )


def check_cluster_eligibility(
    cluster: MemberCluster,
    now: Optional[datetime] = None,
    staleness_factor: float = HEARTBEAT_STALENESS_FACTOR,
) -> Tuple[bool, str]:
    """
    Returns:
        (True, "") when new placements may land on the cluster,
        (False, reason) otherwise.
    """
    if is_leaving(cluster):
        return False, f"cluster {cluster.name} is leaving the fleet"

    joined = get_condition(cluster.status.conditions, CLUSTER_JOINED_CONDITION)
    if joined is None or joined.status != ConditionStatus.TRUE:
        return False, f"cluster {cluster.name} has not joined the fleet"

    healthy = get_condition(cluster.status.conditions, CLUSTER_HEALTHY_CONDITION)
    if healthy is not None and healthy.status == ConditionStatus.FALSE:
        reason = healthy.reason or "Unhealthy"
        return False, f"cluster {cluster.name} is unhealthy ({reason})"

    if cluster.status.last_heartbeat is not None:
        now = now or utcnow()
        age_s = (now - cluster.status.last_heartbeat).total_seconds()
        limit_s = cluster.spec.heartbeat_period_seconds * staleness_factor
        if age_s > limit_s:
            return False, (
                f"cluster {cluster.name} missed heartbeats "
                f"(last seen {age_s:.0f}s ago, limit {limit_s:.0f}s)"
            )

    return True, ""
