"""
fleet_scheduler/shared/models.py
────────────────────────────────
Every object the scheduler reads from or writes to the object store.

Design philosophy
-----------------
Every model answers one question: "What does the scheduler *need to know*
about this thing in order to decide where a placement lands?"

The store hands out deep copies, so the models are plain mutable pydantic
objects. Immutability of snapshots is a contract of the store's callers,
not of the classes.

Reading guide
-------------
Read top-to-bottom. Each model builds on the ones above it:
  enums → metadata/conditions → policy → placement → snapshots → cluster → binding
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import ClassVar, Dict, List, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    """Timezone-aware UTC now. Used for all timestamps written by the scheduler."""
    return datetime.now(timezone.utc)


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 1: ENUMERATIONS
# ─────────────────────────────────────────────────────────────────────────────

class PlacementType(str, Enum):
    """
    How a policy chooses clusters.

    PICK_ALL   → every cluster that passes the filters.
    PICK_N     → the top N clusters by score.
    PICK_FIXED → exactly the clusters named in the policy.
    """
    PICK_ALL = "PickAll"
    PICK_N = "PickN"
    PICK_FIXED = "PickFixed"


class BindingState(str, Enum):
    """
    Lifecycle of a binding.

    SCHEDULED   → Created by the scheduler; resources not yet rolled out.
    BOUND       → The rollout collaborator has started placing resources.
    UNSCHEDULED → The scheduler no longer wants this cluster. The rollout
                  collaborator drains the cluster and deletes the binding.
    """
    SCHEDULED = "Scheduled"
    BOUND = "Bound"
    UNSCHEDULED = "Unscheduled"


class ConditionStatus(str, Enum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class UnsatisfiableAction(str, Enum):
    """What a topology spread constraint does when it cannot be met."""
    DO_NOT_SCHEDULE = "DoNotSchedule"
    SCHEDULE_ANYWAY = "ScheduleAnyway"


class PropertyOperator(str, Enum):
    EQ = "Eq"
    NE = "Ne"
    GT = "Gt"
    GE = "Ge"
    LT = "Lt"
    LE = "Le"


class ClusterState(str, Enum):
    """Membership intent of a member cluster. LEAVE means no new placements."""
    JOIN = "Join"
    LEAVE = "Leave"


class SchedulingOutcome(str, Enum):
    """
    Reason written on the placement's Scheduled condition.

    SCHEDULED           → every desired cluster was selected.
    PARTIALLY_SCHEDULED → fewer clusters than desired passed the filters.
    SCHEDULING_FAILED   → pre-filter rejection, too few clusters to meet the
                          policy minimum, invalid policy, or a store failure.
    """
    SCHEDULED = "Scheduled"
    PARTIALLY_SCHEDULED = "PartiallyScheduled"
    SCHEDULING_FAILED = "SchedulingFailed"


# Condition types ──────────────────────────────────────────────────────────────
PLACEMENT_SCHEDULED_CONDITION = "Scheduled"
CLUSTER_JOINED_CONDITION = "Joined"
CLUSTER_HEALTHY_CONDITION = "Healthy"

# Label / annotation / finalizer names ─────────────────────────────────────────
PLACEMENT_TRACKING_LABEL = "fleet.io/placement-tracking"
"""Set on bindings and snapshots; value is the owning placement's name."""

PREVIOUS_BINDING_STATE_ANNOTATION = "fleet.io/previous-binding-state"
"""Recorded when a binding is unscheduled so it can be revived to that state."""

SCHEDULER_CLEANUP_FINALIZER = "fleet.io/scheduler-cleanup"
"""Keeps a deleted placement around until the scheduler removed its bindings."""


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 2: METADATA & CONDITIONS
# ─────────────────────────────────────────────────────────────────────────────

class ObjectMeta(BaseModel):
    """
    Identity and bookkeeping shared by every stored object.

    generation       → bumped by the store only when the spec changes.
    resource_version → bumped by the store on every write. Writes carrying a
                       stale resource_version fail with ConflictError.
    """
    name: str = Field(..., min_length=1)
    namespace: Optional[str] = Field(
        None,
        description="None for cluster-scoped objects"
    )
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)
    finalizers: List[str] = Field(default_factory=list)
    generation: int = Field(1, ge=1)
    resource_version: int = Field(0, ge=0)
    creation_timestamp: Optional[datetime] = None
    deletion_timestamp: Optional[datetime] = None


class Condition(BaseModel):
    """A single observed condition, following the usual type/status/reason shape."""
    type: str
    status: ConditionStatus
    reason: str = ""
    message: str = ""
    observed_generation: int = 0
    last_transition_time: datetime = Field(default_factory=utcnow)


def get_condition(conditions: List[Condition], condition_type: str) -> Optional[Condition]:
    for cond in conditions:
        if cond.type == condition_type:
            return cond
    return None


def set_condition(conditions: List[Condition], new: Condition) -> None:
    """
    Insert or replace a condition by type, in place.

    last_transition_time only moves when the status actually flips, so a
    rewrite of an unchanged condition produces an identical object.
    """
    for i, cond in enumerate(conditions):
        if cond.type != new.type:
            continue
        if cond.status == new.status:
            new = new.model_copy(update={"last_transition_time": cond.last_transition_time})
        conditions[i] = new
        return
    conditions.append(new)


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 3: POLICY
# ─────────────────────────────────────────────────────────────────────────────

class ResourceSelector(BaseModel):
    """Which hub resources a placement carries. Opaque to the scheduler."""
    group: str = ""
    version: str = "v1"
    kind: str
    name: Optional[str] = None
    label_selector: Dict[str, str] = Field(default_factory=dict)


class PropertyRequirement(BaseModel):
    """
    A numeric comparison against a cluster property.

    e.g. PropertyRequirement(name="cpu-capacity", operator=GE, value=64)
    A cluster that does not report the property never satisfies it.
    """
    name: str
    operator: PropertyOperator
    value: float


class ClusterSelectorTerm(BaseModel):
    """
    One affinity term. A cluster matches when every label in match_labels is
    present with the same value AND every property requirement holds.
    An empty term matches every cluster.
    """
    match_labels: Dict[str, str] = Field(default_factory=dict)
    property_requirements: List[PropertyRequirement] = Field(default_factory=list)


class PreferredClusterSelector(BaseModel):
    """A weighted affinity term. Negative weights express anti-affinity."""
    weight: int = Field(..., ge=-100, le=100)
    preference: ClusterSelectorTerm


class ClusterAffinity(BaseModel):
    """
    required_terms  → OR of terms. Empty list = no requirement.
    preferred_terms → summed weights of the matching terms become the
                      cluster's affinity score.
    """
    required_terms: List[ClusterSelectorTerm] = Field(default_factory=list)
    preferred_terms: List[PreferredClusterSelector] = Field(default_factory=list)


class TopologySpreadConstraint(BaseModel):
    """
    Spread selected clusters across the values of one cluster label.

    max_skew → the largest allowed difference between the most and least
               populated domains, counting the cluster being considered.
    """
    topology_key: str
    max_skew: int = 1
    when_unsatisfiable: UnsatisfiableAction = UnsatisfiableAction.DO_NOT_SCHEDULE


class PlacementPolicy(BaseModel):
    """
    The scheduling-relevant part of a placement spec.

    Everything in here is copied into a PolicySnapshot. Changing any field
    produces a new snapshot and retires the bindings of the old one.

    min_clusters:
        A cycle in which fewer clusters pass the filters than this number
        fails outright (SchedulingFailed). Below the desired count but at or
        above the minimum, the outcome is PartiallyScheduled.
    """
    placement_type: PlacementType = PlacementType.PICK_ALL
    number_of_clusters: Optional[int] = Field(
        None,
        description="Required for PickN: how many clusters to select."
    )
    cluster_names: List[str] = Field(
        default_factory=list,
        description="Required for PickFixed: the exact target clusters."
    )
    min_clusters: int = Field(0, ge=0)
    affinity: Optional[ClusterAffinity] = None
    topology_spread_constraints: List[TopologySpreadConstraint] = Field(default_factory=list)


class RolloutStrategy(BaseModel):
    """Consumed by the rollout collaborator. A change bumps the placement generation."""
    type: str = "RollingUpdate"
    max_unavailable: int = Field(1, ge=0)
    max_surge: int = Field(1, ge=0)
    unavailable_period_seconds: int = Field(60, ge=0)


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 4: PLACEMENT
# ─────────────────────────────────────────────────────────────────────────────

class ClusterScore(BaseModel):
    """
    Score of one cluster in one cycle.

    breakdown → plugin name → weighted score contributed by that plugin.
    total     → sum of the breakdown. Clusters are ranked by it.
    """
    breakdown: Dict[str, float] = Field(default_factory=dict)
    total: float = 0.0


class ClusterDecision(BaseModel):
    """
    Why a cluster was (or was not) picked.

    Selected decisions are copied onto the binding; every decision, selected
    or not, is surfaced in the placement status for observability.
    """
    cluster_name: str
    selected: bool
    score: Optional[ClusterScore] = None
    reason: str = ""


class PlacementSpec(BaseModel):
    resource_selectors: List[ResourceSelector] = Field(default_factory=list)
    policy: PlacementPolicy = Field(default_factory=PlacementPolicy)
    rollout_strategy: RolloutStrategy = Field(default_factory=RolloutStrategy)
    revision_history_limit: Optional[int] = Field(None, ge=1)


class PlacementStatus(BaseModel):
    conditions: List[Condition] = Field(default_factory=list)
    cluster_decisions: List[ClusterDecision] = Field(default_factory=list)
    observed_policy_snapshot: Optional[str] = None
    observed_resource_snapshot: Optional[str] = None


class Placement(BaseModel):
    """
    A request to place selected resources onto a subset of the fleet.

    Cluster-scoped when meta.namespace is None, namespace-scoped otherwise.
    """
    kind: ClassVar[str] = "Placement"

    meta: ObjectMeta
    spec: PlacementSpec = Field(default_factory=PlacementSpec)
    status: PlacementStatus = Field(default_factory=PlacementStatus)

    @property
    def key(self) -> str:
        """Work-queue key: `name` or `namespace/name`."""
        return object_key(self.meta.namespace, self.meta.name)


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 5: SNAPSHOTS
# Immutable, index-stamped revisions. The highest index is the current one.
# ─────────────────────────────────────────────────────────────────────────────

class PolicySnapshot(BaseModel):
    """
    Frozen copy of a placement's policy at the time scheduling last ran.

    Fields:
        index                → monotonically increasing per placement.
        policy_hash          → sha256 of the canonical policy JSON. A placement
                               whose current policy hashes to the same value
                               reuses this snapshot.
        placement_generation → placement generation observed at capture time.

    Superseded snapshots are garbage-collected by another controller.
    """
    kind: ClassVar[str] = "PolicySnapshot"

    meta: ObjectMeta
    index: int = Field(..., ge=0)
    policy: PlacementPolicy
    policy_hash: str
    placement_generation: int = Field(1, ge=1)


class ResourceSnapshot(BaseModel):
    """
    Upstream-produced revision of the selected resources.

    Only its name matters to the scheduler: bindings referencing an older
    resource snapshot than the latest one are obsolete.
    """
    kind: ClassVar[str] = "ResourceSnapshot"

    meta: ObjectMeta
    index: int = Field(..., ge=0)
    resource_hash: str = ""


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 6: MEMBER CLUSTER
# ─────────────────────────────────────────────────────────────────────────────

class MemberClusterSpec(BaseModel):
    state: ClusterState = ClusterState.JOIN
    heartbeat_period_seconds: int = Field(60, ge=1)


class MemberClusterStatus(BaseModel):
    """
    Written by the member-health collaborator. Read once at cycle start.

    properties → numeric facts about the cluster, e.g.
                 {"cpu-capacity": 128.0, "memory-capacity-gb": 512.0,
                  "node-count": 12.0}
    """
    conditions: List[Condition] = Field(default_factory=list)
    last_heartbeat: Optional[datetime] = None
    properties: Dict[str, float] = Field(default_factory=dict)


class MemberCluster(BaseModel):
    kind: ClassVar[str] = "MemberCluster"

    meta: ObjectMeta
    spec: MemberClusterSpec = Field(default_factory=MemberClusterSpec)
    status: MemberClusterStatus = Field(default_factory=MemberClusterStatus)

    @property
    def name(self) -> str:
        return self.meta.name

    @property
    def labels(self) -> Dict[str, str]:
        return self.meta.labels


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 7: BINDING
# ─────────────────────────────────────────────────────────────────────────────

class ResourceIdentifier(BaseModel):
    group: str = ""
    version: str = "v1"
    kind: str
    name: str
    namespace: str = ""


class FailedResourcePlacement(BaseModel):
    resource: ResourceIdentifier
    condition: Condition


class PatchDetail(BaseModel):
    path: str
    value_in_hub: str = ""
    value_in_member: str = ""


class DriftedResourcePlacement(BaseModel):
    resource: ResourceIdentifier
    observation_time: datetime = Field(default_factory=utcnow)
    target_cluster_observed_generation: int = 0
    first_drifted_observed_time: datetime = Field(default_factory=utcnow)
    observed_drifts: List[PatchDetail] = Field(default_factory=list)


class DiffedResourcePlacement(BaseModel):
    resource: ResourceIdentifier
    observation_time: datetime = Field(default_factory=utcnow)
    target_cluster_observed_generation: Optional[int] = None
    first_diffed_observed_time: datetime = Field(default_factory=utcnow)
    observed_diffs: List[PatchDetail] = Field(default_factory=list)


class BindingSpec(BaseModel):
    state: BindingState = BindingState.SCHEDULED
    target_cluster: str
    policy_snapshot_name: str = ""
    resource_snapshot_name: str = ""
    cluster_decision: Optional[ClusterDecision] = None


class BindingStatus(BaseModel):
    """
    Written by downstream collaborators; the scheduler never mutates it.

    Applied / Available outcomes are reported as conditions; the three lists
    carry per-resource detail for display.
    """
    conditions: List[Condition] = Field(default_factory=list)
    failed_placements: List[FailedResourcePlacement] = Field(default_factory=list)
    drifted_placements: List[DriftedResourcePlacement] = Field(default_factory=list)
    diffed_placements: List[DiffedResourcePlacement] = Field(default_factory=list)


class Binding(BaseModel):
    """
    Durable record of "resources of placement P are (or will be) on cluster C".

    Owned by the placement named in the PLACEMENT_TRACKING_LABEL, in the
    same namespace as the placement (None for cluster-scoped placements).
    """
    kind: ClassVar[str] = "Binding"

    meta: ObjectMeta
    spec: BindingSpec

    status: BindingStatus = Field(default_factory=BindingStatus)

    @property
    def owner_key(self) -> Optional[str]:
        """Work-queue key of the owning placement, None if the label is missing."""
        owner = self.meta.labels.get(PLACEMENT_TRACKING_LABEL)
        if not owner:
            return None
        return object_key(self.meta.namespace, owner)

    @property
    def is_deleting(self) -> bool:
        return self.meta.deletion_timestamp is not None


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 8: HELPERS
# ─────────────────────────────────────────────────────────────────────────────

def object_key(namespace: Optional[str], name: str) -> str:
    """`name` for cluster-scoped objects, `namespace/name` otherwise."""
    if namespace:
        return f"{namespace}/{name}"
    return name


def split_key(key: str):
    """Inverse of object_key(). Returns (namespace or None, name)."""
    if "/" in key:
        namespace, name = key.split("/", 1)
        return namespace, name
    return None, key
