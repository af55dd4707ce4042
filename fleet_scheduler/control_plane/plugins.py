"""
fleet_scheduler/control_plane/plugins.py
────────────────────────────────────────
Built-in scheduling plugins and the default profile.

What this is
─────────────
Each plugin answers one narrow question about a cluster. The pipeline
combines the answers: filters are hard gates, scores are summed after the
profile weights are applied.

  ReadyClusterQuorum       PreFilter  can the policy minimum be met at all?
  ClusterEligibility       Filter     is the cluster joined, healthy and not
                                      leaving?
  ClusterAffinity          PreFilter  skip the Filter stage without required terms
                           Filter     does the cluster match a required term?
                           PreScore   skip the Score stage without preferred terms
                           Score      summed weights of matching preferred terms
  TopologySpread           PreFilter  count placements per topology domain
                           Filter     DoNotSchedule constraints: reject clusters
                                      that would push the skew over max_skew
                           PreScore   make sure the counts are in the CycleState
                           Score      favour less populated domains
  ObsoleteBindingAffinity  Score      prefer clusters already holding an
                                      obsolete binding (update in place rather
                                      than move the workload)

Scores are raw numbers; none of them is normalised. The profile weights
(SchedulerConfig.score_weights) decide how much each one counts.

Standalone use:
    from fleet_scheduler.control_plane.plugins import default_profile
    profile = default_profile(SchedulerConfig())
"""

from __future__ import annotations

import operator
from datetime import datetime
from typing import Callable, Dict, List, Optional

from fleet_core.cyclestate import CycleState, StateKeyNotFoundError
from fleet_core.plugin import (
    FilterPlugin,
    PluginStatus,
    PreFilterPlugin,
    PreScorePlugin,
    Profile,
    ScorePlugin,
)
from fleet_scheduler.shared.config import HEARTBEAT_STALENESS_FACTOR, SchedulerConfig
from fleet_scheduler.shared.health import check_cluster_eligibility
from fleet_scheduler.shared.models import (
    ClusterSelectorTerm,
    MemberCluster,
    PlacementPolicy,
    PropertyOperator,
    PropertyRequirement,
    UnsatisfiableAction,
)

# ── Plugin names ──────────────────────────────────────────────────────────────
# Also the keys of SchedulerConfig.score_weights.

READY_CLUSTER_QUORUM = "ReadyClusterQuorum"
CLUSTER_ELIGIBILITY = "ClusterEligibility"
CLUSTER_AFFINITY = "ClusterAffinity"
TOPOLOGY_SPREAD = "TopologySpread"
OBSOLETE_BINDING_AFFINITY = "ObsoleteBindingAffinity"

TOPOLOGY_COUNTS_KEY = "TopologySpread/domain-counts"
"""CycleState key holding {topology_key: {domain: placed_count}}."""

OBSOLETE_BINDING_BONUS: float = 10.0
"""Raw score for a cluster that already holds an obsolete binding.

Large enough to beat a one-placement topology difference at equal weights,
small enough for a strong preferred-affinity term (weight up to 100) to win.
"""

_COMPARATORS: Dict[PropertyOperator, Callable[[float, float], bool]] = {
    PropertyOperator.EQ: operator.eq,
    PropertyOperator.NE: operator.ne,
    PropertyOperator.GT: operator.gt,
    PropertyOperator.GE: operator.ge,
    PropertyOperator.LT: operator.lt,
    PropertyOperator.LE: operator.le,
}


# ── Term matching ─────────────────────────────────────────────────────────────

def property_matches(req: PropertyRequirement, cluster: MemberCluster) -> bool:
    """A cluster that does not report the property never matches."""
    observed = cluster.status.properties.get(req.name)
    if observed is None:
        return False
    return _COMPARATORS[req.operator](observed, req.value)


def term_matches(term: ClusterSelectorTerm, cluster: MemberCluster) -> bool:
    """Every label must match exactly and every property requirement must hold."""
    labels = cluster.labels
    for key, value in term.match_labels.items():
        if labels.get(key) != value:
            return False
    return all(property_matches(req, cluster) for req in term.property_requirements)


# ── ReadyClusterQuorum ────────────────────────────────────────────────────────

class ReadyClusterQuorum(PreFilterPlugin):
    """
    Fails the cycle up front when fewer eligible clusters exist than the
    policy minimum. Saves a full Filter/Score pass that cannot succeed.
    """

    def __init__(
        self,
        staleness_factor: float = HEARTBEAT_STALENESS_FACTOR,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._staleness = staleness_factor
        self._clock = clock

    @property
    def name(self) -> str:
        return READY_CLUSTER_QUORUM

    def pre_filter(self, state: CycleState, policy: PlacementPolicy) -> PluginStatus:
        if policy.min_clusters == 0:
            return PluginStatus.success()
        now = self._clock() if self._clock else None
        ready = sum(
            1 for c in state.list_clusters()
            if check_cluster_eligibility(c, now, self._staleness)[0]
        )
        if ready < policy.min_clusters:
            return PluginStatus.unschedulable(
                self.name,
                f"only {ready} eligible cluster(s) in the fleet, "
                f"policy requires at least {policy.min_clusters}",
            )
        return PluginStatus.success()


# ── ClusterEligibility ────────────────────────────────────────────────────────

class ClusterEligibility(FilterPlugin):
    """Rejects clusters the member-health signal says cannot take new work."""

    def __init__(
        self,
        staleness_factor: float = HEARTBEAT_STALENESS_FACTOR,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._staleness = staleness_factor
        self._clock = clock

    @property
    def name(self) -> str:
        return CLUSTER_ELIGIBILITY

    def filter(
        self, state: CycleState, policy: PlacementPolicy, cluster: MemberCluster
    ) -> PluginStatus:
        now = self._clock() if self._clock else None
        ok, reason = check_cluster_eligibility(cluster, now, self._staleness)
        if ok:
            return PluginStatus.success()
        return PluginStatus.unschedulable(self.name, reason)


# ── ClusterAffinity ───────────────────────────────────────────────────────────

class ClusterAffinity(PreFilterPlugin, FilterPlugin, PreScorePlugin, ScorePlugin):
    """
    required_terms are OR-ed: one matching term is enough to pass.
    preferred_terms add their weight for every term the cluster matches;
    negative weights push a cluster down the ranking.
    """

    @property
    def name(self) -> str:
        return CLUSTER_AFFINITY

    def pre_filter(self, state: CycleState, policy: PlacementPolicy) -> PluginStatus:
        if policy.affinity is None or not policy.affinity.required_terms:
            return PluginStatus.skip(self.name, "no required cluster affinity terms")
        return PluginStatus.success()

    def filter(
        self, state: CycleState, policy: PlacementPolicy, cluster: MemberCluster
    ) -> PluginStatus:
        terms = policy.affinity.required_terms if policy.affinity else []
        if any(term_matches(term, cluster) for term in terms):
            return PluginStatus.success()
        return PluginStatus.unschedulable(
            self.name,
            f"cluster {cluster.name} matches none of the required affinity terms",
        )

    def pre_score(self, state: CycleState, policy: PlacementPolicy) -> PluginStatus:
        if policy.affinity is None or not policy.affinity.preferred_terms:
            return PluginStatus.skip(self.name, "no preferred cluster affinity terms")
        return PluginStatus.success()

    def score(
        self, state: CycleState, policy: PlacementPolicy, cluster: MemberCluster
    ) -> float:
        total = 0.0
        for preferred in policy.affinity.preferred_terms:
            if term_matches(preferred.preference, cluster):
                total += preferred.weight
        return total


# ── TopologySpread ────────────────────────────────────────────────────────────

class TopologySpread(PreFilterPlugin, FilterPlugin, PreScorePlugin, ScorePlugin):
    """
    Spreads placements over the values of a cluster label.

    The population of a domain is the number of clusters in it that already
    hold a current (Scheduled/Bound) binding for this placement. Domains are
    the label values found on eligible clusters, so a domain made only of
    unhealthy clusters does not pin the minimum at zero.

    Every cluster is judged against the counts at cycle start; clusters
    picked in the same cycle do not see each other.
    """

    def __init__(
        self,
        staleness_factor: float = HEARTBEAT_STALENESS_FACTOR,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._staleness = staleness_factor
        self._clock = clock

    @property
    def name(self) -> str:
        return TOPOLOGY_SPREAD

    def pre_filter(self, state: CycleState, policy: PlacementPolicy) -> PluginStatus:
        if not policy.topology_spread_constraints:
            return PluginStatus.skip(self.name, "no topology spread constraints")
        state.write(TOPOLOGY_COUNTS_KEY, self.domain_counts(state, policy))
        return PluginStatus.success()

    def filter(
        self, state: CycleState, policy: PlacementPolicy, cluster: MemberCluster
    ) -> PluginStatus:
        counts = self._counts(state, policy)
        already_placed = state.has_scheduled_or_bound_binding_for(cluster.name)
        for constraint in policy.topology_spread_constraints:
            if constraint.when_unsatisfiable != UnsatisfiableAction.DO_NOT_SCHEDULE:
                continue
            key = constraint.topology_key
            domain = cluster.labels.get(key)
            if domain is None:
                return PluginStatus.unschedulable(
                    self.name, f"cluster {cluster.name} has no {key!r} label"
                )
            per_domain = counts.get(key, {})
            placed = per_domain.get(domain, 0) + (0 if already_placed else 1)
            lowest = min(per_domain.values()) if per_domain else 0
            skew = placed - lowest
            if skew > constraint.max_skew:
                return PluginStatus.unschedulable(
                    self.name,
                    f"placing on cluster {cluster.name} makes the {key!r} skew "
                    f"{skew}, above the allowed {constraint.max_skew}",
                )
        return PluginStatus.success()

    def pre_score(self, state: CycleState, policy: PlacementPolicy) -> PluginStatus:
        if not policy.topology_spread_constraints:
            return PluginStatus.skip(self.name, "no topology spread constraints")
        self._counts(state, policy)
        return PluginStatus.success()

    def score(
        self, state: CycleState, policy: PlacementPolicy, cluster: MemberCluster
    ) -> float:
        counts = self._counts(state, policy)
        total = 0.0
        for constraint in policy.topology_spread_constraints:
            per_domain = counts.get(constraint.topology_key, {})
            domain = cluster.labels.get(constraint.topology_key)
            if domain is None or not per_domain:
                continue
            total += max(per_domain.values()) - per_domain.get(domain, 0)
        return total

    def domain_counts(
        self, state: CycleState, policy: PlacementPolicy
    ) -> Dict[str, Dict[str, int]]:
        """{topology_key: {domain: clusters in the domain already holding a binding}}."""
        now = self._clock() if self._clock else None
        eligible: List[MemberCluster] = [
            c for c in state.list_clusters()
            if check_cluster_eligibility(c, now, self._staleness)[0]
        ]
        counts: Dict[str, Dict[str, int]] = {}
        for constraint in policy.topology_spread_constraints:
            key = constraint.topology_key
            per_domain = counts.setdefault(key, {})
            for cluster in eligible:
                domain = cluster.labels.get(key)
                if domain is None:
                    continue
                placed = 1 if state.has_scheduled_or_bound_binding_for(cluster.name) else 0
                per_domain[domain] = per_domain.get(domain, 0) + placed
        return counts

    def _counts(self, state: CycleState, policy: PlacementPolicy) -> Dict[str, Dict[str, int]]:
        try:
            return state.read(TOPOLOGY_COUNTS_KEY)
        except StateKeyNotFoundError:
            counts = self.domain_counts(state, policy)
            state.write(TOPOLOGY_COUNTS_KEY, counts)
            return counts


# ── ObsoleteBindingAffinity ───────────────────────────────────────────────────

class ObsoleteBindingAffinity(ScorePlugin):
    """Bonus for clusters holding a binding of a superseded snapshot."""

    def __init__(self, bonus: float = OBSOLETE_BINDING_BONUS) -> None:
        self._bonus = bonus

    @property
    def name(self) -> str:
        return OBSOLETE_BINDING_AFFINITY

    def score(
        self, state: CycleState, policy: PlacementPolicy, cluster: MemberCluster
    ) -> float:
        return self._bonus if state.has_obsolete_binding_for(cluster.name) else 0.0


# ── Default profile ───────────────────────────────────────────────────────────

def default_profile(
    config: Optional[SchedulerConfig] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> Profile:
    """
    The profile every Scheduler uses unless given another one.

    Args:
        config: supplies score weights and the heartbeat staleness factor.
        clock:  overrides "now" for the health checks. Tests only.
    """
    config = config or SchedulerConfig()
    staleness = config.heartbeat_staleness_factor
    return Profile(
        name="default",
        plugins=[
            ReadyClusterQuorum(staleness, clock),
            ClusterEligibility(staleness, clock),
            ClusterAffinity(),
            TopologySpread(staleness, clock),
            ObsoleteBindingAffinity(),
        ],
        weights=dict(config.score_weights),
    )
