"""
fleet_scheduler/control_plane/scheduler.py
──────────────────────────────────────────
The Scheduler: one scheduling cycle for one placement.

How schedule_once works
────────────────────────
  1. Load the placement. Gone → quiet abort, nothing written.
     Being deleted → delete its bindings, drop the cleanup finalizer, done.
     Otherwise make sure the cleanup finalizer is present.

  2. Validate the policy. A violation is written as SchedulingFailed and
     the pipeline does not run.

  3. Load (or create) the current PolicySnapshot. A new snapshot is taken
     when the sha256 of the canonical policy JSON differs from the latest
     one. Then the latest ResourceSnapshot, every cluster, every binding.

  4. Classify the bindings:
       current      → Scheduled/Bound on both current snapshots
       obsolete     → Scheduled/Bound on a superseded snapshot
       unscheduled  → already being drained
       dangling     → target cluster gone or leaving the fleet

  5. Short-circuit (PickN / PickFixed): nothing changed since the last cycle
     and the current bindings already match the desired clusters. The
     status is refreshed if it drifted; no binding is touched.

  6. Otherwise run the pipeline:
       PickAll   → every cluster is re-evaluated.
       PickN     → clusters with a current binding are kept; only the
                   remainder is picked.
       PickFixed → the named clusters that exist and are eligible.

  7. Hand the selected decisions to the BindingReconciler.

  8. Write the Scheduled condition and every cluster decision onto the
     placement status.

Per-placement state machine
────────────────────────────
  Idle → Running → Succeeded | PartiallySucceeded | Failed

Error handling contract
────────────────────────
  NotFoundError (placement): quiet abort.
  PolicyViolationError:      SchedulingFailed, retried only at resync pace.
  StoreError:                SchedulingFailed (best effort) and
                             CycleResult.requeue=True; the service requeues
                             with exponential backoff. Never raised out of
                             schedule_once.
  CycleCancelledError:       propagated. The cycle is abandoned between
                             stages and the phase goes back to Idle.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from fleet_core.cyclestate import CycleState
from fleet_core.pipeline import Pipeline
from fleet_core.plugin import PluginError, Profile
from fleet_scheduler.control_plane.binding_reconciler import (
    BindingReconciler,
    ReconcileResult,
    is_current,
)
from fleet_scheduler.control_plane.plugins import default_profile
from fleet_scheduler.control_plane.policy_validator import validate_policy
from fleet_scheduler.shared.config import SchedulerConfig
from fleet_scheduler.shared.errors import (
    AlreadyExistsError,
    ConflictError,
    CycleCancelledError,
    NotFoundError,
    PolicyViolationError,
    StoreError,
    raise_if_cancelled,
)
from fleet_scheduler.shared.health import check_cluster_eligibility, is_leaving
from fleet_scheduler.shared.models import (
    PLACEMENT_SCHEDULED_CONDITION,
    PLACEMENT_TRACKING_LABEL,
    SCHEDULER_CLEANUP_FINALIZER,
    Binding,
    BindingState,
    ClusterDecision,
    Condition,
    ConditionStatus,
    MemberCluster,
    ObjectMeta,
    Placement,
    PlacementPolicy,
    PlacementStatus,
    PlacementType,
    PolicySnapshot,
    ResourceSnapshot,
    SchedulingOutcome,
    set_condition,
    split_key,
)
from fleet_scheduler.shared.store import InMemoryObjectStore

logger = logging.getLogger(__name__)


class CyclePhase(str, Enum):
    IDLE = "Idle"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    PARTIALLY_SUCCEEDED = "PartiallySucceeded"
    FAILED = "Failed"


@dataclass
class CycleResult:
    """
    What one schedule_once() call did.

    requeue       → a store failure; requeue with rate-limited backoff.
    requeue_after → requeue after this many seconds (policy problems).
    """
    key: str
    phase: CyclePhase
    outcome: Optional[SchedulingOutcome] = None
    reason: str = ""
    selected: List[ClusterDecision] = field(default_factory=list)
    not_selected: List[ClusterDecision] = field(default_factory=list)
    bindings: Optional[ReconcileResult] = None
    short_circuited: bool = False
    requeue: bool = False
    requeue_after: Optional[float] = None
    plugin_errors: List[PluginError] = field(default_factory=list)


@dataclass
class _Classified:
    current: List[Binding] = field(default_factory=list)
    obsolete: List[Binding] = field(default_factory=list)
    unscheduled: List[Binding] = field(default_factory=list)
    dangling: List[Binding] = field(default_factory=list)
    duplicates: List[Binding] = field(default_factory=list)

    def current_in(self, state: BindingState) -> List[Binding]:
        return [b for b in self.current if b.spec.state == state]


def policy_hash(policy: PlacementPolicy) -> str:
    """sha256 of the canonical JSON form of the policy."""
    canonical = json.dumps(
        policy.model_dump(mode="json"), sort_keys=True, separators=(",", ":")
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class Scheduler:
    """
    Runs scheduling cycles against an object store.

    Thread safety:
        schedule_once() may run on several threads at once for DIFFERENT
        keys. The work queue guarantees one key is never processed twice
        concurrently; the store's optimistic concurrency covers the rest.

    Usage:
        scheduler = Scheduler(store)
        result = scheduler.schedule_once("team-a/web")
        if result.requeue:
            queue.add_rate_limited(result.key)
    """

    def __init__(
        self,
        store: InMemoryObjectStore,
        profile: Optional[Profile] = None,
        config: Optional[SchedulerConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self._config = config or SchedulerConfig()
        self._clock = clock
        self._pipeline = Pipeline(
            profile or default_profile(self._config, clock),
            parallelism=self._config.plugin_parallelism,
        )
        self._reconciler = BindingReconciler(store, self._config.binding_retry_policy())
        self._status_retry = self._config.status_retry_policy()
        self._phases: Dict[str, CyclePhase] = {}
        self._lock = threading.Lock()

    @property
    def pipeline(self) -> Pipeline:
        return self._pipeline

    def phase_of(self, key: str) -> CyclePhase:
        with self._lock:
            return self._phases.get(key, CyclePhase.IDLE)

    def _set_phase(self, key: str, phase: CyclePhase) -> None:
        with self._lock:
            self._phases[key] = phase

    # ── Main entrypoint ───────────────────────────────────────────────────────

    def schedule_once(
        self, key: str, cancel_event: Optional[threading.Event] = None,
    ) -> CycleResult:
        """
        Run one full cycle for the placement identified by key.

        Raises:
            CycleCancelledError: cancel_event was set mid-cycle.
        """
        self._set_phase(key, CyclePhase.RUNNING)
        try:
            result = self._run_cycle(key, cancel_event)
        except CycleCancelledError:
            logger.info("cycle for placement %s cancelled", key)
            self._set_phase(key, CyclePhase.IDLE)
            raise
        except StoreError as err:
            logger.warning("cycle for placement %s failed on the store: %s", key, err)
            self._record_failure(key, f"object store error: {err}", cancel_event)
            result = CycleResult(
                key=key,
                phase=CyclePhase.FAILED,
                outcome=SchedulingOutcome.SCHEDULING_FAILED,
                reason=str(err),
                requeue=True,
            )
        self._set_phase(key, result.phase)
        return result

    def _run_cycle(
        self, key: str, cancel_event: Optional[threading.Event],
    ) -> CycleResult:
        namespace, name = split_key(key)

        # ── 1. Load ─────────────────────────────────────────────────────────
        try:
            placement = self._store.get(Placement, name, namespace)
        except NotFoundError:
            logger.debug("placement %s not found, nothing to do", key)
            return CycleResult(key=key, phase=CyclePhase.IDLE, reason="placement not found")

        if placement.meta.deletion_timestamp is not None:
            return self._finalize(placement, cancel_event)
        placement = self._ensure_finalizer(placement, cancel_event)

        # ── 2. Validate ─────────────────────────────────────────────────────
        policy = placement.spec.policy
        try:
            validate_policy(policy)
        except PolicyViolationError as err:
            logger.warning("placement %s has an invalid policy: %s", key, err.reason)
            self._write_status(
                placement, SchedulingOutcome.SCHEDULING_FAILED,
                f"invalid placement policy: {err.reason}", [], [], None, None,
                cancel_event,
            )
            return CycleResult(
                key=key,
                phase=CyclePhase.FAILED,
                outcome=SchedulingOutcome.SCHEDULING_FAILED,
                reason=err.reason,
                requeue_after=self._config.resync_interval_s,
            )
        raise_if_cancelled(cancel_event)

        # ── 3. Snapshots, clusters, bindings ────────────────────────────────
        snapshot, snapshot_created = self._current_policy_snapshot(placement, cancel_event)
        resource_snapshot = self._latest_resource_snapshot(placement)
        clusters = self._store.list(MemberCluster)
        bindings = self._store.list(
            Binding, namespace=placement.meta.namespace,
            labels={PLACEMENT_TRACKING_LABEL: placement.meta.name},
        )
        raise_if_cancelled(cancel_event)

        # ── 4. Classify ─────────────────────────────────────────────────────
        classified = self._classify(bindings, clusters, snapshot.meta.name, resource_snapshot)

        # ── 5. Short-circuit ────────────────────────────────────────────────
        unchanged = (
            not snapshot_created
            and placement.status.observed_policy_snapshot == snapshot.meta.name
            and placement.status.observed_resource_snapshot == resource_snapshot
        )
        if unchanged and self._bindings_match(policy, classified):
            selected = _decisions_of(classified.current)
            not_selected = [
                d for d in placement.status.cluster_decisions if not d.selected
            ]
            self._write_status(
                placement, SchedulingOutcome.SCHEDULED,
                _scheduled_message(len(selected)), selected, not_selected,
                snapshot.meta.name, resource_snapshot, cancel_event,
            )
            logger.debug("placement %s already satisfied, skipping the pipeline", key)
            return CycleResult(
                key=key,
                phase=CyclePhase.SUCCEEDED,
                outcome=SchedulingOutcome.SCHEDULED,
                selected=selected,
                not_selected=not_selected,
                short_circuited=True,
            )

        # ── 6. Decide ───────────────────────────────────────────────────────
        state = CycleState(
            clusters,
            classified.obsolete,
            classified.current_in(BindingState.SCHEDULED),
            classified.current_in(BindingState.BOUND),
        )
        if policy.placement_type == PlacementType.PICK_FIXED:
            selected, not_selected, failure = self._pick_fixed(policy, clusters)
            plugin_errors: List[PluginError] = []
        else:
            selected, not_selected, failure, plugin_errors = self._run_pipeline(
                policy, state, classified, cancel_event
            )
        raise_if_cancelled(cancel_event)

        if failure is not None:
            logger.warning("placement %s could not be scheduled: %s", key, failure)
            self._write_status(
                placement, SchedulingOutcome.SCHEDULING_FAILED, failure,
                selected, not_selected, snapshot.meta.name, resource_snapshot,
                cancel_event,
            )
            return CycleResult(
                key=key,
                phase=CyclePhase.FAILED,
                outcome=SchedulingOutcome.SCHEDULING_FAILED,
                reason=failure,
                selected=selected,
                not_selected=not_selected,
                requeue_after=self._config.resync_interval_s,
                plugin_errors=plugin_errors,
            )

        # ── 7. Bindings ─────────────────────────────────────────────────────
        reconciled = self._reconciler.reconcile(
            placement, snapshot.meta.name, resource_snapshot,
            selected, bindings, cancel_event,
        )
        raise_if_cancelled(cancel_event)

        # ── 8. Status ───────────────────────────────────────────────────────
        desired = _desired_count(policy)
        if desired is not None and len(selected) < desired:
            outcome = SchedulingOutcome.PARTIALLY_SCHEDULED
            phase = CyclePhase.PARTIALLY_SUCCEEDED
            message = (
                f"{len(selected)} of {desired} desired cluster(s) selected; "
                f"no other cluster is eligible"
            )
        else:
            outcome = SchedulingOutcome.SCHEDULED
            phase = CyclePhase.SUCCEEDED
            message = _scheduled_message(len(selected))
        self._write_status(
            placement, outcome, message, selected, not_selected,
            snapshot.meta.name, resource_snapshot, cancel_event,
        )
        logger.info(
            "placement %s: %s, %d cluster(s) selected (%s)",
            key, outcome.value, len(selected), reconciled,
        )
        return CycleResult(
            key=key,
            phase=phase,
            outcome=outcome,
            reason=message,
            selected=selected,
            not_selected=not_selected,
            bindings=reconciled,
            plugin_errors=plugin_errors,
        )

    # ── Deletion & finalizer ──────────────────────────────────────────────────

    def _finalize(
        self, placement: Placement, cancel_event: Optional[threading.Event],
    ) -> CycleResult:
        bindings = self._store.list(
            Binding, namespace=placement.meta.namespace,
            labels={PLACEMENT_TRACKING_LABEL: placement.meta.name},
        )
        deleted = self._reconciler.delete_all(bindings, cancel_event)

        def drop(obj: Placement) -> bool:
            if SCHEDULER_CLEANUP_FINALIZER not in obj.meta.finalizers:
                return False
            obj.meta.finalizers.remove(SCHEDULER_CLEANUP_FINALIZER)
            return True

        try:
            self._update_placement(placement, drop, cancel_event)
        except NotFoundError:
            pass
        logger.info(
            "placement %s deleted, removed %d binding(s)", placement.key, len(deleted)
        )
        return CycleResult(
            key=placement.key,
            phase=CyclePhase.SUCCEEDED,
            reason="placement deleted",
            bindings=ReconcileResult(deleted=deleted),
        )

    def _ensure_finalizer(
        self, placement: Placement, cancel_event: Optional[threading.Event],
    ) -> Placement:
        def add(obj: Placement) -> bool:
            if SCHEDULER_CLEANUP_FINALIZER in obj.meta.finalizers:
                return False
            obj.meta.finalizers.append(SCHEDULER_CLEANUP_FINALIZER)
            return True

        return self._update_placement(placement, add, cancel_event)

    def _update_placement(
        self,
        placement: Placement,
        mutate: Callable[[Placement], bool],
        cancel_event: Optional[threading.Event],
    ) -> Placement:
        """Apply mutate to a fresh copy; on conflict re-read and mutate again."""
        current = placement

        def attempt() -> Placement:
            nonlocal current
            obj = current.model_copy(deep=True)
            if not mutate(obj):
                return current
            try:
                return self._store.update(obj)
            except ConflictError:
                current = self._store.get(
                    Placement, placement.meta.name, placement.meta.namespace
                )
                raise

        return self._status_retry.run(attempt, cancel_event=cancel_event)

    # ── Snapshots ─────────────────────────────────────────────────────────────

    def _current_policy_snapshot(
        self, placement: Placement, cancel_event: Optional[threading.Event],
    ) -> Tuple[PolicySnapshot, bool]:
        """Returns (snapshot, created_in_this_cycle)."""
        digest = policy_hash(placement.spec.policy)
        snapshots = self._store.list(
            PolicySnapshot, namespace=placement.meta.namespace,
            labels={PLACEMENT_TRACKING_LABEL: placement.meta.name},
        )
        latest = max(snapshots, key=lambda s: s.index, default=None)
        if latest is not None and latest.policy_hash == digest:
            return latest, False

        index = 0 if latest is None else latest.index + 1
        snapshot = PolicySnapshot(
            meta=ObjectMeta(
                name=f"{placement.meta.name}-{index}",
                namespace=placement.meta.namespace,
                labels={PLACEMENT_TRACKING_LABEL: placement.meta.name},
            ),
            index=index,
            policy=placement.spec.policy.model_copy(deep=True),
            policy_hash=digest,
            placement_generation=placement.meta.generation,
        )
        try:
            created = self._status_retry.run(
                lambda: self._store.create(snapshot), cancel_event=cancel_event
            )
        except AlreadyExistsError:
            created = self._store.get(
                PolicySnapshot, snapshot.meta.name, snapshot.meta.namespace
            )
        logger.info(
            "placement %s: new policy snapshot %s (generation %d)",
            placement.key, created.meta.name, placement.meta.generation,
        )
        return created, True

    def _latest_resource_snapshot(self, placement: Placement) -> str:
        """Name of the highest-index resource snapshot, "" when none exists yet."""
        snapshots = self._store.list(
            ResourceSnapshot, namespace=placement.meta.namespace,
            labels={PLACEMENT_TRACKING_LABEL: placement.meta.name},
        )
        latest = max(snapshots, key=lambda s: s.index, default=None)
        return latest.meta.name if latest is not None else ""

    # ── Classification & short-circuit ────────────────────────────────────────

    @staticmethod
    def _classify(
        bindings: List[Binding],
        clusters: List[MemberCluster],
        policy_snapshot: str,
        resource_snapshot: str,
    ) -> _Classified:
        by_name = {c.name: c for c in clusters}
        out = _Classified()
        current: Dict[str, List[Binding]] = {}
        for binding in bindings:
            if binding.is_deleting:
                continue
            if binding.spec.state == BindingState.UNSCHEDULED:
                out.unscheduled.append(binding)
                continue
            cluster = by_name.get(binding.spec.target_cluster)
            if cluster is None or is_leaving(cluster):
                out.dangling.append(binding)
            elif is_current(binding, policy_snapshot, resource_snapshot):
                current.setdefault(binding.spec.target_cluster, []).append(binding)
            else:
                out.obsolete.append(binding)
        # one current binding per cluster; the reconciler retires the rest
        for target in sorted(current):
            first, *rest = sorted(current[target], key=lambda b: b.meta.name)
            out.current.append(first)
            out.duplicates.extend(rest)
        return out

    @staticmethod
    def _bindings_match(policy: PlacementPolicy, classified: _Classified) -> bool:
        if classified.obsolete or classified.dangling or classified.duplicates:
            return False
        targets = [b.spec.target_cluster for b in classified.current]
        if policy.placement_type == PlacementType.PICK_N:
            return len(targets) == policy.number_of_clusters
        if policy.placement_type == PlacementType.PICK_FIXED:
            return set(targets) == set(policy.cluster_names)
        return False

    # ── Decision making ───────────────────────────────────────────────────────

    def _run_pipeline(
        self,
        policy: PlacementPolicy,
        state: CycleState,
        classified: _Classified,
        cancel_event: Optional[threading.Event],
    ) -> Tuple[List[ClusterDecision], List[ClusterDecision], Optional[str], List[PluginError]]:
        kept: List[ClusterDecision] = []
        dropped: List[ClusterDecision] = []
        num_to_pick: Optional[int] = None
        min_passing = policy.min_clusters

        if policy.placement_type == PlacementType.PICK_N:
            ranked = sorted(
                _decisions_of(classified.current),
                key=lambda d: (-(d.score.total if d.score else 0.0), d.cluster_name),
            )
            n = policy.number_of_clusters
            kept, surplus = ranked[:n], ranked[n:]
            dropped = [
                d.model_copy(update={
                    "selected": False,
                    "reason": f"number of clusters reduced to {n}",
                })
                for d in surplus
            ]
            num_to_pick = n - len(kept)
            min_passing = max(policy.min_clusters - len(kept), 0)

        result = self._pipeline.run(
            state, policy, num_to_pick, min_passing=min_passing, cancel_event=cancel_event,
        )
        # A cluster keeps the decision it was bound with until its binding
        # goes obsolete; scores drift as bindings land.
        recorded = {
            b.spec.target_cluster: b.spec.cluster_decision
            for b in classified.current if b.spec.cluster_decision is not None
        }
        selected = kept + [recorded.get(d.cluster_name, d) for d in result.selected]
        not_selected = dropped + result.not_selected
        return selected, not_selected, result.failure, result.plugin_errors

    def _pick_fixed(
        self, policy: PlacementPolicy, clusters: List[MemberCluster],
    ) -> Tuple[List[ClusterDecision], List[ClusterDecision], Optional[str]]:
        by_name = {c.name: c for c in clusters}
        now = self._clock() if self._clock else None
        selected: List[ClusterDecision] = []
        not_selected: List[ClusterDecision] = []
        for name in sorted(policy.cluster_names):
            cluster = by_name.get(name)
            if cluster is None:
                not_selected.append(ClusterDecision(
                    cluster_name=name, selected=False,
                    reason=f"cluster {name} is not found in the fleet",
                ))
                continue
            ok, reason = check_cluster_eligibility(
                cluster, now, self._config.heartbeat_staleness_factor
            )
            if not ok:
                not_selected.append(
                    ClusterDecision(cluster_name=name, selected=False, reason=reason)
                )
                continue
            selected.append(ClusterDecision(
                cluster_name=name, selected=True,
                reason="picked by name in the placement policy",
            ))
        failure = None
        if len(selected) < policy.min_clusters:
            failure = (
                f"only {len(selected)} of the named cluster(s) are eligible, "
                f"at least {policy.min_clusters} required"
            )
        return selected, not_selected, failure

    # ── Status ────────────────────────────────────────────────────────────────

    def _write_status(
        self,
        placement: Placement,
        outcome: SchedulingOutcome,
        message: str,
        selected: List[ClusterDecision],
        not_selected: List[ClusterDecision],
        policy_snapshot: Optional[str],
        resource_snapshot: Optional[str],
        cancel_event: Optional[threading.Event],
    ) -> bool:
        """
        Write the outcome onto the placement status.

        Each attempt starts from the freshest copy of the placement, so a
        conflicting writer's changes are never overwritten by a stale copy.
        The condition carries the generation this cycle scheduled, not the
        generation of the re-read copy: a spec edit that raced the write is
        left for the cycle it enqueued.
        Returns False when the status already said exactly this.
        """
        current = placement

        def build(fresh: Placement) -> PlacementStatus:
            status = fresh.status.model_copy(deep=True)
            set_condition(status.conditions, Condition(
                type=PLACEMENT_SCHEDULED_CONDITION,
                status=(
                    ConditionStatus.TRUE if outcome == SchedulingOutcome.SCHEDULED
                    else ConditionStatus.FALSE
                ),
                reason=outcome.value,
                message=message,
                observed_generation=placement.meta.generation,
            ))
            ordered = sorted(selected, key=lambda d: d.cluster_name) + list(not_selected)
            status.cluster_decisions = [d.model_copy(deep=True) for d in ordered]
            if policy_snapshot is not None:
                status.observed_policy_snapshot = policy_snapshot
            if resource_snapshot is not None:
                status.observed_resource_snapshot = resource_snapshot
            return status

        def attempt() -> bool:
            nonlocal current
            status = build(current)
            if status == current.status:
                return False
            obj = current.model_copy(deep=True)
            obj.status = status
            try:
                self._store.update_status(obj)
            except ConflictError:
                current = self._store.get(
                    Placement, placement.meta.name, placement.meta.namespace
                )
                raise
            return True

        return self._status_retry.run(attempt, cancel_event=cancel_event)

    def _record_failure(
        self, key: str, message: str, cancel_event: Optional[threading.Event],
    ) -> None:
        """Best-effort SchedulingFailed write after a store failure."""
        namespace, name = split_key(key)
        try:
            placement = self._store.get(Placement, name, namespace)
            self._write_status(
                placement, SchedulingOutcome.SCHEDULING_FAILED, message,
                [], [], None, None, cancel_event,
            )
        except (StoreError, CycleCancelledError) as err:
            logger.warning("could not record failure on placement %s: %s", key, err)


# ── Module helpers ────────────────────────────────────────────────────────────

def _decisions_of(bindings: List[Binding]) -> List[ClusterDecision]:
    """Selected decisions carried by bindings, in cluster-name order."""
    out = []
    for binding in sorted(bindings, key=lambda b: b.spec.target_cluster):
        decision = binding.spec.cluster_decision
        if decision is None:
            decision = ClusterDecision(
                cluster_name=binding.spec.target_cluster, selected=True,
                reason="already scheduled",
            )
        out.append(decision)
    return out


def _desired_count(policy: PlacementPolicy) -> Optional[int]:
    if policy.placement_type == PlacementType.PICK_N:
        return policy.number_of_clusters
    if policy.placement_type == PlacementType.PICK_FIXED:
        return len(policy.cluster_names)
    return None


def _scheduled_message(n: int) -> str:
    return f"{n} cluster(s) selected"
