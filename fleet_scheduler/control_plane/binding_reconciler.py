"""
fleet_scheduler/control_plane/binding_reconciler.py
────────────────────────────────────────────────────
BindingReconciler: turns a set of cluster decisions into binding writes.

What this is
─────────────
The pipeline says where a placement should land. The reconciler makes the
store agree, using the smallest set of writes. After a successful run there
is exactly one Scheduled or Bound binding per selected cluster, and it
references the current policy and resource snapshots.

Per selected cluster
─────────────────────
  no binding                    → create a Scheduled binding.
  obsolete Scheduled/Bound      → update the snapshot references and the
                                  decision in place. The state is kept; the
                                  rollout collaborator sees a spec change and
                                  rolls forward, with no delete-then-recreate
                                  gap on the member cluster.
  Unscheduled                   → revive it to the state recorded in the
                                  PREVIOUS_BINDING_STATE_ANNOTATION, with
                                  current references.
  current, decision changed     → refresh the decision in place.
  current, decision unchanged   → nothing.

  Several bindings for the same cluster: the best one is kept (current over
  obsolete over Unscheduled, then by name) and the others are retired.

Every binding whose cluster is not selected
────────────────────────────────────────────
  Scheduled   → deleted. Nothing was rolled out yet.
  Bound       → set to Unscheduled. The rollout collaborator drains the
                cluster and deletes the binding itself.
  Unscheduled → left alone.

Bindings that are already being deleted are ignored entirely.

Error handling contract
────────────────────────
  ConflictError:       the binding changed under us. Re-read THAT binding,
                       recompute the mutation from the fresh copy, retry it
                       under the RetryPolicy. Other bindings are unaffected.
  NotFoundError:       the binding vanished. Its delete event requeues the
                       placement, so it is logged and skipped.
  TransientStoreError: retried under the RetryPolicy; when attempts run out
                       it propagates and the orchestrator requeues.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from fleet_scheduler.shared.errors import ConflictError, NotFoundError
from fleet_scheduler.shared.models import (
    PLACEMENT_TRACKING_LABEL,
    PREVIOUS_BINDING_STATE_ANNOTATION,
    Binding,
    BindingSpec,
    BindingState,
    ClusterDecision,
    ObjectMeta,
    Placement,
)
from fleet_scheduler.shared.retry import RetryPolicy
from fleet_scheduler.shared.store import InMemoryObjectStore

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """Names of the bindings touched by one reconcile() call."""
    created: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    unscheduled: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.created or self.updated or self.unscheduled or self.deleted)

    def __str__(self) -> str:
        return (
            f"created={len(self.created)} updated={len(self.updated)} "
            f"unscheduled={len(self.unscheduled)} deleted={len(self.deleted)}"
        )


def is_current(binding: Binding, policy_snapshot: str, resource_snapshot: str) -> bool:
    """Scheduled/Bound and referencing both current snapshots."""
    return (
        binding.spec.state in (BindingState.SCHEDULED, BindingState.BOUND)
        and binding.spec.policy_snapshot_name == policy_snapshot
        and binding.spec.resource_snapshot_name == resource_snapshot
    )


class BindingReconciler:
    """
    Usage:
        reconciler = BindingReconciler(store, config.binding_retry_policy())
        result = reconciler.reconcile(placement, "web-1", "web-res-3", decisions, bindings)
    """

    def __init__(
        self,
        store: InMemoryObjectStore,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self._store = store
        self._retry = retry_policy or RetryPolicy()

    # ── Main entrypoint ───────────────────────────────────────────────────────

    def reconcile(
        self,
        placement: Placement,
        policy_snapshot: str,
        resource_snapshot: str,
        selected: Sequence[ClusterDecision],
        bindings: Sequence[Binding],
        cancel_event: Optional[threading.Event] = None,
    ) -> ReconcileResult:
        """
        Apply the selected decisions to the placement's bindings.

        Args:
            placement:         owner of the bindings.
            policy_snapshot:   name of the current policy snapshot.
            resource_snapshot: name of the latest resource snapshot.
            selected:          one decision per selected cluster.
            bindings:          every binding of the placement, as listed at
                               cycle start.
        """
        result = ReconcileResult()
        live = [b for b in bindings if not b.is_deleting]
        by_cluster: Dict[str, List[Binding]] = {}
        for binding in live:
            by_cluster.setdefault(binding.spec.target_cluster, []).append(binding)

        kept: set = set()
        for decision in sorted(selected, key=lambda d: d.cluster_name):
            cluster = decision.cluster_name
            candidates = by_cluster.get(cluster, [])
            best = self._best_match(candidates, policy_snapshot, resource_snapshot)
            if best is None:
                name = self._create(
                    placement, cluster, policy_snapshot, resource_snapshot,
                    decision, cancel_event,
                )
                result.created.append(name)
                continue
            kept.add(best.meta.name)
            if self._refresh(best, policy_snapshot, resource_snapshot, decision, cancel_event):
                result.updated.append(best.meta.name)

        for binding in sorted(live, key=lambda b: b.meta.name):
            if binding.meta.name in kept:
                continue
            outcome = self._retire(binding, cancel_event)
            if outcome == BindingState.UNSCHEDULED:
                result.unscheduled.append(binding.meta.name)
            elif outcome is not None:
                result.deleted.append(binding.meta.name)

        if result.changed:
            logger.info("placement %s bindings reconciled: %s", placement.key, result)
        return result

    def delete_all(
        self,
        bindings: Sequence[Binding],
        cancel_event: Optional[threading.Event] = None,
    ) -> List[str]:
        """Delete every binding regardless of state. Used when the placement goes away."""
        deleted: List[str] = []
        for binding in sorted(bindings, key=lambda b: b.meta.name):
            if binding.is_deleting:
                continue
            try:
                self._retry.run(
                    lambda b=binding: self._store.delete(
                        Binding, b.meta.name, b.meta.namespace
                    ),
                    cancel_event=cancel_event,
                )
            except NotFoundError:
                continue
            deleted.append(binding.meta.name)
        if deleted:
            logger.info("deleted %d binding(s): %s", len(deleted), ", ".join(deleted))
        return deleted

    # ── Per-binding operations ────────────────────────────────────────────────

    @staticmethod
    def _best_match(
        candidates: Sequence[Binding], policy_snapshot: str, resource_snapshot: str,
    ) -> Optional[Binding]:
        def rank(b: Binding):
            if is_current(b, policy_snapshot, resource_snapshot):
                tier = 0
            elif b.spec.state != BindingState.UNSCHEDULED:
                tier = 1
            else:
                tier = 2
            return (tier, b.meta.name)

        return min(candidates, key=rank, default=None)

    def _create(
        self,
        placement: Placement,
        cluster: str,
        policy_snapshot: str,
        resource_snapshot: str,
        decision: ClusterDecision,
        cancel_event: Optional[threading.Event],
    ) -> str:
        name = f"{placement.meta.name}-{cluster}-{uuid.uuid4().hex[:8]}"
        binding = Binding(
            meta=ObjectMeta(
                name=name,
                namespace=placement.meta.namespace,
                labels={PLACEMENT_TRACKING_LABEL: placement.meta.name},
            ),
            spec=BindingSpec(
                state=BindingState.SCHEDULED,
                target_cluster=cluster,
                policy_snapshot_name=policy_snapshot,
                resource_snapshot_name=resource_snapshot,
                cluster_decision=decision,
            ),
        )
        self._retry.run(lambda: self._store.create(binding), cancel_event=cancel_event)
        logger.debug("created binding %s for cluster %s", name, cluster)
        return name

    def _refresh(
        self,
        binding: Binding,
        policy_snapshot: str,
        resource_snapshot: str,
        decision: ClusterDecision,
        cancel_event: Optional[threading.Event],
    ) -> bool:
        """Bring a kept binding up to date. Returns True when a write happened."""

        def mutate(obj: Binding) -> bool:
            spec = obj.spec
            before = spec.model_copy(deep=True)
            if spec.state == BindingState.UNSCHEDULED:
                previous = obj.meta.annotations.pop(PREVIOUS_BINDING_STATE_ANNOTATION, None)
                spec.state = (
                    BindingState.BOUND if previous == BindingState.BOUND.value
                    else BindingState.SCHEDULED
                )
            spec.policy_snapshot_name = policy_snapshot
            spec.resource_snapshot_name = resource_snapshot
            spec.cluster_decision = decision
            return spec != before

        return self._update(binding, mutate, cancel_event)

    def _retire(
        self, binding: Binding, cancel_event: Optional[threading.Event],
    ) -> Optional[BindingState]:
        """
        Returns UNSCHEDULED when the binding was unscheduled, SCHEDULED when
        a Scheduled binding was deleted, None when nothing was done.
        """
        current = binding

        def attempt() -> Optional[BindingState]:
            nonlocal current
            try:
                if current.spec.state == BindingState.SCHEDULED:
                    self._store.delete(
                        Binding, current.meta.name, current.meta.namespace,
                        resource_version=current.meta.resource_version,
                    )
                    return BindingState.SCHEDULED
                if current.spec.state == BindingState.BOUND:
                    obj = current.model_copy(deep=True)
                    obj.spec.state = BindingState.UNSCHEDULED
                    obj.meta.annotations[PREVIOUS_BINDING_STATE_ANNOTATION] = (
                        BindingState.BOUND.value
                    )
                    self._store.update(obj)
                    return BindingState.UNSCHEDULED
                return None
            except ConflictError:
                current = self._store.get(Binding, current.meta.name, current.meta.namespace)
                raise

        try:
            return self._retry.run(attempt, cancel_event=cancel_event)
        except NotFoundError:
            logger.debug("binding %s vanished before it could be retired", binding.meta.name)
            return None

    def _update(
        self,
        binding: Binding,
        mutate: Callable[[Binding], bool],
        cancel_event: Optional[threading.Event],
    ) -> bool:
        current = binding

        def attempt() -> bool:
            nonlocal current
            obj = current.model_copy(deep=True)
            if not mutate(obj):
                return False
            try:
                self._store.update(obj)
            except ConflictError:
                current = self._store.get(Binding, current.meta.name, current.meta.namespace)
                raise
            return True

        try:
            return self._retry.run(attempt, cancel_event=cancel_event)
        except NotFoundError:
            logger.warning(
                "binding %s vanished before it could be updated", binding.meta.name
            )
            return False
