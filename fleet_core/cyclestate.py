"""
fleet_core/cyclestate.py
────────────────────────
CycleState: the scratch space and index shared by all plugins in one cycle.

What lives in here
───────────────────
  1. The cluster inventory snapshot, exactly as the orchestrator listed it.
     Plugins never list clusters themselves; every plugin in a cycle sees the
     same inventory.

  2. A key/value scratch mapping for inter-plugin communication, e.g. the
     topology-spread PreScore stage writes per-domain counts that its Score
     stage reads back for every cluster.

  3. Two membership indices computed once at construction:
       scheduled_or_bound → clusters holding a Scheduled or Bound binding
                            under the current policy snapshot.
       obsolete           → clusters holding a binding that references a
                            superseded policy or resource snapshot.

  4. The plugins that asked to be skipped for this cycle (a PreFilter or
     PreScore returning Skip).

Thread safety
──────────────
Filter and Score calls for different clusters run on a thread pool and may
read and write the scratch space at the same time. All mutable state sits
behind one internal lock; callers never lock. The indices and the cluster
tuple are immutable after construction and need no locking at all.

Lifetime
─────────
Created at cycle start, dropped at cycle end. Nothing in here is persisted
and nothing in here talks to the object store.
"""

from __future__ import annotations

import threading
from typing import Any, Dict, FrozenSet, Iterable, Sequence, Set, Tuple

from fleet_scheduler.shared.models import Binding, MemberCluster

StateKey = str
StateValue = Any


class StateKeyNotFoundError(LookupError):
    """Raised by CycleState.read() for a key nobody wrote in this cycle."""

    def __init__(self, key: StateKey) -> None:
        self.key = key
        super().__init__(f"key {key!r} is not found in cycle state")


class CycleState:
    """
    Per-cycle, concurrency-safe state handed to every plugin.

    Usage:
        state = CycleState(clusters, obsolete, scheduled, bound)
        state.write("topology-counts", counts)
        counts = state.read("topology-counts")
        if state.has_scheduled_or_bound_binding_for("member-1"): ...
    """

    def __init__(
        self,
        clusters: Sequence[MemberCluster],
        obsolete_bindings: Sequence[Binding],
        *scheduled_or_bound_bindings: Sequence[Binding],
    ) -> None:
        self._lock = threading.Lock()
        self._store: Dict[StateKey, StateValue] = {}
        self._skipped_filter_plugins: Set[str] = set()
        self._skipped_score_plugins: Set[str] = set()

        self._clusters: Tuple[MemberCluster, ...] = tuple(clusters)
        self._scheduled_or_bound: FrozenSet[str] = frozenset(
            prepare_scheduled_or_bound_bindings_map(*scheduled_or_bound_bindings)
        )
        self._obsolete: FrozenSet[str] = frozenset(
            prepare_obsolete_bindings_map(obsolete_bindings)
        )

    # ── Scratch space ─────────────────────────────────────────────────────────

    def write(self, key: StateKey, value: StateValue) -> None:
        """Insert or overwrite a value."""
        with self._lock:
            self._store[key] = value

    def read(self, key: StateKey) -> StateValue:
        """
        Return the value written under key.

        Raises:
            StateKeyNotFoundError: nothing was written under key this cycle.
        """
        with self._lock:
            try:
                return self._store[key]
            except KeyError:
                raise StateKeyNotFoundError(key) from None

    def delete(self, key: StateKey) -> None:
        """Remove a key. Deleting an absent key is a no-op."""
        with self._lock:
            self._store.pop(key, None)

    # ── Inventory & indices ───────────────────────────────────────────────────

    def list_clusters(self) -> Tuple[MemberCluster, ...]:
        """The cluster inventory, in the order supplied at construction."""
        return self._clusters

    def has_scheduled_or_bound_binding_for(self, cluster_name: str) -> bool:
        return cluster_name in self._scheduled_or_bound

    def has_obsolete_binding_for(self, cluster_name: str) -> bool:
        return cluster_name in self._obsolete

    # ── Skipped plugins ───────────────────────────────────────────────────────

    def skip_filter_plugin(self, name: str) -> None:
        with self._lock:
            self._skipped_filter_plugins.add(name)

    def skip_score_plugin(self, name: str) -> None:
        with self._lock:
            self._skipped_score_plugins.add(name)

    def is_filter_plugin_skipped(self, name: str) -> bool:
        with self._lock:
            return name in self._skipped_filter_plugins

    def is_score_plugin_skipped(self, name: str) -> bool:
        with self._lock:
            return name in self._skipped_score_plugins

    def __repr__(self) -> str:
        return (
            f"CycleState(clusters={len(self._clusters)}, "
            f"scheduled_or_bound={len(self._scheduled_or_bound)}, "
            f"obsolete={len(self._obsolete)})"
        )


def prepare_scheduled_or_bound_bindings_map(
    *binding_lists: Iterable[Binding],
) -> Dict[str, bool]:
    """Target cluster → True for every binding in any of the given lists."""
    out: Dict[str, bool] = {}
    for bindings in binding_lists:
        for binding in bindings:
            out[binding.spec.target_cluster] = True
    return out


def prepare_obsolete_bindings_map(bindings: Iterable[Binding]) -> Dict[str, bool]:
    """Target cluster → True for every obsolete binding."""
    return {binding.spec.target_cluster: True for binding in bindings}
