"""
fleet_core/pipeline.py
──────────────────────
The Pipeline: runs one Profile over one CycleState and ranks the clusters.

How a run works
────────────────
  1. PreFilter   (cycle-global, in profile order)
       Rejection  → stop. No Filter, no Score. The reason becomes the
                    cycle-level failure reason.
       Skip       → that plugin is left out of the Filter stage.

  2. Filter      (per cluster, fanned out on a bounded thread pool)
       Each cluster walks the filter plugins in order. The first rejection
       wins and its reason is recorded; rejected clusters are not scored.

  3. PreScore    (cycle-global)
       Typically computes aggregates into the CycleState. Skip leaves the
       plugin out of the Score stage; an internal error does the same and is
       recorded.

  4. Score       (per cluster, fanned out)
       Raw scores land in an (n_clusters × n_plugins) matrix S. With the
       profile weights as a vector w, the totals are simply S @ w, and the
       weighted breakdown of cluster i is S[i] * w.

Ranking
────────
Descending total, then ascending cluster name. The same inputs therefore
always produce the same order, no matter how the thread pool interleaved.

Candidates
───────────
PickN keeps clusters that already hold a current (Scheduled/Bound) binding;
those are not re-evaluated and the run picks only the remainder. PickAll
re-evaluates every cluster. PickFixed never reaches the pipeline.

Fatal vs soft
──────────────
A run is fatal only if a PreFilter rejected, or fewer clusters passed the
filters than `min_passing`. Selecting fewer than asked for is soft: the
orchestrator reports it as PartiallyScheduled.

Error handling contract
────────────────────────
A plugin that raises (or returns INTERNAL_ERROR) never takes the cycle
down. The failure is wrapped in a PluginError attributed to the plugin and
cluster, the cluster is rejected with that reason, and the error is kept in
PipelineResult.plugin_errors for the orchestrator to log and surface.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numpy as np
from numpy.typing import NDArray

from fleet_core.cyclestate import CycleState
from fleet_core.plugin import PluginError, PluginStatus, Profile
from fleet_scheduler.shared.errors import raise_if_cancelled
from fleet_scheduler.shared.models import (
    ClusterDecision,
    ClusterScore,
    MemberCluster,
    PlacementPolicy,
    PlacementType,
)

logger = logging.getLogger(__name__)

DEFAULT_PARALLELISM: int = 8
"""Upper bound on concurrent Filter/Score calls within one run."""


@dataclass
class PipelineResult:
    """
    Outcome of one pipeline run.

    selected     → decisions for the picked clusters, in rank order.
    not_selected → ranked-out clusters (rank order), then filtered-out
                   clusters (name order). Every one carries a reason.
    passed       → how many candidates survived the Filter stage.
    failure      → cycle-level failure reason, None when the run is usable.
    duration_ms  → wall time of the run, including an early PreFilter exit.
    """
    selected: List[ClusterDecision] = field(default_factory=list)
    not_selected: List[ClusterDecision] = field(default_factory=list)
    passed: int = 0
    failure: Optional[str] = None
    plugin_errors: List[PluginError] = field(default_factory=list)
    duration_ms: float = 0.0

    @property
    def failed(self) -> bool:
        return self.failure is not None

    @property
    def decisions(self) -> List[ClusterDecision]:
        return self.selected + self.not_selected


class Pipeline:
    """
    Executes a Profile. One Pipeline is shared by every worker; run() keeps
    all per-run data in locals and the CycleState.

    Usage:
        pipeline = Pipeline(profile, parallelism=8)
        result = pipeline.run(state, policy, num_to_pick=2)
    """

    def __init__(self, profile: Profile, parallelism: int = DEFAULT_PARALLELISM) -> None:
        if parallelism < 1:
            raise ValueError("parallelism must be >= 1")
        self._profile = profile
        self._parallelism = parallelism

    @property
    def profile(self) -> Profile:
        return self._profile

    def run(
        self,
        state: CycleState,
        policy: PlacementPolicy,
        num_to_pick: Optional[int],
        min_passing: int = 0,
        cancel_event: Optional[threading.Event] = None,
    ) -> PipelineResult:
        """
        Run all four stages and rank the survivors.

        Args:
            num_to_pick:  how many clusters to select. None selects every
                          cluster that passes (PickAll).
            min_passing:  fewer passing clusters than this is fatal.
            cancel_event: checked between stages.

        Raises:
            CycleCancelledError: cancel_event was set between stages.
        """
        start = time.perf_counter()
        result = PipelineResult()

        # ── Stage 1: PreFilter ──────────────────────────────────────────────
        for plugin in self._profile.pre_filter_plugins:
            status = self._call(
                result, plugin.name, "PreFilter", None,
                lambda p=plugin: p.pre_filter(state, policy),
            )
            if status.is_skip:
                state.skip_filter_plugin(plugin.name)
            elif not status.is_success:
                result.failure = status.reason or f"rejected by {plugin.name}"
                logger.info("pre-filter %s rejected the cycle: %s", plugin.name, result.failure)
                result.duration_ms = (time.perf_counter() - start) * 1000.0
                return result

        candidates = self._candidates(state, policy)
        raise_if_cancelled(cancel_event)

        # ── Stage 2: Filter ─────────────────────────────────────────────────
        filtered = self._fan_out(
            lambda c: self._filter_cluster(state, policy, c), candidates
        )
        passing: List[MemberCluster] = []
        rejected: List[ClusterDecision] = []
        for cluster, (ok, reason, errors) in zip(candidates, filtered):
            result.plugin_errors.extend(errors)
            if ok:
                passing.append(cluster)
            else:
                logger.debug("cluster %s filtered out: %s", cluster.name, reason)
                rejected.append(
                    ClusterDecision(cluster_name=cluster.name, selected=False, reason=reason)
                )
        raise_if_cancelled(cancel_event)

        # ── Stage 3: PreScore ───────────────────────────────────────────────
        for plugin in self._profile.pre_score_plugins:
            status = self._call(
                result, plugin.name, "PreScore", None,
                lambda p=plugin: p.pre_score(state, policy),
            )
            if not status.is_success:
                state.skip_score_plugin(plugin.name)
        raise_if_cancelled(cancel_event)

        # ── Stage 4: Score ──────────────────────────────────────────────────
        score_plugins = [
            p for p in self._profile.score_plugins
            if not state.is_score_plugin_skipped(p.name)
        ]
        weights: NDArray[np.float64] = np.array(
            [self._profile.weight_of(p.name) for p in score_plugins], dtype=np.float64
        )
        scored = self._fan_out(
            lambda c: self._score_cluster(state, policy, c, score_plugins), passing
        )
        rows: List[NDArray[np.float64]] = []
        scored_clusters: List[MemberCluster] = []
        for cluster, (row, reason, errors) in zip(passing, scored):
            result.plugin_errors.extend(errors)
            if row is None:
                rejected.append(
                    ClusterDecision(cluster_name=cluster.name, selected=False, reason=reason)
                )
                continue
            rows.append(row)
            scored_clusters.append(cluster)
        raise_if_cancelled(cancel_event)

        result.passed = len(scored_clusters)

        matrix: NDArray[np.float64] = (
            np.vstack(rows) if rows else np.zeros((0, len(score_plugins)), dtype=np.float64)
        )
        weighted = matrix * weights
        totals = matrix @ weights

        order = sorted(
            range(len(scored_clusters)),
            key=lambda i: (-float(totals[i]), scored_clusters[i].name),
        )
        limit = len(order) if num_to_pick is None else max(num_to_pick, 0)

        for rank, i in enumerate(order):
            score = ClusterScore(
                breakdown={
                    p.name: float(weighted[i, j]) for j, p in enumerate(score_plugins)
                },
                total=float(totals[i]),
            )
            name = scored_clusters[i].name
            if rank < limit:
                result.selected.append(ClusterDecision(
                    cluster_name=name, selected=True, score=score,
                    reason=f"picked by scheduling policy with score {score.total:.2f}",
                ))
            else:
                result.not_selected.append(ClusterDecision(
                    cluster_name=name, selected=False, score=score,
                    reason=(
                        f"score {score.total:.2f} is below the {limit} "
                        f"selected cluster(s)"
                    ),
                ))
        result.not_selected.extend(sorted(rejected, key=lambda d: d.cluster_name))

        if result.passed < min_passing:
            result.failure = (
                f"only {result.passed} cluster(s) passed the filters, "
                f"at least {min_passing} required"
            )

        for err in result.plugin_errors:
            logger.warning("%s", err)
        result.duration_ms = (time.perf_counter() - start) * 1000.0
        return result

    # ── Private helpers ───────────────────────────────────────────────────────

    @staticmethod
    def _candidates(state: CycleState, policy: PlacementPolicy) -> List[MemberCluster]:
        clusters = state.list_clusters()
        if policy.placement_type == PlacementType.PICK_N:
            return [
                c for c in clusters
                if not state.has_scheduled_or_bound_binding_for(c.name)
            ]
        return list(clusters)

    def _fan_out(self, fn, items: Sequence[MemberCluster]) -> list:
        if len(items) <= 1 or self._parallelism == 1:
            return [fn(item) for item in items]
        with ThreadPoolExecutor(
            max_workers=min(self._parallelism, len(items)),
            thread_name_prefix="pipeline",
        ) as pool:
            return list(pool.map(fn, items))

    @staticmethod
    def _call(
        result: PipelineResult, plugin: str, stage: str, cluster: Optional[str], fn,
    ) -> PluginStatus:
        """Run a cycle-global plugin call, converting exceptions to INTERNAL_ERROR."""
        try:
            status = fn()
        except Exception as err:
            status = PluginStatus.internal_error(plugin, err)
        if status.is_internal_error:
            result.plugin_errors.append(PluginError(plugin, stage, cluster, status.reason))
        return status

    def _filter_cluster(
        self, state: CycleState, policy: PlacementPolicy, cluster: MemberCluster,
    ) -> Tuple[bool, str, List[PluginError]]:
        for plugin in self._profile.filter_plugins:
            if state.is_filter_plugin_skipped(plugin.name):
                continue
            try:
                status = plugin.filter(state, policy, cluster)
            except Exception as err:
                status = PluginStatus.internal_error(plugin.name, err)
            if status.is_internal_error:
                err = PluginError(plugin.name, "Filter", cluster.name, status.reason)
                return False, str(err), [err]
            if status.is_unschedulable:
                return False, status.reason or f"rejected by {plugin.name}", []
        return True, "", []

    @staticmethod
    def _score_cluster(
        state: CycleState,
        policy: PlacementPolicy,
        cluster: MemberCluster,
        plugins: Sequence,
    ) -> Tuple[Optional[NDArray[np.float64]], str, List[PluginError]]:
        row = np.zeros(len(plugins), dtype=np.float64)
        for j, plugin in enumerate(plugins):
            try:
                row[j] = float(plugin.score(state, policy, cluster))
            except Exception as err:
                perr = PluginError(
                    plugin.name, "Score", cluster.name,
                    f"{err.__class__.__name__}: {err}",
                )
                return None, str(perr), [perr]
        return row, "", []

    def __repr__(self) -> str:
        return (
            f"Pipeline(profile={self._profile.name!r}, "
            f"parallelism={self._parallelism})"
        )
