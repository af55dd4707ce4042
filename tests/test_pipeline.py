"""
tests/test_pipeline.py
──────────────────────
Test suite for fleet_core/pipeline.py and fleet_core/plugin.py

What we are testing
────────────────────
Pipeline.run() walks PreFilter → Filter → PreScore → Score and ranks the
survivors. The ranking must be deterministic (total desc, name asc) no
matter how the thread pool interleaves, and plugin failures must be
attributed, never swallowed.

Test groups
────────────
Group 1: ranking          — top-K, tie-break, PickAll, weights
Group 2: filter stage     — rejections, first reason wins, no scoring
Group 3: pre-stages       — PreFilter rejection and Skip, PreScore Skip
Group 4: outcomes         — partial selection, minimum not met
Group 5: plugin errors    — exceptions attributed to plugin and cluster
Group 6: candidates       — PickN skips clusters that already hold a binding
Group 7: cancellation, determinism, per-run timing
Group 8: profile          — duplicate registration, stage membership
"""

from __future__ import annotations

import threading
import time
from typing import Dict, List, Optional, Set

import pytest

from fleet_core.cyclestate import CycleState
from fleet_core.pipeline import Pipeline
from fleet_core.plugin import (
    FilterPlugin,
    PluginStatus,
    PreFilterPlugin,
    PreScorePlugin,
    Profile,
    ScorePlugin,
    StatusCode,
)
from fleet_scheduler.shared.errors import CycleCancelledError
from fleet_scheduler.shared.models import (
    Binding,
    BindingSpec,
    MemberCluster,
    ObjectMeta,
    PlacementPolicy,
    PlacementType,
)


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _make_cluster(name: str) -> MemberCluster:
    return MemberCluster(meta=ObjectMeta(name=name))


def _make_state(*names: str, bound: Optional[List[str]] = None) -> CycleState:
    bindings = [
        Binding(meta=ObjectMeta(name=f"b-{c}"), spec=BindingSpec(target_cluster=c))
        for c in (bound or [])
    ]
    return CycleState([_make_cluster(n) for n in names], [], bindings)


def _pick_n(n: int) -> PlacementPolicy:
    return PlacementPolicy(placement_type=PlacementType.PICK_N, number_of_clusters=n)


def _pick_all() -> PlacementPolicy:
    return PlacementPolicy(placement_type=PlacementType.PICK_ALL)


class _FixedScore(ScorePlugin):
    def __init__(self, scores: Dict[str, float], name: str = "Fixed") -> None:
        self._scores = scores
        self._name = name
        self.calls: List[str] = []
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return self._name

    def score(self, state, policy, cluster) -> float:
        with self._lock:
            self.calls.append(cluster.name)
        return self._scores[cluster.name]


class _Reject(FilterPlugin):
    def __init__(self, rejected: Set[str], name: str = "Reject") -> None:
        self._rejected = rejected
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    def filter(self, state, policy, cluster) -> PluginStatus:
        if cluster.name in self._rejected:
            return PluginStatus.unschedulable(self._name, f"{self._name} says no to {cluster.name}")
        return PluginStatus.success()


class _Boom(FilterPlugin, ScorePlugin):
    """Raises for one cluster, in whichever stage it is registered for."""

    def __init__(self, victim: str, name: str = "Boom") -> None:
        self._victim = victim
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    def filter(self, state, policy, cluster) -> PluginStatus:
        if cluster.name == self._victim:
            raise RuntimeError("filter exploded")
        return PluginStatus.success()

    def score(self, state, policy, cluster) -> float:
        if cluster.name == self._victim:
            raise ValueError("score exploded")
        return 0.0


class _PreFilter(PreFilterPlugin):
    def __init__(self, status_code: StatusCode, name: str = "Gate") -> None:
        self._code = status_code
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    def pre_filter(self, state, policy) -> PluginStatus:
        if self._code == StatusCode.SKIP:
            return PluginStatus.skip(self._name)
        if self._code == StatusCode.CLUSTER_UNSCHEDULABLE:
            return PluginStatus.unschedulable(self._name, "fleet is closed")
        return PluginStatus.success()


class _SkipScore(PreScorePlugin, ScorePlugin):
    @property
    def name(self) -> str:
        return "SkipScore"

    def pre_score(self, state, policy) -> PluginStatus:
        return PluginStatus.skip(self.name)

    def score(self, state, policy, cluster) -> float:
        raise AssertionError("a skipped score plugin must not be called")


def _names(decisions) -> List[str]:
    return [d.cluster_name for d in decisions]


# ─────────────────────────────────────────────────────────────────────────────
# Group 1: ranking
# ─────────────────────────────────────────────────────────────────────────────

class TestRanking:

    def test_top_two_of_three_with_tie(self) -> None:
        """A=10, B=7, C=7 with two to pick → {A, B}; C loses the tie on name."""
        profile = Profile("t", [_FixedScore({"A": 10, "B": 7, "C": 7})])
        result = Pipeline(profile).run(_make_state("C", "B", "A"), _pick_n(2), 2)

        assert _names(result.selected) == ["A", "B"]
        assert _names(result.not_selected) == ["C"]
        assert result.not_selected[0].reason
        assert result.failure is None

    def test_tie_break_is_by_ascending_name(self) -> None:
        profile = Profile("t", [_FixedScore({"x": 1, "m": 1, "a": 1})])
        result = Pipeline(profile).run(_make_state("x", "m", "a"), _pick_n(3), 3)
        assert _names(result.selected) == ["a", "m", "x"]

    def test_pick_all_selects_every_passing_cluster(self) -> None:
        profile = Profile("t", [_Reject({"b"}), _FixedScore({"a": 1, "c": 5})])
        result = Pipeline(profile).run(_make_state("a", "b", "c"), _pick_all(), None)

        assert _names(result.selected) == ["c", "a"]
        assert _names(result.not_selected) == ["b"]
        assert result.passed == 2

    def test_weights_are_applied_to_breakdown_and_total(self) -> None:
        profile = Profile(
            "t",
            [_FixedScore({"a": 2, "b": 1}, "S1"), _FixedScore({"a": 0, "b": 3}, "S2")],
            weights={"S1": 3.0, "S2": 0.5},
        )
        result = Pipeline(profile).run(_make_state("a", "b"), _pick_all(), None)

        by_name = {d.cluster_name: d for d in result.selected}
        assert by_name["a"].score.breakdown == {"S1": pytest.approx(6.0), "S2": pytest.approx(0.0)}
        assert by_name["a"].score.total == pytest.approx(6.0)
        assert by_name["b"].score.total == pytest.approx(4.5)
        assert _names(result.selected) == ["a", "b"]

    def test_missing_weight_defaults_to_one(self) -> None:
        profile = Profile("t", [_FixedScore({"a": 4})])
        result = Pipeline(profile).run(_make_state("a"), _pick_all(), None)
        assert result.selected[0].score.total == pytest.approx(4.0)

    def test_no_score_plugins_still_ranks_by_name(self) -> None:
        profile = Profile("t", [_Reject(set())])
        result = Pipeline(profile).run(_make_state("b", "a"), _pick_n(1), 1)
        assert _names(result.selected) == ["a"]
        assert result.selected[0].score.total == 0.0


# ─────────────────────────────────────────────────────────────────────────────
# Group 2: filter stage
# ─────────────────────────────────────────────────────────────────────────────

class TestFilterStage:

    def test_rejected_clusters_are_not_scored(self) -> None:
        scorer = _FixedScore({"a": 1, "b": 1, "c": 1})
        profile = Profile("t", [_Reject({"b"}), scorer])
        Pipeline(profile).run(_make_state("a", "b", "c"), _pick_all(), None)
        assert sorted(scorer.calls) == ["a", "c"]

    def test_first_rejecting_plugin_reason_wins(self) -> None:
        profile = Profile("t", [_Reject({"a"}, "First"), _Reject({"a"}, "Second")])
        result = Pipeline(profile).run(_make_state("a"), _pick_all(), None)

        assert result.selected == []
        assert result.not_selected[0].reason == "First says no to a"
        assert result.not_selected[0].selected is False

    def test_filtered_decisions_are_sorted_by_name(self) -> None:
        profile = Profile("t", [_Reject({"z", "k"})])
        result = Pipeline(profile).run(_make_state("z", "k", "a"), _pick_all(), None)
        assert _names(result.not_selected) == ["k", "z"]


# ─────────────────────────────────────────────────────────────────────────────
# Group 3: pre-stages
# ─────────────────────────────────────────────────────────────────────────────

class TestPreStages:

    def test_pre_filter_rejection_fails_the_run(self) -> None:
        scorer = _FixedScore({"a": 1})
        profile = Profile("t", [_PreFilter(StatusCode.CLUSTER_UNSCHEDULABLE), scorer])
        result = Pipeline(profile).run(_make_state("a"), _pick_all(), None)

        assert result.failed
        assert result.failure == "fleet is closed"
        assert result.duration_ms >= 0.0
        assert result.decisions == []
        assert scorer.calls == []

    def test_pre_filter_skip_excludes_plugin_from_filter_stage(self) -> None:
        class _SkippingReject(PreFilterPlugin, FilterPlugin):
            @property
            def name(self) -> str:
                return "SkippingReject"

            def pre_filter(self, state, policy) -> PluginStatus:
                return PluginStatus.skip(self.name)

            def filter(self, state, policy, cluster) -> PluginStatus:
                return PluginStatus.unschedulable(self.name, "should never run")

        state = _make_state("a")
        result = Pipeline(Profile("t", [_SkippingReject()])).run(state, _pick_all(), None)

        assert _names(result.selected) == ["a"]
        assert state.is_filter_plugin_skipped("SkippingReject")

    def test_pre_score_skip_excludes_plugin_from_score_stage(self) -> None:
        profile = Profile("t", [_SkipScore(), _FixedScore({"a": 2})])
        result = Pipeline(profile).run(_make_state("a"), _pick_all(), None)

        assert result.plugin_errors == []
        assert result.selected[0].score.breakdown == {"Fixed": pytest.approx(2.0)}


# ─────────────────────────────────────────────────────────────────────────────
# Group 4: outcomes
# ─────────────────────────────────────────────────────────────────────────────

class TestOutcomes:

    def test_partial_selection_is_not_fatal(self) -> None:
        profile = Profile("t", [_Reject({"c"})])
        result = Pipeline(profile).run(_make_state("a", "b", "c"), _pick_n(3), 3)

        assert _names(result.selected) == ["a", "b"]
        assert result.failure is None

    def test_fewer_passing_than_minimum_is_fatal(self) -> None:
        profile = Profile("t", [_Reject({"b", "c"})])
        result = Pipeline(profile).run(
            _make_state("a", "b", "c"), _pick_n(3), 3, min_passing=2
        )

        assert result.failed
        assert "only 1 cluster(s) passed" in result.failure

    def test_zero_to_pick_selects_nothing(self) -> None:
        profile = Profile("t", [_FixedScore({"a": 1})])
        result = Pipeline(profile).run(_make_state("a"), _pick_n(0), 0)
        assert result.selected == []
        assert _names(result.not_selected) == ["a"]


# ─────────────────────────────────────────────────────────────────────────────
# Group 5: plugin errors
# ─────────────────────────────────────────────────────────────────────────────

class TestPluginErrors:

    def test_filter_exception_rejects_only_that_cluster(self) -> None:
        profile = Profile("t", [_Boom("b")])
        result = Pipeline(profile).run(_make_state("a", "b"), _pick_all(), None)

        assert _names(result.selected) == ["a"]
        assert len(result.plugin_errors) == 1
        err = result.plugin_errors[0]
        assert (err.plugin, err.stage, err.cluster) == ("Boom", "Filter", "b")
        assert "filter exploded" in result.not_selected[0].reason

    def test_score_exception_rejects_only_that_cluster(self) -> None:
        class _ScoreBoom(ScorePlugin):
            @property
            def name(self) -> str:
                return "ScoreBoom"

            def score(self, state, policy, cluster) -> float:
                if cluster.name == "a":
                    raise ValueError("score exploded")
                return 1.0

        result = Pipeline(Profile("t", [_ScoreBoom()])).run(
            _make_state("a", "b"), _pick_all(), None
        )

        assert _names(result.selected) == ["b"]
        assert result.plugin_errors[0].stage == "Score"
        assert result.plugin_errors[0].cluster == "a"
        assert result.passed == 1

    def test_pre_filter_exception_fails_the_run_with_attribution(self) -> None:
        class _Broken(PreFilterPlugin):
            @property
            def name(self) -> str:
                return "Broken"

            def pre_filter(self, state, policy) -> PluginStatus:
                raise KeyError("missing")

        result = Pipeline(Profile("t", [_Broken()])).run(_make_state("a"), _pick_all(), None)

        assert result.failed
        assert result.plugin_errors[0].plugin == "Broken"
        assert result.plugin_errors[0].cluster is None

    def test_internal_error_status_is_recorded(self) -> None:
        class _Internal(FilterPlugin):
            @property
            def name(self) -> str:
                return "Internal"

            def filter(self, state, policy, cluster) -> PluginStatus:
                return PluginStatus.internal_error(self.name, OSError("disk"))

        result = Pipeline(Profile("t", [_Internal()])).run(_make_state("a"), _pick_all(), None)

        assert result.selected == []
        assert result.plugin_errors[0].plugin == "Internal"
        assert "OSError: disk" in result.plugin_errors[0].detail


# ─────────────────────────────────────────────────────────────────────────────
# Group 6: candidates
# ─────────────────────────────────────────────────────────────────────────────

class TestCandidates:

    def test_pick_n_skips_clusters_with_current_bindings(self) -> None:
        scorer = _FixedScore({"a": 1, "b": 9, "c": 5})
        state = _make_state("a", "b", "c", bound=["b"])
        result = Pipeline(Profile("t", [scorer])).run(state, _pick_n(2), 1)

        assert "b" not in scorer.calls
        assert _names(result.selected) == ["c"]

    def test_pick_all_re_evaluates_clusters_with_bindings(self) -> None:
        scorer = _FixedScore({"a": 1, "b": 9})
        state = _make_state("a", "b", bound=["b"])
        result = Pipeline(Profile("t", [scorer])).run(state, _pick_all(), None)
        assert _names(result.selected) == ["b", "a"]


# ─────────────────────────────────────────────────────────────────────────────
# Group 7: cancellation, determinism, per-run timing
# ─────────────────────────────────────────────────────────────────────────────

class TestCancellationAndDeterminism:

    def test_cancelled_run_raises(self) -> None:
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(CycleCancelledError):
            Pipeline(Profile("t", [])).run(
                _make_state("a"), _pick_all(), None, cancel_event=cancel
            )

    def test_same_inputs_same_decisions_under_parallelism(self) -> None:
        names = [f"member-{i:02d}" for i in range(24)]
        scores = {n: float(i % 5) for i, n in enumerate(names)}
        profile = Profile("t", [_Reject({"member-03"}), _FixedScore(scores)])
        pipeline = Pipeline(profile, parallelism=8)

        first = pipeline.run(_make_state(*reversed(names)), _pick_n(7), 7)
        second = pipeline.run(_make_state(*names), _pick_n(7), 7)

        assert first.decisions == second.decisions
        assert len(first.selected) == 7

    def test_each_run_reports_its_own_duration(self) -> None:
        class _SlowFor(ScorePlugin):
            @property
            def name(self) -> str:
                return "Slow"

            def score(self, state, policy, cluster) -> float:
                if cluster.name == "slow":
                    time.sleep(0.2)
                return 0.0

        pipeline = Pipeline(Profile("t", [_SlowFor()]))
        results: Dict[str, object] = {}

        def run(name: str) -> None:
            results[name] = pipeline.run(_make_state(name), _pick_all(), None)

        workers = [threading.Thread(target=run, args=(n,)) for n in ("slow", "fast")]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join(timeout=5.0)

        assert results["slow"].duration_ms >= 150.0
        assert results["fast"].duration_ms < results["slow"].duration_ms

    def test_parallelism_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            Pipeline(Profile("t", []), parallelism=0)


# ─────────────────────────────────────────────────────────────────────────────
# Group 8: profile
# ─────────────────────────────────────────────────────────────────────────────

class TestProfile:

    def test_duplicate_plugin_names_rejected(self) -> None:
        with pytest.raises(ValueError):
            Profile("t", [_FixedScore({}, "X"), _Reject(set(), "X")])

    def test_multi_capability_plugin_joins_every_stage(self) -> None:
        boom = _Boom("nobody")
        profile = Profile("t", [boom])
        assert profile.filter_plugins == [boom]
        assert profile.score_plugins == [boom]
        assert profile.pre_filter_plugins == []
