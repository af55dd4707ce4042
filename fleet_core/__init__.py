"""
fleet_core — scheduling framework core.

Public API:
    CycleState        — per-cycle scratch space and binding indices
    Pipeline          — runs a Profile over a CycleState, returns PipelineResult
    Profile           — ordered plugins + score weights
    PluginStatus      — what a PreFilter / Filter / PreScore call returns
    PluginError       — a plugin failure, attributed to plugin and cluster

Usage:
    from fleet_core import CycleState, Pipeline, Profile

    state = CycleState(clusters, obsolete, scheduled, bound)
    result = Pipeline(profile).run(state, policy, num_to_pick=2)
    if result.failed:
        ...                              # caller records SchedulingFailed
"""

from fleet_core.cyclestate import CycleState, StateKeyNotFoundError
from fleet_core.pipeline import Pipeline, PipelineResult
from fleet_core.plugin import (
    FilterPlugin,
    Plugin,
    PluginError,
    PluginStatus,
    PreFilterPlugin,
    PreScorePlugin,
    Profile,
    ScorePlugin,
    StatusCode,
)

__all__ = [
    "CycleState",
    "StateKeyNotFoundError",
    "Pipeline",
    "PipelineResult",
    "Plugin",
    "PreFilterPlugin",
    "FilterPlugin",
    "PreScorePlugin",
    "ScorePlugin",
    "PluginStatus",
    "PluginError",
    "StatusCode",
    "Profile",
]
