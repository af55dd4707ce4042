"""
fleet_core/plugin.py
────────────────────
The plugin contract: four capability interfaces and the status they return.

A plugin is any object implementing one or more of:

    PreFilterPlugin.pre_filter(state, policy)          → PluginStatus
    FilterPlugin.filter(state, policy, cluster)        → PluginStatus
    PreScorePlugin.pre_score(state, policy)            → PluginStatus
    ScorePlugin.score(state, policy, cluster)          → float

Plugins are registered once, at process start, into a Profile: an ordered
list of plugin handles plus a weight per score plugin. The pipeline walks the
profile stage by stage; there is no runtime registration and no lookup by
name during a cycle.

Status codes
─────────────
  SUCCESS               → carry on.
  CLUSTER_UNSCHEDULABLE → PreFilter: the whole cycle fails with this reason.
                          Filter:    this cluster is excluded from scoring.
  SKIP                  → PreFilter: drop this plugin from the Filter stage.
                          PreScore:  drop this plugin from the Score stage.
  INTERNAL_ERROR        → the plugin itself broke. Attributed to the plugin
                          (and cluster, if any) and aggregated in the result.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Dict, List, Optional, Sequence, Tuple

if TYPE_CHECKING:
    from fleet_core.cyclestate import CycleState
    from fleet_scheduler.shared.models import MemberCluster, PlacementPolicy


class StatusCode(str, Enum):
    SUCCESS = "Success"
    CLUSTER_UNSCHEDULABLE = "ClusterUnschedulable"
    SKIP = "Skip"
    INTERNAL_ERROR = "InternalError"


@dataclass(frozen=True)
class PluginStatus:
    code: StatusCode
    reasons: Tuple[str, ...] = ()
    plugin: str = ""

    @classmethod
    def success(cls) -> "PluginStatus":
        return _SUCCESS

    @classmethod
    def unschedulable(cls, plugin: str, *reasons: str) -> "PluginStatus":
        return cls(StatusCode.CLUSTER_UNSCHEDULABLE, tuple(reasons), plugin)

    @classmethod
    def skip(cls, plugin: str, *reasons: str) -> "PluginStatus":
        return cls(StatusCode.SKIP, tuple(reasons), plugin)

    @classmethod
    def internal_error(cls, plugin: str, err: BaseException) -> "PluginStatus":
        return cls(StatusCode.INTERNAL_ERROR, (f"{err.__class__.__name__}: {err}",), plugin)

    @property
    def is_success(self) -> bool:
        return self.code == StatusCode.SUCCESS

    @property
    def is_skip(self) -> bool:
        return self.code == StatusCode.SKIP

    @property
    def is_unschedulable(self) -> bool:
        return self.code == StatusCode.CLUSTER_UNSCHEDULABLE

    @property
    def is_internal_error(self) -> bool:
        return self.code == StatusCode.INTERNAL_ERROR

    @property
    def reason(self) -> str:
        return "; ".join(self.reasons)


_SUCCESS = PluginStatus(StatusCode.SUCCESS)


class PluginError(Exception):
    """
    A plugin raised or returned INTERNAL_ERROR.

    Attributes:
        plugin:  name of the offending plugin.
        stage:   "PreFilter", "Filter", "PreScore" or "Score".
        cluster: cluster being evaluated, None for cycle-global stages.
        detail:  human-readable description of the failure.
    """

    def __init__(self, plugin: str, stage: str, cluster: Optional[str], detail: str) -> None:
        self.plugin = plugin
        self.stage = stage
        self.cluster = cluster
        self.detail = detail
        where = f" on cluster {cluster}" if cluster else ""
        super().__init__(f"{stage} plugin {plugin} failed{where}: {detail}")


# ── Capability interfaces ─────────────────────────────────────────────────────

class Plugin(ABC):
    """Every plugin has a stable name, used for weights, skips and attribution."""

    @property
    @abstractmethod
    def name(self) -> str:
        ...


class PreFilterPlugin(Plugin):
    @abstractmethod
    def pre_filter(self, state: "CycleState", policy: "PlacementPolicy") -> PluginStatus:
        ...


class FilterPlugin(Plugin):
    @abstractmethod
    def filter(
        self, state: "CycleState", policy: "PlacementPolicy", cluster: "MemberCluster"
    ) -> PluginStatus:
        ...


class PreScorePlugin(Plugin):
    @abstractmethod
    def pre_score(self, state: "CycleState", policy: "PlacementPolicy") -> PluginStatus:
        ...


class ScorePlugin(Plugin):
    @abstractmethod
    def score(
        self, state: "CycleState", policy: "PlacementPolicy", cluster: "MemberCluster"
    ) -> float:
        """Raw score. The pipeline applies the profile weight."""


# ── Profile ───────────────────────────────────────────────────────────────────

@dataclass
class Profile:
    """
    An ordered plugin set plus score weights.

    Plugins appear in each stage in the order they were given. A plugin that
    implements several capabilities takes part in several stages.
    """
    name: str
    plugins: Sequence[Plugin]
    weights: Dict[str, float] = field(default_factory=dict)

    def __post_init__(self) -> None:
        names = [p.name for p in self.plugins]
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            raise ValueError(f"profile {self.name!r} registers plugins twice: {dupes}")
        self.pre_filter_plugins: List[PreFilterPlugin] = [
            p for p in self.plugins if isinstance(p, PreFilterPlugin)
        ]
        self.filter_plugins: List[FilterPlugin] = [
            p for p in self.plugins if isinstance(p, FilterPlugin)
        ]
        self.pre_score_plugins: List[PreScorePlugin] = [
            p for p in self.plugins if isinstance(p, PreScorePlugin)
        ]
        self.score_plugins: List[ScorePlugin] = [
            p for p in self.plugins if isinstance(p, ScorePlugin)
        ]

    def weight_of(self, plugin_name: str) -> float:
        return self.weights.get(plugin_name, 1.0)
