"""
fleet_scheduler/shared/config.py
────────────────────────────────
SchedulerConfig: every tunable of the scheduler in one validated model.

The module-level constants are the defaults. Tests and callers import them
directly to assert against; a deployment overrides them by building a
SchedulerConfig (typically from a parsed file via from_mapping()).
"""

from __future__ import annotations

from typing import Any, Dict, Mapping

from pydantic import BaseModel, Field

from fleet_scheduler.shared.errors import is_retryable_write_error
from fleet_scheduler.shared.retry import RetryPolicy

# ── Concurrency ───────────────────────────────────────────────────────────────

DEFAULT_WORKERS: int = 4
"""Scheduling cycles for different placements that may run at the same time."""

DEFAULT_PLUGIN_PARALLELISM: int = 8
"""Threads used to fan Filter and Score calls out across clusters in one cycle."""

# ── Scoring ───────────────────────────────────────────────────────────────────

DEFAULT_SCORE_WEIGHTS: Dict[str, float] = {
    "ClusterAffinity": 1.0,
    "TopologySpread": 1.0,
    "ObsoleteBindingAffinity": 1.0,
}
"""Weight applied to each score plugin's raw score before summing.

Plugins missing from the mapping get weight 1.0.
"""

# ── Retries ───────────────────────────────────────────────────────────────────

STATUS_UPDATE_MAX_ATTEMPTS: int = 5
STATUS_UPDATE_BASE_DELAY_S: float = 0.01
STATUS_UPDATE_MAX_DELAY_S: float = 1.0

BINDING_WRITE_MAX_ATTEMPTS: int = 5
BINDING_WRITE_BASE_DELAY_S: float = 0.01
BINDING_WRITE_MAX_DELAY_S: float = 1.0

# ── Requeue ───────────────────────────────────────────────────────────────────

REQUEUE_BASE_DELAY_S: float = 0.5
"""First requeue delay after a failed cycle. Doubles per consecutive failure."""

REQUEUE_MAX_DELAY_S: float = 300.0
"""Cap on the per-placement requeue delay."""

RESYNC_INTERVAL_S: float = 300.0
"""How often every placement is re-enqueued regardless of watch events.

Policy violations are not retried faster than this.
"""

# ── Cluster health ────────────────────────────────────────────────────────────

HEARTBEAT_STALENESS_FACTOR: float = 5.0
"""A cluster is unhealthy once its last heartbeat is older than
heartbeat_period_seconds × this factor."""


class SchedulerConfig(BaseModel):
    """Validated scheduler settings. All fields default to the module constants."""

    workers: int = Field(DEFAULT_WORKERS, ge=1)
    plugin_parallelism: int = Field(DEFAULT_PLUGIN_PARALLELISM, ge=1)
    score_weights: Dict[str, float] = Field(
        default_factory=lambda: dict(DEFAULT_SCORE_WEIGHTS)
    )

    status_update_max_attempts: int = Field(STATUS_UPDATE_MAX_ATTEMPTS, ge=1)
    status_update_base_delay_s: float = Field(STATUS_UPDATE_BASE_DELAY_S, ge=0)
    status_update_max_delay_s: float = Field(STATUS_UPDATE_MAX_DELAY_S, ge=0)

    binding_write_max_attempts: int = Field(BINDING_WRITE_MAX_ATTEMPTS, ge=1)
    binding_write_base_delay_s: float = Field(BINDING_WRITE_BASE_DELAY_S, ge=0)
    binding_write_max_delay_s: float = Field(BINDING_WRITE_MAX_DELAY_S, ge=0)

    requeue_base_delay_s: float = Field(REQUEUE_BASE_DELAY_S, ge=0)
    requeue_max_delay_s: float = Field(REQUEUE_MAX_DELAY_S, ge=0)
    resync_interval_s: float = Field(RESYNC_INTERVAL_S, gt=0)

    heartbeat_staleness_factor: float = Field(HEARTBEAT_STALENESS_FACTOR, gt=0)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "SchedulerConfig":
        """Build a config from a plain mapping. Unknown keys are rejected."""
        unknown = set(data) - set(cls.model_fields)
        if unknown:
            raise ValueError(f"unknown scheduler config keys: {sorted(unknown)}")
        return cls(**dict(data))

    def status_retry_policy(self) -> RetryPolicy:
        """Conflicts and transient failures on placement status writes."""
        return RetryPolicy(
            max_attempts=self.status_update_max_attempts,
            base_delay_s=self.status_update_base_delay_s,
            max_delay_s=self.status_update_max_delay_s,
            retryable=is_retryable_write_error,
        )

    def binding_retry_policy(self) -> RetryPolicy:
        """Per-binding write retries. Conflicts are handled by re-reading, see reconciler."""
        return RetryPolicy(
            max_attempts=self.binding_write_max_attempts,
            base_delay_s=self.binding_write_base_delay_s,
            max_delay_s=self.binding_write_max_delay_s,
            retryable=is_retryable_write_error,
        )
