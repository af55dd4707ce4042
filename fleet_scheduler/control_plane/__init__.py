"""
fleet_scheduler/control_plane — the scheduling brain.

Public API:

    Decision making:
        Scheduler             — one scheduling cycle per placement key
        CycleResult           — what a cycle did
        CyclePhase            — Idle / Running / Succeeded / PartiallySucceeded / Failed
        default_profile()     — the built-in plugin profile
        validate_policy()     — semantic policy checks, raises PolicyViolationError

    Applying decisions:
        BindingReconciler     — decisions → binding creates / updates / deletes
        ReconcileResult       — names of the bindings touched

    Running continuously:
        WorkQueue             — deduplicating, rate-limited key queue
        SchedulerService      — store watch → queue → worker pool
"""

from fleet_scheduler.control_plane.binding_reconciler import (
    BindingReconciler,
    ReconcileResult,
)
from fleet_scheduler.control_plane.orchestration_service import SchedulerService
from fleet_scheduler.control_plane.plugins import default_profile
from fleet_scheduler.control_plane.policy_validator import validate_policy
from fleet_scheduler.control_plane.scheduler import CyclePhase, CycleResult, Scheduler
from fleet_scheduler.control_plane.work_queue import WorkQueue

__all__ = [
    "Scheduler",
    "CycleResult",
    "CyclePhase",
    "default_profile",
    "validate_policy",
    "BindingReconciler",
    "ReconcileResult",
    "WorkQueue",
    "SchedulerService",
]
