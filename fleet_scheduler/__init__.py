"""
fleet_scheduler — multi-cluster placement scheduler.

Subpackages:
    shared         — object models, store contract, errors, config, health
    control_plane  — plugins, Scheduler, BindingReconciler, WorkQueue,
                     SchedulerService
    watchers       — change-detection decisions and the EventDispatcher

The framework core (CycleState, Pipeline, plugin contract) lives in
fleet_core.
"""
