"""
tests/test_watchers.py
──────────────────────
Test suite for fleet_scheduler/watchers/

What we are testing
────────────────────
The watchers decide which store changes are worth a scheduling cycle. They
must requeue on every change that can alter a decision, and must stay quiet
on the churn downstream controllers produce (status rewrites, timestamps,
re-ordered lists), or the scheduler would loop on its own writes.

Test groups
────────────
Group 1: placement watcher
Group 2: binding conditions
Group 3: binding placement lists
Group 4: binding lifecycle
Group 5: resource snapshot watcher
Group 6: member cluster watcher
Group 7: dispatcher           — store events into the work queue
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List, Optional

from fleet_scheduler.control_plane.work_queue import WorkQueue
from fleet_scheduler.shared.models import (
    PLACEMENT_TRACKING_LABEL,
    Binding,
    BindingSpec,
    BindingStatus,
    ClusterState,
    Condition,
    ConditionStatus,
    DriftedResourcePlacement,
    FailedResourcePlacement,
    MemberCluster,
    MemberClusterStatus,
    ObjectMeta,
    PatchDetail,
    Placement,
    PlacementPolicy,
    PlacementSpec,
    PlacementType,
    PolicySnapshot,
    ResourceIdentifier,
    ResourceSnapshot,
)
from fleet_scheduler.shared.store import InMemoryObjectStore
from fleet_scheduler.watchers import (
    EventDispatcher,
    conditions_changed,
    on_binding_created,
    on_binding_deleted,
    on_binding_updated,
    on_cluster_created,
    on_cluster_deleted,
    on_cluster_updated,
    on_placement_created,
    on_placement_deleted,
    on_placement_updated,
    on_resource_snapshot_created,
)

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)
T1 = T0 + timedelta(minutes=5)


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _make_placement(n: int = 5, generation: int = 1) -> Placement:
    return Placement(
        meta=ObjectMeta(name="web", namespace="team-a", generation=generation),
        spec=PlacementSpec(policy=PlacementPolicy(
            placement_type=PlacementType.PICK_N, number_of_clusters=n,
        )),
    )


def _make_binding(
    conditions: Optional[List[Condition]] = None,
    failed: Optional[List[FailedResourcePlacement]] = None,
    drifted: Optional[List[DriftedResourcePlacement]] = None,
    owner: Optional[str] = "web",
) -> Binding:
    labels = {PLACEMENT_TRACKING_LABEL: owner} if owner else {}
    return Binding(
        meta=ObjectMeta(name="web-member-1-abc", namespace="team-a", labels=labels),
        spec=BindingSpec(target_cluster="member-1"),
        status=BindingStatus(
            conditions=conditions or [],
            failed_placements=failed or [],
            drifted_placements=drifted or [],
        ),
    )


def _applied(status: ConditionStatus = ConditionStatus.TRUE, reason: str = "Applied",
             at: datetime = T0, message: str = "") -> Condition:
    return Condition(
        type="Applied", status=status, reason=reason, message=message,
        observed_generation=1, last_transition_time=at,
    )


def _failed(kind: str, name: str, at: datetime = T0) -> FailedResourcePlacement:
    return FailedResourcePlacement(
        resource=ResourceIdentifier(kind=kind, name=name),
        condition=Condition(
            type="Applied", status=ConditionStatus.FALSE, reason="ApplyFailed",
            last_transition_time=at,
        ),
    )


def _drifted(name: str, at: datetime = T0) -> DriftedResourcePlacement:
    return DriftedResourcePlacement(
        resource=ResourceIdentifier(kind="Deployment", name=name),
        observation_time=at,
        first_drifted_observed_time=at,
        observed_drifts=[PatchDetail(path="/spec/replicas", value_in_hub="3", value_in_member="5")],
    )


def _make_cluster(name: str = "member-1", **labels: str) -> MemberCluster:
    return MemberCluster(
        meta=ObjectMeta(name=name, labels=dict(labels)),
        status=MemberClusterStatus(
            conditions=[Condition(type="Joined", status=ConditionStatus.TRUE, last_transition_time=T0)],
            last_heartbeat=T0,
        ),
    )


# ─────────────────────────────────────────────────────────────────────────────
# Group 1: placement watcher
# ─────────────────────────────────────────────────────────────────────────────

class TestPlacementWatcher:

    def test_created_and_deleted_enqueue(self) -> None:
        assert on_placement_created(_make_placement()) == ("team-a/web", True)
        assert on_placement_deleted(_make_placement()) == ("team-a/web", True)

    def test_missing_object_is_ignored(self) -> None:
        assert on_placement_created(None) == ("", False)
        assert on_placement_updated(None, _make_placement()) == ("", False)

    def test_spec_change_enqueues(self) -> None:
        old = _make_placement(5, generation=1)
        new = _make_placement(6, generation=2)
        assert on_placement_updated(old, new) == ("team-a/web", True)

    def test_status_only_change_is_ignored(self) -> None:
        old = _make_placement()
        new = old.model_copy(deep=True)
        new.status.observed_policy_snapshot = "web-0"
        new.meta.resource_version += 1
        assert on_placement_updated(old, new) == ("team-a/web", False)

    def test_finalizer_only_change_is_ignored(self) -> None:
        old = _make_placement()
        new = old.model_copy(deep=True)
        new.meta.finalizers.append("fleet.io/scheduler-cleanup")
        assert on_placement_updated(old, new)[1] is False

    def test_deletion_start_enqueues(self) -> None:
        old = _make_placement()
        new = old.model_copy(deep=True)
        new.meta.deletion_timestamp = T1
        assert on_placement_updated(old, new)[1] is True


# ─────────────────────────────────────────────────────────────────────────────
# Group 2: binding conditions
# ─────────────────────────────────────────────────────────────────────────────

class TestBindingConditions:

    def test_transition_time_only_is_ignored(self) -> None:
        old = _make_binding([_applied(at=T0)])
        new = _make_binding([_applied(at=T1)])
        assert on_binding_updated(old, new) == ("team-a/web", False)

    def test_message_only_is_ignored(self) -> None:
        old = _make_binding([_applied(message="ok")])
        new = _make_binding([_applied(message="still ok")])
        assert on_binding_updated(old, new)[1] is False

    def test_status_change_enqueues(self) -> None:
        old = _make_binding([_applied(ConditionStatus.TRUE)])
        new = _make_binding([_applied(ConditionStatus.FALSE)])
        assert on_binding_updated(old, new) == ("team-a/web", True)

    def test_reason_change_enqueues(self) -> None:
        old = _make_binding([_applied(reason="Applied")])
        new = _make_binding([_applied(reason="ApplyPending")])
        assert on_binding_updated(old, new)[1] is True

    def test_new_condition_enqueues(self) -> None:
        available = Condition(type="Available", status=ConditionStatus.TRUE)
        old = _make_binding([_applied()])
        new = _make_binding([_applied(), available])
        assert on_binding_updated(old, new)[1] is True

    def test_condition_order_does_not_matter(self) -> None:
        available = Condition(type="Available", status=ConditionStatus.TRUE, last_transition_time=T0)
        assert not conditions_changed([_applied(), available], [available, _applied()])


# ─────────────────────────────────────────────────────────────────────────────
# Group 3: binding placement lists
# ─────────────────────────────────────────────────────────────────────────────

class TestBindingPlacementLists:

    def test_reordered_failed_list_is_ignored(self) -> None:
        old = _make_binding(failed=[_failed("ConfigMap", "a"), _failed("Secret", "b")])
        new = _make_binding(failed=[_failed("Secret", "b"), _failed("ConfigMap", "a")])
        assert on_binding_updated(old, new)[1] is False

    def test_failed_entry_added_enqueues(self) -> None:
        old = _make_binding(failed=[_failed("ConfigMap", "a")])
        new = _make_binding(failed=[_failed("ConfigMap", "a"), _failed("Secret", "b")])
        assert on_binding_updated(old, new)[1] is True

    def test_failed_condition_timestamp_is_ignored(self) -> None:
        old = _make_binding(failed=[_failed("ConfigMap", "a", at=T0)])
        new = _make_binding(failed=[_failed("ConfigMap", "a", at=T1)])
        assert on_binding_updated(old, new)[1] is False

    def test_drift_observation_time_is_ignored(self) -> None:
        old = _make_binding(drifted=[_drifted("web", at=T0)])
        new = _make_binding(drifted=[_drifted("web", at=T1)])
        assert on_binding_updated(old, new)[1] is False

    def test_drift_detail_change_enqueues(self) -> None:
        old = _make_binding(drifted=[_drifted("web")])
        changed = _drifted("web")
        changed.observed_drifts[0].value_in_member = "7"
        new = _make_binding(drifted=[changed])
        assert on_binding_updated(old, new)[1] is True


# ─────────────────────────────────────────────────────────────────────────────
# Group 4: binding lifecycle
# ─────────────────────────────────────────────────────────────────────────────

class TestBindingLifecycle:

    def test_created_is_ignored(self) -> None:
        assert on_binding_created(_make_binding()) == ("team-a/web", False)

    def test_deleted_enqueues_owner(self) -> None:
        assert on_binding_deleted(_make_binding()) == ("team-a/web", True)

    def test_deletion_start_enqueues(self) -> None:
        old = _make_binding()
        new = old.model_copy(deep=True)
        new.meta.deletion_timestamp = T1
        assert on_binding_updated(old, new)[1] is True

    def test_spec_only_change_is_ignored(self) -> None:
        old = _make_binding()
        new = old.model_copy(deep=True)
        new.spec.resource_snapshot_name = "web-res-3"
        assert on_binding_updated(old, new)[1] is False

    def test_missing_owner_label_is_ignored(self) -> None:
        old = _make_binding([_applied(ConditionStatus.TRUE)], owner=None)
        new = _make_binding([_applied(ConditionStatus.FALSE)], owner=None)
        assert on_binding_updated(old, new) == ("", False)
        assert on_binding_deleted(old) == ("", False)


# ─────────────────────────────────────────────────────────────────────────────
# Group 5: resource snapshot watcher
# ─────────────────────────────────────────────────────────────────────────────

class TestResourceSnapshotWatcher:

    def test_new_snapshot_enqueues_owner(self) -> None:
        snapshot = ResourceSnapshot(
            meta=ObjectMeta(
                name="web-res-4", namespace="team-a",
                labels={PLACEMENT_TRACKING_LABEL: "web"},
            ),
            index=4,
        )
        assert on_resource_snapshot_created(snapshot) == ("team-a/web", True)

    def test_unowned_snapshot_is_ignored(self) -> None:
        snapshot = ResourceSnapshot(meta=ObjectMeta(name="orphan"), index=0)
        assert on_resource_snapshot_created(snapshot) == ("", False)


# ─────────────────────────────────────────────────────────────────────────────
# Group 6: member cluster watcher
# ─────────────────────────────────────────────────────────────────────────────

class TestMemberClusterWatcher:

    def test_create_and_delete_requeue(self) -> None:
        assert on_cluster_created(_make_cluster())
        assert on_cluster_deleted(_make_cluster())

    def test_heartbeat_only_is_ignored(self) -> None:
        old = _make_cluster()
        new = old.model_copy(deep=True)
        new.status.last_heartbeat = T1
        assert not on_cluster_updated(old, new)

    def test_label_change_requeues(self) -> None:
        assert on_cluster_updated(_make_cluster(zone="east"), _make_cluster(zone="west"))

    def test_property_change_requeues(self) -> None:
        old = _make_cluster()
        new = old.model_copy(deep=True)
        new.status.properties["cpu-capacity"] = 128.0
        assert on_cluster_updated(old, new)

    def test_leave_requeues(self) -> None:
        old = _make_cluster()
        new = old.model_copy(deep=True)
        new.spec.state = ClusterState.LEAVE
        assert on_cluster_updated(old, new)

    def test_condition_status_flip_requeues(self) -> None:
        old = _make_cluster()
        new = old.model_copy(deep=True)
        new.status.conditions.append(Condition(type="Healthy", status=ConditionStatus.FALSE))
        assert on_cluster_updated(old, new)

    def test_condition_timestamp_only_is_ignored(self) -> None:
        old = _make_cluster()
        new = old.model_copy(deep=True)
        new.status.conditions[0].last_transition_time = T1
        assert not on_cluster_updated(old, new)


# ─────────────────────────────────────────────────────────────────────────────
# Group 7: dispatcher
# ─────────────────────────────────────────────────────────────────────────────

class TestDispatcher:

    def _wire(self):
        store = InMemoryObjectStore()
        queue = WorkQueue(base_delay_s=0.0)
        store.watch(EventDispatcher(queue, store).handle)
        return store, queue

    def _drain(self, queue: WorkQueue) -> List[str]:
        keys = []
        while True:
            key = queue.get(timeout=0)
            if key is None:
                return keys
            keys.append(key)
            queue.done(key)

    def test_spec_edit_enqueues_once_and_status_write_adds_nothing(self) -> None:
        store, queue = self._wire()
        store.create(_make_placement(5))
        assert self._drain(queue) == ["team-a/web"]

        placement = store.get(Placement, "web", "team-a")
        placement.spec.policy.number_of_clusters = 6
        placement = store.update(placement)
        assert placement.meta.generation == 2
        assert len(queue) == 1

        placement.status.observed_policy_snapshot = "web-1"
        store.update_status(placement)
        assert self._drain(queue) == ["team-a/web"]

    def test_cluster_event_requeues_every_placement(self) -> None:
        store, queue = self._wire()
        store.create(_make_placement())
        other = _make_placement()
        other.meta.namespace = "team-b"
        store.create(other)
        self._drain(queue)

        store.create(_make_cluster("member-9"))
        assert sorted(self._drain(queue)) == ["team-a/web", "team-b/web"]

    def test_cluster_heartbeat_requeues_nothing(self) -> None:
        store, queue = self._wire()
        store.create(_make_placement())
        cluster = store.create(_make_cluster())
        self._drain(queue)

        cluster.status.last_heartbeat = T1
        store.update_status(cluster)
        assert len(queue) == 0

    def test_scheduler_owned_kinds_are_ignored(self) -> None:
        store, queue = self._wire()
        store.create(PolicySnapshot(
            meta=ObjectMeta(
                name="web-0", namespace="team-a",
                labels={PLACEMENT_TRACKING_LABEL: "web"},
            ),
            index=0,
            policy=PlacementPolicy(),
            policy_hash="abc",
        ))
        store.create(_make_binding())
        assert len(queue) == 0

    def test_binding_delete_enqueues_owner(self) -> None:
        store, queue = self._wire()
        store.create(_make_binding())
        store.delete(Binding, "web-member-1-abc", "team-a")
        assert self._drain(queue) == ["team-a/web"]
