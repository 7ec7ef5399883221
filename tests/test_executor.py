"""Tests for the plan executor."""

import threading
import time

import pytest

from keel.assembly.graph import DependencyGraph
from keel.assembly.planner import Operation, build_destroy_plan, build_plan
from keel.errors import ApplyCancelledError, PartialApplyError, StalePlanError
from keel.forge.executor import PlanExecutor, StepStatus
from keel.forge.state import StateSnapshot
from keel.providers import CloudAPIError, SimulatedCloudProvider
from keel.resources import CustomResource, Reference, Vpc
from keel.stack import Stack


class FlakyProvider(SimulatedCloudProvider):
    """Simulated cloud that fails chosen creates, updates and deletes."""

    def __init__(self, fail_create=(), fail_update=(), fail_delete=(), **kwargs):
        super().__init__(**kwargs)
        self.fail_create = set(fail_create)
        self.fail_update = set(fail_update)
        self.fail_delete = set(fail_delete)

    def create(self, kind, name, properties, timeout=None):
        if name in self.fail_create:
            raise CloudAPIError("InternalFailure", f"could not create {name}")
        return super().create(kind, name, properties, timeout=timeout)

    def update(self, kind, resource_id, properties, timeout=None):
        if resource_id in self.fail_update:
            raise CloudAPIError("InternalFailure", f"could not update {resource_id}")
        return super().update(kind, resource_id, properties, timeout=timeout)

    def delete(self, kind, resource_id, timeout=None):
        if resource_id in self.fail_delete:
            raise CloudAPIError("InternalFailure", f"could not delete {resource_id}")
        return super().delete(kind, resource_id, timeout=timeout)


class TrackingProvider(SimulatedCloudProvider):
    """Simulated cloud that records how many creates run at once."""

    def __init__(self, delay=0.05, **kwargs):
        super().__init__(**kwargs)
        self.delay = delay
        self.in_flight = 0
        self.peak = 0
        self._count_lock = threading.Lock()

    def create(self, kind, name, properties, timeout=None):
        with self._count_lock:
            self.in_flight += 1
            self.peak = max(self.peak, self.in_flight)
        try:
            time.sleep(self.delay)
            return super().create(kind, name, properties, timeout=timeout)
        finally:
            with self._count_lock:
                self.in_flight -= 1


def _plan_for(stack, snapshot):
    return build_plan(DependencyGraph.from_stack(stack), snapshot, exports=stack.exports)


def _apply(provider, store, stack, max_workers=1, **kwargs):
    snapshot = store.load()
    executor = PlanExecutor(provider, store, max_workers=max_workers, **kwargs)
    return executor.apply(_plan_for(stack, snapshot), stack, snapshot)


def _thing(name, *refs, immutable=(), **inputs):
    for i, ref in enumerate(refs):
        inputs[f"ref_{i}"] = Reference(node=ref)
    return CustomResource(name=name, kind="thing", inputs=inputs, immutable=list(immutable))


def _creates(provider):
    return [name for op, _, name in provider.call_log if op == "create"]


class TestApply:
    """Tests for applying plans end to end."""

    def test_database_scenario(self, provider, store, database_stack):
        result = _apply(provider, store, database_stack, max_workers=4)

        assert len(result.applied) == 5
        assert _creates(provider)[0] == "network"
        assert _creates(provider)[-1] == "database"

        outputs = result.outputs
        assert outputs["endpoint"].endswith(":3306")
        assert outputs["port"] == 3306
        assert outputs["vpcId"].startswith("vpc-")
        assert len(outputs["subnetIds"]) == 1
        assert outputs["subnetIds"][0].startswith("subnet-")
        assert outputs["securityGroupId"].startswith("sg-")
        assert store.load().outputs == outputs

    def test_references_resolved_to_provider_ids(self, provider, store, database_stack):
        _apply(provider, store, database_stack)

        snapshot = store.load()
        database = provider.objects("database-instance")[0]
        assert database.properties["db_subnet_group_name"] == "app-subnet-group"
        assert database.properties["vpc_security_group_ids"] == [
            snapshot.get("security-group").resource_id
        ]

    def test_state_records_every_resource(self, provider, store, database_stack):
        _apply(provider, store, database_stack)

        snapshot = store.load()
        assert set(snapshot.resources) == {
            "network", "subnet-1", "security-group", "subnet-group", "database",
        }
        assert snapshot.get("database").dependencies == ["subnet-group", "security-group"]
        assert snapshot.get("database").inputs_digest
        assert "s3cr3t-pa55" not in snapshot.model_dump_json()

    def test_second_plan_has_no_changes(self, provider, store, database_stack):
        _apply(provider, store, database_stack)
        calls = len(provider.call_log)

        result = _apply(provider, store, database_stack)

        assert not result.plan.has_changes
        assert {r.status for r in result.results} == {StepStatus.UNCHANGED}
        assert len(provider.call_log) == calls

    def test_mutable_change_updates_in_place(self, provider, store, make_database_stack):
        _apply(provider, store, make_database_stack())
        before = store.load().get("database").resource_id

        result = _apply(provider, store, make_database_stack(instance_class="db.t3.large"))

        assert [r.step.operation for r in result.applied] == [Operation.UPDATE]
        assert store.load().get("database").resource_id == before
        assert provider.objects("database-instance")[0].properties["instance_class"] == "db.t3.large"

    def test_delete_first_replacement(self, provider, store, make_database_stack):
        _apply(provider, store, make_database_stack())
        before = store.load().get("database").resource_id

        result = _apply(provider, store, make_database_stack(engine="postgres"))

        assert [(r.step.operation, r.step.name) for r in result.applied] == [
            (Operation.DELETE, "database"),
            (Operation.CREATE, "database"),
        ]
        assert store.load().get("database").resource_id != before
        assert result.outputs["port"] == 5432
        assert len(provider.objects("database-instance")) == 1

    def test_network_replacement_rebuilds_dependents(self, provider, store, make_database_stack):
        _apply(provider, store, make_database_stack())
        before = {name: s.resource_id for name, s in store.load().resources.items()}

        _apply(provider, store, make_database_stack(cidr_block="10.1.0.0/16"), max_workers=4)

        after = store.load()
        assert after.get("network").outputs["cidr_block"] == "10.1.0.0/16"
        for name in ("network", "subnet-1", "security-group", "database"):
            assert after.get(name).resource_id != before[name]
        assert len(provider) == 5
        assert after.retired == []

    def test_create_first_replacement(self, provider, store):
        _apply(provider, store, Stack("things").add(_thing("t", immutable=["zone"], zone="a")))
        old_id = store.load().get("t").resource_id

        result = _apply(provider, store, Stack("things").add(_thing("t", immutable=["zone"], zone="b")))

        assert [r.step.operation for r in result.applied] == [Operation.CREATE, Operation.DELETE]
        snapshot = store.load()
        assert snapshot.get("t").resource_id != old_id
        assert snapshot.retired == []
        assert [obj.properties["zone"] for obj in provider.objects("thing")] == ["b"]

    def test_destroy(self, provider, store, database_stack):
        _apply(provider, store, database_stack)
        snapshot = store.load()

        result = PlanExecutor(provider, store, max_workers=2).apply(
            build_destroy_plan(snapshot), None, snapshot,
        )

        assert len(result.applied) == 5
        assert len(provider) == 0
        assert store.load().resources == {}
        assert store.load().outputs == {}


class TestPartialFailure:
    """Tests for provider failures in the middle of an apply."""

    def test_failure_stops_and_reports(self, store, database_stack):
        provider = FlakyProvider(fail_create={"subnet-group"})

        with pytest.raises(PartialApplyError) as exc_info:
            _apply(provider, store, database_stack)

        error = exc_info.value
        assert error.error.node == "subnet-group"
        assert error.error.cause.code == "InternalFailure"
        assert [s.name for s in error.completed] == ["network", "security-group", "subnet-1"]
        assert [s.name for s in error.pending] == ["subnet-group", "database"]
        assert set(store.load().resources) == {"network", "security-group", "subnet-1"}
        assert "database" not in _creates(provider)

    def test_replan_after_failure_does_not_duplicate(self, store, database_stack):
        provider = FlakyProvider(fail_create={"subnet-group"})
        with pytest.raises(PartialApplyError):
            _apply(provider, store, database_stack)
        provider.fail_create.clear()

        result = _apply(provider, store, database_stack)

        assert [r.step.name for r in result.applied] == ["subnet-group", "database"]
        assert len(provider) == 5
        assert len(provider.objects("network")) == 1

    def test_retrying_the_same_plan_skips_completed_steps(self, store, database_stack):
        provider = FlakyProvider(fail_create={"database"})
        snapshot = store.load()
        plan = _plan_for(database_stack, snapshot)
        with pytest.raises(PartialApplyError):
            PlanExecutor(provider, store, max_workers=1).apply(plan, database_stack, snapshot)
        provider.fail_create.clear()

        snapshot = store.load()
        result = PlanExecutor(provider, store, max_workers=1).apply(plan, database_stack, snapshot)

        assert [r.step.name for r in result.skipped] == [
            "network", "security-group", "subnet-1", "subnet-group",
        ]
        assert [r.step.name for r in result.applied] == ["database"]
        assert len(provider) == 5

    def test_retrying_an_update_skips_it(self, provider, store, make_database_stack):
        _apply(provider, store, make_database_stack())
        stack = make_database_stack(instance_class="db.t3.large")
        plan = _plan_for(stack, store.load())

        snapshot = store.load()
        PlanExecutor(provider, store, max_workers=1).apply(plan, stack, snapshot)
        calls = len(provider.call_log)
        snapshot = store.load()
        result = PlanExecutor(provider, store, max_workers=1).apply(plan, stack, snapshot)

        assert [r.step.name for r in result.skipped] == ["database"]
        assert len(provider.call_log) == calls

    def test_interrupted_replacement_finishes_later(self, store):
        provider = FlakyProvider()
        _apply(provider, store, Stack("things").add(_thing("t", immutable=["zone"], zone="a")))
        old_id = store.load().get("t").resource_id
        provider.fail_delete.add(old_id)
        stack = Stack("things").add(_thing("t", immutable=["zone"], zone="b"))

        with pytest.raises(PartialApplyError):
            _apply(provider, store, stack)

        snapshot = store.load()
        assert snapshot.get("t").resource_id != old_id
        assert [r.resource_id for r in snapshot.retired] == [old_id]

        provider.fail_delete.clear()
        result = _apply(provider, store, stack)

        assert [(r.step.operation, r.step.retired) for r in result.applied] == [
            (Operation.DELETE, True),
        ]
        assert store.load().retired == []
        assert len(provider.objects("thing")) == 1

    def test_interrupted_consumer_update_finishes_later(self, store):
        provider = FlakyProvider()

        def things(zone):
            return Stack("things").add(_thing("p", immutable=["zone"], zone=zone), _thing("c", "p"))

        _apply(provider, store, things("a"))
        old_producer = store.load().get("p").resource_id
        provider.fail_update.add(store.load().get("c").resource_id)
        stack = things("b")

        with pytest.raises(PartialApplyError) as exc_info:
            _apply(provider, store, stack)

        assert exc_info.value.error.node == "c"
        assert [r.resource_id for r in store.load().retired] == [old_producer]

        provider.fail_update.clear()
        result = _apply(provider, store, stack)

        assert [(r.step.name, r.step.operation) for r in result.applied] == [
            ("c", Operation.UPDATE),
            ("p", Operation.DELETE),
        ]
        snapshot = store.load()
        new_producer = snapshot.get("p").resource_id
        assert snapshot.retired == []
        assert snapshot.get("c").references == {"p.id": new_producer}
        consumer = next(o for o in provider.objects("thing") if o.name == "c")
        assert consumer.properties["ref_0"] == new_producer
        assert not _plan_for(stack, snapshot).has_changes

    def test_timeout_is_a_provider_failure(self, store):
        provider = SimulatedCloudProvider(latency=0.05)

        with pytest.raises(PartialApplyError) as exc_info:
            _apply(provider, store, Stack("things").add(_thing("slow")), timeout=0.01)

        assert isinstance(exc_info.value.error.cause, TimeoutError)
        assert store.load().resources == {}

    def test_destroy_retry_skips_deleted(self, provider, store, database_stack):
        _apply(provider, store, database_stack)
        plan = build_destroy_plan(store.load())
        snapshot = store.load()
        PlanExecutor(provider, store).apply(plan, None, snapshot)

        result = PlanExecutor(provider, store).apply(plan, None, store.load())

        assert len(result.skipped) == 5


class TestCancellation:
    """Tests for cancelling a running apply."""

    def test_cancel_lets_in_flight_step_finish(self, store, database_stack):
        executor = None

        class CancellingProvider(SimulatedCloudProvider):
            def create(self, kind, name, properties, timeout=None):
                result = super().create(kind, name, properties, timeout=timeout)
                if name == "security-group":
                    executor.cancel()
                return result

        provider = CancellingProvider()
        executor = PlanExecutor(provider, store, max_workers=1)
        snapshot = store.load()

        with pytest.raises(ApplyCancelledError) as exc_info:
            executor.apply(_plan_for(database_stack, snapshot), database_stack, snapshot)

        assert [s.name for s in exc_info.value.completed] == ["network", "security-group"]
        assert len(exc_info.value.pending) == 3
        assert set(store.load().resources) == {"network", "security-group"}
        assert not executor.cancelled

        snapshot = store.load()
        result = executor.apply(_plan_for(database_stack, snapshot), database_stack, snapshot)

        assert len(result.applied) == 3

    def test_cancel_before_apply_is_honoured(self, provider, store, database_stack):
        executor = PlanExecutor(provider, store, max_workers=1)
        snapshot = store.load()
        plan = _plan_for(database_stack, snapshot)
        executor.cancel()

        with pytest.raises(ApplyCancelledError) as exc_info:
            executor.apply(plan, database_stack, snapshot)

        assert exc_info.value.completed == []
        assert len(exc_info.value.pending) == 5
        assert provider.call_log == []
        assert not executor.cancelled


class TestParallelism:
    """Tests for bounded parallel execution."""

    def test_independent_steps_run_in_parallel(self, store):
        provider = TrackingProvider()
        stack = Stack("things").add(
            _thing("a"), _thing("b"), _thing("c"), _thing("d"),
            _thing("all", "a", "b", "c", "d"),
        )

        _apply(provider, store, stack, max_workers=2)

        assert provider.peak == 2
        assert _creates(provider)[-1] == "all"

    def test_single_worker_is_sequential(self, store):
        provider = TrackingProvider(delay=0.01)
        stack = Stack("things").add(_thing("a"), _thing("b"), _thing("c"))

        _apply(provider, store, stack, max_workers=1)

        assert provider.peak == 1


class TestStalePlans:
    """Tests for plans that no longer match declarations or state."""

    def test_changed_declaration(self, provider, store, make_database_stack):
        snapshot = store.load()
        plan = _plan_for(make_database_stack(), snapshot)

        with pytest.raises(StalePlanError, match="database"):
            PlanExecutor(provider, store).apply(
                plan, make_database_stack(instance_class="db.t3.large"), snapshot,
            )

        assert provider.call_log == []

    def test_other_stack(self, provider, store, database_stack):
        plan = _plan_for(database_stack, StateSnapshot(stack="prod"))

        with pytest.raises(StalePlanError, match="prod"):
            PlanExecutor(provider, store).apply(plan, database_stack, store.load())

    def test_state_changed_since_plan(self, provider, store, make_database_stack):
        _apply(provider, store, make_database_stack())
        stack = make_database_stack(instance_class="db.t3.large")
        plan = _plan_for(stack, store.load())
        snapshot = store.load()
        PlanExecutor(provider, store).apply(build_destroy_plan(snapshot), None, snapshot)

        with pytest.raises(StalePlanError):
            PlanExecutor(provider, store).apply(plan, stack, store.load())

    def test_deleting_a_declared_resource(self, provider, store):
        vpc = Vpc(name="vpc", cidr_block="10.0.0.0/16")
        _apply(provider, store, Stack("net").add(vpc))
        plan = _plan_for(Stack("net"), store.load())

        with pytest.raises(StalePlanError, match="declared again"):
            PlanExecutor(provider, store).apply(plan, Stack("net").add(vpc), store.load())
