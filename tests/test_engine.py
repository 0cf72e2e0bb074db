"""
Tests for planning and executing reconciliations.
"""

import pytest

from strata.config import Settings
from strata.engine import CancelToken, Reconciler
from strata.errors import CycleDetected, OrphanedDependents, PlanExecutionError, UnsupportedKind
from strata.events import EventTypes, MemoryEventSink, Outcomes
from strata.models import OperationType, ResourceKind, ResourceSpec, ResourceStatus
from strata.providers.base import ProviderRegistry
from strata.providers.memory import InMemoryAdapter, memory_registry
from strata.state import FileStateStore, MemoryStateStore

from conftest import chain_specs, layered_specs


def created_ids(cloud):
    return [c[1] for c in cloud.calls_of("create_or_update")]


def deleted_ids(cloud):
    return [c[1] for c in cloud.calls_of("delete")]


class TestPlan:

    def test_first_plan_creates_everything_in_order(self, reconciler):
        plan = reconciler.plan(layered_specs())

        assert plan.mode == "apply"
        assert plan.order == ["net1", "clu1", "db1", "app1", "svc1"]
        assert all(op.type == OperationType.CREATE for op in plan.operations)
        assert plan.operation_for("app1").depends_on == ("clu1", "db1")

    def test_plan_records_canonical_parameters(self, reconciler):
        plan = reconciler.plan(layered_specs())
        svc = plan.operation_for("svc1")
        assert svc.parameters["exposure"] == "LoadBalancer"
        assert svc.parameters["namespace"] == "default"

    def test_plan_makes_no_provider_calls(self, reconciler, cloud):
        reconciler.plan(layered_specs())
        assert cloud.calls == []

    def test_plan_emits_event(self, reconciler, sink):
        plan = reconciler.plan(chain_specs())
        events = sink.of_type(EventTypes.PLAN_COMPUTED)
        assert len(events) == 1
        assert events[0]["plan_id"] == plan.plan_id
        assert events[0]["data"]["order"] == ["a", "b", "c"]

    def test_cycle_rejected_before_any_call(self, reconciler, cloud):
        specs = [
            ResourceSpec("a", ResourceKind.NETWORK, {"cidr_block": "10.0.0.0/16"}, ["b"]),
            ResourceSpec("b", ResourceKind.NETWORK, {"cidr_block": "10.1.0.0/16"}, ["a"]),
        ]
        with pytest.raises(CycleDetected):
            reconciler.plan(specs)
        assert cloud.calls == []
        assert reconciler.list_state() == []

    def test_unsupported_kind(self, cloud):
        registry = ProviderRegistry({ResourceKind.NETWORK: InMemoryAdapter(ResourceKind.NETWORK, cloud)})
        reconciler = Reconciler(registry)
        with pytest.raises(UnsupportedKind, match="Cluster"):
            reconciler.plan(layered_specs())


class TestApply:

    def test_first_apply(self, reconciler, cloud, sink):
        result = reconciler.apply(reconciler.plan(layered_specs()))

        assert result.ok
        assert result.succeeded == ["net1", "clu1", "db1", "app1", "svc1"]
        assert created_ids(cloud) == ["net1", "clu1", "db1", "app1", "svc1"]
        for rid in result.succeeded:
            state = reconciler.get_state(rid)
            assert state.status == ResourceStatus.APPLIED
            assert state.provider_handle
            assert state.error is None
        assert reconciler.get_state("app1").depends_on == ["clu1", "db1"]

        operations = sink.of_type(EventTypes.OPERATION)
        assert [e["resource_id"] for e in operations] == result.succeeded
        assert all(e["outcome"] == Outcomes.SUCCEEDED for e in operations)
        assert sink.of_type(EventTypes.APPLY_DONE)[0]["outcome"] == Outcomes.SUCCEEDED

    def test_apply_is_idempotent(self, reconciler, cloud):
        reconciler.apply(reconciler.plan(layered_specs()))
        calls_before = len(cloud.calls)

        plan = reconciler.plan(layered_specs())
        assert not plan.has_changes
        assert all(op.type == OperationType.NOOP for op in plan.operations)

        result = reconciler.apply(plan)
        assert result.ok
        assert result.noop == ["net1", "clu1", "db1", "app1", "svc1"]
        assert len(cloud.calls) == calls_before

    def test_changed_parameters_plan_update(self, reconciler, cloud):
        reconciler.apply(reconciler.plan(layered_specs(replicas=2)))

        plan = reconciler.plan(layered_specs(replicas=3))
        changed = {op.resource_id: op.type for op in plan.operations if op.type != OperationType.NOOP}
        assert changed == {"app1": OperationType.UPDATE}

        reconciler.apply(plan)
        assert reconciler.get_state("app1").last_applied_parameters["replicas"] == 3
        assert cloud.resources[cloud.handle_for(ResourceKind.WORKLOAD, "app1")]["replicas"] == 3

    def test_failure_freezes_plan(self, reconciler, cloud, sink):
        cloud.fail("create_or_update", "b")
        result = reconciler.apply(reconciler.plan(chain_specs()))

        assert not result.ok
        assert result.succeeded == ["a"]
        assert list(result.failed) == ["b"]
        assert "injected" in result.failed["b"]
        assert result.skipped == ["c"]

        assert reconciler.status_of("a") == ResourceStatus.APPLIED
        assert reconciler.status_of("b") == ResourceStatus.FAILED
        assert reconciler.get_state("b").error == result.failed["b"]
        assert reconciler.get_state("c") is None
        assert reconciler.status_of("c") == ResourceStatus.ABSENT

        # no rollback of the resources that did succeed
        assert created_ids(cloud) == ["a", "b"]
        assert deleted_ids(cloud) == []

        outcomes = {e["resource_id"]: e["outcome"] for e in sink.of_type(EventTypes.OPERATION)}
        assert outcomes == {"a": Outcomes.SUCCEEDED, "b": Outcomes.FAILED, "c": Outcomes.SKIPPED}

    def test_replan_after_failure(self, reconciler, cloud):
        cloud.fail("create_or_update", "b")
        reconciler.apply(reconciler.plan(chain_specs()))
        cloud.clear_failures()

        plan = reconciler.plan(chain_specs())
        types = {op.resource_id: op.type for op in plan.operations}
        assert types == {"a": OperationType.NOOP, "b": OperationType.CREATE, "c": OperationType.CREATE}

        result = reconciler.apply(plan)
        assert result.ok
        assert reconciler.get_state("b").error is None
        assert [s.status for s in reconciler.list_state()] == [ResourceStatus.APPLIED] * 3

    def test_update_failure_keeps_handle(self, reconciler, cloud):
        reconciler.apply(reconciler.plan(layered_specs(replicas=2)))
        cloud.fail("create_or_update", "app1")

        result = reconciler.apply(reconciler.plan(layered_specs(replicas=5)))
        assert list(result.failed) == ["app1"]
        assert result.skipped == ["svc1"]
        state = reconciler.get_state("app1")
        assert state.status == ResourceStatus.FAILED
        assert state.provider_handle == cloud.handle_for(ResourceKind.WORKLOAD, "app1")
        assert state.last_applied_parameters["replicas"] == 2

    def test_adapter_exception_is_wrapped(self, reconciler, cloud):
        cloud.fail("create_or_update", "a", RuntimeError("connection reset"))
        result = reconciler.apply(reconciler.plan(chain_specs()))
        assert result.failed["a"] == "RuntimeError: connection reset"

    def test_timeout_fails_operation(self, cloud, sink):
        reconciler = Reconciler(memory_registry(cloud), MemoryStateStore(), sink, settings=Settings(adapter_timeout=0.1))
        cloud.delay("create_or_update", "b", 0.5)

        result = reconciler.apply(reconciler.plan(chain_specs()))
        assert "did not complete within 0.1s" in result.failed["b"]
        assert result.skipped == ["c"]
        assert reconciler.status_of("b") == ResourceStatus.FAILED

    def test_removed_resource_is_deleted_first(self, reconciler, cloud):
        reconciler.apply(reconciler.plan(chain_specs()))

        plan = reconciler.plan(chain_specs()[:2])
        assert plan.order == ["c", "a", "b"]
        assert plan.operations[0].type == OperationType.DELETE

        result = reconciler.apply(plan)
        assert result.ok
        assert deleted_ids(cloud) == ["c"]
        assert reconciler.get_state("c") is None

    def test_removed_dependency_outlives_its_dependents_update(self, reconciler, cloud):
        reconciler.apply(reconciler.plan(layered_specs()))
        cloud.calls.clear()

        desired = [spec for spec in layered_specs(replicas=3) if spec.id != "db1"]
        desired[2] = ResourceSpec("app1", ResourceKind.WORKLOAD, desired[2].parameters, ["clu1"])

        plan = reconciler.plan(desired)
        assert plan.order.index("app1") < plan.order.index("db1")

        result = reconciler.apply(plan)
        assert result.ok
        assert [(c[0], c[1]) for c in cloud.calls] == [("create_or_update", "app1"), ("delete", "db1")]
        assert reconciler.get_state("app1").depends_on == ["clu1"]
        assert reconciler.get_state("db1") is None

    def test_unreferenced_removal_still_runs_first(self, reconciler):
        reconciler.apply(reconciler.plan(layered_specs()))

        plan = reconciler.plan([spec for spec in layered_specs() if spec.id != "svc1"])
        assert plan.order[0] == "svc1"
        assert plan.operations[0].type == OperationType.DELETE

    def test_kind_timeout_overrides_default(self, cloud, sink):
        settings = Settings(adapter_timeout=0.1, kind_timeouts={"Network": 5})
        reconciler = Reconciler(memory_registry(cloud), MemoryStateStore(), sink, settings=settings)
        cloud.delay("create_or_update", "b", 0.3)

        assert reconciler.apply(reconciler.plan(chain_specs())).ok

    def test_mode_mismatch(self, reconciler):
        reconciler.apply(reconciler.plan(chain_specs()))
        with pytest.raises(ValueError):
            reconciler.destroy(reconciler.plan(chain_specs()))
        with pytest.raises(ValueError):
            reconciler.apply(reconciler.plan_destroy())

    def test_raise_for_status(self, reconciler, cloud):
        cloud.fail("create_or_update", "a")
        result = reconciler.apply(reconciler.plan(chain_specs()))
        with pytest.raises(PlanExecutionError) as exc:
            result.raise_for_status()
        assert exc.value.result is result

    def test_state_survives_restart(self, cloud, tmp_path):
        first = Reconciler(memory_registry(cloud), FileStateStore(tmp_path))
        first.apply(first.plan(layered_specs()))

        second = Reconciler(memory_registry(cloud), FileStateStore(tmp_path))
        assert not second.plan(layered_specs()).has_changes
        assert second.get_state("db1").provider_handle == cloud.handle_for(ResourceKind.DATABASE, "db1")


class TestCancellation:

    def test_cancel_before_start(self, reconciler, cloud, sink):
        token = CancelToken()
        token.cancel()
        result = reconciler.apply(reconciler.plan(chain_specs()), cancel=token)

        assert result.cancelled
        assert not result.ok
        assert result.skipped == ["a", "b", "c"]
        assert cloud.calls == []
        assert len(sink.of_type(EventTypes.PLAN_CANCELLED)) == 1

    def test_cancel_between_operations(self, cloud):
        token = CancelToken()

        class CancellingSink(MemoryEventSink):
            def write(self, event):
                super().write(event)
                if event["type"] == EventTypes.OPERATION and event["resource_id"] == "a":
                    token.cancel()

        reconciler = Reconciler(memory_registry(cloud), MemoryStateStore(), CancellingSink())
        result = reconciler.apply(reconciler.plan(chain_specs()), cancel=token)

        assert result.cancelled
        assert result.succeeded == ["a"]
        assert result.skipped == ["b", "c"]
        assert created_ids(cloud) == ["a"]
        assert reconciler.status_of("a") == ResourceStatus.APPLIED
        assert reconciler.get_state("b") is None


class TestDestroy:

    def test_reverse_teardown(self, reconciler, cloud):
        reconciler.apply(reconciler.plan(chain_specs()))

        plan = reconciler.plan_destroy()
        assert plan.mode == "destroy"
        assert plan.order == ["c", "b", "a"]

        result = reconciler.destroy(plan)
        assert result.ok
        assert deleted_ids(cloud) == ["c", "b", "a"]
        assert reconciler.list_state() == []
        assert cloud.resources == {}

    def test_layered_teardown_order(self, reconciler):
        reconciler.apply(reconciler.plan(layered_specs()))
        assert reconciler.plan_destroy().order == ["svc1", "app1", "db1", "clu1", "net1"]

    def test_already_gone_counts_as_deleted(self, reconciler, cloud):
        reconciler.apply(reconciler.plan(chain_specs()))
        cloud.remove(cloud.handle_for(ResourceKind.NETWORK, "b"))

        result = reconciler.destroy(reconciler.plan_destroy())
        assert result.ok
        assert result.succeeded == ["c", "b", "a"]
        assert reconciler.list_state() == []

    def test_delete_failure_halts(self, reconciler, cloud):
        reconciler.apply(reconciler.plan(chain_specs()))
        cloud.fail("delete", "b")

        result = reconciler.destroy(reconciler.plan_destroy())
        assert result.succeeded == ["c"]
        assert list(result.failed) == ["b"]
        assert result.skipped == ["a"]
        assert reconciler.status_of("b") == ResourceStatus.FAILED
        assert reconciler.status_of("a") == ResourceStatus.APPLIED

    def test_dependency_added_without_parameter_change(self, reconciler, cloud):
        specs = [
            ResourceSpec("y", ResourceKind.NETWORK, {"cidr_block": "10.1.0.0/16"}),
            ResourceSpec("z", ResourceKind.NETWORK, {"cidr_block": "10.0.0.0/16"}),
        ]
        reconciler.apply(reconciler.plan(specs))
        cloud.calls.clear()

        specs[0] = ResourceSpec("y", ResourceKind.NETWORK, {"cidr_block": "10.1.0.0/16"}, ["z"])
        plan = reconciler.plan(specs)
        assert {op.type for op in plan.operations} == {OperationType.NOOP}

        result = reconciler.apply(plan)
        assert result.noop == ["z", "y"]
        assert cloud.calls == []
        assert reconciler.get_state("y").depends_on == ["z"]

        assert reconciler.plan_destroy().order == ["y", "z"]
        with pytest.raises(OrphanedDependents):
            reconciler.plan_destroy(["z"])

    def test_orphaned_dependents_rejected(self, reconciler, cloud):
        reconciler.apply(reconciler.plan(chain_specs()))

        with pytest.raises(OrphanedDependents) as exc:
            reconciler.plan_destroy(["a"])
        assert exc.value.target == "a"
        assert exc.value.dependents == ["b", "c"]
        assert deleted_ids(cloud) == []

    def test_cascade_policy(self, reconciler):
        reconciler.apply(reconciler.plan(chain_specs()))
        plan = reconciler.plan_destroy(["a"], policy="cascade")
        assert plan.order == ["c", "b", "a"]

    def test_leaf_target_needs_no_cascade(self, reconciler):
        reconciler.apply(reconciler.plan(chain_specs()))
        assert reconciler.plan_destroy(["c"]).order == ["c"]

    def test_unknown_target_ignored(self, reconciler):
        reconciler.apply(reconciler.plan(chain_specs()))
        assert reconciler.plan_destroy(["ghost"]).operations == ()


class TestDriftCorrection:

    def test_apply_corrects_drift(self, reconciler, cloud):
        reconciler.apply(reconciler.plan(layered_specs()))
        handle = cloud.handle_for(ResourceKind.WORKLOAD, "app1")
        cloud.set_live(handle, replicas=5)

        reports = reconciler.detect_drift()
        assert [r.resource_id for r in reports] == ["app1"]
        assert reconciler.status_of("app1") == ResourceStatus.DEGRADED

        plan = reconciler.plan(layered_specs())
        changed = {op.resource_id: op.type for op in plan.operations if op.type != OperationType.NOOP}
        assert changed == {"app1": OperationType.UPDATE}

        reconciler.apply(plan)
        assert reconciler.status_of("app1") == ResourceStatus.APPLIED
        assert cloud.resources[handle]["replicas"] == 2
