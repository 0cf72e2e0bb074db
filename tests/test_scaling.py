"""
Tests for the replica scaling controller.
"""

from strata.config import ProviderConfig
from strata.events import EventTypes
from strata.models import ResourceKind, ResourceSpec
from strata.providers.base import ProviderRegistry
from strata.providers.memory import InMemoryAdapter
from strata.scaling import ScaleAction, ScalingController, ScalingPhase

from conftest import layered_specs


def provision(reconciler, cloud, desired=4, observed=2):
    reconciler.apply(reconciler.plan(layered_specs(replicas=desired)))
    handle = cloud.handle_for(ResourceKind.WORKLOAD, "app1")
    cloud.set_live(handle, replicas=observed)
    return handle


class TestScalingController:

    def test_scales_by_difference_once(self, reconciler, cloud, sink):
        handle = provision(reconciler, cloud, desired=4, observed=2)

        decisions = reconciler.tick(layered_specs(replicas=4))
        assert len(decisions) == 1
        assert decisions[0].resource_id == "app1"
        assert decisions[0].action == ScaleAction.SCALED
        assert decisions[0].delta == 2
        assert cloud.calls_of("scale") == [("scale", "app1", 2)]
        assert cloud.resources[handle]["replicas"] == 4

        decisions = reconciler.tick(layered_specs(replicas=4))
        assert decisions[0].action == ScaleAction.NONE
        assert decisions[0].status.converged
        assert len(cloud.calls_of("scale")) == 1
        assert len(sink.of_type(EventTypes.SCALE_ISSUED)) == 1

    def test_scale_down(self, reconciler, cloud):
        handle = provision(reconciler, cloud, desired=4, observed=6)

        decision = reconciler.tick(layered_specs(replicas=4))[0]
        assert decision.delta == -2
        assert cloud.resources[handle]["replicas"] == 4

    def test_not_provisioned_is_skipped(self, reconciler, cloud):
        decisions = reconciler.tick(layered_specs())
        assert [d.action for d in decisions] == [ScaleAction.SKIPPED]
        assert cloud.calls == []

    def test_invalid_spec_is_skipped(self, reconciler):
        spec = ResourceSpec("app1", ResourceKind.WORKLOAD, {"image": "nginx", "replicas": -3})
        decision = reconciler.tick([spec])[0]
        assert decision.action == ScaleAction.SKIPPED
        assert "replicas" in decision.error

    def test_failure_retried_next_tick(self, reconciler, cloud, sink):
        handle = provision(reconciler, cloud, desired=4, observed=2)
        cloud.fail("scale", "app1")

        decision = reconciler.tick(layered_specs(replicas=4))[0]
        assert decision.action == ScaleAction.FAILED
        assert decision.delta == 2
        assert cloud.resources[handle]["replicas"] == 2
        assert len(sink.of_type(EventTypes.SCALE_FAILED)) == 1
        assert reconciler.scaling.phase("app1") == ScalingPhase.IDLE

        cloud.clear_failures()
        decision = reconciler.tick(layered_specs(replicas=4))[0]
        assert decision.action == ScaleAction.SCALED
        assert cloud.resources[handle]["replicas"] == 4

    def test_observe_failure(self, reconciler, cloud):
        provision(reconciler, cloud)
        cloud.fail("read", "app1")

        decision = reconciler.tick(layered_specs(replicas=4))[0]
        assert decision.action == ScaleAction.FAILED
        assert cloud.calls_of("scale") == []

    def test_unreadable_replica_count_fails_only_that_workload(self, reconciler, cloud):
        specs = [
            ResourceSpec(f"w{i}", ResourceKind.WORKLOAD, {"image": "nginx", "replicas": 3})
            for i in range(3)
        ]
        reconciler.apply(reconciler.plan(specs))
        cloud.set_live(cloud.handle_for(ResourceKind.WORKLOAD, "w0"), replicas=1)
        cloud.set_live(cloud.handle_for(ResourceKind.WORKLOAD, "w1"), replicas="lots")
        cloud.set_live(cloud.handle_for(ResourceKind.WORKLOAD, "w2"), replicas=1)

        decisions = {d.resource_id: d for d in reconciler.tick(specs)}
        assert decisions["w1"].action == ScaleAction.FAILED
        assert "non-numeric" in decisions["w1"].error
        assert decisions["w0"].action == ScaleAction.SCALED
        assert decisions["w2"].action == ScaleAction.SCALED
        assert [c[1] for c in cloud.calls_of("scale")].count("w1") == 0

    def test_missing_workload_adapter_is_reported(self, reconciler, cloud, sink):
        provision(reconciler, cloud)
        registry = ProviderRegistry({ResourceKind.NETWORK: InMemoryAdapter(ResourceKind.NETWORK, cloud)})
        controller = ScalingController(registry, reconciler.store, sink, ProviderConfig())

        decisions = controller.tick(layered_specs(replicas=4))
        assert len(decisions) == 1
        assert decisions[0].action == ScaleAction.FAILED
        assert "Workload" in decisions[0].error
        assert controller.phase("app1") == ScalingPhase.IDLE

    def test_busy_workload_is_not_ticked_twice(self, reconciler, cloud):
        provision(reconciler, cloud)
        lock = reconciler.scaling._lock_for("app1")
        lock.acquire()
        try:
            decision = reconciler.scaling.tick_workload(layered_specs(replicas=4)[3])
        finally:
            lock.release()

        assert decision.action == ScaleAction.BUSY
        assert cloud.calls_of("scale") == []

    def test_phase_returns_to_idle(self, reconciler, cloud):
        provision(reconciler, cloud)
        reconciler.tick(layered_specs(replicas=4))
        assert reconciler.scaling.phase("app1") == ScalingPhase.IDLE

    def test_many_workloads(self, reconciler, cloud):
        specs = [
            ResourceSpec(f"w{i}", ResourceKind.WORKLOAD, {"image": "nginx", "replicas": 3})
            for i in range(6)
        ]
        reconciler.apply(reconciler.plan(specs))
        for i in range(6):
            cloud.set_live(cloud.handle_for(ResourceKind.WORKLOAD, f"w{i}"), replicas=i)

        decisions = reconciler.tick(specs)
        assert [d.resource_id for d in decisions] == [f"w{i}" for i in range(6)]
        assert {d.resource_id: d.delta for d in decisions if d.action == ScaleAction.SCALED} == {
            "w0": 3, "w1": 2, "w2": 1, "w4": -1, "w5": -2,
        }
        for i in range(6):
            assert cloud.resources[cloud.handle_for(ResourceKind.WORKLOAD, f"w{i}")]["replicas"] == 3


def test_replica_status(reconciler, cloud):
    provision(reconciler, cloud, desired=4, observed=1)
    statuses = reconciler.replica_status(layered_specs(replicas=4))

    assert len(statuses) == 1
    assert statuses[0].resource_id == "app1"
    assert statuses[0].desired_replicas == 4
    assert statuses[0].observed_replicas == 1
    assert statuses[0].delta == 3
    assert cloud.calls_of("scale") == []
