import pytest

from strata.config import Settings
from strata.engine import Reconciler
from strata.events import MemoryEventSink
from strata.models import ResourceKind, ResourceSpec
from strata.providers.memory import InMemoryCloud, memory_registry
from strata.state import MemoryStateStore


def layered_specs(replicas=2):
    """net1 -> {clu1, db1} -> app1 -> svc1"""
    return [
        ResourceSpec("net1", ResourceKind.NETWORK, {"cidr_block": "10.0.0.0/16"}),
        ResourceSpec("clu1", ResourceKind.CLUSTER, {"version": "1.29"}, ["net1"]),
        ResourceSpec("db1", ResourceKind.DATABASE, {"engine_version": "16.1"}, ["net1"]),
        ResourceSpec(
            "app1",
            ResourceKind.WORKLOAD,
            {"image": "registry.example.com/app:1.0", "replicas": replicas, "container_port": 8080},
            ["clu1", "db1"],
        ),
        ResourceSpec("svc1", ResourceKind.SERVICE_EXPOSURE, {"port": 80, "target_port": 8080}, ["app1"]),
    ]


def chain_specs():
    """a <- b <- c (c depends on b depends on a)"""
    return [
        ResourceSpec("a", ResourceKind.NETWORK, {"cidr_block": "10.0.0.0/16"}),
        ResourceSpec("b", ResourceKind.NETWORK, {"cidr_block": "10.1.0.0/16"}, ["a"]),
        ResourceSpec("c", ResourceKind.NETWORK, {"cidr_block": "10.2.0.0/16"}, ["b"]),
    ]


@pytest.fixture
def cloud():
    return InMemoryCloud()


@pytest.fixture
def sink():
    return MemoryEventSink()


@pytest.fixture
def reconciler(cloud, sink):
    return Reconciler(
        registry=memory_registry(cloud),
        store=MemoryStateStore(),
        sink=sink,
        settings=Settings(adapter_timeout=5),
    )
