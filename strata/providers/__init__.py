"""
Provider adapters and registries.
"""

from ..models import ResourceKind
from .base import ProviderAdapter, ProviderRegistry, call_with_timeout
from .memory import InMemoryAdapter, InMemoryCloud, memory_registry


def cloud_registry() -> ProviderRegistry:
    """Registry backed by AWS (network, cluster, database) and Kubernetes (workload, service)."""
    from .aws import EksClusterAdapter, RdsDatabaseAdapter, VpcNetworkAdapter
    from .kube import DeploymentWorkloadAdapter, ServiceExposureAdapter

    return ProviderRegistry({
        ResourceKind.NETWORK: VpcNetworkAdapter(),
        ResourceKind.CLUSTER: EksClusterAdapter(),
        ResourceKind.DATABASE: RdsDatabaseAdapter(),
        ResourceKind.WORKLOAD: DeploymentWorkloadAdapter(),
        ResourceKind.SERVICE_EXPOSURE: ServiceExposureAdapter(),
    })


def build_registry(name: str) -> ProviderRegistry:
    if name == "memory":
        return memory_registry()
    if name == "aws":
        return cloud_registry()
    raise ValueError(f"Unknown provider: {name}. Expected 'aws' or 'memory'")


__all__ = [
    "InMemoryAdapter",
    "InMemoryCloud",
    "ProviderAdapter",
    "ProviderRegistry",
    "build_registry",
    "call_with_timeout",
    "cloud_registry",
    "memory_registry",
]
