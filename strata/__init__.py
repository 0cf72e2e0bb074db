"""
Strata - Declarative infrastructure and workload reconciler.

This package converges layered resources (network, cluster, database,
workload, service exposure) toward a desired state, detects drift and keeps
workload replica counts at their target.
"""

__version__ = "0.1.0"
__author__ = "Strata"

from .engine import CancelToken, PlanResult, Reconciler
from .models import (
    Operation,
    OperationType,
    Plan,
    ReplicaStatus,
    ResourceKind,
    ResourceSpec,
    ResourceState,
    ResourceStatus,
)

__all__ = [
    "CancelToken",
    "Operation",
    "OperationType",
    "Plan",
    "PlanResult",
    "Reconciler",
    "ReplicaStatus",
    "ResourceKind",
    "ResourceSpec",
    "ResourceState",
    "ResourceStatus",
]
