"""
Core data models for desired state, recorded state and plans.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class ResourceKind(str, Enum):
    """Kinds of resources the reconciler knows how to converge."""
    NETWORK = "Network"
    CLUSTER = "Cluster"
    DATABASE = "Database"
    WORKLOAD = "Workload"
    SERVICE_EXPOSURE = "ServiceExposure"


class ResourceStatus(str, Enum):
    """Recorded status of a resource."""
    ABSENT = "Absent"
    PENDING = "Pending"
    APPLIED = "Applied"
    DEGRADED = "Degraded"
    FAILED = "Failed"


class OperationType(str, Enum):
    CREATE = "Create"
    UPDATE = "Update"
    DELETE = "Delete"
    NOOP = "NoOp"


@dataclass
class ResourceSpec:
    """
    Desired-state unit supplied fresh on every reconciliation request.

    Parameters are kind specific and validated against the schemas in
    strata.params when the dependency graph is built.
    """
    id: str
    kind: ResourceKind
    parameters: Dict[str, Any] = field(default_factory=dict)
    depends_on: List[str] = field(default_factory=list)

    def __post_init__(self):
        if not isinstance(self.kind, ResourceKind):
            self.kind = ResourceKind(self.kind)


@dataclass
class ResourceState:
    """Observed and recorded state for one resource id."""
    id: str
    kind: ResourceKind
    status: ResourceStatus = ResourceStatus.ABSENT
    last_applied_parameters: Optional[Dict[str, Any]] = None
    live_parameters: Optional[Dict[str, Any]] = None
    provider_handle: Optional[str] = None
    depends_on: List[str] = field(default_factory=list)
    error: Optional[str] = None
    updated_at: Optional[str] = None

    def copy(self) -> "ResourceState":
        return copy.deepcopy(self)

    def touch(self) -> "ResourceState":
        self.updated_at = datetime.utcnow().isoformat() + "Z"
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "status": self.status.value,
            "last_applied_parameters": self.last_applied_parameters,
            "live_parameters": self.live_parameters,
            "provider_handle": self.provider_handle,
            "depends_on": list(self.depends_on),
            "error": self.error,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResourceState":
        return cls(
            id=data["id"],
            kind=ResourceKind(data["kind"]),
            status=ResourceStatus(data.get("status", ResourceStatus.ABSENT.value)),
            last_applied_parameters=data.get("last_applied_parameters"),
            live_parameters=data.get("live_parameters"),
            provider_handle=data.get("provider_handle"),
            depends_on=list(data.get("depends_on") or []),
            error=data.get("error"),
            updated_at=data.get("updated_at"),
        )


@dataclass(frozen=True)
class Operation:
    """One step of a plan, scoped to a single resource."""
    resource_id: str
    kind: ResourceKind
    type: OperationType
    parameters: Optional[Dict[str, Any]] = None
    depends_on: Tuple[str, ...] = ()
    prior_status: ResourceStatus = ResourceStatus.ABSENT

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource_id": self.resource_id,
            "kind": self.kind.value,
            "operation": self.type.value,
            "parameters": self.parameters,
            "depends_on": list(self.depends_on),
            "prior_status": self.prior_status.value,
        }


@dataclass(frozen=True)
class Plan:
    """
    Immutable, dependency-ordered sequence of operations.

    mode is "apply" for convergence plans and "destroy" for teardown plans.
    """
    plan_id: str
    mode: str
    operations: Tuple[Operation, ...]
    created_at: str = field(default_factory=lambda: datetime.utcnow().isoformat() + "Z")

    @property
    def order(self) -> List[str]:
        return [op.resource_id for op in self.operations]

    @property
    def has_changes(self) -> bool:
        return any(op.type != OperationType.NOOP for op in self.operations)

    def operation_for(self, resource_id: str) -> Optional[Operation]:
        for op in self.operations:
            if op.resource_id == resource_id:
                return op
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "mode": self.mode,
            "created_at": self.created_at,
            "operations": [op.to_dict() for op in self.operations],
        }


@dataclass
class ReplicaStatus:
    """Desired vs observed replicas for one workload, valid for a single tick."""
    resource_id: str
    desired_replicas: int
    observed_replicas: int

    @property
    def delta(self) -> int:
        return self.desired_replicas - self.observed_replicas

    @property
    def converged(self) -> bool:
        return self.delta == 0
