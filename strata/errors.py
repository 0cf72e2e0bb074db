"""
Exception hierarchy for planning and executing reconciliations.
"""

from typing import List, Optional


class StrataError(Exception):
    """Base class for all reconciler errors."""


# Plan-time errors: raised before any provider call is made.

class PlanningError(StrataError):
    """A desired state was rejected while building the plan."""


class CycleDetected(PlanningError):
    def __init__(self, members: List[str]):
        self.members = list(members)
        super().__init__(f"Dependency cycle detected: {' -> '.join(self.members)}")


class DanglingDependency(PlanningError):
    def __init__(self, resource_id: str, missing: str):
        self.resource_id = resource_id
        self.missing = missing
        super().__init__(f"Resource {resource_id} depends on unknown resource {missing}")


class DuplicateResource(PlanningError):
    def __init__(self, resource_id: str):
        self.resource_id = resource_id
        super().__init__(f"Resource id {resource_id} is declared more than once")


class InvalidParameters(PlanningError):
    def __init__(self, resource_id: str, reason: str):
        self.resource_id = resource_id
        self.reason = reason
        super().__init__(f"Invalid parameters for {resource_id}: {reason}")


class UnsupportedKind(PlanningError):
    def __init__(self, kind: str):
        self.kind = kind
        super().__init__(f"No provider adapter registered for kind {kind}")


class OrphanedDependents(PlanningError):
    """Destroying a target would leave live dependents behind."""

    def __init__(self, target: str, dependents: List[str]):
        self.target = target
        self.dependents = list(dependents)
        super().__init__(
            f"Cannot destroy {target}: live dependents {', '.join(self.dependents)} "
            f"are not part of the teardown (use the cascade policy to include them)"
        )


# Execution-time errors raised by provider adapters.

class AdapterFailure(StrataError):
    """A provider call for one resource failed."""

    def __init__(self, message: str, resource_id: Optional[str] = None):
        self.resource_id = resource_id
        super().__init__(message)


class AdapterTimeout(AdapterFailure):
    pass


class NotFound(StrataError):
    """The provider has no resource behind the given handle."""

    def __init__(self, handle: str):
        self.handle = handle
        super().__init__(f"Resource not found: {handle}")


class PlanExecutionError(StrataError):
    """Raised by PlanResult.raise_for_status with the partial result attached."""

    def __init__(self, result):
        self.result = result
        failed = ", ".join(f"{rid}: {err}" for rid, err in result.failed.items())
        super().__init__(f"Plan {result.plan_id} did not complete ({failed or 'cancelled'})")
