"""
Reconciliation engine.

Plans are computed by diffing desired specs against recorded state and
executed one at a time, strictly in plan order. The first failing operation
freezes the plan: earlier successes stay Applied, the failing resource is
marked Failed and nothing after it is touched. Callers inspect the
PlanResult, fix the desired state and plan again; the engine never retries.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from .config import ORPHAN_POLICIES, ProviderConfig, Settings
from .drift import DriftDetector, DriftReport
from .errors import AdapterFailure, InvalidParameters, NotFound, OrphanedDependents, PlanExecutionError, StrataError
from .events import EventSink, EventTypes, MemoryEventSink, Outcomes
from .graph import build_graph, topological_order
from .ids import new_plan_id
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
from .providers.base import ProviderRegistry, call_with_timeout
from .scaling import ScaleDecision, ScalingController
from .state import MemoryStateStore, StateStore

logger = logging.getLogger(__name__)


class CancelToken:
    """Cooperative cancellation, honoured between plan operations."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class OperationOutcome:
    resource_id: str
    operation: OperationType
    outcome: str
    handle: Optional[str] = None
    error: Optional[str] = None


@dataclass
class PlanResult:
    """What happened to each operation of an executed plan."""
    plan_id: str
    mode: str
    succeeded: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)
    noop: List[str] = field(default_factory=list)
    outcomes: List[OperationOutcome] = field(default_factory=list)
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return not self.failed and not self.cancelled

    def raise_for_status(self) -> "PlanResult":
        if not self.ok:
            raise PlanExecutionError(self)
        return self

    def to_dict(self) -> Dict[str, object]:
        return {
            "plan_id": self.plan_id,
            "mode": self.mode,
            "ok": self.ok,
            "cancelled": self.cancelled,
            "succeeded": list(self.succeeded),
            "failed": dict(self.failed),
            "skipped": list(self.skipped),
            "noop": list(self.noop),
        }


class Reconciler:
    """
    Programmatic entry point: plan, apply, destroy, get_state and tick.

    Args:
        registry: Adapter for every resource kind that will be planned
        store: Recorded state; in-memory when omitted
        sink: Observability sink; in-memory when omitted
        config: Provider context passed to every adapter call
        settings: Timeouts, loop intervals and orphan policy
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        store: Optional[StateStore] = None,
        sink: Optional[EventSink] = None,
        config: Optional[ProviderConfig] = None,
        settings: Optional[Settings] = None,
    ):
        self.registry = registry
        self.store = store if store is not None else MemoryStateStore()
        self.sink = sink if sink is not None else MemoryEventSink()
        self.config = config or ProviderConfig()
        self.settings = settings or Settings()
        self._plan_lock = threading.Lock()

        self.drift_detector = DriftDetector(
            registry, self.store, self.sink, self.config, timeout=self.settings.adapter_timeout
        )
        self.scaling = ScalingController(
            registry, self.store, self.sink, self.config,
            timeout=self.settings.adapter_timeout, max_workers=self.settings.scale_workers,
        )

    # Planning

    def plan(self, specs: Iterable[ResourceSpec]) -> Plan:
        """
        Diff desired specs against recorded state.

        Desired resources follow dependency order and unchanged Applied
        resources become NoOps. Resources recorded but no longer desired are
        deleted dependents first. A removed resource that a desired resource
        was recorded as depending on is only deleted after that desired
        resource has been updated; other deletes come first.

        Raises:
            PlanningError subclasses, before any provider call is made
        """
        graph = build_graph(specs)
        for rid in graph.order:
            self.registry.get(graph.specs[rid].kind)

        recorded = {state.id: state for state in self.store.list_all()}
        removed = {rid: state for rid, state in recorded.items() if rid not in graph.specs}
        for state in removed.values():
            self.registry.get(state.kind)

        edges: Dict[str, Set[str]] = {rid: set(graph.edges[rid]) for rid in graph.order}
        for rid in removed:
            edges[rid] = {other for other, state in recorded.items() if rid in state.depends_on}
        order = topological_order(edges, priority=lambda rid: 0 if rid in removed else 1)

        operations: List[Operation] = []
        for rid in order:
            if rid in removed:
                state = removed[rid]
                operations.append(Operation(
                    resource_id=rid,
                    kind=state.kind,
                    type=OperationType.DELETE,
                    depends_on=tuple(sorted(state.depends_on)),
                    prior_status=state.status,
                ))
                continue

            spec = graph.specs[rid]
            desired = graph.parameters[rid].canonical()
            state = recorded.get(rid)
            if state is not None and state.kind != spec.kind:
                raise InvalidParameters(
                    rid, f"already provisioned as a {state.kind.value}; remove it before reusing the id"
                )
            operations.append(Operation(
                resource_id=rid,
                kind=spec.kind,
                type=self._diff(state, desired),
                parameters=desired,
                depends_on=tuple(sorted(graph.edges[rid])),
                prior_status=state.status if state else ResourceStatus.ABSENT,
            ))

        plan = Plan(plan_id=new_plan_id(), mode="apply", operations=tuple(operations))
        self._emit_plan(plan)
        return plan

    @staticmethod
    def _diff(state: Optional[ResourceState], desired: Dict[str, object]) -> OperationType:
        if state is None or not state.provider_handle:
            return OperationType.CREATE
        if state.status == ResourceStatus.APPLIED and state.last_applied_parameters == desired:
            return OperationType.NOOP
        return OperationType.UPDATE

    @staticmethod
    def _teardown_order(states: Dict[str, ResourceState]) -> List[str]:
        edges = {rid: {dep for dep in state.depends_on if dep in states} for rid, state in states.items()}
        return list(reversed(topological_order(edges)))

    def plan_destroy(self, targets: Optional[Iterable[str]] = None, policy: Optional[str] = None) -> Plan:
        """
        Plan the teardown of recorded resources in reverse dependency order.

        Args:
            targets: Resource ids to destroy; everything recorded when omitted
            policy: What to do with recorded dependents of a target that are
                not themselves targets: "error" rejects the plan, "cascade"
                destroys them too. Defaults to the configured policy.

        Raises:
            OrphanedDependents: Under the "error" policy
        """
        policy = policy or self.settings.orphan_policy
        if policy not in ORPHAN_POLICIES:
            raise ValueError(f"Invalid orphan policy: {policy}")

        recorded = {state.id: state for state in self.store.list_all()}
        if targets is None:
            selected = set(recorded)
        else:
            selected = {rid for rid in targets if rid in recorded}
            for target in sorted(selected):
                orphans = sorted(self._dependents_closure(target, recorded) - selected)
                if not orphans:
                    continue
                if policy == "error":
                    raise OrphanedDependents(target, orphans)
                logger.info(f"Cascading destroy of {target} to dependents {orphans}")
                selected.update(orphans)

        chosen = {rid: recorded[rid] for rid in selected}
        operations = tuple(
            Operation(
                resource_id=rid,
                kind=chosen[rid].kind,
                type=OperationType.DELETE,
                depends_on=tuple(sorted(chosen[rid].depends_on)),
                prior_status=chosen[rid].status,
            )
            for rid in self._teardown_order(chosen)
        )
        for op in operations:
            self.registry.get(op.kind)

        plan = Plan(plan_id=new_plan_id(), mode="destroy", operations=operations)
        self._emit_plan(plan)
        return plan

    @staticmethod
    def _dependents_closure(resource_id: str, recorded: Dict[str, ResourceState]) -> Set[str]:
        found: Set[str] = set()
        frontier = [resource_id]
        while frontier:
            current = frontier.pop()
            for rid, state in recorded.items():
                if current in state.depends_on and rid not in found:
                    found.add(rid)
                    frontier.append(rid)
        return found

    def _emit_plan(self, plan: Plan) -> None:
        counts: Dict[str, int] = {}
        for op in plan.operations:
            counts[op.type.value] = counts.get(op.type.value, 0) + 1
        logger.info(f"Computed {plan.mode} plan {plan.plan_id}: {counts or 'empty'}")
        self.sink.emit(EventTypes.PLAN_COMPUTED, plan_id=plan.plan_id,
                       data={"mode": plan.mode, "order": plan.order, "counts": counts})

    # Execution

    def apply(self, plan: Plan, cancel: Optional[CancelToken] = None) -> PlanResult:
        """Execute a convergence plan; see the module docstring for failure semantics."""
        if plan.mode != "apply":
            raise ValueError(f"Plan {plan.plan_id} is a {plan.mode} plan; use destroy()")
        return self._execute(plan, cancel, EventTypes.APPLY_START, EventTypes.APPLY_DONE)

    def destroy(self, plan: Plan, cancel: Optional[CancelToken] = None) -> PlanResult:
        """Execute a teardown plan. Resources already gone count as deleted."""
        if plan.mode != "destroy":
            raise ValueError(f"Plan {plan.plan_id} is an {plan.mode} plan; use apply()")
        return self._execute(plan, cancel, EventTypes.DESTROY_START, EventTypes.DESTROY_DONE)

    def _execute(self, plan: Plan, cancel: Optional[CancelToken], start_event: str, done_event: str) -> PlanResult:
        with self._plan_lock:
            result = PlanResult(plan_id=plan.plan_id, mode=plan.mode)
            self.sink.emit(start_event, plan_id=plan.plan_id, data={"operations": len(plan.operations)})

            for index, op in enumerate(plan.operations):
                if cancel is not None and cancel.cancelled:
                    remaining = plan.operations[index:]
                    self._skip(plan, result, remaining)
                    result.cancelled = True
                    logger.warning(f"Plan {plan.plan_id} cancelled before {op.resource_id}")
                    self.sink.emit(EventTypes.PLAN_CANCELLED, plan_id=plan.plan_id,
                                   data={"skipped": [o.resource_id for o in remaining]})
                    break

                if op.type == OperationType.NOOP:
                    self._refresh_edges(op)
                    result.noop.append(op.resource_id)
                    result.outcomes.append(OperationOutcome(op.resource_id, op.type, Outcomes.NOOP))
                    continue

                try:
                    if op.type == OperationType.DELETE:
                        handle = self._delete(op)
                    else:
                        handle = self._create_or_update(op)
                except (AdapterFailure, NotFound) as e:
                    error = str(e)
                    self._mark_failed(op, error)
                    result.failed[op.resource_id] = error
                    result.outcomes.append(OperationOutcome(op.resource_id, op.type, Outcomes.FAILED, error=error))
                    logger.error(f"{op.type.value} {op.resource_id} failed, halting plan {plan.plan_id}: {error}")
                    self.sink.emit(EventTypes.OPERATION, op.resource_id, op.type.value, Outcomes.FAILED,
                                   plan_id=plan.plan_id, data={"kind": op.kind.value, "error": error})
                    self._skip(plan, result, plan.operations[index + 1:])
                    break

                result.succeeded.append(op.resource_id)
                result.outcomes.append(OperationOutcome(op.resource_id, op.type, Outcomes.SUCCEEDED, handle=handle))
                self.sink.emit(EventTypes.OPERATION, op.resource_id, op.type.value, Outcomes.SUCCEEDED,
                               plan_id=plan.plan_id, data={"kind": op.kind.value, "handle": handle})

            self.sink.emit(done_event, plan_id=plan.plan_id, outcome=Outcomes.SUCCEEDED if result.ok else Outcomes.FAILED,
                           data=result.to_dict())
            logger.info(
                f"Plan {plan.plan_id} finished: {len(result.succeeded)} succeeded, {len(result.failed)} failed, "
                f"{len(result.skipped)} skipped, {len(result.noop)} unchanged"
            )
            return result

    def _skip(self, plan: Plan, result: PlanResult, operations: Iterable[Operation]) -> None:
        for op in operations:
            result.skipped.append(op.resource_id)
            result.outcomes.append(OperationOutcome(op.resource_id, op.type, Outcomes.SKIPPED))
            self.sink.emit(EventTypes.OPERATION, op.resource_id, op.type.value, Outcomes.SKIPPED,
                           plan_id=plan.plan_id, data={"kind": op.kind.value})

    def _mark_pending(self, op: Operation) -> None:
        def mutate(current: Optional[ResourceState]) -> ResourceState:
            state = current or ResourceState(id=op.resource_id, kind=op.kind)
            state.status = ResourceStatus.PENDING
            return state

        self.store.update(op.resource_id, mutate)

    def _mark_failed(self, op: Operation, error: str) -> None:
        def mutate(current: Optional[ResourceState]) -> ResourceState:
            state = current or ResourceState(id=op.resource_id, kind=op.kind)
            state.status = ResourceStatus.FAILED
            state.error = error
            return state

        self.store.update(op.resource_id, mutate)

    def _refresh_edges(self, op: Operation) -> None:
        """Record new dependency edges of an unchanged resource without calling its provider."""
        edges = list(op.depends_on)
        current = self.store.get(op.resource_id)
        if current is None or sorted(current.depends_on) == edges:
            return

        def mutate(state: Optional[ResourceState]) -> Optional[ResourceState]:
            if state is not None:
                state.depends_on = edges
            return state

        self.store.update(op.resource_id, mutate)
        logger.info(f"Recorded dependencies of {op.resource_id} as {edges}")

    def _create_or_update(self, op: Operation) -> str:
        adapter = self.registry.get(op.kind)
        self._mark_pending(op)

        handle = call_with_timeout(
            adapter.create_or_update, self.settings.timeout_for(op.kind),
            op.resource_id, dict(op.parameters), self.config,
        )
        if not handle:
            raise AdapterFailure(f"Adapter returned no handle for {op.resource_id}", op.resource_id)

        def mutate(current: Optional[ResourceState]) -> ResourceState:
            state = current or ResourceState(id=op.resource_id, kind=op.kind)
            state.kind = op.kind
            state.status = ResourceStatus.APPLIED
            state.last_applied_parameters = dict(op.parameters)
            state.provider_handle = handle
            state.depends_on = list(op.depends_on)
            state.error = None
            return state

        self.store.update(op.resource_id, mutate)
        return handle

    def _delete(self, op: Operation) -> Optional[str]:
        state = self.store.get(op.resource_id)
        if state is None:
            logger.info(f"{op.resource_id} has no recorded state, nothing to delete")
            return None

        handle = state.provider_handle
        if handle:
            adapter = self.registry.get(state.kind)
            self._mark_pending(op)
            try:
                call_with_timeout(adapter.delete, self.settings.timeout_for(state.kind), handle, self.config)
            except NotFound:
                logger.info(f"{op.resource_id} ({handle}) was already gone")

        self.store.delete(op.resource_id)
        return handle

    # Queries and loops

    def get_state(self, resource_id: str) -> Optional[ResourceState]:
        """Recorded state for resource_id, or None when it is Absent."""
        return self.store.get(resource_id)

    def status_of(self, resource_id: str) -> ResourceStatus:
        state = self.store.get(resource_id)
        return state.status if state else ResourceStatus.ABSENT

    def list_state(self) -> List[ResourceState]:
        return self.store.list_all()

    def detect_drift(self) -> List[DriftReport]:
        return self.drift_detector.check_once()

    def tick(self, specs: Iterable[ResourceSpec]) -> List[ScaleDecision]:
        return self.scaling.tick(specs)

    def replica_status(self, specs: Iterable[ResourceSpec]) -> List[ReplicaStatus]:
        """Observed vs desired replicas for provisioned workloads, without scaling."""
        statuses = []
        for spec in specs:
            if spec.kind != ResourceKind.WORKLOAD:
                continue
            try:
                status = self.scaling.observe(spec)
            except StrataError as e:
                logger.warning(f"Could not observe replicas for {spec.id}: {e}")
                continue
            if status is not None:
                statuses.append(status)
        return statuses
