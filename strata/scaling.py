"""
Replica scaling control loop.

Each tick compares desired replicas (from the workload's spec) with observed
replicas (from the provider) and issues one scale call for the difference.
The loop is level-triggered: a failed scale needs no bookkeeping because the
next tick sees the same gap and tries again.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .config import ProviderConfig
from .errors import AdapterFailure, InvalidParameters, StrataError
from .events import EventSink, EventTypes, Outcomes
from .loop import PeriodicLoop
from .models import ReplicaStatus, ResourceKind, ResourceSpec
from .params import validate_parameters
from .providers.base import ProviderRegistry, call_with_timeout
from .state import StateStore

logger = logging.getLogger(__name__)


class ScalingPhase(str, Enum):
    IDLE = "Idle"
    SCALING = "Scaling"


class ScaleAction:
    NONE = "none"
    SCALED = "scaled"
    FAILED = "failed"
    SKIPPED = "skipped"
    BUSY = "busy"


@dataclass
class ScaleDecision:
    resource_id: str
    action: str
    status: Optional[ReplicaStatus] = None
    delta: int = 0
    error: Optional[str] = None


class ScalingController:

    def __init__(
        self,
        registry: ProviderRegistry,
        store: StateStore,
        sink: EventSink,
        config: ProviderConfig,
        timeout: Optional[float] = None,
        max_workers: int = 4,
    ):
        self.registry = registry
        self.store = store
        self.sink = sink
        self.config = config
        self.timeout = timeout
        self.max_workers = max_workers
        self._phases: Dict[str, ScalingPhase] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def phase(self, resource_id: str) -> ScalingPhase:
        with self._guard:
            return self._phases.get(resource_id, ScalingPhase.IDLE)

    def _set_phase(self, resource_id: str, phase: ScalingPhase) -> None:
        with self._guard:
            self._phases[resource_id] = phase

    def _lock_for(self, resource_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(resource_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[resource_id] = lock
            return lock

    def tick(self, specs: Iterable[ResourceSpec]) -> List[ScaleDecision]:
        """Run one control-loop pass over every workload in specs."""
        workloads = [spec for spec in specs if spec.kind == ResourceKind.WORKLOAD]
        if not workloads:
            return []

        workers = min(self.max_workers, len(workloads))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="strata-scale") as pool:
            decisions = list(pool.map(self.tick_workload, workloads))
        return sorted(decisions, key=lambda d: d.resource_id)

    def tick_workload(self, spec: ResourceSpec) -> ScaleDecision:
        lock = self._lock_for(spec.id)
        if not lock.acquire(blocking=False):
            logger.debug(f"Scaling tick for {spec.id} already in flight, skipping")
            return ScaleDecision(spec.id, ScaleAction.BUSY)
        try:
            return self._tick(spec)
        finally:
            lock.release()

    def observe(self, spec: ResourceSpec) -> Optional[ReplicaStatus]:
        """
        Compute desired vs observed replicas for one workload.

        Returns None when the workload has not been provisioned yet or the
        provider does not report a replica count.

        Raises:
            InvalidParameters, UnsupportedKind, NotFound, AdapterFailure
        """
        return self._observe(spec)[0]

    def _observe(self, spec: ResourceSpec) -> Tuple[Optional[ReplicaStatus], Optional[str]]:
        desired = validate_parameters(spec).replicas
        state = self.store.get(spec.id)
        if state is None or not state.provider_handle:
            return None, None

        adapter = self.registry.get(ResourceKind.WORKLOAD)
        live = call_with_timeout(adapter.read, self.timeout, state.provider_handle, self.config)
        observed = live.get("replicas")
        if observed is None:
            return None, state.provider_handle
        try:
            observed = int(observed)
        except (TypeError, ValueError) as e:
            raise AdapterFailure(f"Provider reported non-numeric replicas {observed!r} for {spec.id}", spec.id) from e
        status = ReplicaStatus(resource_id=spec.id, desired_replicas=desired, observed_replicas=observed)
        return status, state.provider_handle

    def _tick(self, spec: ResourceSpec) -> ScaleDecision:
        try:
            status, handle = self._observe(spec)
        except InvalidParameters as e:
            return ScaleDecision(spec.id, ScaleAction.SKIPPED, error=str(e))
        except StrataError as e:
            logger.warning(f"Could not observe replicas for {spec.id}: {e}")
            return ScaleDecision(spec.id, ScaleAction.FAILED, error=str(e))

        if status is None:
            return ScaleDecision(spec.id, ScaleAction.SKIPPED)
        if status.converged:
            return ScaleDecision(spec.id, ScaleAction.NONE, status=status)

        adapter = self.registry.get(ResourceKind.WORKLOAD)
        self._set_phase(spec.id, ScalingPhase.SCALING)
        try:
            call_with_timeout(adapter.scale, self.timeout, handle, status.delta, self.config)
        except StrataError as e:
            logger.warning(f"Scale of {spec.id} by {status.delta:+d} failed, retrying next tick: {e}")
            self.sink.emit(EventTypes.SCALE_FAILED, spec.id, "Scale", Outcomes.FAILED,
                           data={"delta": status.delta, "error": str(e)})
            return ScaleDecision(spec.id, ScaleAction.FAILED, status=status, delta=status.delta, error=str(e))
        finally:
            self._set_phase(spec.id, ScalingPhase.IDLE)

        logger.info(f"Scaled {spec.id} by {status.delta:+d} "
                    f"({status.observed_replicas} -> {status.desired_replicas})")
        self.sink.emit(EventTypes.SCALE_ISSUED, spec.id, "Scale", Outcomes.SUCCEEDED,
                       data={"delta": status.delta, "desired": status.desired_replicas,
                             "observed": status.observed_replicas})
        return ScaleDecision(spec.id, ScaleAction.SCALED, status=status, delta=status.delta)

    def loop(self, interval: float, specs_source: Callable[[], Iterable[ResourceSpec]]) -> PeriodicLoop:
        return PeriodicLoop("scaling", interval, lambda: self.tick(specs_source()))
