"""
Drift detection.

The detector re-reads every Applied resource through its adapter, records
the live parameters and marks the resource Degraded when they no longer
match what was last applied. It never corrects anything: fixing drift is
left to an explicit apply.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from .config import ProviderConfig
from .errors import AdapterFailure, NotFound
from .events import EventSink, EventTypes, Outcomes
from .loop import PeriodicLoop
from .models import ResourceState, ResourceStatus
from .providers.base import ProviderRegistry, call_with_timeout
from .state import StateStore

logger = logging.getLogger(__name__)


@dataclass
class DriftReport:
    resource_id: str
    differences: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    missing: bool = False
    detected_at: str = field(default_factory=lambda: datetime.utcnow().isoformat() + "Z")


def diff_parameters(last_applied: Dict[str, Any], live: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    """
    Compare live parameters against last-applied ones, field by field.

    Only fields the adapter reports are compared; a provider that does not
    expose a field cannot be said to have drifted on it.
    """
    differences = {}
    for key in sorted(last_applied):
        if key in live and live[key] != last_applied[key]:
            differences[key] = {"old": last_applied[key], "new": live[key]}
    return differences


class DriftDetector:

    def __init__(
        self,
        registry: ProviderRegistry,
        store: StateStore,
        sink: EventSink,
        config: ProviderConfig,
        timeout: Optional[float] = None,
    ):
        self.registry = registry
        self.store = store
        self.sink = sink
        self.config = config
        self.timeout = timeout
        self._inflight: Set[str] = set()
        self._guard = threading.Lock()

    def check_once(self) -> List[DriftReport]:
        """Check every Applied resource once and return what drifted."""
        reports = []
        for state in self.store.list_all():
            if state.status != ResourceStatus.APPLIED or not state.provider_handle:
                continue
            report = self.check_resource(state.id)
            if report is not None:
                reports.append(report)
        if reports:
            logger.warning(f"Drift detected on {len(reports)} resources: {[r.resource_id for r in reports]}")
        return reports

    def check_resource(self, resource_id: str) -> Optional[DriftReport]:
        with self._guard:
            if resource_id in self._inflight:
                logger.debug(f"Drift check for {resource_id} already running, skipping")
                return None
            self._inflight.add(resource_id)
        try:
            return self._check(resource_id)
        finally:
            with self._guard:
                self._inflight.discard(resource_id)

    def _check(self, resource_id: str) -> Optional[DriftReport]:
        state = self.store.get(resource_id)
        if state is None or state.status != ResourceStatus.APPLIED or not state.provider_handle:
            return None

        adapter = self.registry.get(state.kind)
        missing = False
        live: Optional[Dict[str, Any]] = None
        try:
            live = call_with_timeout(adapter.read, self.timeout, state.provider_handle, self.config)
        except NotFound:
            missing = True
        except AdapterFailure as e:
            logger.warning(f"Drift check for {resource_id} could not read live state: {e}")
            self.sink.emit(EventTypes.DRIFT_CHECK_FAILED, resource_id, "Read", Outcomes.FAILED,
                           data={"error": str(e)})
            return None

        differences = diff_parameters(state.last_applied_parameters or {}, live) if live is not None else {}
        drifted = missing or bool(differences)
        recorded = []

        def mutate(current: Optional[ResourceState]) -> Optional[ResourceState]:
            # the engine may have re-applied or removed the resource since we read it
            if (current is None or current.status != ResourceStatus.APPLIED
                    or current.last_applied_parameters != state.last_applied_parameters):
                return None
            current.live_parameters = live
            if drifted:
                current.status = ResourceStatus.DEGRADED
            recorded.append(current)
            return current

        self.store.update(resource_id, mutate)
        if not recorded or not drifted:
            return None

        report = DriftReport(resource_id=resource_id, differences=differences, missing=missing)
        self.sink.emit(
            EventTypes.DRIFT_DETECTED,
            resource_id,
            "Read",
            Outcomes.DRIFT,
            data={"missing": missing, "differences": differences, "handle": state.provider_handle},
        )
        return report

    def loop(self, interval: float) -> PeriodicLoop:
        return PeriodicLoop("drift", interval, self.check_once)
