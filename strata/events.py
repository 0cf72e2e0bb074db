"""
Structured event emission for plan execution, drift and scaling.

Events are NDJSON records with the fields {ts, type, plan_id, resource_id,
operation, outcome, data}. Sinks decide where they go; the file sink appends
them to <home>/events.ndjson and mirrors each one to the log.
"""

import json
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


def make_event(
    event_type: str,
    resource_id: Optional[str] = None,
    operation: Optional[str] = None,
    outcome: Optional[str] = None,
    plan_id: Optional[str] = None,
    data: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    return {
        "ts": datetime.utcnow().isoformat() + "Z",
        "type": event_type,
        "plan_id": plan_id,
        "resource_id": resource_id,
        "operation": operation,
        "outcome": outcome,
        "data": data or {},
    }


class EventSink:
    """Base sink; subclasses implement write()."""

    def emit(
        self,
        event_type: str,
        resource_id: Optional[str] = None,
        operation: Optional[str] = None,
        outcome: Optional[str] = None,
        plan_id: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        event = make_event(event_type, resource_id, operation, outcome, plan_id, data)
        self.write(event)
        return event

    def write(self, event: Dict[str, Any]) -> None:
        raise NotImplementedError


class MemoryEventSink(EventSink):
    """Keeps events in memory; used by tests and embedded callers."""

    def __init__(self):
        self.events: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def write(self, event: Dict[str, Any]) -> None:
        with self._lock:
            self.events.append(event)

    def of_type(self, event_type: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [e for e in self.events if e["type"] == event_type]


class NdjsonEventSink(EventSink):
    """Appends events to an NDJSON file and logs them."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def write(self, event: Dict[str, Any]) -> None:
        level = logging.WARNING if event.get("outcome") in ("failed", "drift") else logging.INFO
        logger.log(
            level,
            f"{event['type']} resource={event.get('resource_id')} "
            f"operation={event.get('operation')} outcome={event.get('outcome')}",
        )
        with self._lock:
            with open(self.path, "a") as f:
                f.write(json.dumps(event) + "\n")
                f.flush()  # Ensure immediate write


def read_events(path: Path) -> List[Dict[str, Any]]:
    """
    Read all events from an NDJSON events file.

    Args:
        path: Events file

    Returns:
        List of events (malformed lines are skipped)
    """
    path = Path(path)
    if not path.exists():
        return []

    events = []
    with open(path, "r") as f:
        for line in f:
            line = line.strip()
            if line:
                try:
                    events.append(json.loads(line))
                except json.JSONDecodeError:
                    continue  # Skip malformed lines

    return events


def get_last_event(path: Path, resource_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """
    Get the most recent event, optionally for one resource.
    """
    events = read_events(path)
    if resource_id is not None:
        events = [e for e in events if e.get("resource_id") == resource_id]
    return events[-1] if events else None


# Predefined event types for consistency
class EventTypes:
    PLAN_COMPUTED = "PLAN_COMPUTED"
    APPLY_START = "APPLY_START"
    APPLY_DONE = "APPLY_DONE"
    DESTROY_START = "DESTROY_START"
    DESTROY_DONE = "DESTROY_DONE"
    OPERATION = "OPERATION"
    PLAN_CANCELLED = "PLAN_CANCELLED"
    DRIFT_DETECTED = "DRIFT_DETECTED"
    DRIFT_CHECK_FAILED = "DRIFT_CHECK_FAILED"
    SCALE_ISSUED = "SCALE_ISSUED"
    SCALE_FAILED = "SCALE_FAILED"


class Outcomes:
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    NOOP = "noop"
    DRIFT = "drift"
