"""
In-memory provider used for local runs and tests.

All adapters share one InMemoryCloud that records every call, which makes
it easy to assert on the exact sequence of provider operations.
"""

import threading
import time
from typing import Any, Dict, List, Optional, Tuple

from ..config import ProviderConfig
from ..errors import AdapterFailure, NotFound
from ..models import ResourceKind
from .base import ProviderAdapter, ProviderRegistry


class InMemoryCloud:
    """Fake provider backend holding live parameters by handle."""

    def __init__(self):
        self.resources: Dict[str, Dict[str, Any]] = {}
        self.calls: List[Tuple[str, str, Any]] = []
        self.failures: Dict[Tuple[str, str], Exception] = {}
        self.delays: Dict[Tuple[str, str], float] = {}
        self._lock = threading.Lock()

    @staticmethod
    def handle_for(kind: ResourceKind, resource_id: str) -> str:
        return f"mem:{kind.value.lower()}/{resource_id}"

    @staticmethod
    def resource_id_of(handle: str) -> str:
        return handle.rsplit("/", 1)[-1]

    def fail(self, method: str, resource_id: str, error: Optional[Exception] = None) -> None:
        """Make the next calls of method for resource_id raise error."""
        self.failures[(method, resource_id)] = error or AdapterFailure(f"injected {method} failure", resource_id)

    def delay(self, method: str, resource_id: str, seconds: float) -> None:
        self.delays[(method, resource_id)] = seconds

    def clear_failures(self) -> None:
        self.failures.clear()
        self.delays.clear()

    def set_live(self, handle: str, **fields) -> None:
        """Change live parameters behind the reconciler's back."""
        with self._lock:
            if handle not in self.resources:
                raise KeyError(handle)
            self.resources[handle].update(fields)

    def remove(self, handle: str) -> None:
        with self._lock:
            self.resources.pop(handle, None)

    def calls_of(self, method: str) -> List[Tuple[str, str, Any]]:
        return [c for c in self.calls if c[0] == method]

    def record(self, method: str, resource_id: str, payload: Any = None) -> None:
        with self._lock:
            self.calls.append((method, resource_id, payload))
        pause = self.delays.get((method, resource_id))
        if pause:
            time.sleep(pause)
        error = self.failures.get((method, resource_id))
        if error is not None:
            raise error


class InMemoryAdapter(ProviderAdapter):

    def __init__(self, kind: ResourceKind, cloud: InMemoryCloud):
        self.kind = kind
        self.cloud = cloud
        self.supports_scaling = kind == ResourceKind.WORKLOAD

    def create_or_update(self, resource_id: str, parameters: Dict[str, Any], config: ProviderConfig) -> str:
        self.cloud.record("create_or_update", resource_id, dict(parameters))
        handle = self.cloud.handle_for(self.kind, resource_id)
        with self.cloud._lock:
            self.cloud.resources[handle] = dict(parameters)
        return handle

    def read(self, handle: str, config: ProviderConfig) -> Dict[str, Any]:
        self.cloud.record("read", self.cloud.resource_id_of(handle))
        with self.cloud._lock:
            if handle not in self.cloud.resources:
                raise NotFound(handle)
            return dict(self.cloud.resources[handle])

    def delete(self, handle: str, config: ProviderConfig) -> None:
        self.cloud.record("delete", self.cloud.resource_id_of(handle))
        with self.cloud._lock:
            if handle not in self.cloud.resources:
                raise NotFound(handle)
            del self.cloud.resources[handle]

    def scale(self, handle: str, delta: int, config: ProviderConfig) -> None:
        if not self.supports_scaling:
            return super().scale(handle, delta, config)
        self.cloud.record("scale", self.cloud.resource_id_of(handle), delta)
        with self.cloud._lock:
            if handle not in self.cloud.resources:
                raise NotFound(handle)
            live = self.cloud.resources[handle]
            live["replicas"] = int(live.get("replicas", 0)) + delta


def memory_registry(cloud: Optional[InMemoryCloud] = None) -> ProviderRegistry:
    """Registry with an in-memory adapter for every kind, sharing one cloud."""
    cloud = cloud or InMemoryCloud()
    return ProviderRegistry({kind: InMemoryAdapter(kind, cloud) for kind in ResourceKind})
