"""
Provider adapter contract and registry.

One adapter per resource kind translates abstract operations into calls
against a real infrastructure or orchestrator API. Adapters raise NotFound
when the provider has nothing behind a handle and AdapterFailure for any
other failure.
"""

import logging
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Callable, Dict, Optional

from ..config import ProviderConfig
from ..errors import AdapterFailure, AdapterTimeout, NotFound, UnsupportedKind
from ..models import ResourceKind

logger = logging.getLogger(__name__)


class ProviderAdapter(ABC):
    """Create, read, update and delete one kind of real resource."""

    kind: ResourceKind
    supports_scaling = False

    @abstractmethod
    def create_or_update(self, resource_id: str, parameters: Dict[str, Any], config: ProviderConfig) -> str:
        """Converge the resource to parameters and return its provider handle."""

    @abstractmethod
    def read(self, handle: str, config: ProviderConfig) -> Dict[str, Any]:
        """Return live parameters for handle; raise NotFound if it is gone."""

    @abstractmethod
    def delete(self, handle: str, config: ProviderConfig) -> None:
        """Delete the resource; raise NotFound if it is already gone."""

    def scale(self, handle: str, delta: int, config: ProviderConfig) -> None:
        raise AdapterFailure(f"{self.kind.value} resources do not support scaling")


class ProviderRegistry:
    """Maps each resource kind to the adapter that manages it."""

    def __init__(self, adapters: Optional[Dict[ResourceKind, ProviderAdapter]] = None):
        self._adapters: Dict[ResourceKind, ProviderAdapter] = {}
        for kind, adapter in (adapters or {}).items():
            self.register(kind, adapter)

    def register(self, kind: ResourceKind, adapter: ProviderAdapter) -> None:
        self._adapters[ResourceKind(kind)] = adapter

    def supports(self, kind: ResourceKind) -> bool:
        return kind in self._adapters

    def get(self, kind: ResourceKind) -> ProviderAdapter:
        adapter = self._adapters.get(kind)
        if adapter is None:
            raise UnsupportedKind(getattr(kind, "value", str(kind)))
        return adapter


def call_with_timeout(fn: Callable[..., Any], timeout: Optional[float], *args, **kwargs) -> Any:
    """
    Run one adapter call with a deadline.

    The call runs in a worker thread; if it does not finish in time the
    caller gets AdapterTimeout while the worker is left to finish on its own.
    NotFound and AdapterFailure propagate unchanged, anything else an adapter
    raises is wrapped in AdapterFailure.
    """
    if timeout is None:
        return _guarded(fn, *args, **kwargs)

    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="strata-call")
    try:
        future = executor.submit(_guarded, fn, *args, **kwargs)
        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            name = getattr(fn, "__qualname__", repr(fn))
            raise AdapterTimeout(f"{name} did not complete within {timeout}s")
    finally:
        executor.shutdown(wait=False)


def _guarded(fn: Callable[..., Any], *args, **kwargs) -> Any:
    try:
        return fn(*args, **kwargs)
    except (NotFound, AdapterFailure):
        raise
    except Exception as e:
        logger.debug(f"Adapter call {getattr(fn, '__qualname__', fn)} raised {type(e).__name__}: {e}")
        raise AdapterFailure(f"{type(e).__name__}: {e}") from e
