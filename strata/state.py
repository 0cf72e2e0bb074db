"""
State management for reconciled resources.

Every read and write for a given resource id is serialized by a per-id lock,
and reads hand out copies, so concurrent readers (drift detector, scaling
controller) always see a whole ResourceState and never a half-written one.
"""

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .ids import is_valid_resource_id
from .models import ResourceState

logger = logging.getLogger(__name__)


class StateStore:
    """Base store: locking and copy semantics; subclasses provide storage."""

    def __init__(self):
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, resource_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(resource_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[resource_id] = lock
            return lock

    # Storage primitives

    def _load(self, resource_id: str) -> Optional[ResourceState]:
        raise NotImplementedError

    def _save(self, state: ResourceState) -> None:
        raise NotImplementedError

    def _remove(self, resource_id: str) -> None:
        raise NotImplementedError

    def _ids(self) -> List[str]:
        raise NotImplementedError

    # Public API

    def get(self, resource_id: str) -> Optional[ResourceState]:
        """Return a snapshot of the state for resource_id, or None if absent."""
        with self._lock_for(resource_id):
            state = self._load(resource_id)
            return state.copy() if state else None

    def put(self, resource_id: str, state: ResourceState) -> None:
        if state.id != resource_id:
            raise ValueError(f"State id {state.id} does not match {resource_id}")
        with self._lock_for(resource_id):
            self._save(state.copy().touch())

    def delete(self, resource_id: str) -> None:
        with self._lock_for(resource_id):
            self._remove(resource_id)

    def list_all(self) -> List[ResourceState]:
        states = []
        for resource_id in sorted(self._ids()):
            state = self.get(resource_id)
            if state is not None:
                states.append(state)
        return states

    def update(
        self,
        resource_id: str,
        mutate: Callable[[Optional[ResourceState]], Optional[ResourceState]],
    ) -> Optional[ResourceState]:
        """
        Atomically read, transform and write one resource's state.

        mutate receives a copy of the current state (or None) and returns the
        state to store; returning None leaves the store untouched.

        Returns:
            The stored state, or the current one if nothing was written
        """
        with self._lock_for(resource_id):
            current = self._load(resource_id)
            updated = mutate(current.copy() if current else None)
            if updated is None:
                return current.copy() if current else None
            self.put(resource_id, updated)
            return updated.copy()


class MemoryStateStore(StateStore):
    """Process-local store."""

    def __init__(self):
        super().__init__()
        self._states: Dict[str, ResourceState] = {}

    def _load(self, resource_id: str) -> Optional[ResourceState]:
        return self._states.get(resource_id)

    def _save(self, state: ResourceState) -> None:
        self._states[state.id] = state

    def _remove(self, resource_id: str) -> None:
        self._states.pop(resource_id, None)

    def _ids(self) -> List[str]:
        return list(self._states)


class FileStateStore(StateStore):
    """
    Store that keeps one JSON document per resource under <home>/state/.

    Writes go to a temporary file that is renamed into place, so a crash
    never leaves a truncated state document behind.
    """

    def __init__(self, home: Path):
        super().__init__()
        self.state_dir = Path(home) / "state"
        self.state_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, resource_id: str) -> Path:
        if not is_valid_resource_id(resource_id):
            raise ValueError(f"Invalid resource ID: {resource_id}")
        return self.state_dir / f"{resource_id}.json"

    def _load(self, resource_id: str) -> Optional[ResourceState]:
        path = self._path(resource_id)
        if not path.exists():
            return None
        with open(path, "r") as f:
            return ResourceState.from_dict(json.load(f))

    def _save(self, state: ResourceState) -> None:
        path = self._path(state.id)
        fd, tmp_name = tempfile.mkstemp(dir=self.state_dir, prefix=f".{state.id}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(state.to_dict(), f, indent=2)
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def _remove(self, resource_id: str) -> None:
        path = self._path(resource_id)
        if path.exists():
            path.unlink()

    def _ids(self) -> List[str]:
        ids = []
        for item in self.state_dir.iterdir():
            if item.is_file() and item.suffix == ".json" and is_valid_resource_id(item.stem):
                ids.append(item.stem)
        return ids
