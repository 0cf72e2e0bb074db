"""
Background loop runner for the drift detector and scaling controller.
"""

import logging
import threading
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicLoop:
    """Calls fn every interval seconds on a daemon thread until stopped."""

    def __init__(self, name: str, interval: float, fn: Callable[[], Any]):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.name = name
        self.interval = interval
        self.fn = fn
        self.iterations = 0
        self.stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> "PeriodicLoop":
        if self.running:
            return self
        self.stop_event.clear()
        self._thread = threading.Thread(target=self._worker, name=f"strata-{self.name}", daemon=True)
        self._thread.start()
        logger.info(f"Started {self.name} loop (every {self.interval}s)")
        return self

    def stop(self, timeout: Optional[float] = None) -> None:
        self.stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
        logger.info(f"Stopped {self.name} loop after {self.iterations} iterations")

    def _worker(self) -> None:
        while not self.stop_event.is_set():
            try:
                self.fn()
            except Exception as e:
                # one bad iteration must not kill the loop; the next one retries
                logger.error(f"{self.name} iteration failed: {e}", exc_info=True)
            self.iterations += 1
            self.stop_event.wait(self.interval)
