"""
Fixed-rate background loop owned by a component.

Replaces a detached global timer: the loop runs on its own daemon thread and
stops as soon as its owner calls stop(), even in the middle of a wait.
"""

import logging
import threading
from typing import Any
from typing import Callable
from typing import Optional


logger = logging.getLogger(__name__)


class PeriodicTask(object):
    """Runs `action` every `interval` seconds until stopped."""

    def __init__(
        self,
        name: str,
        action: Callable[[], Any],
        interval: float,
        run_immediately: bool = False,
    ) -> None:
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")

        self.name = name
        self.interval = interval
        self._action = action
        self._run_immediately = run_immediately
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    def start(self) -> None:
        """Start the loop. Starting a running task is a no-op."""
        with self._lock:
            if self.running:
                return
            self._stop.clear()
            self._thread = threading.Thread(
                target=self._run, name=f"hivewatch-{self.name}", daemon=True
            )
            self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        """Signal the loop to end and wait up to `timeout` for it."""
        with self._lock:
            self._stop.set()
            thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def _run(self) -> None:
        if self._run_immediately:
            self._tick()
        # Event.wait returns True once stop() is called.
        while not self._stop.wait(self.interval):
            self._tick()

    def _tick(self) -> None:
        try:
            self._action()
        except Exception:
            logger.exception(f"Periodic task '{self.name}' failed, will retry")
