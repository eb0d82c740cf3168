"""
Watch handle for background long-poll tasks.

A WatchHandle pairs the pool future running one watch cycle with the
cancellation token handed to the transport. Threads cannot be interrupted, so
cancellation is cooperative: the token is set and the transport is expected
to return promptly. Futures that have not started yet are cancelled outright.
"""

import enum
import threading
from concurrent import futures
from typing import Any
from typing import Callable
from typing import Optional


class WatchState(enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class WatchHandle(object):
    """Observable, cancellable reference to a running watch task."""

    def __init__(self, future: futures.Future, token: threading.Event) -> None:
        self._future = future
        self._token = token
        self._cancel_requested = False

    @property
    def token(self) -> threading.Event:
        """The cancellation token passed to the transport."""
        return self._token

    @property
    def state(self) -> WatchState:
        if self._future.cancelled() or (
            self._cancel_requested and self._future.done()
        ):
            return WatchState.CANCELLED
        if self._future.done():
            return WatchState.COMPLETED
        return WatchState.PENDING

    @property
    def is_live(self) -> bool:
        return self.state is WatchState.PENDING

    def cancel(self) -> bool:
        """
        Request cancellation.

        Returns:
            bool: True if the handle was pending and has now been signalled,
                False if it had already finished (a no-op).
        """
        if self._future.done():
            return False

        self._cancel_requested = True
        self._token.set()
        self._future.cancel()
        return True

    def exception(self) -> Optional[BaseException]:
        """The task's failure, only meaningful once the state is COMPLETED."""
        if self.state is not WatchState.COMPLETED:
            return None
        return self._future.exception(timeout=0)

    def add_done_callback(self, callback: Callable[["WatchHandle"], Any]) -> None:
        self._future.add_done_callback(lambda _: callback(self))

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the task finishes. Returns False on timeout."""
        try:
            self._future.exception(timeout=timeout)
        except futures.TimeoutError:
            return False
        except futures.CancelledError:
            pass
        return True

    def __repr__(self) -> str:
        return f"<WatchHandle {self.state.value}>"
