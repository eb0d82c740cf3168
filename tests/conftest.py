"""
Shared fakes for the subscription manager tests.

The transports here stand in for the network clients: they record every call
and let tests decide when a watch cycle finishes.
"""

import threading
import time
from types import SimpleNamespace
from typing import Any
from typing import Callable
from typing import Iterator

import pytest

from hivewatch import LongPollRegistry
from hivewatch import SubscriptionSettings


def wait_until(condition: Callable[[], bool], timeout: float = 2.0) -> bool:
    """Poll `condition` until it holds or `timeout` elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.005)
    return condition()


class RecordingTransport(object):
    """Base watch transport that records requests."""

    def __init__(self) -> None:
        self.requests: list = []
        self._lock = threading.Lock()

    def _record(self, request: Any) -> None:
        with self._lock:
            self.requests.append(request)

    @property
    def count(self) -> int:
        with self._lock:
            return len(self.requests)


class BlockingTransport(RecordingTransport):
    """Holds every watch open until released or cancelled."""

    def __init__(self, honour_cancel: bool = True) -> None:
        super().__init__()
        self.release = threading.Event()
        self.honour_cancel = honour_cancel

    def watch(self, request: Any, cancelled: threading.Event) -> None:
        self._record(request)
        while not self.release.wait(0.005):
            if self.honour_cancel and cancelled.is_set():
                return


class ImmediateTransport(RecordingTransport):
    """Finishes every watch cycle at once."""

    def watch(self, request: Any, cancelled: threading.Event) -> list:
        self._record(request)
        return []


class FailingTransport(RecordingTransport):
    """Every watch cycle raises."""

    def watch(self, request: Any, cancelled: threading.Event) -> None:
        self._record(request)
        raise ConnectionError(f"cannot reach {request.path}")


class RecordingDuplex(object):
    """Duplex transport that records subscribe calls."""

    def __init__(self) -> None:
        self.calls: list[SimpleNamespace] = []
        self.self_calls: list[SimpleNamespace] = []
        self.on_subscribe: Callable[[], None] = lambda: None

    def subscribe(self, role, kind, timestamp, names, target) -> None:
        self.calls.append(
            SimpleNamespace(
                role=role, kind=kind, timestamp=timestamp, names=names, target=target
            )
        )
        self.on_subscribe()

    def subscribe_self(self, role, timestamp) -> None:
        self.self_calls.append(SimpleNamespace(role=role, timestamp=timestamp))


@pytest.fixture
def settings() -> SubscriptionSettings:
    return SubscriptionSettings(pool_size=8, wait_timeout=1.0, await_termination_timeout=1.0)


@pytest.fixture
def blocking_transport() -> Iterator[BlockingTransport]:
    transport = BlockingTransport()
    yield transport
    transport.release.set()


@pytest.fixture
def registry(
    blocking_transport: BlockingTransport, settings: SubscriptionSettings
) -> Iterator[LongPollRegistry]:
    registry = LongPollRegistry(blocking_transport, settings)
    yield registry
    registry.shutdown(timeout=1.0)
