"""
Unit tests for the long-poll subscription registry.

Tests verify deduplication of live watch tasks per key, independence of
per-target keys from the "all targets" key, cancellation on unsubscribe, the
exception handler policies for failed tasks, and the two-phase shutdown.
"""

import threading

import pytest

from conftest import BlockingTransport
from conftest import FailingTransport
from conftest import ImmediateTransport
from conftest import wait_until
from hivewatch import ALL_TARGETS
from hivewatch import CommandUpdateKey
from hivewatch import LongPollRegistry
from hivewatch import ResultKind
from hivewatch import SubscriptionKey
from hivewatch import WatchHandle
from hivewatch import WatchState
from hivewatch import handlers


@pytest.fixture
def cancel_calls(monkeypatch: pytest.MonkeyPatch) -> list[WatchHandle]:
    """Records every WatchHandle.cancel() call."""
    calls: list[WatchHandle] = []
    original = WatchHandle.cancel

    def counting_cancel(self: WatchHandle) -> bool:
        calls.append(self)
        return original(self)

    monkeypatch.setattr(WatchHandle, "cancel", counting_cancel)
    return calls


def test_subscribe_without_targets_uses_sentinel_key(
    registry: LongPollRegistry, blocking_transport: BlockingTransport
) -> None:
    """Test that a subscription without targets watches every target."""
    started = registry.subscribe_commands({"x-filter": "1"}, None, {"A"})

    key = SubscriptionKey(ALL_TARGETS, frozenset({"A"}))
    assert started == [key]
    assert wait_until(lambda: blocking_transport.count == 1)

    request = blocking_transport.requests[0]
    assert request.path == "/device/command/poll"
    assert request.kind is ResultKind.COMMAND
    assert request.scope is ALL_TARGETS
    assert request.names == frozenset({"A"})
    assert request.headers == {"x-filter": "1"}
    assert request.wait_timeout == 1.0


def test_subscribe_twice_without_targets_creates_one_entry(
    registry: LongPollRegistry, blocking_transport: BlockingTransport
) -> None:
    """Test that a second subscribe for a live sentinel key is a no-op."""
    registry.subscribe_notifications(None, None, {"A"})
    second = registry.subscribe_notifications(None, None, ["A"])

    assert second == []
    assert registry.notifications.live_keys() == [
        SubscriptionKey(ALL_TARGETS, frozenset({"A"}))
    ]
    assert wait_until(lambda: blocking_transport.count == 1)
    assert blocking_transport.requests[0].path == "/device/notification/poll"


def test_per_target_unsubscribe_leaves_other_targets(
    registry: LongPollRegistry,
) -> None:
    """Test that unsubscribing one target keeps the other target's entry."""
    started = registry.subscribe_commands(None, None, {"A"}, targets=["d1", "d2"])
    assert len(started) == 2

    registry.unsubscribe_commands({"A"}, targets=["d1"])

    assert registry.commands.live_keys() == [SubscriptionKey.of("d2", {"A"})]


def test_subscribe_skips_live_targets_and_starts_new_ones(
    registry: LongPollRegistry, blocking_transport: BlockingTransport
) -> None:
    """Test that one call can mix already-live and new targets."""
    registry.subscribe_commands(None, None, {"A"}, targets=["d1"])
    started = registry.subscribe_commands(None, None, {"A"}, targets=["d1", "d2"])

    assert started == [SubscriptionKey.of("d2", {"A"})]
    assert wait_until(lambda: blocking_transport.count == 2)
    paths = sorted(request.path for request in blocking_transport.requests)
    assert paths == ["/device/d1/command/poll", "/device/d2/command/poll"]


def test_sentinel_and_target_keys_are_tracked_separately(
    registry: LongPollRegistry,
) -> None:
    """Test that 'all targets' and a concrete target never share an entry."""
    registry.subscribe_commands(None, None, {"A"})
    registry.subscribe_commands(None, None, {"A"}, targets=["d1"])
    assert len(registry.commands) == 2

    registry.unsubscribe_commands({"A"})

    assert registry.commands.live_keys() == [SubscriptionKey.of("d1", {"A"})]


def test_unsubscribe_unknown_key_is_noop(registry: LongPollRegistry) -> None:
    """Test that unsubscribing something never subscribed does not raise."""
    registry.unsubscribe_commands({"missing"})
    registry.unsubscribe_notifications({"missing"}, targets=["nobody"])
    registry.unsubscribe_command_update(404)

    assert len(registry.commands) == 0


def test_completed_entry_is_restarted(settings) -> None:
    """Test that a finished watch no longer counts as live."""
    transport = ImmediateTransport()
    registry = LongPollRegistry(transport, settings)
    try:
        key = registry.subscribe_commands(None, None, {"A"}, targets=["d1"])[0]
        assert registry.commands.get(key).wait(1.0)

        assert registry.subscribe_commands(None, None, {"A"}, targets=["d1"]) == [key]
        assert wait_until(lambda: transport.count == 2)
    finally:
        registry.shutdown()


def test_concurrent_subscribe_starts_one_task(
    registry: LongPollRegistry, blocking_transport: BlockingTransport
) -> None:
    """Test that racing subscribe calls for one key start a single task."""
    callers = 16
    barrier = threading.Barrier(callers)
    results: list[list] = []
    results_lock = threading.Lock()

    def subscribe() -> None:
        barrier.wait()
        started = registry.subscribe_commands(None, None, {"A"}, targets=["d1"])
        with results_lock:
            results.append(started)

    threads = [threading.Thread(target=subscribe) for _ in range(callers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(2.0)

    assert sum(len(started) for started in results) == 1
    assert len(registry.commands.live_keys()) == 1
    assert wait_until(lambda: blocking_transport.count == 1)


@pytest.fixture
def submitted(
    registry: LongPollRegistry, monkeypatch: pytest.MonkeyPatch
) -> list[WatchHandle]:
    """Records every handle the registry creates."""
    handles: list[WatchHandle] = []
    original = registry._submit

    def recording_submit(request) -> WatchHandle:
        handle = original(request)
        handles.append(handle)
        return handle

    monkeypatch.setattr(registry, "_submit", recording_submit)
    return handles


def test_interleaved_subscribe_and_unsubscribe_keep_one_live_task(
    registry: LongPollRegistry,
    submitted: list[WatchHandle],
    cancel_calls: list[WatchHandle],
) -> None:
    """Test racing subscribe/unsubscribe threads on one key."""
    rounds = 50
    barrier = threading.Barrier(8)
    errors: list[BaseException] = []

    def churn(subscribe: bool) -> None:
        try:
            barrier.wait()
            for _ in range(rounds):
                if subscribe:
                    registry.subscribe_commands(None, None, {"A"}, targets=["d1"])
                else:
                    registry.unsubscribe_commands({"A"}, targets=["d1"])
        except BaseException as e:
            errors.append(e)

    threads = [threading.Thread(target=churn, args=(i % 2 == 0,)) for i in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(5.0)

    assert errors == []
    current = registry.commands.get(SubscriptionKey("d1", frozenset({"A"})))
    removed = [handle for handle in submitted if handle is not current]
    cancelled = {id(handle) for handle in cancel_calls}

    assert submitted
    assert all(id(handle) in cancelled for handle in removed)
    assert wait_until(
        lambda: all(handle.state is not WatchState.PENDING for handle in removed)
    )
    pending = [h for h in submitted if h.state is WatchState.PENDING]
    assert pending == ([current] if current is not None and current.is_live else [])


def test_shutdown_during_concurrent_subscribes(
    registry: LongPollRegistry, submitted: list[WatchHandle]
) -> None:
    """Test that every task accepted while shutting down is drained or cancelled."""
    started = threading.Barrier(5)
    errors: list[BaseException] = []

    def subscribe(worker: int) -> None:
        try:
            started.wait()
            n = 0
            while not registry.closed:
                registry.subscribe_notifications(
                    None, None, {"A"}, targets=[f"d{worker}-{n}"]
                )
                n += 1
        except BaseException as e:
            errors.append(e)

    threads = [threading.Thread(target=subscribe, args=(i,)) for i in range(4)]
    for thread in threads:
        thread.start()
    started.wait()

    assert registry.shutdown(timeout=1.0) is True

    for thread in threads:
        thread.join(2.0)

    assert errors == []
    assert registry.closed
    assert all(handle.state is not WatchState.PENDING for handle in submitted)


def test_generator_names_apply_to_every_target(registry: LongPollRegistry) -> None:
    """Test that one-shot name iterables are not used up by the first target."""
    started = registry.subscribe_commands(
        None, None, (name for name in ["A"]), targets=["d1", "d2"]
    )

    assert started == [
        SubscriptionKey("d1", frozenset({"A"})),
        SubscriptionKey("d2", frozenset({"A"})),
    ]

    registry.unsubscribe_commands({"A"}, ["d2"])

    assert registry.commands.live_keys() == [SubscriptionKey("d1", frozenset({"A"}))]


def test_finished_command_update_entries_are_dropped(settings) -> None:
    """Test that completed one-shot command update watches leave no entry."""
    registry = LongPollRegistry(ImmediateTransport(), settings)
    try:
        for command_id in range(200):
            registry.subscribe_command_update("d1", command_id)

        assert wait_until(lambda: len(registry.command_updates) == 0)
    finally:
        registry.shutdown()


def test_unsubscribe_cancels_pending_task_once(
    registry: LongPollRegistry, cancel_calls: list[WatchHandle]
) -> None:
    """Test that a pending handle is cancelled exactly once on unsubscribe."""
    key = registry.subscribe_commands(None, None, {"A"}, targets=["d1"])[0]
    handle = registry.commands.get(key)

    registry.unsubscribe_commands({"A"}, targets=["d1"])
    registry.unsubscribe_commands({"A"}, targets=["d1"])

    assert cancel_calls == [handle]
    assert handle.token.is_set()
    assert handle.wait(1.0)
    assert handle.state is WatchState.CANCELLED
    assert key not in registry.commands


def test_unsubscribe_never_cancels_completed_task(
    settings, cancel_calls: list[WatchHandle]
) -> None:
    """Test that a completed handle is removed without being cancelled."""
    registry = LongPollRegistry(ImmediateTransport(), settings)
    try:
        key = registry.subscribe_notifications(None, None, {"A"})[0]
        assert registry.notifications.get(key).wait(1.0)

        registry.unsubscribe_notifications({"A"})

        assert cancel_calls == []
        assert len(registry.notifications) == 0
    finally:
        registry.shutdown()


def test_command_update_subscription(
    registry: LongPollRegistry, blocking_transport: BlockingTransport
) -> None:
    """Test the check-then-start rule over (target, command id) keys."""
    key = registry.subscribe_command_update("d1", 7)

    assert key == CommandUpdateKey("d1", 7)
    assert registry.subscribe_command_update("d1", 7) is None
    assert wait_until(lambda: blocking_transport.count == 1)
    request = blocking_transport.requests[0]
    assert request.path == "/device/d1/command/7/poll"
    assert request.kind is ResultKind.COMMAND_UPDATE

    handle = registry.command_updates.get(key)
    registry.unsubscribe_command_update(7)

    assert len(registry.command_updates) == 0
    assert handle.wait(1.0)
    assert handle.state is WatchState.CANCELLED


def test_failed_task_is_kept_by_default(settings) -> None:
    """Test that the default handler keeps a failed, no longer live entry."""
    registry = LongPollRegistry(FailingTransport(), settings)
    try:
        key = registry.subscribe_commands(None, None, {"A"})[0]
        handle = registry.commands.get(key)
        assert handle.wait(1.0)

        assert handle.state is WatchState.COMPLETED
        assert isinstance(handle.exception(), ConnectionError)
        assert key in registry.commands
        assert registry.commands.live_keys() == []
    finally:
        registry.shutdown()


def test_stop_handler_drops_failed_entry(settings) -> None:
    """Test that a handler returning STOP removes the dead entry."""
    failures: list = []

    def handler(key, exception: BaseException) -> bool:
        failures.append((key, type(exception)))
        return handlers.STOP

    registry = LongPollRegistry(FailingTransport(), settings)
    registry.set_watch_exception_handler(handler)
    try:
        key = registry.subscribe_commands(None, None, {"A"}, targets=["d1"])[0]

        assert wait_until(lambda: key not in registry.commands)
        assert failures == [(key, ConnectionError)]
    finally:
        registry.shutdown()


def test_collecting_handler_records_failures(settings) -> None:
    """Test the built-in collecting handler."""
    handlers.watch_exceptions_caught.clear()
    registry = LongPollRegistry(FailingTransport(), settings)
    registry.set_watch_exception_handler(handlers.collect_watch_exception)
    try:
        registry.subscribe_command_update("d1", 3)

        assert wait_until(lambda: len(handlers.watch_exceptions_caught) == 1)
        caught = handlers.watch_exceptions_caught[0]
        assert caught["key"] == "d1/3"
        assert caught["exception"].startswith("ConnectionError")
    finally:
        registry.shutdown()
        handlers.watch_exceptions_caught.clear()


def test_shutdown_cancels_running_tasks(
    registry: LongPollRegistry, blocking_transport: BlockingTransport
) -> None:
    """Test that shutdown cancels tasks that do not finish on their own."""
    registry.subscribe_commands(None, None, {"A"}, targets=["d1", "d2"])
    assert wait_until(lambda: blocking_transport.count == 2)
    handles = [handle for _, handle in registry.commands.items()]

    assert registry.shutdown(timeout=0.05) is True

    assert registry.closed
    assert all(handle.state is WatchState.CANCELLED for handle in handles)


def test_subscribe_after_shutdown_is_rejected(
    registry: LongPollRegistry, blocking_transport: BlockingTransport
) -> None:
    """Test that no entry is stored once the pool stopped accepting tasks."""
    registry.shutdown(timeout=0.05)

    assert registry.subscribe_notifications(None, None, {"A"}) == []
    assert registry.subscribe_command_update("d1", 1) is None
    assert len(registry.notifications) == 0
    assert blocking_transport.count == 0


def test_shutdown_abandons_uncooperative_tasks(settings) -> None:
    """Test that shutdown gives up on tasks that ignore cancellation."""
    transport = BlockingTransport(honour_cancel=False)
    registry = LongPollRegistry(transport, settings)
    try:
        registry.subscribe_commands(None, None, {"A"})
        assert wait_until(lambda: transport.count == 1)

        assert registry.shutdown(timeout=0.05) is False
    finally:
        transport.release.set()


def test_to_dict(registry: LongPollRegistry) -> None:
    """Test the registry introspection dictionary."""
    registry.subscribe_commands(None, None, {"B", "A"}, targets=["d1"])
    registry.subscribe_command_update("d1", 9)

    data = registry.to_dict()

    assert data["commands"] == {"'d1'[A,B]": "pending"}
    assert data["notifications"] == {}
    assert data["command updates"] == {"d1/9": "pending"}
