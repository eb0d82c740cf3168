"""
Long-poll subscription registry.

Owns the mapping from subscription key to the in-flight watch handle for
plain HTTP subscriptions: commands, notifications and command updates. Each
concern has its own WatchTable guarded by its own exclusive lock.

For any key there is at most one live (pending) watch task. Subscribing to a
key that already has one is a no-op; subscribing to a key whose task has
finished, for any reason, starts a fresh one. Resubmitting finished watches
is the caller's job: a watch task performs exactly one long-poll cycle.
"""

import functools
import logging
import threading
import time
from concurrent import futures
from datetime import datetime
from typing import Any
from typing import Callable
from typing import Hashable
from typing import Iterable
from typing import Mapping
from typing import Optional

from hivewatch import handlers
from hivewatch import keys
from hivewatch import transport
from hivewatch.errors import RegistryClosedError
from hivewatch.handles import WatchHandle
from hivewatch.handles import WatchState
from hivewatch.settings import SubscriptionSettings


logger = logging.getLogger(__name__)


class WatchTable(object):
    """Key -> WatchHandle map for one concern, guarded by one lock."""

    def __init__(self, concern: str) -> None:
        self.concern = concern
        self._lock = threading.RLock()
        self._entries: dict[Hashable, WatchHandle] = {}

    def start_if_idle(
        self, key: Hashable, start: Callable[[], WatchHandle]
    ) -> Optional[WatchHandle]:
        """
        Start a watch for `key` unless a live one already exists.

        The liveness check, `start()` and the insert happen under one lock
        acquisition, so concurrent callers can never store two live handles
        for the same key.

        Returns:
            Optional[WatchHandle]: The new handle, or None if the existing
                entry was live and left untouched.
        Raises:
            RegistryClosedError: Propagated from `start()`; nothing is stored.
        """
        with self._lock:
            existing = self._entries.get(key)
            if existing is not None and existing.is_live:
                return None

            handle = start()
            self._entries[key] = handle
            logger.debug(f"New {self.concern} subscription added for: {key}")
            return handle

    def discard(self, key: Hashable) -> Optional[WatchHandle]:
        """Remove the entry for `key` and cancel its handle if still pending."""
        with self._lock:
            handle = self._entries.pop(key, None)
            if handle is not None and handle.is_live:
                self._cancel(key, handle)
            return handle

    def discard_where(self, predicate: Callable[[Any], bool]) -> list[WatchHandle]:
        """discard() every key matching `predicate`."""
        with self._lock:
            matching = [key for key in self._entries if predicate(key)]
            return [self.discard(key) for key in matching]

    def forget(self, key: Hashable, handle: WatchHandle) -> bool:
        """Remove the entry only if it still refers to `handle`."""
        with self._lock:
            if self._entries.get(key) is not handle:
                return False
            del self._entries[key]
            return True

    def _cancel(self, key: Hashable, handle: WatchHandle) -> None:
        try:
            result = handle.cancel()
        except Exception as e:
            logger.warning(f"Unable to cancel {self.concern} task for {key}: {e}")
            return
        logger.debug(
            f"Task is cancelled for {self.concern} subscription {key}. "
            f"Cancellation result: {result}"
        )

    def get(self, key: Hashable) -> Optional[WatchHandle]:
        with self._lock:
            return self._entries.get(key)

    def live_keys(self) -> list[Hashable]:
        with self._lock:
            return [key for key, handle in self._entries.items() if handle.is_live]

    def items(self) -> list[tuple[Hashable, WatchHandle]]:
        with self._lock:
            return list(self._entries.items())

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._entries


class LongPollRegistry(object):
    """
    Starts, deduplicates and cancels long-poll watch tasks.

    Watch tasks run on a bounded thread pool. Use subscribe_*/unsubscribe_*
    to manage them and shutdown() to stop the pool.
    """

    def __init__(
        self,
        watch_transport: transport.WatchTransport,
        settings: Optional[SubscriptionSettings] = None,
    ) -> None:
        self._transport = watch_transport
        self._settings = settings or SubscriptionSettings()
        self._executor = futures.ThreadPoolExecutor(
            max_workers=self._settings.pool_size,
            thread_name_prefix="hivewatch-watch",
        )

        self.commands = WatchTable("commands")
        self.notifications = WatchTable("notifications")
        self.command_updates = WatchTable("command updates")

        self._watch_exception_handler: handlers.WATCH_EXCEPTION_HANDLER = (
            handlers.log_and_continue_watch_exception
        )

        self._inflight: set[WatchHandle] = set()
        self._inflight_lock = threading.Lock()
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def set_watch_exception_handler(
        self, handler: Optional[handlers.WATCH_EXCEPTION_HANDLER]
    ) -> None:
        """
        Set the handler called when a watch task finishes with an exception.

        Args:
            Optional[handlers.WATCH_EXCEPTION_HANDLER]:
                Callable with signature (key, BaseException) -> bool.
                Returns True to drop the dead entry, False to keep it.
                Pass None to restore the default (log and keep).
        """
        self._watch_exception_handler = (
            handler or handlers.log_and_continue_watch_exception
        )

    # -----Commands & Notifications--------------------------------------------

    def subscribe_commands(
        self,
        headers: Optional[Mapping[str, str]],
        timestamp: Optional[datetime],
        names: Optional[Iterable[str]],
        targets: Optional[Iterable[str]] = None,
    ) -> list[keys.SubscriptionKey]:
        """
        Watch commands sent to `targets`, or to every target when None.

        Args:
            headers (Mapping[str, str]): Headers that narrow the sample.
            timestamp (datetime): Timestamp of the first command wanted.
            names (Iterable[str]): Command names. Empty or None means all.
            targets (Iterable[str]): Device identifiers.
        Returns:
            list[SubscriptionKey]: Keys for which a new task was started.
                Keys that already had a live task are not included.
        """
        return self._subscribe(
            self.commands,
            transport.ResultKind.COMMAND,
            headers,
            timestamp,
            names,
            targets,
        )

    def unsubscribe_commands(
        self, names: Optional[Iterable[str]], targets: Optional[Iterable[str]] = None
    ) -> None:
        """
        Remove command subscriptions for `names` on `targets`. Without
        targets only the "all targets" subscription is removed; per-target
        subscriptions with the same names are unaffected.
        """
        self._unsubscribe(self.commands, names, targets)

    def subscribe_notifications(
        self,
        headers: Optional[Mapping[str, str]],
        timestamp: Optional[datetime],
        names: Optional[Iterable[str]],
        targets: Optional[Iterable[str]] = None,
    ) -> list[keys.SubscriptionKey]:
        """Watch notifications from `targets`. See subscribe_commands()."""
        return self._subscribe(
            self.notifications,
            transport.ResultKind.NOTIFICATION,
            headers,
            timestamp,
            names,
            targets,
        )

    def unsubscribe_notifications(
        self, names: Optional[Iterable[str]], targets: Optional[Iterable[str]] = None
    ) -> None:
        """Remove notification subscriptions. See unsubscribe_commands()."""
        self._unsubscribe(self.notifications, names, targets)

    def _subscribe(
        self,
        table: WatchTable,
        kind: transport.ResultKind,
        headers: Optional[Mapping[str, str]],
        timestamp: Optional[datetime],
        names: Optional[Iterable[str]],
        targets: Optional[Iterable[str]],
    ) -> list[keys.SubscriptionKey]:
        started = []
        for key in keys.expand_keys(names, targets):
            request = transport.WatchRequest(
                path=transport.poll_path(kind, key.scope),
                kind=kind,
                scope=key.scope,
                names=key.names,
                headers=dict(headers or {}),
                timestamp=timestamp,
                wait_timeout=self._settings.wait_timeout,
            )
            if self._start(table, key, request):
                started.append(key)
        return started

    def _unsubscribe(
        self,
        table: WatchTable,
        names: Optional[Iterable[str]],
        targets: Optional[Iterable[str]],
    ) -> None:
        for key in keys.expand_keys(names, targets):
            table.discard(key)

    # -----Command Updates-----------------------------------------------------

    def subscribe_command_update(
        self, target: str, command_id: int
    ) -> Optional[keys.CommandUpdateKey]:
        """
        Watch one command until it is updated by the device.

        Returns:
            Optional[CommandUpdateKey]: The key if a new task was started.
        """
        key = keys.CommandUpdateKey(target=target, command_id=command_id)
        request = transport.WatchRequest(
            path=transport.command_update_poll_path(key),
            kind=transport.ResultKind.COMMAND_UPDATE,
            scope=target,
            wait_timeout=self._settings.wait_timeout,
        )
        if self._start(self.command_updates, key, request):
            return key
        return None

    def unsubscribe_command_update(
        self, command_id: int, target: Optional[str] = None
    ) -> None:
        """Stop watching `command_id`, on every target unless one is given."""
        self.command_updates.discard_where(
            lambda key: key.command_id == command_id
            and (target is None or key.target == target)
        )

    # -----Task Handling-------------------------------------------------------

    def _start(
        self, table: WatchTable, key: Hashable, request: transport.WatchRequest
    ) -> bool:
        try:
            handle = table.start_if_idle(key, functools.partial(self._submit, request))
        except RegistryClosedError:
            logger.warning(f"Registry is shut down, not watching {table.concern} {key}")
            return False

        if handle is None:
            return False

        # Attached after the table lock is released: a task that already
        # finished runs the callback in this thread.
        handle.add_done_callback(
            functools.partial(self._on_watch_done, table, key)
        )
        return True

    def _submit(self, request: transport.WatchRequest) -> WatchHandle:
        # The closed check, submit() and tracking share the lock shutdown()
        # takes to close the registry, so every accepted task is seen there.
        with self._inflight_lock:
            if self._closed.is_set():
                raise RegistryClosedError(f"Cannot watch {request.path} after shutdown")

            token = threading.Event()
            try:
                future = self._executor.submit(self._transport.watch, request, token)
            except RuntimeError as e:
                raise RegistryClosedError(str(e)) from e

            handle = WatchHandle(future, token)
            self._inflight.add(handle)
        return handle

    def _on_watch_done(self, table: WatchTable, key: Hashable, handle: WatchHandle) -> None:
        with self._inflight_lock:
            self._inflight.discard(handle)

        if handle.state is not WatchState.COMPLETED:
            return

        exception = handle.exception()
        drop = exception is not None and self._watch_exception_handler(key, exception)

        # Command update watches are one-shot and command ids are never
        # reused, so finished entries are always dropped.
        if drop or table is self.command_updates:
            table.forget(key, handle)

    # -----Shutdown------------------------------------------------------------

    def shutdown(self, timeout: Optional[float] = None) -> bool:
        """
        Stop accepting watch tasks, drain the pool and cancel stragglers.

        Phase one waits up to `timeout` (default: await_termination_timeout)
        for in-flight tasks. Remaining tasks are then cancelled and given one
        more grace period. Tasks still running after that are abandoned.

        Returns:
            bool: True if every task finished, False if some were abandoned.
        """
        with self._inflight_lock:
            already_closed = self._closed.is_set()
            self._closed.set()
        if already_closed:
            return not self._snapshot_inflight()

        grace = (
            timeout if timeout is not None else self._settings.await_termination_timeout
        )
        self._executor.shutdown(wait=False)

        remaining = self._wait_for(self._snapshot_inflight(), grace)
        if not remaining:
            logger.debug("Watch pool drained")
            return True

        logger.debug(f"Cancelling {len(remaining)} watch task(s) still running")
        for handle in remaining:
            handle.cancel()
        self._executor.shutdown(wait=False, cancel_futures=True)

        remaining = self._wait_for(remaining, grace)
        if remaining:
            logger.warning(f"Pool did not terminate, abandoning {len(remaining)} task(s)")
            return False
        return True

    def _snapshot_inflight(self) -> list[WatchHandle]:
        with self._inflight_lock:
            return [handle for handle in self._inflight if handle.is_live]

    @staticmethod
    def _wait_for(handles: list[WatchHandle], timeout: float) -> list[WatchHandle]:
        deadline = time.monotonic() + timeout
        for handle in handles:
            handle.wait(max(0.0, deadline - time.monotonic()))
        return [handle for handle in handles if handle.state is WatchState.PENDING]

    # -----Introspection API---------------------------------------------------

    def to_dict(self) -> dict:
        """Convert the registry tables to a dictionary of key -> state."""
        return {
            table.concern: {
                str(key): handle.state.value for key, handle in table.items()
            }
            for table in (self.commands, self.notifications, self.command_updates)
        }
