"""
Duplex subscription ledger.

Subscriptions made over the persistent connection live on the server, so
they are lost whenever the connection drops. The ledger records the intent
behind each of them so the ResubscriptionCoordinator can replay it after
reconnecting, together with the last timestamp observed per target so the
replay resumes where delivery stopped.

A DuplexChannel holds this state for one concern (commands or
notifications). Watermarks are only ever removed by the StalenessReaper.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from datetime import timezone
from typing import Callable
from typing import Iterable
from typing import Optional

from hivewatch import keys


logger = logging.getLogger(__name__)


CLOCK = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ChannelSnapshot(object):
    """Consistent copy of a channel's state."""

    pairs: frozenset[keys.DuplexPair]
    """Recorded (target, name) pairs."""

    watermarks: dict[keys.SCOPE, datetime]
    """Last observed timestamp per target."""


class DuplexChannel(object):
    """Subscription set and watermark map for one duplex concern."""

    def __init__(self, concern: str, clock: Optional[CLOCK] = None) -> None:
        self.concern = concern
        self._clock = clock or utc_now
        self._lock = threading.RLock()
        self._pairs: set[keys.DuplexPair] = set()
        self._watermarks: dict[keys.SCOPE, datetime] = {}

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    def record_subscription(
        self,
        timestamp: Optional[datetime] = None,
        names: Optional[Iterable[str]] = None,
        targets: Optional[Iterable[str]] = None,
    ) -> None:
        """
        Record a subscription that was made over the duplex channel.

        Args:
            timestamp (datetime): Start timestamp. Defaults to now.
            names (Iterable[str]): Filter names. None or empty records the
                wildcard marker for every name.
            targets (Iterable[str]): Target identifiers. None means all.
        Notes:
            Watermarks are first-write-wins: a target that already has one
            keeps it.
        """
        names = list(names or ()) or None
        scopes = keys.expand_scopes(targets)
        with self._lock:
            start = timestamp or self._clock()
            for scope in scopes:
                if names is None:
                    self._pairs.add(keys.DuplexPair(scope, None))
                else:
                    for name in names:
                        self._pairs.add(keys.DuplexPair(scope, name))
                self._watermarks.setdefault(scope, start)
        logger.debug(
            f"Recorded duplex {self.concern} subscription for: "
            f"{scopes} {names if names is not None else '*'}"
        )

    def record_unsubscription(
        self,
        names: Optional[Iterable[str]],
        targets: Optional[Iterable[str]] = None,
    ) -> None:
        """
        Forget pairs so they are not replayed on reconnect. None or empty
        `names` removes the wildcard marker. Watermarks are left for the
        reaper.
        """
        names = list(names or ()) or None
        with self._lock:
            for scope in keys.expand_scopes(targets):
                if names is None:
                    self._pairs.discard(keys.DuplexPair(scope, None))
                else:
                    for name in names:
                        self._pairs.discard(keys.DuplexPair(scope, name))

    def update_watermark(self, target: keys.SCOPE, timestamp: datetime) -> bool:
        """
        Advance the watermark of `target`. Never moves it backwards.

        Returns:
            bool: True if the stored watermark changed.
        """
        with self._lock:
            current = self._watermarks.get(target)
            if current is not None and timestamp <= current:
                return False
            self._watermarks[target] = timestamp
            return True

    def watermark(self, target: keys.SCOPE) -> Optional[datetime]:
        with self._lock:
            return self._watermarks.get(target)

    def snapshot(self) -> ChannelSnapshot:
        with self._lock:
            return ChannelSnapshot(
                pairs=frozenset(self._pairs), watermarks=dict(self._watermarks)
            )

    def evict_stale(self) -> list[keys.SCOPE]:
        """
        Drop watermarks of targets no pair refers to anymore.

        The lock is held for the whole pass so a subscription recorded
        concurrently cannot lose the watermark it just established.
        """
        with self._lock:
            referenced = {pair.target for pair in self._pairs}
            stale = [target for target in self._watermarks if target not in referenced]
            for target in stale:
                del self._watermarks[target]
        return stale

    def __len__(self) -> int:
        with self._lock:
            return len(self._pairs)

    def to_dict(self) -> dict:
        snapshot = self.snapshot()
        pairs: dict[str, list[str]] = {}
        for pair in sorted(snapshot.pairs, key=lambda p: (repr(p.target), p.name or "")):
            pairs.setdefault(_scope_name(pair.target), []).append(pair.name or "*")
        return {
            "subscriptions": pairs,
            "watermarks": {
                _scope_name(target): stamp.isoformat()
                for target, stamp in snapshot.watermarks.items()
            },
        }


def _scope_name(scope: keys.SCOPE) -> str:
    return "*" if scope is keys.ALL_TARGETS else str(scope)


class DuplexLedger(object):
    """Everything needed to restore duplex subscriptions after reconnecting."""

    def __init__(self, clock: Optional[CLOCK] = None) -> None:
        self.commands = DuplexChannel("commands", clock)
        self.notifications = DuplexChannel("notifications", clock)

        self._command_updates: dict[int, str] = {}
        self._command_updates_lock = threading.RLock()

    @property
    def channels(self) -> tuple[DuplexChannel, DuplexChannel]:
        return self.commands, self.notifications

    # -----Command Updates-----------------------------------------------------

    def record_command_update(self, command_id: int, target: str) -> None:
        """Remember that an update for `command_id` on `target` is awaited."""
        with self._command_updates_lock:
            self._command_updates[command_id] = target

    def remove_command_update(self, command_id: int) -> bool:
        """Stop awaiting `command_id`. Returns False if it was not recorded."""
        with self._command_updates_lock:
            return self._command_updates.pop(command_id, None) is not None

    def remove_command_update_if(self, command_id: int, target: str) -> bool:
        """Remove the entry only if it still maps to `target`."""
        with self._command_updates_lock:
            if self._command_updates.get(command_id) != target:
                return False
            del self._command_updates[command_id]
            return True

    def pending_command_updates(self) -> dict[int, str]:
        with self._command_updates_lock:
            return dict(self._command_updates)

    # -----Introspection API---------------------------------------------------

    def to_dict(self) -> dict:
        return {
            "commands": self.commands.to_dict(),
            "notifications": self.notifications.to_dict(),
            "command_updates": {
                str(command_id): target
                for command_id, target in sorted(self.pending_command_updates().items())
            },
        }
