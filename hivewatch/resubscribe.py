"""
Replays duplex subscriptions after the connection is re-established.

Each recorded pair is replayed with its target's watermark as the resume
point. The replay works from a snapshot: the channel lock is released before
the first transport call, so it is safe to call from inside a
connection-established callback, even one that records new subscriptions.
"""

import logging
from datetime import datetime
from typing import Optional

from hivewatch import handlers
from hivewatch import keys
from hivewatch import transport
from hivewatch.ledger import ChannelSnapshot
from hivewatch.ledger import DuplexLedger
from hivewatch.sweep import CommandUpdateSweep


logger = logging.getLogger(__name__)

# Passed to the exception handler when a device's own subscription fails.
SELF_PAIR = keys.DuplexPair(keys.ALL_TARGETS, None)


def _ordered(pairs: frozenset[keys.DuplexPair]) -> list[keys.DuplexPair]:
    return sorted(pairs, key=lambda p: (repr(p.target), p.name or ""))


class ResubscriptionCoordinator(object):
    def __init__(
        self,
        ledger: DuplexLedger,
        duplex: transport.DuplexTransport,
        sweep: Optional[CommandUpdateSweep] = None,
    ) -> None:
        self._ledger = ledger
        self._duplex = duplex
        self._sweep = sweep
        self._exception_handler: Optional[handlers.RESUBSCRIBE_EXCEPTION_HANDLER] = (
            handlers.log_and_continue_resubscribe_exception
        )

    def set_exception_handler(
        self, handler: Optional[handlers.RESUBSCRIBE_EXCEPTION_HANDLER]
    ) -> None:
        """
        Set the handler for failed transport calls during a replay.

        Args:
            Optional[handlers.RESUBSCRIBE_EXCEPTION_HANDLER]:
                Callable with signature (DuplexPair, Exception) -> bool.
                Returns True to abandon the replay, False to continue.
                Pass None to re-raise exceptions.
        """
        self._exception_handler = handler

    def resubscribe_all(self, role: transport.Role) -> int:
        """
        Replay every recorded subscription for a principal with `role`, then
        run the command update sweep if one is attached.

        Returns:
            int: Number of subscribe calls issued.
        """
        issued = self.resubscribe_commands(role) + self.resubscribe_notifications(role)
        if self._sweep is not None:
            self._sweep.sweep()
        return issued

    def resubscribe_commands(self, role: transport.Role) -> int:
        snapshot = self._ledger.commands.snapshot()
        if not snapshot.pairs:
            return 0

        if role.is_client:
            return self._replay(role, transport.ResultKind.COMMAND, snapshot)

        # A device has one implicit target, itself: one call covers every
        # recorded pair. Resume from the oldest watermark so nothing is missed.
        since = self._earliest(snapshot)
        logger.debug(f"Resubscribing device for its own commands since {since}")
        if self._call(SELF_PAIR, self._duplex.subscribe_self, role, since) is None:
            return 0
        return 1

    def resubscribe_notifications(self, role: transport.Role) -> int:
        # Devices send notifications, they never subscribe to them.
        if not role.is_client:
            return 0

        snapshot = self._ledger.notifications.snapshot()
        if not snapshot.pairs:
            return 0
        return self._replay(role, transport.ResultKind.NOTIFICATION, snapshot)

    def _replay(
        self,
        role: transport.Role,
        kind: transport.ResultKind,
        snapshot: ChannelSnapshot,
    ) -> int:
        issued = 0
        for pair in _ordered(snapshot.pairs):
            names = None if pair.is_wildcard else [pair.name]
            outcome = self._call(
                pair,
                self._duplex.subscribe,
                role,
                kind,
                snapshot.watermarks.get(pair.target),
                names,
                pair.target,
            )
            if outcome is handlers.STOP:
                break
            if outcome is None:
                issued += 1
        logger.debug(f"Resubscribed {issued} {kind.value} subscription(s)")
        return issued

    def _call(self, pair: keys.DuplexPair, method, *args) -> Optional[bool]:
        """
        Invoke a transport method.

        Returns:
            Optional[bool]: None on success, otherwise the exception
                handler's verdict.
        """
        try:
            method(*args)
        except Exception as e:
            if self._exception_handler is None:
                raise
            return bool(self._exception_handler(pair, e))
        return None

    @staticmethod
    def _earliest(snapshot: ChannelSnapshot) -> Optional[datetime]:
        stamps = [
            snapshot.watermarks[pair.target]
            for pair in snapshot.pairs
            if pair.target in snapshot.watermarks
        ]
        return min(stamps) if stamps else None
