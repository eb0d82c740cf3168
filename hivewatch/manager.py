"""
Subscription manager facade.

HiveSubscriptions wires the long-poll registry, the duplex ledger, the
reaper, the command update sweep and the resubscription coordinator together
around one SubscriptionSettings instance, and owns their lifetimes.
"""

import json
import logging
import os
from datetime import datetime
from typing import Any
from typing import Iterable
from typing import Mapping
from typing import Optional
from typing import Union

from hivewatch import keys
from hivewatch import transport
from hivewatch.ledger import CLOCK
from hivewatch.ledger import DuplexLedger
from hivewatch.reaper import StalenessReaper
from hivewatch.registry import LongPollRegistry
from hivewatch.resubscribe import ResubscriptionCoordinator
from hivewatch.settings import SubscriptionSettings
from hivewatch.sweep import CommandUpdateSweep


logger = logging.getLogger(__name__)


class HiveSubscriptions(object):
    """
    All subscribe/unsubscribe logic of a device-hub client.

    Long-poll subscriptions are managed through subscribe_*/unsubscribe_*.
    Duplex subscriptions are made by the duplex client itself and recorded
    here through record_*, so that on_connected() can replay them.

    Use start() to begin the periodic watermark cleanup and shutdown() to
    stop every background thread; or use the instance as a context manager.
    """

    def __init__(
        self,
        watch_transport: transport.WatchTransport,
        duplex_transport: Optional[transport.DuplexTransport] = None,
        status_client: Optional[transport.StatusClient] = None,
        settings: Optional[SubscriptionSettings] = None,
        command_update_queue: Optional[Any] = None,
        clock: Optional[CLOCK] = None,
    ) -> None:
        self.settings = settings or SubscriptionSettings()
        self.registry = LongPollRegistry(watch_transport, self.settings)
        self.ledger = DuplexLedger(clock)
        self.reaper = StalenessReaper(self.ledger, self.settings)

        self.sweep: Optional[CommandUpdateSweep] = None
        if status_client is not None:
            self.sweep = CommandUpdateSweep(
                self.ledger, status_client, command_update_queue, self.settings
            )

        self.coordinator: Optional[ResubscriptionCoordinator] = None
        if duplex_transport is not None:
            self.coordinator = ResubscriptionCoordinator(
                self.ledger, duplex_transport, self.sweep
            )

    def __enter__(self) -> "HiveSubscriptions":
        self.start()
        return self

    def __exit__(self, *_: Any) -> None:
        self.shutdown()

    # -----Long Polling--------------------------------------------------------

    def subscribe_commands(
        self,
        headers: Optional[Mapping[str, str]],
        timestamp: Optional[datetime],
        names: Optional[Iterable[str]],
        targets: Optional[Iterable[str]] = None,
    ) -> list[keys.SubscriptionKey]:
        return self.registry.subscribe_commands(headers, timestamp, names, targets)

    def unsubscribe_commands(
        self, names: Optional[Iterable[str]], targets: Optional[Iterable[str]] = None
    ) -> None:
        self.registry.unsubscribe_commands(names, targets)

    def subscribe_notifications(
        self,
        headers: Optional[Mapping[str, str]],
        timestamp: Optional[datetime],
        names: Optional[Iterable[str]],
        targets: Optional[Iterable[str]] = None,
    ) -> list[keys.SubscriptionKey]:
        return self.registry.subscribe_notifications(headers, timestamp, names, targets)

    def unsubscribe_notifications(
        self, names: Optional[Iterable[str]], targets: Optional[Iterable[str]] = None
    ) -> None:
        self.registry.unsubscribe_notifications(names, targets)

    def subscribe_command_update(
        self, target: str, command_id: int
    ) -> Optional[keys.CommandUpdateKey]:
        return self.registry.subscribe_command_update(target, command_id)

    def unsubscribe_command_update(
        self, command_id: int, target: Optional[str] = None
    ) -> None:
        self.registry.unsubscribe_command_update(command_id, target)

    # -----Duplex Records------------------------------------------------------

    def record_command_subscription(
        self,
        timestamp: Optional[datetime] = None,
        names: Optional[Iterable[str]] = None,
        targets: Optional[Iterable[str]] = None,
    ) -> None:
        self.ledger.commands.record_subscription(timestamp, names, targets)

    def record_command_unsubscription(
        self, names: Optional[Iterable[str]], targets: Optional[Iterable[str]] = None
    ) -> None:
        self.ledger.commands.record_unsubscription(names, targets)

    def record_notification_subscription(
        self,
        timestamp: Optional[datetime] = None,
        names: Optional[Iterable[str]] = None,
        targets: Optional[Iterable[str]] = None,
    ) -> None:
        self.ledger.notifications.record_subscription(timestamp, names, targets)

    def record_notification_unsubscription(
        self, names: Optional[Iterable[str]], targets: Optional[Iterable[str]] = None
    ) -> None:
        self.ledger.notifications.record_unsubscription(names, targets)

    def record_command_update_subscription(self, command_id: int, target: str) -> None:
        self.ledger.record_command_update(command_id, target)

    def record_command_update_unsubscription(self, command_id: int) -> None:
        self.ledger.remove_command_update(command_id)

    def update_command_watermark(self, target: keys.SCOPE, timestamp: datetime) -> bool:
        """Call for every command received over the duplex channel."""
        return self.ledger.commands.update_watermark(target, timestamp)

    def update_notification_watermark(
        self, target: keys.SCOPE, timestamp: datetime
    ) -> bool:
        """Call for every notification received over the duplex channel."""
        return self.ledger.notifications.update_watermark(target, timestamp)

    # -----Reconnection--------------------------------------------------------

    def on_connected(self, role: transport.Role) -> int:
        """
        Replay duplex subscriptions after (re)connecting.

        Returns:
            int: Number of subscribe calls issued.
        """
        if self.coordinator is None:
            logger.debug("No duplex transport configured, nothing to resubscribe")
            return 0
        return self.coordinator.resubscribe_all(role)

    def request_command_updates(self) -> list[int]:
        """Run the command update sweep once."""
        if self.sweep is None:
            return []
        return self.sweep.sweep()

    # -----Lifetime------------------------------------------------------------

    def start(self) -> None:
        self.reaper.start()

    def shutdown(self, timeout: Optional[float] = None) -> bool:
        """
        Kill the threads watching commands, command updates and
        notifications, then stop the reaper and the sweep.

        Returns:
            bool: False if some watch tasks had to be abandoned.
        """
        terminated = self.registry.shutdown(timeout)
        self.reaper.stop(timeout)
        if self.sweep is not None:
            self.sweep.stop(timeout)
        return terminated

    # -----Introspection API---------------------------------------------------

    def get_statistics(self) -> dict[str, object]:
        """
        Get overall subscription statistics.

        Example:
            {
                "live_command_subscriptions": 2,
                "live_notification_subscriptions": 1,
                "live_command_update_subscriptions": 0,
                "duplex_command_subscriptions": 3,
                "duplex_notification_subscriptions": 0,
                "pending_command_updates": 1,
                "tracked_watermarks": 4,
            }
        """
        return {
            "live_command_subscriptions": len(self.registry.commands.live_keys()),
            "live_notification_subscriptions": len(
                self.registry.notifications.live_keys()
            ),
            "live_command_update_subscriptions": len(
                self.registry.command_updates.live_keys()
            ),
            "duplex_command_subscriptions": len(self.ledger.commands),
            "duplex_notification_subscriptions": len(self.ledger.notifications),
            "pending_command_updates": len(self.ledger.pending_command_updates()),
            "tracked_watermarks": sum(
                len(channel.snapshot().watermarks) for channel in self.ledger.channels
            ),
        }

    def to_dict(self) -> dict:
        """Convert the manager state to a dictionary."""
        return {
            "long_poll": self.registry.to_dict(),
            "duplex": self.ledger.to_dict(),
        }

    def to_string(self) -> str:
        """Returns a string representation of the manager state."""
        return json.dumps(self.to_dict(), indent=4)

    def export(self, filepath: Union[str, os.PathLike]) -> None:
        """Export manager state to filepath."""
        with open(filepath, "w") as outfile:
            json.dump(self.to_dict(), outfile, indent=4)
