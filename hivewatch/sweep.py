"""
Pull-based command update sweep.

Over the duplex channel, command updates are pushed by the server, but any
update that happened while the connection was down is never pushed again.
The sweep asks for the current state of every awaited command and delivers
those that have been answered.

Delivery is best-effort. An entry is removed only after its command was
actually put on the delivery queue; a full queue or a failed status check
leaves it for the next sweep.
"""

import logging
import queue
from typing import Any
from typing import Callable
from typing import Optional

from hivewatch import handlers
from hivewatch import transport
from hivewatch.ledger import DuplexLedger
from hivewatch.scheduling import PeriodicTask
from hivewatch.settings import SubscriptionSettings


logger = logging.getLogger(__name__)


def has_status(command: Any) -> bool:
    """A command is answered once the device has set its status."""
    return getattr(command, "status", None) is not None


class CommandUpdateSweep(object):
    """Checks awaited commands and delivers the answered ones."""

    def __init__(
        self,
        ledger: DuplexLedger,
        status_client: transport.StatusClient,
        delivery: Optional[queue.Queue] = None,
        settings: Optional[SubscriptionSettings] = None,
        is_terminal: Callable[[Any], bool] = has_status,
    ) -> None:
        self._settings = settings or SubscriptionSettings()
        self._ledger = ledger
        self._status_client = status_client
        self.delivery = (
            delivery
            if delivery is not None
            else queue.Queue(maxsize=self._settings.command_update_queue_size)
        )
        self._is_terminal = is_terminal
        self._exception_handler: Optional[handlers.SWEEP_EXCEPTION_HANDLER] = (
            handlers.log_and_continue_sweep_exception
        )
        self._task: Optional[PeriodicTask] = None

    def set_exception_handler(
        self, handler: Optional[handlers.SWEEP_EXCEPTION_HANDLER]
    ) -> None:
        """
        Set the handler for failed status checks.

        Args:
            Optional[handlers.SWEEP_EXCEPTION_HANDLER]:
                Callable with signature (int, Exception) -> bool.
                Returns True to abandon the sweep, False to continue.
                Pass None to re-raise exceptions.
        """
        self._exception_handler = handler

    def sweep(self) -> list[int]:
        """
        Check every awaited command once.

        Returns:
            list[int]: Identifiers of the commands delivered by this pass.
        """
        delivered = []
        # No lock is held during the status checks; entries recorded while
        # the sweep runs are picked up next time.
        for command_id, target in self._ledger.pending_command_updates().items():
            path = transport.command_path(target, command_id)
            try:
                command = self._status_client.fetch(path)
            except Exception as e:
                if self._exception_handler is None:
                    raise
                if self._exception_handler(command_id, e):
                    break
                continue

            if command is None or not self._is_terminal(command):
                continue

            if self._deliver(command_id, command):
                self._ledger.remove_command_update_if(command_id, target)
                delivered.append(command_id)

        if delivered:
            logger.info(f"Delivered {len(delivered)} command update(s)")
        return delivered

    def _deliver(self, command_id: int, command: Any) -> bool:
        try:
            self.delivery.put(command, timeout=self._settings.delivery_timeout)
        except queue.Full:
            logger.warning(f"Unable to proceed command update {command_id}: queue is full")
            return False
        except Exception as e:
            logger.warning(f"Unable to proceed command update {command_id}: {e}")
            return False
        return True

    # -----Scheduling----------------------------------------------------------

    def start(self, interval: float) -> None:
        """Run sweep() every `interval` seconds until stop()."""
        if self._task is not None and self._task.running:
            return
        self._task = PeriodicTask("command-update-sweep", self.sweep, interval)
        self._task.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        if self._task is not None:
            self._task.stop(timeout)
