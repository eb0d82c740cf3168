"""
Staleness reaper for duplex watermarks.

Watermarks are created by subscribe calls and advanced by every delivered
event, but unsubscribing leaves them in place so that a quick
unsubscribe/resubscribe does not lose the resume point. The reaper
periodically drops the ones no subscription refers to anymore, bounding the
memory they use.
"""

import logging
from typing import Optional

from hivewatch import keys
from hivewatch.ledger import DuplexLedger
from hivewatch.scheduling import PeriodicTask
from hivewatch.settings import SubscriptionSettings


logger = logging.getLogger(__name__)


class StalenessReaper(object):
    def __init__(
        self, ledger: DuplexLedger, settings: Optional[SubscriptionSettings] = None
    ) -> None:
        self._ledger = ledger
        settings = settings or SubscriptionSettings()
        self._task = PeriodicTask("reaper", self.sweep, settings.reaper_interval)

    @property
    def running(self) -> bool:
        return self._task.running

    def sweep(self) -> dict[str, list[keys.SCOPE]]:
        """
        Run one pass over every channel.

        Returns:
            dict[str, list]: Evicted targets per channel concern.
        """
        logger.info("Cleaning duplex watermarks to avoid memory leak")
        evicted = {}
        for channel in self._ledger.channels:
            evicted[channel.concern] = channel.evict_stale()
            if evicted[channel.concern]:
                logger.debug(
                    f"Evicted {len(evicted[channel.concern])} stale "
                    f"{channel.concern} watermark(s)"
                )
        return evicted

    def start(self) -> None:
        self._task.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._task.stop(timeout)
