"""
Configuration for the subscription manager.

All tunables live on one frozen SubscriptionSettings instance that is handed
to each component. Defaults match the device-hub client's historical values.
"""

import dataclasses
from dataclasses import dataclass
from typing import Any


DEFAULT_POOL_SIZE = 50
DEFAULT_WAIT_TIMEOUT = 60.0
DEFAULT_AWAIT_TERMINATION_TIMEOUT = 10.0
DEFAULT_REAPER_INTERVAL = 30 * 60.0
DEFAULT_DELIVERY_TIMEOUT = 1.0
DEFAULT_COMMAND_UPDATE_QUEUE_SIZE = 100


@dataclass(frozen=True)
class SubscriptionSettings(object):
    """Tunables shared by the registry, ledger, reaper and sweep."""

    pool_size: int = DEFAULT_POOL_SIZE
    """Maximum number of watch tasks running in parallel."""

    wait_timeout: float = DEFAULT_WAIT_TIMEOUT
    """Seconds the server may hold one long-poll request open."""

    await_termination_timeout: float = DEFAULT_AWAIT_TERMINATION_TIMEOUT
    """
    Grace period, in seconds, for each of the two shutdown phases: draining
    in-flight tasks, then waiting for cancelled ones.
    """

    reaper_interval: float = DEFAULT_REAPER_INTERVAL
    """Seconds between staleness reaper passes."""

    delivery_timeout: float = DEFAULT_DELIVERY_TIMEOUT
    """Seconds the poll sweep may block on a full delivery queue."""

    command_update_queue_size: int = DEFAULT_COMMAND_UPDATE_QUEUE_SIZE
    """Bound of the default command-update delivery queue."""

    def __post_init__(self) -> None:
        if self.pool_size < 1:
            raise ValueError(f"pool_size must be positive, got {self.pool_size}")
        for name in ("wait_timeout", "await_termination_timeout", "reaper_interval"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")

    def with_overrides(self, **kwargs: Any) -> "SubscriptionSettings":
        """Returns a copy with the given attributes replaced."""
        return dataclasses.replace(self, **kwargs)
