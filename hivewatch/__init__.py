"""
# Device Hub Subscriptions

Client-side bookkeeping for long-running watches against a device hub.

Long-poll subscriptions are tracked by the LongPollRegistry, which keeps at
most one live watch task per subscription key. Subscriptions made over the
duplex connection are recorded in the DuplexLedger and replayed by the
ResubscriptionCoordinator after reconnecting. HiveSubscriptions ties them
together.
"""

from hivewatch.errors import HiveWatchError
from hivewatch.errors import RegistryClosedError
from hivewatch.handles import WatchHandle
from hivewatch.handles import WatchState
from hivewatch.keys import ALL_TARGETS
from hivewatch.keys import CommandUpdateKey
from hivewatch.keys import DuplexPair
from hivewatch.keys import SubscriptionKey
from hivewatch.ledger import DuplexChannel
from hivewatch.ledger import DuplexLedger
from hivewatch.manager import HiveSubscriptions
from hivewatch.reaper import StalenessReaper
from hivewatch.registry import LongPollRegistry
from hivewatch.registry import WatchTable
from hivewatch.resubscribe import ResubscriptionCoordinator
from hivewatch.settings import SubscriptionSettings
from hivewatch.sweep import CommandUpdateSweep
from hivewatch.transport import ResultKind
from hivewatch.transport import Role
from hivewatch.transport import WatchRequest


__version__ = "0.1.0"

__all__ = [
    "ALL_TARGETS",
    "CommandUpdateKey",
    "CommandUpdateSweep",
    "DuplexChannel",
    "DuplexLedger",
    "DuplexPair",
    "HiveSubscriptions",
    "HiveWatchError",
    "LongPollRegistry",
    "RegistryClosedError",
    "ResubscriptionCoordinator",
    "ResultKind",
    "Role",
    "StalenessReaper",
    "SubscriptionKey",
    "SubscriptionSettings",
    "WatchHandle",
    "WatchRequest",
    "WatchState",
    "WatchTable",
]
