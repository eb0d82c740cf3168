"""
Collaborator contracts for the subscription manager.

The package performs no network I/O itself. It depends on three
collaborators, described here as Protocols:

    WatchTransport   - runs one blocking long-poll round trip.
    DuplexTransport  - issues subscribe commands over the persistent channel.
    StatusClient     - fetches one entity synchronously.

Paths are opaque strings built from target and command identifiers; the
transport owns the wire format and deserialization.
"""

import enum
import threading
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from typing import Any
from typing import Iterable
from typing import Mapping
from typing import Optional
from typing import Protocol

from hivewatch import keys


class ResultKind(enum.Enum):
    """The kind of entity a watch or subscription yields."""

    COMMAND = "command"
    NOTIFICATION = "notification"
    COMMAND_UPDATE = "command_update"


class Role(enum.Enum):
    """Authentication role of the principal the client runs as."""

    USER = "user"
    ACCESS_KEY = "access_key"
    DEVICE = "device"

    @property
    def is_client(self) -> bool:
        """True for principals that subscribe per target and name."""
        return self in (Role.USER, Role.ACCESS_KEY)


@dataclass(frozen=True)
class WatchRequest(object):
    """Everything the transport needs to run one long-poll cycle."""

    path: str
    """Resource path, e.g. '/device/d1/command/poll'."""

    kind: ResultKind
    """What the poll returns."""

    scope: keys.SCOPE = keys.ALL_TARGETS
    """The target being watched, or ALL_TARGETS."""

    names: frozenset[str] = frozenset()
    """Filter names. Empty means every name."""

    headers: Mapping[str, str] = field(default_factory=dict)
    """Extra request headers narrowing the sample."""

    timestamp: Optional[datetime] = None
    """Resume point; entities at or before it are not returned."""

    wait_timeout: Optional[float] = None
    """Seconds the server may hold the request open."""


class WatchTransport(Protocol):
    def watch(self, request: WatchRequest, cancelled: threading.Event) -> Any:
        """
        Perform one long-poll round trip and deliver what arrives.

        Must return promptly once `cancelled` is set. Exceptions raised here
        complete the watch handle; they are never propagated to subscribers.
        """


class DuplexTransport(Protocol):
    def subscribe(
        self,
        role: Role,
        kind: ResultKind,
        timestamp: Optional[datetime],
        names: Optional[Iterable[str]],
        target: keys.SCOPE,
    ) -> None:
        """Subscribe a client principal to `names` of `target`."""

    def subscribe_self(self, role: Role, timestamp: Optional[datetime]) -> None:
        """Subscribe a device principal to its own commands."""


class StatusClient(Protocol):
    def fetch(self, path: str) -> Any:
        """Fetch one entity. The result exposes a `status` attribute."""


# -----Paths-------------------------------------------------------------------


def poll_path(kind: ResultKind, scope: keys.SCOPE) -> str:
    """Long-poll path for commands or notifications of one scope."""
    if kind is ResultKind.COMMAND_UPDATE:
        raise ValueError("Command update paths need a command id")

    if scope is keys.ALL_TARGETS:
        return f"/device/{kind.value}/poll"
    return f"/device/{scope}/{kind.value}/poll"


def command_update_poll_path(key: keys.CommandUpdateKey) -> str:
    return f"/device/{key.target}/command/{key.command_id}/poll"


def command_path(target: str, command_id: int) -> str:
    return f"/device/{target}/command/{command_id}"
