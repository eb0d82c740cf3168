"""
Subscription key data structures for the subscription manager.

Defines the value types used as map keys throughout the package. A
SubscriptionKey identifies one long-poll subscription (scope x names), a
CommandUpdateKey identifies a one-shot command-update watch and a DuplexPair
is a single member of a duplex subscription set.

The ALL_TARGETS sentinel stands for "every target the principal can see". It
is a dedicated object rather than a reserved string so that it can never be
confused with a real target identifier.
"""

from dataclasses import dataclass
from typing import Iterable
from typing import Optional
from typing import Union


class _AllTargets(object):
    """Singleton scope meaning "all targets"."""

    _instance: Optional["_AllTargets"] = None

    def __new__(cls) -> "_AllTargets":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "ALL_TARGETS"

    def __reduce__(self) -> str:
        return "ALL_TARGETS"


ALL_TARGETS = _AllTargets()

SCOPE = Union[str, _AllTargets]
"""A concrete target identifier or the ALL_TARGETS sentinel."""


@dataclass(frozen=True)
class SubscriptionKey(object):
    """Identity of a long-poll subscription."""

    scope: SCOPE
    """Target identifier, or ALL_TARGETS."""

    names: frozenset[str]
    """Filter names. Empty means every name."""

    @classmethod
    def of(cls, scope: SCOPE, names: Optional[Iterable[str]]) -> "SubscriptionKey":
        """Build a key, normalizing names to a frozenset."""
        return cls(scope=scope, names=frozenset(names or ()))

    @property
    def is_all_targets(self) -> bool:
        return self.scope is ALL_TARGETS

    def __str__(self) -> str:
        names = ",".join(sorted(self.names)) or "*"
        return f"{self.scope!r}[{names}]"


@dataclass(frozen=True)
class CommandUpdateKey(object):
    """Identity of a command-update watch."""

    target: str
    """The device the command was sent to."""

    command_id: int
    """Identifier of the command being watched."""

    def __str__(self) -> str:
        return f"{self.target}/{self.command_id}"


@dataclass(frozen=True)
class DuplexPair(object):
    """One (target, name) member of a duplex subscription set."""

    target: SCOPE
    """Target identifier, or ALL_TARGETS."""

    name: Optional[str]
    """Filter name. None is the wildcard marker for every name."""

    @property
    def is_wildcard(self) -> bool:
        return self.name is None


def expand_keys(
    names: Optional[Iterable[str]], targets: Optional[Iterable[str]]
) -> list[SubscriptionKey]:
    """
    Resolve the keys addressed by a (names, targets) call.

    No targets means the single sentinel key. Otherwise there is one key per
    target, in the order given, without duplicates. `names` is consumed once,
    so a one-shot iterator applies to every target.
    """
    name_set = frozenset(names or ())
    if targets is None:
        return [SubscriptionKey(ALL_TARGETS, name_set)]

    keys: list[SubscriptionKey] = []
    for target in targets:
        key = SubscriptionKey(target, name_set)
        if key not in keys:
            keys.append(key)
    return keys


def expand_scopes(targets: Optional[Iterable[str]]) -> list[SCOPE]:
    """Targets as scopes, with ALL_TARGETS standing in for None."""
    if targets is None:
        return [ALL_TARGETS]
    return list(dict.fromkeys(targets))
