"""Exceptions raised by the subscription manager."""


class HiveWatchError(Exception):
    """Base class for subscription manager errors."""


class RegistryClosedError(HiveWatchError):
    """Raised when a watch task is submitted after shutdown has begun."""
