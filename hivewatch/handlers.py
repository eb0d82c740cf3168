"""
Exception handling utilities for the subscription manager.

Failures can happen at three sites that have no caller to raise to: inside a
background watch task, inside a transport call made while replaying duplex
subscriptions, and inside a status check made by the command-update sweep.
Each site accepts a handler with the signature (subject, exception) -> bool.

Built-in handlers cover the common patterns: stop with logging
(stop_and_log_*), log and continue (log_and_continue_*), silently continue
(silent_*), and collect exceptions for batch processing (collect_*).

What STOP means depends on the site:
    - watch tasks: drop the dead entry from its table.
    - resubscribe: abandon the rest of the replay.
    - sweep: abandon the rest of the sweep.
"""

import logging
import sys
from typing import Any
from typing import Callable

from hivewatch import keys


logger = logging.getLogger(__name__)


WATCH_EXCEPTION_HANDLER = Callable[[Any, BaseException], bool]
"""
Signature for watch task exception handlers.

Receives the failed key (SubscriptionKey or CommandUpdateKey) and the
exception the task finished with.
"""

RESUBSCRIBE_EXCEPTION_HANDLER = Callable[[keys.DuplexPair, Exception], bool]
"""Signature for handlers of failed duplex resubscribe calls."""

SWEEP_EXCEPTION_HANDLER = Callable[[int, Exception], bool]
"""Signature for handlers of failed command status checks."""

STOP = True
CONTINUE = False


def _describe(exception: BaseException) -> str:
    return f"{exception.__class__.__name__}: {exception}"


# -----Watch Task Exception Handlers-------------------------------------------


def stop_and_log_watch_exception(key: Any, exception: BaseException) -> bool:
    """Log the failure with traceback and drop the dead entry."""
    logger.error(
        f"Exception in watch task:\n"
        f"  Key:       {key}\n"
        f"  Exception: {_describe(exception)}",
        exc_info=(type(exception), exception, exception.__traceback__),
    )
    return STOP


def log_and_continue_watch_exception(key: Any, exception: BaseException) -> bool:
    """
    Log the failure and keep the entry. It is no longer live, so the next
    subscribe call for the key restarts it.
    """
    logger.warning(f"Watch task failed (entry kept): {key}: {_describe(exception)}")
    return CONTINUE


def silent_watch_exception(_: Any, __: BaseException) -> bool:
    """Silently ignore watch task failures."""
    return CONTINUE


watch_exceptions_caught = []


def collect_watch_exception(key: Any, exception: BaseException) -> bool:
    """
    Collect watch failures for batch processing.
    This appends to hivewatch.handlers.watch_exceptions_caught which is a list.
    """
    watch_exceptions_caught.append(
        {
            "key": str(key),
            "exception": _describe(exception),
        }
    )
    return CONTINUE


# -----Resubscribe Exception Handlers------------------------------------------


def stop_and_log_resubscribe_exception(
    pair: keys.DuplexPair, exception: Exception
) -> bool:
    """Log the failed call and abandon the rest of the replay."""
    logger.error(
        f"Exception while resubscribing:\n"
        f"  Target:    {pair.target!r}\n"
        f"  Name:      {pair.name}\n"
        f"  Exception: {_describe(exception)}",
        exc_info=True,
    )
    return STOP


def log_and_continue_resubscribe_exception(
    pair: keys.DuplexPair, exception: Exception
) -> bool:
    """Log the failed call and replay the remaining pairs."""
    logger.warning(
        f"Resubscribe failed (continuing): "
        f"{pair.target!r}/{pair.name}: {_describe(exception)}"
    )
    return CONTINUE


def silent_resubscribe_exception(_: keys.DuplexPair, __: Exception) -> bool:
    """Silently ignore failed resubscribe calls."""
    return CONTINUE


resubscribe_exceptions_caught = []


def collect_resubscribe_exception(pair: keys.DuplexPair, exception: Exception) -> bool:
    """Collect failed resubscribe calls for batch processing."""
    resubscribe_exceptions_caught.append(
        {
            "target": repr(pair.target),
            "name": pair.name,
            "exception": _describe(exception),
            "exc_info": sys.exc_info(),
        }
    )
    return CONTINUE


# -----Sweep Exception Handlers------------------------------------------------


def stop_and_log_sweep_exception(command_id: int, exception: Exception) -> bool:
    """Log the failed status check and abandon the rest of the sweep."""
    logger.error(
        f"Exception while checking command status:\n"
        f"  Command:   {command_id}\n"
        f"  Exception: {_describe(exception)}",
        exc_info=True,
    )
    return STOP


def log_and_continue_sweep_exception(command_id: int, exception: Exception) -> bool:
    """Log the failed status check; the entry is retried on the next sweep."""
    logger.warning(
        f"Status check failed (continuing): command {command_id}: "
        f"{_describe(exception)}"
    )
    return CONTINUE


def silent_sweep_exception(_: int, __: Exception) -> bool:
    """Silently ignore failed status checks."""
    return CONTINUE
