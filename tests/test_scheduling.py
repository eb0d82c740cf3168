"""Unit tests for the periodic background loop and settings."""

import threading

import pytest

from conftest import wait_until
from hivewatch import SubscriptionSettings
from hivewatch.scheduling import PeriodicTask


def test_periodic_task_repeats_until_stopped() -> None:
    ticks: list[int] = []
    task = PeriodicTask("ticker", lambda: ticks.append(1), 0.005)

    task.start()
    assert wait_until(lambda: len(ticks) >= 3)
    task.stop(1.0)
    stopped_at = len(ticks)

    assert not task.running
    assert len(ticks) == stopped_at


def test_stop_interrupts_long_wait() -> None:
    """Test that stop() does not wait for the interval to elapse."""
    task = PeriodicTask("sleepy", lambda: None, 3600)
    task.start()

    task.stop(1.0)

    assert not task.running


def test_failing_action_keeps_running() -> None:
    calls: list[int] = []

    def flaky() -> None:
        calls.append(1)
        raise RuntimeError("boom")

    task = PeriodicTask("flaky", flaky, 0.005)
    task.start()
    try:
        assert wait_until(lambda: len(calls) >= 2)
    finally:
        task.stop(1.0)


def test_run_immediately() -> None:
    ran = threading.Event()
    task = PeriodicTask("eager", ran.set, 3600, run_immediately=True)
    task.start()
    try:
        assert ran.wait(1.0)
    finally:
        task.stop(1.0)


def test_invalid_interval() -> None:
    with pytest.raises(ValueError):
        PeriodicTask("never", lambda: None, 0)


def test_settings_defaults_and_overrides() -> None:
    settings = SubscriptionSettings()

    assert settings.reaper_interval == 30 * 60
    assert settings.with_overrides(pool_size=2).pool_size == 2
    assert settings.pool_size == 50


@pytest.mark.parametrize(
    "overrides",
    [{"pool_size": 0}, {"wait_timeout": 0}, {"reaper_interval": -1}],
)
def test_settings_reject_invalid_values(overrides: dict) -> None:
    with pytest.raises(ValueError):
        SubscriptionSettings(**overrides)
