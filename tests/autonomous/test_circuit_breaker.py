"""Tests for the circuit breaker."""

import pytest

from yolo.autonomous.circuit_breaker import CircuitBreaker, ErrorWindow
from yolo.autonomous.models import ControlSignal, OutcomeEvent, PauseReason, RunState
from yolo.notifications import Channel

from fakes import make_settings

SETTINGS = make_settings(breaker_window_size=100, breaker_failure_ratio=0.05)


def ok(n):
    return OutcomeEvent(succeeded=True, source=f"task:ok{n}")


def bad(n):
    return OutcomeEvent(succeeded=False, source=f"task:bad{n}")


def test_error_window_ratio_uses_window_size():
    window = ErrorWindow([bad(1), bad(2), ok(3)], size=100)
    assert window.failures == 2
    assert window.failure_ratio == pytest.approx(0.02)
    assert not window.should_trip(0.05)
    assert ErrorWindow([bad(i) for i in range(5)], size=100).should_trip(0.05)


@pytest.fixture
def breaker(store, notifier):
    store.apply_signal_sync(ControlSignal.START, settings=SETTINGS)
    return CircuitBreaker(store, notifier)


@pytest.mark.asyncio
async def test_trips_at_five_percent(breaker, store, notifier, sink):
    for i in range(95):
        assert await breaker.record(ok(i), SETTINGS) is False
    for i in range(4):
        assert await breaker.record(bad(i), SETTINGS) is False
    assert (await store.get_run_state())[0] == RunState.ACTIVE

    assert await breaker.record(bad(4), SETTINGS) is True
    assert await store.get_run_state() == (RunState.PAUSED, PauseReason.CIRCUIT_BREAKER)

    await notifier.drain()
    assert len(sink.on(Channel.CRITICAL)) == 1


@pytest.mark.asyncio
async def test_old_failures_fall_out_of_window(breaker, store):
    for i in range(4):
        await breaker.record(bad(i), SETTINGS)
    for i in range(100):
        await breaker.record(ok(i), SETTINGS)
    assert (await breaker.window(SETTINGS)).failures == 0
    assert await breaker.record(bad(99), SETTINGS) is False


@pytest.mark.asyncio
async def test_does_not_auto_resume(breaker, store):
    for i in range(5):
        await breaker.record(bad(i), SETTINGS)
    assert (await store.get_run_state())[0] == RunState.PAUSED

    for i in range(200):
        await breaker.record(ok(i), SETTINGS)
    assert await store.get_run_state() == (RunState.PAUSED, PauseReason.CIRCUIT_BREAKER)


@pytest.mark.asyncio
async def test_trip_while_paused_only_alerts(store, notifier, sink):
    store.apply_signal_sync(ControlSignal.START)
    store.apply_signal_sync(ControlSignal.PAUSE)
    breaker = CircuitBreaker(store, notifier)

    assert await breaker.trip("rollback failed") is False
    assert await store.get_run_state() == (RunState.PAUSED, PauseReason.HUMAN_OVERRIDE)
    await notifier.drain()
    assert sink.on(Channel.CRITICAL)


@pytest.mark.asyncio
async def test_reset_clears_window(breaker):
    for i in range(3):
        await breaker.record(bad(i), SETTINGS)
    await breaker.reset()
    assert (await breaker.window(SETTINGS)).failures == 0
