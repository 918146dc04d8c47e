from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import Any

import pytest

from conftest import FakeClock, RecordingDisplay, make_session
from pouch_tool.coordinator import ReconcileResult, SessionCoordinator
from pouch_tool.events import EventBus
from pouch_tool.ledger import SQLiteLedger
from pouch_tool.scheduler import (
    AsyncioWakeRequester,
    RateLimiter,
    RefreshCadence,
    RefreshScheduler,
    Ticker,
)


class _Monotonic:
    def __init__(self) -> None:
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value


class _RecordingWake:
    def __init__(self) -> None:
        self.delays: list[float] = []

    def request(self, delay_s: float, wake: Callable[[], Awaitable[Any]]) -> None:
        self.delays.append(delay_s)

    def cancel(self) -> None:
        return None


class _ExplodingCoordinator:
    def __init__(self) -> None:
        self.bus = EventBus()

    async def reconcile(self) -> ReconcileResult:
        raise RuntimeError("boom")

    async def refresh_display(self) -> bool:
        return False


def test_default_cadence_values() -> None:
    cadence = RefreshCadence()
    assert cadence.countdown_s == 1.0
    assert cadence.display_floor_s == 15.0
    assert cadence.surface_reload_s == 120.0
    assert (cadence.background_soon_s, cadence.background_active_s, cadence.background_idle_s) == (
        30.0,
        90.0,
        180.0,
    )


def test_next_background_delay(ledger: SQLiteLedger, clock: FakeClock) -> None:
    scheduler = RefreshScheduler(SessionCoordinator(ledger, RecordingDisplay(), clock=clock))
    assert scheduler.next_background_delay(has_open=False) == 180.0
    assert scheduler.next_background_delay(has_open=True) == 90.0
    assert scheduler.next_background_delay(has_open=True, just_started=True) == 30.0


def test_rate_limiter_enforces_floor() -> None:
    mono = _Monotonic()
    limiter = RateLimiter(15.0, mono)
    assert limiter.allow()
    mono.value += 14.9
    assert not limiter.allow()
    mono.value += 0.2
    assert limiter.allow()
    limiter.reset()
    assert limiter.allow()


@pytest.mark.asyncio
async def test_ticker_runs_until_cancelled() -> None:
    calls: list[int] = []
    ticker = Ticker("count", 0.01, lambda: calls.append(1))
    handle = ticker.start()
    await asyncio.sleep(0.05)
    handle.cancel()
    handle.cancel()
    await asyncio.sleep(0)
    seen = len(calls)
    await asyncio.sleep(0.03)

    assert seen >= 1
    assert len(calls) == seen
    assert not handle.active


@pytest.mark.asyncio
async def test_ticker_survives_failing_callback() -> None:
    ticks: list[int] = []

    async def _flaky() -> None:
        ticks.append(1)
        if len(ticks) == 1:
            raise RuntimeError("first tick fails")

    handle = Ticker("flaky", 0.01, _flaky).start()
    await asyncio.sleep(0.05)
    handle.cancel()
    assert len(ticks) >= 2


@pytest.mark.asyncio
async def test_restarting_foreground_cancels_previous_tickers(
    ledger: SQLiteLedger, clock: FakeClock
) -> None:
    scheduler = RefreshScheduler(SessionCoordinator(ledger, RecordingDisplay(), clock=clock))
    scheduler.start_foreground(lambda: None)
    old = dict(scheduler._handles)
    scheduler.start_foreground(lambda: None)
    await asyncio.sleep(0)

    assert all(not handle.active for handle in old.values())
    assert scheduler.is_running("countdown")
    assert scheduler.is_running("display")
    assert scheduler.is_running("reload")

    scheduler.stop_foreground()
    await asyncio.sleep(0)
    assert not scheduler.is_running("countdown")


@pytest.mark.asyncio
async def test_display_tick_respects_floor(
    ledger: SQLiteLedger, clock: FakeClock
) -> None:
    display = RecordingDisplay()
    coordinator = SessionCoordinator(ledger, display, clock=clock)
    await ledger.apply_remote(make_session(clock.now - timedelta(minutes=1)))
    await coordinator.reconcile()
    mono = _Monotonic()
    scheduler = RefreshScheduler(coordinator, clock=mono)

    for _ in range(3):
        await scheduler._display_tick()
    assert scheduler.display_refreshes == 1

    mono.value += 15.0
    await scheduler._display_tick()
    assert scheduler.display_refreshes == 2
    assert len(display.updates) == 3


@pytest.mark.asyncio
async def test_background_wake_reconciles_and_rearms(
    ledger: SQLiteLedger, clock: FakeClock
) -> None:
    display = RecordingDisplay()
    coordinator = SessionCoordinator(ledger, display, clock=clock)
    wake = _RecordingWake()
    scheduler = RefreshScheduler(coordinator, wake=wake)

    result = await scheduler.run_background_wake()
    assert result is not None
    assert result.open_session is None
    assert wake.delays == [180.0]

    await ledger.apply_remote(make_session(clock.now - timedelta(minutes=1)))
    result = await scheduler.run_background_wake()
    assert result is not None
    assert result.open_session is not None
    # The remote start just announced pulls the next wake in.
    assert wake.delays == [180.0, 30.0]
    # One announce update plus one refresh.
    assert len(display.updates) == 2

    await scheduler.run_background_wake()
    assert wake.delays == [180.0, 30.0, 90.0]


@pytest.mark.asyncio
async def test_background_wake_rearms_even_when_pass_fails() -> None:
    wake = _RecordingWake()
    scheduler = RefreshScheduler(_ExplodingCoordinator(), wake=wake)  # type: ignore[arg-type]

    with pytest.raises(RuntimeError):
        await scheduler.run_background_wake()
    assert wake.delays == [180.0]


@pytest.mark.asyncio
async def test_asyncio_wake_requester_keeps_single_pending_wake() -> None:
    calls: list[int] = []

    async def _wake() -> None:
        calls.append(1)

    requester = AsyncioWakeRequester()
    requester.request(0.01, _wake)
    requester.request(0.01, _wake)
    assert requester.pending
    await asyncio.sleep(0.05)

    assert calls == [1]
    assert requester.requests == 2
    assert not requester.pending

    requester.request(0.01, _wake)
    requester.cancel()
    await asyncio.sleep(0.03)
    assert calls == [1]


@pytest.mark.asyncio
async def test_local_start_arms_soon_wake(ledger: SQLiteLedger, clock: FakeClock) -> None:
    coordinator = SessionCoordinator(ledger, RecordingDisplay(), device_id="phone", clock=clock)
    wake = _RecordingWake()
    scheduler = RefreshScheduler(coordinator, wake=wake)

    await coordinator.start_session(6.0, planned_duration_s=1800)
    assert wake.delays == [30.0]

    await scheduler.run_background_wake()
    assert wake.delays == [30.0, 30.0]

    await scheduler.run_background_wake()
    assert wake.delays == [30.0, 30.0, 90.0]


@pytest.mark.asyncio
async def test_closed_scheduler_ignores_later_starts(
    ledger: SQLiteLedger, clock: FakeClock
) -> None:
    coordinator = SessionCoordinator(ledger, RecordingDisplay(), clock=clock)
    wake = _RecordingWake()
    scheduler = RefreshScheduler(coordinator, wake=wake)
    scheduler.close()

    await coordinator.start_session(6.0, planned_duration_s=1800)
    assert wake.delays == []
