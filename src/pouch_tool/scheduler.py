"""Cadencias de refresco en primer plano y despertares en segundo plano."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol

from pouch_tool.coordinator import ReconcileResult, SessionCoordinator
from pouch_tool.events import EventType, SessionEvent

logger = logging.getLogger(__name__)

TickCallback = Callable[[], Any]

_START_EVENTS = (EventType.SESSION_STARTED, EventType.REMOTE_SESSION_STARTED)


@dataclass(frozen=True)
class RefreshCadence:
    """Intervals in seconds."""

    countdown_s: float = 1.0
    display_floor_s: float = 15.0
    surface_reload_s: float = 120.0
    background_soon_s: float = 30.0
    background_active_s: float = 90.0
    background_idle_s: float = 180.0


class RateLimiter:
    """Allows at most one call per ``floor_s`` seconds."""

    def __init__(self, floor_s: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.floor_s = floor_s
        self._clock = clock
        self._last: float | None = None

    def allow(self) -> bool:
        now = self._clock()
        if self._last is not None and now - self._last < self.floor_s:
            return False
        self._last = now
        return True

    def reset(self) -> None:
        self._last = None


class TickHandle:
    """Cancellable handle over a ticker task. ``cancel`` is idempotent."""

    def __init__(self, task: asyncio.Task[None]) -> None:
        self._task = task

    @property
    def active(self) -> bool:
        return not self._task.done()

    def cancel(self) -> None:
        if not self._task.done():
            self._task.cancel()


class Ticker:
    """Calls ``callback`` every ``interval_s`` until cancelled."""

    def __init__(self, name: str, interval_s: float, callback: TickCallback) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        self.name = name
        self.interval_s = interval_s
        self._callback = callback
        self.ticks = 0

    def start(self) -> TickHandle:
        return TickHandle(asyncio.create_task(self._run(), name=f"ticker:{self.name}"))

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_s)
            self.ticks += 1
            try:
                result = self._callback()
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Tick '%s' failed", self.name)


class WakeRequester(Protocol):
    """Host facility that wakes the process once after a delay."""

    def request(self, delay_s: float, wake: Callable[[], Awaitable[Any]]) -> None: ...

    def cancel(self) -> None: ...


class AsyncioWakeRequester:
    """Single pending wake on the running loop; each request replaces the last."""

    def __init__(self) -> None:
        self._handle: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self.requests = 0

    @property
    def pending(self) -> bool:
        return self._handle is not None and not self._handle.cancelled()

    def request(self, delay_s: float, wake: Callable[[], Awaitable[Any]]) -> None:
        self.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(max(0.0, delay_s), self._fire, wake)
        self.requests += 1

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self, wake: Callable[[], Awaitable[Any]]) -> None:
        self._handle = None
        task = asyncio.ensure_future(wake())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)


class RefreshScheduler:
    """Drives the coordinator from timers.

    Subscribes to the coordinator's events: a session start (local or
    remote) pulls the next background wake in to the short cadence, and the
    wake that follows re-arms at that cadence once more.
    """

    def __init__(
        self,
        coordinator: SessionCoordinator,
        *,
        cadence: RefreshCadence | None = None,
        wake: WakeRequester | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._coordinator = coordinator
        self.cadence = cadence or RefreshCadence()
        self._wake = wake
        self._limiter = RateLimiter(self.cadence.display_floor_s, clock)
        self._handles: dict[str, TickHandle] = {}
        self.display_refreshes = 0
        self._just_started = False
        self._waking = False
        self._unsubscribe = coordinator.bus.subscribe(self._on_event)

    def close(self) -> None:
        """Stop tickers and detach from the coordinator's events."""
        self.stop_foreground()
        self._unsubscribe()

    def _on_event(self, event: SessionEvent) -> None:
        if event.type not in _START_EVENTS:
            return
        self._just_started = True
        # A wake in progress re-arms on its own when it finishes.
        if not self._waking:
            self.arm_background(True, just_started=True)

    # -- foreground -----------------------------------------------------------

    def start_foreground(self, on_countdown: TickCallback | None = None) -> None:
        """Start countdown, display refresh and surface reload tickers."""
        if on_countdown is not None:
            self._start("countdown", self.cadence.countdown_s, on_countdown)
        self._start("display", self.cadence.display_floor_s, self._display_tick)
        self._start("reload", self.cadence.surface_reload_s, self._coordinator.reload_surfaces)

    def stop_foreground(self) -> None:
        for handle in self._handles.values():
            handle.cancel()
        self._handles.clear()

    def is_running(self, kind: str) -> bool:
        handle = self._handles.get(kind)
        return handle is not None and handle.active

    def _start(self, kind: str, interval_s: float, callback: TickCallback) -> TickHandle:
        previous = self._handles.pop(kind, None)
        if previous is not None:
            previous.cancel()
        handle = Ticker(kind, interval_s, callback).start()
        self._handles[kind] = handle
        return handle

    async def _display_tick(self) -> None:
        if not self._limiter.allow():
            return
        if await self._coordinator.refresh_display():
            self.display_refreshes += 1

    # -- background -----------------------------------------------------------

    def next_background_delay(self, has_open: bool, just_started: bool = False) -> float:
        if just_started:
            return self.cadence.background_soon_s
        if has_open:
            return self.cadence.background_active_s
        return self.cadence.background_idle_s

    def arm_background(self, has_open: bool, just_started: bool = False) -> float | None:
        """Request the next wake. Returns the delay, or None without a requester."""
        if self._wake is None:
            return None
        delay = self.next_background_delay(has_open, just_started)
        self._wake.request(delay, self.run_background_wake)
        logger.debug("Next background wake in %.0fs", delay)
        return delay

    async def run_background_wake(self) -> ReconcileResult | None:
        """One reconcile and one display refresh, then re-arm.

        The next wake is armed even if this pass fails or is cancelled. It
        uses the short cadence when a session started since the last pass.
        """
        has_open = False
        self._waking = True
        try:
            result = await self._coordinator.reconcile()
            has_open = result.open_session is not None
            if result.failed:
                logger.warning("Background reconcile failed; will retry next wake")
            await self._coordinator.refresh_display()
            return result
        finally:
            self._waking = False
            just_started, self._just_started = self._just_started, False
            self.arm_background(has_open or just_started, just_started)
