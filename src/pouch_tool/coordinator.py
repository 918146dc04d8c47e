"""Coordinador de sesiones: una sola sesión abierta entre dispositivos."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, TypeVar

from pouch_tool.display import DisplayEffects, build_snapshot
from pouch_tool.errors import LedgerConflictError, LedgerUnavailableError, Outcome
from pouch_tool.events import EventBus
from pouch_tool.inventory import InventoryEffects
from pouch_tool.kinetics import DEFAULT_MODEL, KineticsModel
from pouch_tool.ledger import ChangeFeed, ChangeHint, SessionLedger, SessionQuery
from pouch_tool.model import Session, new_session_id, utcnow
from pouch_tool.notifications import AlertPlanner

logger = logging.getLogger(__name__)

T = TypeVar("T")

ALREADY_IN_PROGRESS = "already in progress"
LEDGER_UNAVAILABLE = "ledger unavailable"


@dataclass(frozen=True)
class CoordinatorSettings:
    """Tunables for the coordinator."""

    echo_window_s: float = 5.0
    stale_grace_s: float = 30 * 60.0
    default_duration_s: float = 30 * 60.0
    source_durations_s: Mapping[str, float] = field(default_factory=dict)

    def duration_for(self, source: str | None) -> float:
        if source is not None and source in self.source_durations_s:
            return self.source_durations_s[source]
        return self.default_duration_s


@dataclass(frozen=True)
class StartResult:
    outcome: Outcome
    session: Session | None = None
    reason: str = ""


@dataclass(frozen=True)
class StopResult:
    outcome: Outcome
    session_id: str
    session: Session | None = None


@dataclass(frozen=True)
class ReconcileResult:
    """What one reconcile pass observed and did."""

    open_session: Session | None = None
    announced: tuple[str, ...] = ()
    deferred: tuple[str, ...] = ()
    ended: tuple[str, ...] = ()
    stale_closed: tuple[str, ...] = ()
    reasserted: tuple[str, ...] = ()
    anomaly: str | None = None
    failed: bool = False


class SessionCoordinator:
    """Owns start/stop/reconcile for one device.

    Every mutation runs read -> decide -> write under one ``asyncio.Lock``.
    Display, alert and event effects run after the lock is released and are
    best-effort: their failures are logged and never undo a ledger write.
    """

    def __init__(
        self,
        ledger: SessionLedger,
        display: DisplayEffects,
        *,
        device_id: str = "",
        model: KineticsModel = DEFAULT_MODEL,
        alerts: AlertPlanner | None = None,
        inventory: InventoryEffects | None = None,
        bus: EventBus | None = None,
        settings: CoordinatorSettings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._ledger = ledger
        self._display = display
        self._device_id = device_id
        self._model = model
        self._alerts = alerts
        self._inventory = inventory
        self.bus = bus or EventBus()
        self.settings = settings or CoordinatorSettings()
        self._clock = clock

        self._lock = asyncio.Lock()
        self._stopping: set[str] = set()
        self._announced: set[str] = set()
        self._stopped_locally: dict[str, datetime] = {}

    # -- start / stop -------------------------------------------------------

    async def start_session(
        self,
        nicotine_mg: float,
        planned_duration_s: float | None = None,
        start_time: datetime | None = None,
        source: str | None = None,
    ) -> StartResult:
        """Open a new session unless one is already open anywhere.

        Raises:
            ValueError: If ``nicotine_mg`` or the planned duration is not positive.
        """
        if nicotine_mg <= 0:
            raise ValueError(f"nicotine_mg must be positive, got {nicotine_mg}")
        planned = (
            planned_duration_s
            if planned_duration_s is not None
            else self.settings.duration_for(source)
        )
        if planned <= 0:
            raise ValueError(f"planned duration must be positive, got {planned}")

        now = self._clock()
        stale: list[Session] = []
        was_announced: set[str] = set()
        async with self._lock:
            try:
                current = await self._with_retry(
                    self._ledger.query, SessionQuery(open_only=True)
                )
                live, stale = await self._close_stale(current, now)
                was_announced = {s.id for s in stale} & self._announced
                self._announced -= was_announced
                if live:
                    logger.info("Start rejected: session %s is open", live[0].id)
                    result = StartResult(Outcome.REJECTED, reason=ALREADY_IN_PROGRESS)
                else:
                    candidate = Session(
                        id=new_session_id(),
                        nicotine_mg=float(nicotine_mg),
                        start_time=start_time or now,
                        planned_duration_s=float(planned),
                        created_at=now,
                        origin=self._device_id,
                        source=source,
                    )
                    stored = await self._with_retry(self._ledger.create, candidate)
                    self._announced.add(stored.id)
                    result = StartResult(Outcome.STARTED, session=stored)
            except LedgerConflictError as exc:
                logger.info("Start rejected by ledger: %s", exc)
                result = StartResult(Outcome.REJECTED, reason=ALREADY_IN_PROGRESS)
            except LedgerUnavailableError as exc:
                logger.warning("Start failed, ledger unavailable: %s", exc)
                result = StartResult(Outcome.REJECTED, reason=LEDGER_UNAVAILABLE)

        await self._after_stale(stale, announced=was_announced)
        if result.session is not None:
            await self._after_start(result.session)
        return result

    async def stop_session(
        self, session_id: str, stop_time: datetime | None = None
    ) -> StopResult:
        """Close ``session_id``. Overlapping or repeated calls are NOOP."""
        stop_at = stop_time or self._clock()
        async with self._lock:
            if session_id in self._stopping:
                logger.debug("Stop of %s already in progress", session_id)
                return StopResult(Outcome.NOOP, session_id)
            self._stopping.add(session_id)
            try:
                closed = await self._close_in_ledger(session_id, stop_at)
            except BaseException:
                self._stopping.discard(session_id)
                raise
            if closed is None:
                self._stopping.discard(session_id)
                return StopResult(Outcome.NOOP, session_id)
            self._stopped_locally[session_id] = closed.end_time or stop_at
            self._announced.discard(session_id)

        try:
            await self._effect("display end", self._display.mark_ended)
            if self._alerts is not None:
                self._sync_effect("cancel completion", self._alerts.cancel_completion, session_id)
            self.bus.emit_ended(session_id)
        finally:
            self._stopping.discard(session_id)
        return StopResult(Outcome.STOPPED, session_id, session=closed)

    async def stop_all_open(self) -> int:
        """Stop every open session; returns how many this call closed."""
        try:
            sessions = await self._with_retry(self._ledger.query, SessionQuery(open_only=True))
        except LedgerUnavailableError as exc:
            logger.warning("Cannot list open sessions: %s", exc)
            return 0
        results = await asyncio.gather(*(self.stop_session(s.id) for s in sessions))
        return sum(1 for r in results if r.outcome is Outcome.STOPPED)

    # -- reconcile ------------------------------------------------------------

    async def reconcile(self, hint: ChangeHint | None = None) -> ReconcileResult:
        """Bring local state in line with the ledger after any change."""
        now = self._clock()
        if hint is not None:
            logger.debug("Reconcile on %s change %s", hint.origin, ",".join(hint.session_ids))

        announce: Session | None = None
        deferred: list[str] = []
        reasserted: list[str] = []
        anomaly: str | None = None
        canonical: Session | None = None

        async with self._lock:
            try:
                current = await self._with_retry(
                    self._ledger.query, SessionQuery(open_only=True)
                )
            except LedgerUnavailableError as exc:
                logger.warning("Reconcile skipped, ledger unavailable: %s", exc)
                return ReconcileResult(failed=True)

            still_open: list[Session] = []
            for session in current:
                stopped_at = self._stopped_locally.get(session.id)
                if stopped_at is None:
                    still_open.append(session)
                    continue
                # A replica still shows a session this device already closed.
                try:
                    await self._with_retry(self._ledger.update, session.id, stopped_at)
                except LedgerUnavailableError as exc:
                    logger.warning("Could not re-assert stop of %s: %s", session.id, exc)
                reasserted.append(session.id)

            try:
                live, stale = await self._close_stale(still_open, now)
            except LedgerUnavailableError as exc:
                logger.warning("Stale cleanup failed: %s", exc)
                live, stale = still_open, []

            previously_announced = set(self._announced)
            open_ids = {s.id for s in live}
            stale_ids = {s.id for s in stale}
            ended = sorted(previously_announced - open_ids - stale_ids)
            self._announced -= set(ended) | stale_ids

            if len(live) > 1:
                canonical = min(live, key=lambda s: s.start_time)
                anomaly = f"{len(live)} open sessions; earliest is {canonical.id}"
            elif live:
                canonical = live[0]
                if canonical.id not in self._announced:
                    age = (now - (canonical.created_at or canonical.start_time)).total_seconds()
                    if self._device_id and canonical.origin == self._device_id:
                        # Started here by an earlier run; adopt without announcing.
                        self._announced.add(canonical.id)
                    elif age < self.settings.echo_window_s:
                        deferred.append(canonical.id)
                    else:
                        self._announced.add(canonical.id)
                        announce = canonical

            self._prune_local_stops(now)

        await self._after_stale(stale, announced=previously_announced)
        for session_id in ended:
            logger.info("Session %s ended elsewhere", session_id)
            await self._effect("display end", self._display.mark_ended)
            if self._alerts is not None:
                self._sync_effect("cancel completion", self._alerts.cancel_completion, session_id)
            self.bus.emit_ended(session_id, remote=True)
        if anomaly is not None:
            logger.warning("Ledger anomaly: %s", anomaly)
            self.bus.emit_anomaly(anomaly, canonical.id if canonical else None)
        if announce is not None:
            logger.info("Session %s started on another device", announce.id)
            await self._push_snapshot(announce)
            self.bus.emit_started(announce, remote=True)
        for session_id in deferred:
            logger.debug("Session %s is within the echo window; deferred", session_id)

        return ReconcileResult(
            open_session=canonical,
            announced=(announce.id,) if announce else (),
            deferred=tuple(deferred),
            ended=tuple(ended),
            stale_closed=tuple(s.id for s in stale),
            reasserted=tuple(reasserted),
            anomaly=anomaly,
        )

    async def follow(self, feed: ChangeFeed) -> None:
        """Reconcile once per change hint until ``feed`` closes."""
        async for hint in feed.listen():
            await self.reconcile(hint)

    # -- queries ------------------------------------------------------------

    async def is_active(self, session_id: str) -> bool:
        """True if the ledger shows ``session_id`` open and not stale.

        A stop acknowledged on this device wins over a replica that still
        shows the session open.
        """
        try:
            session = await self._with_retry(self._ledger.get, session_id)
        except LedgerUnavailableError as exc:
            logger.warning("is_active(%s) could not read ledger: %s", session_id, exc)
            return False
        if session is None or not session.is_open:
            return False
        if session_id in self._stopped_locally:
            logger.debug("is_active(%s): ledger shows open, stopped locally", session_id)
            return False
        return not self._is_stale(session, self._clock())

    async def open_session(self) -> Session | None:
        """Earliest open, non-stale session, if any."""
        sessions = await self._with_retry(self._ledger.query, SessionQuery(open_only=True))
        now = self._clock()
        for session in sessions:
            if session.id not in self._stopped_locally and not self._is_stale(session, now):
                return session
        return None

    async def refresh_display(self) -> bool:
        """Push a fresh snapshot for the announced open session."""
        try:
            session = await self.open_session()
        except LedgerUnavailableError as exc:
            logger.warning("Display refresh skipped: %s", exc)
            return False
        if session is None or session.id not in self._announced:
            return False
        await self._push_snapshot(session)
        return True

    async def reload_surfaces(self) -> None:
        await self._effect("surface reload", self._display.reload)

    # -- helpers ------------------------------------------------------------

    def _is_stale(self, session: Session, now: datetime) -> bool:
        limit = timedelta(seconds=session.planned_duration_s + self.settings.stale_grace_s)
        return now - session.start_time > limit

    async def _close_stale(
        self, sessions: list[Session], now: datetime
    ) -> tuple[list[Session], list[Session]]:
        """Split into (live, closed-as-stale). Must be called with the lock held."""
        live: list[Session] = []
        closed: list[Session] = []
        for session in sessions:
            if not self._is_stale(session, now):
                live.append(session)
                continue
            if await self._with_retry(self._ledger.update, session.id, session.planned_end):
                closed.append(session.closed_at(session.planned_end))
        return live, closed

    async def _after_stale(self, closed: list[Session], announced: set[str]) -> None:
        for session in closed:
            logger.warning(
                "Session %s left open past its window; closed at %s",
                session.id,
                session.end_time.isoformat() if session.end_time else "?",
            )
            if session.id in announced:
                await self._effect("display end", self._display.mark_ended)
            if self._alerts is not None:
                self._sync_effect("cancel completion", self._alerts.cancel_completion, session.id)
            self.bus.emit_stale_closed(session)

    async def _close_in_ledger(self, session_id: str, stop_at: datetime) -> Session | None:
        try:
            session = await self._with_retry(self._ledger.get, session_id)
            if session is None or not session.is_open:
                logger.debug("Stop of %s: not open", session_id)
                return None
            end = max(stop_at, session.start_time)
            if not await self._with_retry(self._ledger.update, session_id, end):
                return None
        except LedgerUnavailableError as exc:
            logger.warning("Stop of %s failed, ledger unavailable: %s", session_id, exc)
            return None
        return session.closed_at(end)

    async def _after_start(self, session: Session) -> None:
        logger.info("Session %s started (%smg)", session.id, session.nicotine_mg)
        await self._push_snapshot(session)
        if self._alerts is not None:
            self._sync_effect("completion alert", self._alerts.schedule_completion, session)
        if self._inventory is not None:
            self._sync_effect("inventory", self._inventory.pouch_logged, session)
        self.bus.emit_started(session)

    async def _push_snapshot(self, session: Session) -> None:
        snapshot = build_snapshot(session, self._clock(), self._model)
        await self._effect("display update", self._display.update, snapshot)

    def _prune_local_stops(self, now: datetime) -> None:
        horizon = now - timedelta(seconds=self._model.lookback_s)
        for session_id, stopped_at in list(self._stopped_locally.items()):
            if stopped_at < horizon:
                del self._stopped_locally[session_id]

    async def _with_retry(self, fn: Callable[..., Awaitable[T]], *args: Any) -> T:
        try:
            return await fn(*args)
        except LedgerUnavailableError as exc:
            logger.warning("Ledger unavailable (%s); retrying once", exc)
            return await fn(*args)

    async def _effect(self, what: str, fn: Callable[..., Awaitable[Any]], *args: Any) -> None:
        try:
            await fn(*args)
        except Exception:
            logger.exception("Effect '%s' failed", what)

    def _sync_effect(self, what: str, fn: Callable[..., Any], *args: Any) -> None:
        try:
            fn(*args)
        except Exception:
            logger.exception("Effect '%s' failed", what)
