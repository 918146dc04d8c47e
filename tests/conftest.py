"""Fakes and fixtures shared by the coordinator/scheduler tests."""

from __future__ import annotations

import asyncio
from collections import Counter
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from pouch_tool.errors import LedgerUnavailableError
from pouch_tool.events import EventBus, SessionEvent
from pouch_tool.ledger import SessionLedger, SessionQuery, SQLiteLedger
from pouch_tool.model import UTC, Alert, DisplaySnapshot, Session

T0 = datetime(2025, 3, 10, 9, 0, tzinfo=UTC)


class FakeClock:
    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class RecordingDisplay:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.updates: list[DisplaySnapshot] = []
        self.ended = 0
        self.reloads = 0

    async def update(self, snapshot: DisplaySnapshot) -> None:
        await asyncio.sleep(0)
        if self.fail:
            raise RuntimeError("display offline")
        self.updates.append(snapshot)

    async def mark_ended(self) -> None:
        await asyncio.sleep(0)
        if self.fail:
            raise RuntimeError("display offline")
        self.ended += 1

    async def reload(self) -> None:
        self.reloads += 1


class RecordingSink:
    def __init__(self) -> None:
        self.alerts: dict[str, Alert] = {}
        self.cancelled: list[str] = []

    def schedule(self, alert: Alert) -> None:
        self.alerts[alert.id] = alert

    def cancel(self, alert_id: str) -> None:
        self.cancelled.append(alert_id)
        self.alerts.pop(alert_id, None)


class FlakyLedger(SessionLedger):
    """Delegates to a real ledger; fails the next N calls of chosen methods."""

    def __init__(self, inner: SQLiteLedger) -> None:
        super().__init__()
        self.inner = inner
        self.changes = inner.changes
        self.failures: Counter[str] = Counter()
        self.calls: Counter[str] = Counter()
        self.stale_open: list[Session] | None = None

    def _maybe_fail(self, name: str) -> None:
        self.calls[name] += 1
        if self.failures[name] > 0:
            self.failures[name] -= 1
            raise LedgerUnavailableError(f"{name} timed out")

    async def create(self, session: Session) -> Session:
        self._maybe_fail("create")
        return await self.inner.create(session)

    async def update(self, session_id: str, end_time: datetime) -> bool:
        self._maybe_fail("update")
        return await self.inner.update(session_id, end_time)

    async def get(self, session_id: str) -> Session | None:
        self._maybe_fail("get")
        return await self.inner.get(session_id)

    async def query(self, query: SessionQuery) -> list[Session]:
        self._maybe_fail("query")
        if query.open_only and self.stale_open is not None:
            return list(self.stale_open)
        return await self.inner.query(query)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def display() -> RecordingDisplay:
    return RecordingDisplay()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "pouch.sqlite3"


@pytest.fixture
def ledger(db_path: Path) -> SQLiteLedger:
    return SQLiteLedger(db_path)


@pytest.fixture
def events() -> tuple[EventBus, list[SessionEvent]]:
    bus = EventBus()
    seen: list[SessionEvent] = []
    bus.subscribe(seen.append)
    return bus, seen


def make_session(
    start: datetime,
    *,
    mg: float = 6.0,
    planned_s: float = 1800.0,
    end: datetime | None = None,
    created_at: datetime | None = None,
    session_id: str | None = None,
    origin: str = "other-device",
) -> Session:
    return Session(
        id=session_id or f"s-{start.isoformat()}-{mg}",
        nicotine_mg=mg,
        start_time=start,
        planned_duration_s=planned_s,
        end_time=end,
        created_at=created_at or start,
        origin=origin,
    )


def by_type(seen: list[SessionEvent], kind: Any) -> list[SessionEvent]:
    return [e for e in seen if e.type is kind]
