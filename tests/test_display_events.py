from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest

from conftest import T0, make_session
from pouch_tool.display import JsonSnapshotDisplay, build_snapshot
from pouch_tool.events import EventBus, EventType, SessionEvent


def test_build_snapshot_mid_session() -> None:
    session = make_session(T0, mg=6.0, planned_s=1800)
    snapshot = build_snapshot(session, T0 + timedelta(seconds=900))
    assert snapshot.level == pytest.approx(0.9)
    assert snapshot.peak == pytest.approx(1.8)
    assert snapshot.label == "6mg pouch"
    assert snapshot.status == "Absorbing..."
    assert snapshot.effective_end == T0 + timedelta(seconds=1800)


def test_build_snapshot_after_window_is_complete() -> None:
    session = make_session(T0)
    snapshot = build_snapshot(session, T0 + timedelta(hours=1))
    assert snapshot.status == "Complete"
    assert snapshot.level == pytest.approx(1.8)


@pytest.mark.asyncio
async def test_json_display_writes_and_marks_ended(tmp_path: Path) -> None:
    display = JsonSnapshotDisplay(tmp_path / "widget" / "snapshot.json")
    assert display.read() == {"running": False}

    session = make_session(T0, session_id="a1")
    await display.update(build_snapshot(session, T0 + timedelta(minutes=5)))
    payload = display.read()
    assert payload["running"] is True
    assert payload["session_id"] == "a1"
    assert display.effective_end() == T0 + timedelta(minutes=30)

    await display.mark_ended()
    assert display.read()["running"] is False
    assert display.read()["session_id"] == "a1"

    await display.reload()
    assert display.reloads == 1


def test_json_display_ignores_corrupt_file(tmp_path: Path) -> None:
    path = tmp_path / "snapshot.json"
    path.write_text("{broken", encoding="utf-8")
    display = JsonSnapshotDisplay(path)
    assert display.read() == {"running": False}
    assert display.effective_end() is None


def test_event_bus_isolates_failing_listeners() -> None:
    bus = EventBus()
    seen: list[SessionEvent] = []

    def _broken(_: SessionEvent) -> None:
        raise RuntimeError("listener bug")

    bus.subscribe(_broken)
    unsubscribe = bus.subscribe(seen.append)
    session = make_session(T0)

    bus.emit_started(session)
    bus.emit_ended(session.id, remote=True)
    unsubscribe()
    bus.emit_anomaly("two open")

    assert [e.type for e in seen] == [
        EventType.SESSION_STARTED,
        EventType.REMOTE_SESSION_ENDED,
    ]
    assert seen[0].session == session
