from __future__ import annotations

from dataclasses import replace
from datetime import timedelta
from pathlib import Path

from conftest import T0, FakeClock, RecordingSink, make_session
from pouch_tool.inventory import CanInventory, inventory_alert_id
from pouch_tool.model import Can, Session
from pouch_tool.storage import SQLiteStore


def _session_from(can_id: str | None) -> Session:
    return replace(make_session(T0), source=can_id)


def test_pouch_logged_decrements_can(tmp_path: Path, sink: RecordingSink) -> None:
    store = SQLiteStore(tmp_path / "pouch.sqlite3")
    store.save_can(Can(id="c1", brand="Zyn", flavor="Mint", strength_mg=6.0, pouch_count=20))
    inventory = CanInventory(store, sink)

    can = inventory.pouch_logged(_session_from("c1"))

    assert can is not None
    assert can.pouch_count == 19
    assert can.initial_count == 20
    assert sink.alerts == {}


def test_pouch_logged_without_source_or_stock(tmp_path: Path, sink: RecordingSink) -> None:
    store = SQLiteStore(tmp_path / "pouch.sqlite3")
    store.save_can(Can(id="empty", brand="Velo", pouch_count=0))
    inventory = CanInventory(store, sink)

    assert inventory.pouch_logged(_session_from(None)) is None
    assert inventory.pouch_logged(_session_from("unknown")) is None
    assert inventory.pouch_logged(_session_from("empty")) is None
    empty = store.get_can("empty")
    assert empty is not None and empty.pouch_count == 0


def test_low_stock_alert_respects_cooldown(
    tmp_path: Path, sink: RecordingSink, clock: FakeClock
) -> None:
    store = SQLiteStore(tmp_path / "pouch.sqlite3")
    store.save_can(Can(id="c1", brand="Zyn", flavor="Mint", pouch_count=6))
    inventory = CanInventory(store, sink, threshold=5, clock=clock)

    inventory.pouch_logged(_session_from("c1"))
    alert = sink.alerts[inventory_alert_id("c1")]
    assert alert.title == "Low Inventory Alert"
    assert alert.body == "Zyn Mint has only 5 pouches remaining"
    assert alert.fire_at == clock.now
    assert store.last_inventory_alert("c1") == clock.now

    clock.advance(3600)
    inventory.pouch_logged(_session_from("c1"))
    assert sink.alerts[inventory_alert_id("c1")].body.endswith("only 5 pouches remaining")

    clock.advance(24 * 3600)
    inventory.pouch_logged(_session_from("c1"))
    assert sink.alerts[inventory_alert_id("c1")].body.endswith("only 3 pouches remaining")


def test_low_stock_threshold_zero_disables_alerts(
    tmp_path: Path, sink: RecordingSink
) -> None:
    store = SQLiteStore(tmp_path / "pouch.sqlite3")
    store.save_can(Can(id="c1", brand="Zyn", pouch_count=2))
    inventory = CanInventory(store, sink, threshold=0)

    inventory.pouch_logged(_session_from("c1"))
    assert sink.alerts == {}


def test_can_alert_after_cooldown(tmp_path: Path, sink: RecordingSink) -> None:
    store = SQLiteStore(tmp_path / "pouch.sqlite3")
    inventory = CanInventory(store, sink)
    assert inventory.can_alert("c1", T0)

    store.record_inventory_alert("c1", T0 - timedelta(hours=25))
    assert inventory.can_alert("c1", T0)

    store.record_inventory_alert("c1", T0 - timedelta(hours=1))
    assert not inventory.can_alert("c1", T0)


def test_list_cans_and_purge_alert_records(tmp_path: Path) -> None:
    store = SQLiteStore(tmp_path / "pouch.sqlite3")
    store.save_can(Can(id="b", brand="Zyn", pouch_count=3))
    store.save_can(Can(id="a", brand="Velo", pouch_count=0))
    store.record_inventory_alert("b", T0)
    store.record_inventory_alert("gone", T0)

    assert [c.id for c in store.list_cans()] == ["b"]
    assert [c.id for c in store.list_cans(active_only=False)] == ["a", "b"]
    assert store.purge_inventory_alerts() == 1
    assert store.last_inventory_alert("gone") is None
    assert store.last_inventory_alert("b") == T0
