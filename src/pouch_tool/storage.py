"""Persistencia SQLite para configuracion y alertas pendientes."""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime, time
from pathlib import Path
from typing import Any

from dateutil.parser import isoparse

from pouch_tool.model import UTC, Alert, Can, TargetRange

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS app_config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS pending_alerts (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    body TEXT NOT NULL,
    fire_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS cans (
    id TEXT PRIMARY KEY,
    brand TEXT NOT NULL,
    flavor TEXT NOT NULL DEFAULT '',
    strength_mg REAL NOT NULL DEFAULT 0,
    pouch_count INTEGER NOT NULL,
    initial_count INTEGER NOT NULL,
    barcode TEXT
);

CREATE TABLE IF NOT EXISTS inventory_alerts (
    can_id TEXT PRIMARY KEY,
    last_alert TEXT NOT NULL
);
"""

REMINDER_TYPES = ("disabled", "time", "level")


@dataclass(frozen=True)
class AppConfig:
    """Configuracion persistida de la app."""

    device_id: str = ""
    default_duration_minutes: int = 30
    source_durations: dict[str, int] = field(default_factory=dict)
    target_low: float = 2.5
    target_high: float = 3.2
    alert_margin: float = 0.2
    reminder_type: str = "disabled"
    reminder_interval_minutes: int = 60
    bedtime: str = "23:00"
    sleep_target_mg: float = 0.5
    export_dir: str = ""
    low_inventory_threshold: int = 5

    def target_range(self) -> TargetRange:
        return TargetRange(
            low=self.target_low, high=self.target_high, alert_margin=self.alert_margin
        )

    def planned_duration_s(self, source: str | None = None) -> float:
        """Absorption window for ``source``, falling back to the default."""
        minutes = self.default_duration_minutes
        if source is not None and source in self.source_durations:
            minutes = self.source_durations[source]
        return float(minutes * 60)

    def bedtime_time(self) -> time:
        return parse_clock(self.bedtime) or time(23, 0)


class SQLiteStore:
    """Repositorio SQLite para la app."""

    def __init__(self, db_path: Path) -> None:
        """Create store and ensure schema exists."""
        self._db_path = db_path
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.executescript(SCHEMA_SQL)
            conn.commit()

    def load_config(self) -> AppConfig:
        """Devuelve configuracion guardada o defaults.

        The device id is generated and persisted the first time.
        """
        with self._connect() as conn:
            rows = conn.execute("SELECT key, value FROM app_config").fetchall()
        values = {row["key"]: row["value"] for row in rows}
        defaults = AppConfig()

        device_id = values.get("device_id") or ""
        if not device_id:
            device_id = uuid.uuid4().hex
            self._save_values({"device_id": device_id})

        reminder_type = values.get("reminder_type", defaults.reminder_type)
        if reminder_type not in REMINDER_TYPES:
            reminder_type = defaults.reminder_type

        return AppConfig(
            device_id=device_id,
            default_duration_minutes=_parse_int(
                values.get("default_duration_minutes"), defaults.default_duration_minutes
            ),
            source_durations=_parse_json_durations(values.get("source_durations")),
            target_low=_parse_float(values.get("target_low"), defaults.target_low),
            target_high=_parse_float(values.get("target_high"), defaults.target_high),
            alert_margin=_parse_float(values.get("alert_margin"), defaults.alert_margin),
            reminder_type=reminder_type,
            reminder_interval_minutes=_parse_int(
                values.get("reminder_interval_minutes"), defaults.reminder_interval_minutes
            ),
            bedtime=values.get("bedtime", defaults.bedtime),
            sleep_target_mg=_parse_float(
                values.get("sleep_target_mg"), defaults.sleep_target_mg
            ),
            export_dir=values.get("export_dir", defaults.export_dir),
            low_inventory_threshold=_parse_int(
                values.get("low_inventory_threshold"), defaults.low_inventory_threshold
            ),
        )

    def save_config(self, config: AppConfig) -> None:
        """Guarda la configuracion en tabla key/value."""
        config.target_range()
        self._save_values(
            {
                "device_id": config.device_id,
                "default_duration_minutes": str(config.default_duration_minutes),
                "source_durations": json.dumps(config.source_durations, sort_keys=True),
                "target_low": repr(config.target_low),
                "target_high": repr(config.target_high),
                "alert_margin": repr(config.alert_margin),
                "reminder_type": config.reminder_type,
                "reminder_interval_minutes": str(config.reminder_interval_minutes),
                "bedtime": config.bedtime,
                "sleep_target_mg": repr(config.sleep_target_mg),
                "export_dir": config.export_dir,
                "low_inventory_threshold": str(config.low_inventory_threshold),
            }
        )

    def _save_values(self, payload: dict[str, str]) -> None:
        with self._connect() as conn:
            conn.executemany(
                """
                INSERT INTO app_config(key, value) VALUES(?, ?)
                ON CONFLICT(key) DO UPDATE SET value=excluded.value
                """,
                payload.items(),
            )
            conn.commit()

    # Cola local de notificaciones: el CLI no entrega, solo registra.

    def schedule(self, alert: Alert) -> None:
        """Insert or replace a pending alert (same id replaces)."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO pending_alerts(id, title, body, fire_at) VALUES(?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    title=excluded.title, body=excluded.body, fire_at=excluded.fire_at
                """,
                (alert.id, alert.title, alert.body, alert.fire_at.astimezone(UTC).isoformat()),
            )
            conn.commit()
        logger.info("Alert %s scheduled for %s", alert.id, alert.fire_at.isoformat())

    def cancel(self, alert_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM pending_alerts WHERE id = ?", (alert_id,))
            conn.commit()

    def pending_alerts(self) -> list[Alert]:
        """Pending alerts ordered by fire time."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id, title, body, fire_at FROM pending_alerts ORDER BY fire_at"
            ).fetchall()
        return [
            Alert(
                id=str(row["id"]),
                title=str(row["title"]),
                body=str(row["body"]),
                fire_at=isoparse(row["fire_at"]),
            )
            for row in rows
        ]

    def due_alerts(self, now: datetime) -> list[Alert]:
        return [a for a in self.pending_alerts() if a.fire_at <= now]

    # Inventario de latas.

    def save_can(self, can: Can) -> None:
        """Insert or replace a can."""
        if can.pouch_count < 0:
            raise ValueError(f"pouch_count must not be negative, got {can.pouch_count}")
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO cans(id, brand, flavor, strength_mg, pouch_count, initial_count, barcode)
                VALUES(?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    brand=excluded.brand, flavor=excluded.flavor,
                    strength_mg=excluded.strength_mg, pouch_count=excluded.pouch_count,
                    initial_count=excluded.initial_count, barcode=excluded.barcode
                """,
                (
                    can.id,
                    can.brand,
                    can.flavor,
                    can.strength_mg,
                    can.pouch_count,
                    can.initial_count or can.pouch_count,
                    can.barcode,
                ),
            )
            conn.commit()

    def get_can(self, can_id: str) -> Can | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM cans WHERE id = ?", (can_id,)).fetchone()
        return _row_to_can(row) if row is not None else None

    def list_cans(self, active_only: bool = True) -> list[Can]:
        """Cans ordered by brand; ``active_only`` hides empty ones."""
        sql = "SELECT * FROM cans"
        if active_only:
            sql += " WHERE pouch_count > 0"
        with self._connect() as conn:
            rows = conn.execute(sql + " ORDER BY brand, flavor, id").fetchall()
        return [_row_to_can(row) for row in rows]

    def take_pouch(self, can_id: str) -> Can | None:
        """Decrement ``can_id`` by one pouch.

        Returns:
            The updated can, or None when the can is unknown or already empty.
        """
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE cans SET pouch_count = pouch_count - 1 WHERE id = ? AND pouch_count > 0",
                (can_id,),
            )
            conn.commit()
            if cur.rowcount == 0:
                return None
            row = conn.execute("SELECT * FROM cans WHERE id = ?", (can_id,)).fetchone()
        return _row_to_can(row)

    def last_inventory_alert(self, can_id: str) -> datetime | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT last_alert FROM inventory_alerts WHERE can_id = ?", (can_id,)
            ).fetchone()
        return isoparse(row["last_alert"]) if row is not None else None

    def record_inventory_alert(self, can_id: str, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO inventory_alerts(can_id, last_alert) VALUES(?, ?)
                ON CONFLICT(can_id) DO UPDATE SET last_alert=excluded.last_alert
                """,
                (can_id, at.astimezone(UTC).isoformat()),
            )
            conn.commit()

    def purge_inventory_alerts(self) -> int:
        """Drop alert records of cans that no longer exist."""
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM inventory_alerts WHERE can_id NOT IN (SELECT id FROM cans)"
            )
            conn.commit()
        return cur.rowcount


def _row_to_can(row: sqlite3.Row) -> Can:
    return Can(
        id=str(row["id"]),
        brand=str(row["brand"]),
        flavor=str(row["flavor"]),
        strength_mg=float(row["strength_mg"]),
        pouch_count=int(row["pouch_count"]),
        initial_count=int(row["initial_count"]),
        barcode=row["barcode"],
    )


def _parse_int(raw: str | None, default: int) -> int:
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _parse_float(raw: str | None, default: float) -> float:
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _parse_json_durations(raw: str | None) -> dict[str, int]:
    if not raw:
        return {}
    try:
        parsed: Any = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    if not isinstance(parsed, dict):
        return {}
    out: dict[str, int] = {}
    for key, value in parsed.items():
        try:
            out[str(key)] = int(value)
        except (TypeError, ValueError):
            continue
    return out


def parse_clock(raw: str) -> time | None:
    """Parse ``HH:MM`` into a time; None if malformed."""
    try:
        hours, minutes = (int(part) for part in raw.strip().split(":", 1))
        return time(hours, minutes)
    except ValueError:
        return None
