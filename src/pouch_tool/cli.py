"""CLI para registrar pouches, consultar el nivel proyectado y exportar historial."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import dataclasses
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path

from dateutil import tz
from dateutil.parser import isoparse

from pouch_tool.coordinator import CoordinatorSettings, SessionCoordinator
from pouch_tool.display import JsonSnapshotDisplay
from pouch_tool.errors import Outcome
from pouch_tool.excel_writer import ExcelLayout, write_history_xlsx
from pouch_tool.history import (
    daily_usage_summary,
    fill_missing_days,
    projection_to_frame,
    sessions_to_frame,
)
from pouch_tool.inventory import CanInventory
from pouch_tool.kinetics import DEFAULT_MODEL
from pouch_tool.ledger import SessionQuery, SQLiteLedger
from pouch_tool.model import Can, PlannedPouch, Session, utcnow
from pouch_tool.notifications import AlertPlanner
from pouch_tool.projection import DEFAULT_HORIZON, ProjectionEngine
from pouch_tool.scheduler import AsyncioWakeRequester, RefreshScheduler
from pouch_tool.storage import AppConfig, SQLiteStore, parse_clock

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_DEFAULT_DB = Path.home() / ".pouch_tool" / "pouch.sqlite3"


def setup_logging(verbose: bool = False, log_file: str | None = None) -> None:
    """Configure the root logger for console and optional file output."""
    level = logging.DEBUG if verbose else logging.WARNING
    root = logging.getLogger()
    root.setLevel(level)
    formatter = logging.Formatter(_LOG_FORMAT)
    if not root.handlers:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        root.addHandler(console_handler)
    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)


def parse_args() -> argparse.Namespace:
    """Parse command-line arguments.

    Returns:
        Parsed argparse namespace.
    """
    parser = argparse.ArgumentParser(
        description="Seguimiento de pouches de nicotina y nivel estimado en sangre."
    )
    parser.add_argument(
        "--db",
        default=str(_DEFAULT_DB),
        help="Base SQLite (default: ~/.pouch_tool/pouch.sqlite3).",
    )
    parser.add_argument("--verbose", action="store_true", help="Log en nivel DEBUG.")
    parser.add_argument("--log-file", default=None, help="Archivo de log adicional.")
    sub = parser.add_subparsers(dest="command", required=True)

    start = sub.add_parser("start", help="Registrar un pouch nuevo.")
    start.add_argument("--mg", type=float, required=True, help="Nicotina del pouch (mg).")
    start.add_argument("--minutes", type=float, default=None, help="Duración planeada.")
    start.add_argument("--source", default=None, help="Lata / producto.")
    start.add_argument("--at", default=None, help="Hora de inicio (ISO 8601).")

    stop = sub.add_parser("stop", help="Retirar el pouch activo.")
    stop.add_argument("--id", default=None, help="Id de sesión (default: la activa).")
    stop.add_argument("--at", default=None, help="Hora de retiro (ISO 8601).")

    sub.add_parser("status", help="Sesión activa y nivel actual.")
    sub.add_parser("reconcile", help="Sincronizar estado local con el ledger.")

    project = sub.add_parser("project", help="Proyección del nivel.")
    project.add_argument("--hours", type=float, default=DEFAULT_HORIZON.total_seconds() / 3600)
    project.add_argument("--step-minutes", type=float, default=5.0)

    predict = sub.add_parser("predict", help="Nivel estimado a una hora dada.")
    predict.add_argument(
        "--plan", type=float, action="append", default=[], metavar="MG",
        help="Pouch hipotético que empieza ahora (repetible).",
    )
    predict.add_argument("--at", default=None, help="Hora HH:MM (default: bedtime).")

    export = sub.add_parser("export", help="Exportar historial a Excel.")
    export.add_argument("--out-dir", default=None, help="Directorio de salida.")

    config = sub.add_parser("config", help="Ver o modificar configuración.")
    config.add_argument(
        "--set", action="append", default=[], metavar="KEY=VALUE", dest="assignments"
    )

    can = sub.add_parser("can", help="Inventario de latas.")
    can.add_argument("action", choices=("list", "add"))
    can.add_argument("--id", default=None, help="Id de la lata (se usa como --source).")
    can.add_argument("--brand", default="")
    can.add_argument("--flavor", default="")
    can.add_argument("--mg", type=float, default=0.0, help="Nicotina por pouch (mg).")
    can.add_argument("--count", type=int, default=0, help="Pouches en la lata.")
    can.add_argument("--all", action="store_true", help="Incluir latas vacías.")

    watch = sub.add_parser("watch", help="Cuenta regresiva y refresco en vivo.")
    watch.add_argument("--seconds", type=float, default=60.0)

    return parser.parse_args()


@dataclass
class Runtime:
    """Collaborators wired for one CLI invocation."""

    store: SQLiteStore
    config: AppConfig
    ledger: SQLiteLedger
    display: JsonSnapshotDisplay
    planner: AlertPlanner
    inventory: CanInventory
    coordinator: SessionCoordinator


def build_runtime(db_path: Path) -> Runtime:
    store = SQLiteStore(db_path)
    config = store.load_config()
    ledger = SQLiteLedger(db_path)
    display = JsonSnapshotDisplay(db_path.parent / "snapshot.json")
    planner = AlertPlanner(
        store,
        target_range=config.target_range(),
        reminder_type=config.reminder_type,
        reminder_interval=timedelta(minutes=config.reminder_interval_minutes),
    )
    inventory = CanInventory(store, store, threshold=config.low_inventory_threshold)
    settings = CoordinatorSettings(
        default_duration_s=config.planned_duration_s(),
        source_durations_s={k: v * 60.0 for k, v in config.source_durations.items()},
    )
    coordinator = SessionCoordinator(
        ledger,
        display,
        device_id=config.device_id,
        alerts=planner,
        inventory=inventory,
        settings=settings,
    )
    return Runtime(store, config, ledger, display, planner, inventory, coordinator)


def _parse_when(raw: str | None) -> datetime | None:
    if raw is None:
        return None
    value = isoparse(raw)
    if value.tzinfo is None:
        value = value.replace(tzinfo=tz.tzlocal())
    return value


def _local(value: datetime) -> str:
    return value.astimezone(tz.tzlocal()).strftime("%Y-%m-%d %H:%M:%S")


async def _recent_sessions(rt: Runtime, now: datetime) -> list[Session]:
    since = now - timedelta(seconds=DEFAULT_MODEL.lookback_s)
    return await rt.ledger.query(SessionQuery(started_after=since))


async def _replan_reminder(rt: Runtime) -> None:
    now = utcnow()
    alert = rt.planner.plan_reminder(await _recent_sessions(rt, now), now)
    if alert is not None:
        print(f"OK: Recordatorio '{alert.title}' para {_local(alert.fire_at)}")


async def cmd_start(ns: argparse.Namespace, rt: Runtime) -> int:
    planned = ns.minutes * 60 if ns.minutes is not None else None
    result = await rt.coordinator.start_session(
        ns.mg, planned_duration_s=planned, start_time=_parse_when(ns.at), source=ns.source
    )
    if result.outcome is not Outcome.STARTED or result.session is None:
        print(f"ERROR: No se pudo iniciar: {result.reason}")
        return 1
    session = result.session
    print(f"OK: Sesión {session.id} iniciada ({session.label})")
    print(f"OK: Fin de absorción: {_local(session.planned_end)}")
    if session.source:
        can = rt.store.get_can(session.source)
        if can is not None:
            print(f"OK: Lata {can.id}: quedan {can.pouch_count} pouches")
    await _replan_reminder(rt)
    return 0


async def cmd_stop(ns: argparse.Namespace, rt: Runtime) -> int:
    session_id = ns.id
    if session_id is None:
        current = await rt.coordinator.open_session()
        if current is None:
            print("OK: No hay sesión activa")
            return 0
        session_id = current.id
    result = await rt.coordinator.stop_session(session_id, _parse_when(ns.at))
    if result.outcome is Outcome.STOPPED:
        print(f"OK: Sesión {session_id} finalizada")
        await _replan_reminder(rt)
    else:
        print(f"OK: Sesión {session_id} ya estaba finalizada")
    return 0


async def cmd_status(ns: argparse.Namespace, rt: Runtime) -> int:
    now = utcnow()
    current = await rt.coordinator.open_session()
    level = DEFAULT_MODEL.total_level(await _recent_sessions(rt, now), now)
    target = rt.config.target_range()
    print(f"Nivel actual: {level:.3f}mg (rango {target.low:.1f}-{target.high:.1f}mg)")
    if current is None:
        print("Sin sesión activa")
    else:
        remaining = max(timedelta(0), current.planned_end - now)
        minutes, seconds = divmod(int(remaining.total_seconds()), 60)
        print(f"Sesión activa: {current.id} ({current.label}), restan {minutes:02d}:{seconds:02d}")
    for alert in rt.store.pending_alerts():
        print(f"Alerta pendiente: {alert.title} @ {_local(alert.fire_at)}")
    return 0


async def cmd_reconcile(ns: argparse.Namespace, rt: Runtime) -> int:
    result = await rt.coordinator.reconcile()
    if result.failed:
        print("ERROR: Ledger no disponible")
        return 1
    for session_id in result.stale_closed:
        print(f"OK: Sesión {session_id} cerrada por inactividad")
    if result.anomaly:
        print(f"WARN: {result.anomaly}")
    current = result.open_session
    print(f"OK: Sesión abierta: {current.id if current else '-'}")
    return 0


async def cmd_project(ns: argparse.Namespace, rt: Runtime) -> int:
    now = utcnow()
    engine = await ProjectionEngine.from_ledger(rt.ledger, now)
    projection = engine.project(
        now,
        horizon=timedelta(hours=ns.hours),
        sample_interval=timedelta(minutes=ns.step_minutes),
        target_range=rt.config.target_range(),
    )
    print(projection_to_frame(projection).to_string(index=False))
    print(f"Nivel actual: {projection.current_level:.3f}mg")
    if projection.peak is not None:
        print(f"Pico: {projection.peak.level:.3f}mg @ {_local(projection.peak.timestamp)}")
    if projection.low_crossing is not None:
        print(f"Cruce bajo: {_local(projection.low_crossing)}")
    if projection.high_crossing is not None:
        print(f"Cruce alto: {_local(projection.high_crossing)}")
    return 0


async def cmd_predict(ns: argparse.Namespace, rt: Runtime) -> int:
    now = utcnow()
    engine = await ProjectionEngine.from_ledger(rt.ledger, now)
    duration_s = rt.config.planned_duration_s()
    plan = [PlannedPouch(nicotine_mg=mg, duration_s=duration_s) for mg in ns.plan]
    at = parse_clock(ns.at) if ns.at else rt.config.bedtime_time()
    if at is None:
        raise ValueError(f"Hora inválida: {ns.at}")
    prediction = engine.predict_at_bedtime(now, at, plan)
    print(f"Hora: {_local(prediction.time)}")
    print(f"Nivel base: {prediction.baseline_level:.3f}mg")
    print(f"Nivel con plan: {prediction.predicted_level:.3f}mg")
    if prediction.predicted_level > rt.config.sleep_target_mg:
        print(f"WARN: Supera el objetivo para dormir ({rt.config.sleep_target_mg:.2f}mg)")
    return 0


async def cmd_export(ns: argparse.Namespace, rt: Runtime) -> int:
    now = utcnow()
    sessions = await rt.ledger.query(SessionQuery())
    frame = sessions_to_frame(sessions, now)
    out_dir = Path(ns.out_dir or rt.config.export_dir or Path(ns.db).parent / "salidas")
    ts = now.astimezone(tz.tzlocal()).strftime("%Y-%m-%d_%H-%M-%S")
    out_path = out_dir.expanduser() / f"pouch_historial_{ts}.xlsx"
    daily = fill_missing_days(daily_usage_summary(frame))
    write_history_xlsx(frame, out_path, ExcelLayout(), daily=daily)
    print(f"OK: Sesiones: {len(frame)}")
    print(f"OK: Output: {out_path}")
    return 0


async def cmd_can(ns: argparse.Namespace, rt: Runtime) -> int:
    if ns.action == "add":
        if not ns.id or not ns.brand or ns.count <= 0:
            raise ValueError("can add requiere --id, --brand y --count > 0")
        rt.store.save_can(
            Can(
                id=ns.id,
                brand=ns.brand,
                flavor=ns.flavor,
                strength_mg=ns.mg,
                pouch_count=ns.count,
                initial_count=ns.count,
            )
        )
        print(f"OK: Lata {ns.id} guardada ({ns.count} pouches)")
        return 0
    cans = rt.store.list_cans(active_only=not ns.all)
    if not cans:
        print("Sin latas en inventario")
    for item in cans:
        stock = f"{item.pouch_count}/{item.initial_count}"
        print(f"{item.id}: {item.label} {item.strength_mg:g}mg, {stock}")
    return 0


async def cmd_config(ns: argparse.Namespace, rt: Runtime) -> int:
    config = rt.config
    if ns.assignments:
        config = apply_assignments(config, ns.assignments)
        rt.store.save_config(config)
    for f in dataclasses.fields(config):
        print(f"{f.name} = {getattr(config, f.name)}")
    return 0


def apply_assignments(config: AppConfig, assignments: list[str]) -> AppConfig:
    """Return ``config`` with ``KEY=VALUE`` pairs applied.

    Raises:
        ValueError: On unknown keys or values of the wrong type.
    """
    types = {f.name: f.type for f in dataclasses.fields(AppConfig)}
    changes: dict[str, object] = {}
    for item in assignments:
        key, sep, raw = item.partition("=")
        key = key.strip()
        if not sep or key not in types or key == "device_id":
            raise ValueError(f"Clave inválida: {item}")
        kind = str(types[key])
        if kind == "int":
            changes[key] = int(raw)
        elif kind == "float":
            changes[key] = float(raw)
        elif key == "source_durations":
            parsed = json.loads(raw)
            if not isinstance(parsed, dict):
                raise ValueError("source_durations debe ser un objeto JSON")
            changes[key] = {str(k): int(v) for k, v in parsed.items()}
        else:
            changes[key] = raw
    updated = dataclasses.replace(config, **changes)
    updated.target_range()
    if parse_clock(updated.bedtime) is None:
        raise ValueError(f"bedtime inválido: {updated.bedtime}")
    return updated


async def cmd_watch(ns: argparse.Namespace, rt: Runtime) -> int:
    wake = AsyncioWakeRequester()
    scheduler = RefreshScheduler(rt.coordinator, wake=wake)

    async def _countdown() -> None:
        current = await rt.coordinator.open_session()
        if current is None:
            return
        remaining = max(timedelta(0), current.planned_end - utcnow())
        minutes, seconds = divmod(int(remaining.total_seconds()), 60)
        print(f"\r{current.label}: {minutes:02d}:{seconds:02d}", end="", flush=True)

    follower = asyncio.create_task(rt.coordinator.follow(rt.ledger.changes))
    scheduler.start_foreground(_countdown)
    try:
        await scheduler.run_background_wake()
        await asyncio.sleep(ns.seconds)
    finally:
        scheduler.close()
        wake.cancel()
        rt.ledger.changes.close()
        follower.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await follower
    print()
    return 0


_COMMANDS: dict[str, Callable[[argparse.Namespace, Runtime], Awaitable[int]]] = {
    "start": cmd_start,
    "stop": cmd_stop,
    "status": cmd_status,
    "reconcile": cmd_reconcile,
    "project": cmd_project,
    "predict": cmd_predict,
    "export": cmd_export,
    "can": cmd_can,
    "config": cmd_config,
    "watch": cmd_watch,
}


def main() -> int:
    """Run the CLI.

    Returns:
        Exit code (0 on success, 1 on rejected start or invalid input).
    """
    ns = parse_args()
    setup_logging(ns.verbose, ns.log_file)
    rt = build_runtime(Path(ns.db).expanduser())
    try:
        return asyncio.run(_COMMANDS[ns.command](ns, rt))
    except ValueError as exc:
        print(f"ERROR: {exc}")
        return 1
