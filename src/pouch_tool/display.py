"""Snapshot para superficies de vistazo (widget / pantalla de bloqueo)."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from dateutil.parser import isoparse

from pouch_tool.kinetics import DEFAULT_MODEL, KineticsModel
from pouch_tool.model import DisplaySnapshot, Session, utcnow

logger = logging.getLogger(__name__)


class DisplayEffects(Protocol):
    """Display collaborator. Fire-and-forget: return values are ignored."""

    async def update(self, snapshot: DisplaySnapshot) -> None: ...

    async def mark_ended(self) -> None: ...

    async def reload(self) -> None: ...


def build_snapshot(
    session: Session, at: datetime, model: KineticsModel = DEFAULT_MODEL
) -> DisplaySnapshot:
    """Absorption-phase values of ``session`` at ``at``."""
    elapsed = max(0.0, (at - session.start_time).total_seconds())
    elapsed = min(elapsed, session.planned_duration_s)
    status = "Absorbing..." if at < session.planned_end else "Complete"
    return DisplaySnapshot(
        session_id=session.id,
        level=model.current_level(session.nicotine_mg, elapsed, session.planned_duration_s),
        peak=model.peak_level(session.nicotine_mg),
        label=session.label,
        effective_end=session.planned_end,
        status=status,
        updated_at=at,
    )


class JsonSnapshotDisplay:
    """Writes the latest snapshot to a JSON file read by external surfaces."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self.reloads = 0

    async def update(self, snapshot: DisplaySnapshot) -> None:
        payload = {
            "running": True,
            "session_id": snapshot.session_id,
            "level": round(snapshot.level, 4),
            "peak": round(snapshot.peak, 4),
            "label": snapshot.label,
            "effective_end": snapshot.effective_end.isoformat(),
            "status": snapshot.status,
            "updated_at": snapshot.updated_at.isoformat(),
        }
        await asyncio.to_thread(self._write, payload)

    async def mark_ended(self) -> None:
        payload = self.read()
        payload["running"] = False
        payload["updated_at"] = utcnow().isoformat()
        await asyncio.to_thread(self._write, payload)

    async def reload(self) -> None:
        self.reloads += 1
        logger.debug("Surface reload requested (%d)", self.reloads)

    def read(self) -> dict[str, Any]:
        """Current payload, or an empty one if missing/corrupt."""
        if not self._path.exists():
            return {"running": False}
        try:
            parsed: Any = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("Snapshot file %s is not valid JSON; ignoring", self._path)
            return {"running": False}
        if not isinstance(parsed, dict):
            return {"running": False}
        return parsed

    def effective_end(self) -> datetime | None:
        raw = self.read().get("effective_end")
        return isoparse(raw) if isinstance(raw, str) else None

    def _write(self, payload: dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(".tmp")
        tmp.write_text(json.dumps(payload, ensure_ascii=True, indent=2), encoding="utf-8")
        tmp.replace(self._path)
