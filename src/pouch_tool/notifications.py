"""Planificación de alertas: fin de absorción y recordatorios de uso."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime, timedelta
from typing import Protocol

from pouch_tool.kinetics import DEFAULT_MODEL, KineticsModel
from pouch_tool.model import Alert, Session, TargetRange
from pouch_tool.projection import ProjectionEngine

logger = logging.getLogger(__name__)

REMINDER_ID = "usage.reminder"
REMINDER_HORIZON = timedelta(hours=24)
_REMINDER_STEP = timedelta(minutes=5)


class NotificationSink(Protocol):
    """Notification delivery collaborator."""

    def schedule(self, alert: Alert) -> None: ...

    def cancel(self, alert_id: str) -> None: ...


def completion_alert_id(session_id: str) -> str:
    return f"session.{session_id}.complete"


class AlertPlanner:
    """Decides which alerts exist and hands them to a ``NotificationSink``."""

    def __init__(
        self,
        sink: NotificationSink,
        *,
        target_range: TargetRange,
        reminder_type: str = "disabled",
        reminder_interval: timedelta = timedelta(minutes=60),
        model: KineticsModel = DEFAULT_MODEL,
    ) -> None:
        self._sink = sink
        self._range = target_range
        self._reminder_type = reminder_type
        self._reminder_interval = reminder_interval
        self._model = model

    def schedule_completion(self, session: Session) -> Alert:
        """Alert at the end of the absorption window."""
        alert = Alert(
            id=completion_alert_id(session.id),
            title="Absorption complete",
            body=f"Your {session.nicotine_mg:g}mg pouch has finished absorbing.",
            fire_at=session.planned_end,
        )
        self._sink.schedule(alert)
        return alert

    def cancel_completion(self, session_id: str) -> None:
        self._sink.cancel(completion_alert_id(session_id))

    def plan_reminder(self, sessions: Sequence[Session], now: datetime) -> Alert | None:
        """Replace the usage reminder according to the configured type.

        Returns the scheduled alert, or None when nothing is due.
        """
        self._sink.cancel(REMINDER_ID)
        if self._reminder_type == "time":
            alert = self._time_reminder(sessions, now)
        elif self._reminder_type == "level":
            alert = self._level_reminder(sessions, now)
        else:
            alert = None
        if alert is not None:
            self._sink.schedule(alert)
        return alert

    def _time_reminder(self, sessions: Sequence[Session], now: datetime) -> Alert | None:
        if not sessions:
            return None
        last_start = max(s.start_time for s in sessions)
        fire_at = last_start + self._reminder_interval
        if fire_at <= now:
            return None
        minutes = int(self._reminder_interval.total_seconds() // 60)
        return Alert(
            id=REMINDER_ID,
            title="Time for a Pouch",
            body=f"It's been {minutes} minutes since your last pouch",
            fire_at=fire_at,
        )

    def _level_reminder(self, sessions: Sequence[Session], now: datetime) -> Alert | None:
        engine = ProjectionEngine.for_sessions(sessions, self._model)
        alerting = self._range.alerting()
        current = engine.level_at(now)
        logger.info("Current nicotine level: %.3fmg", current)

        band = f"({self._range.low:.1f}-{self._range.high:.1f}mg)"
        if current < alerting.low:
            return Alert(
                id=REMINDER_ID,
                title="Nicotine Level Low",
                body=f"Your nicotine level ({current:.2f}mg) is below your target range {band}",
                fire_at=now,
            )
        if current > alerting.high:
            return Alert(
                id=REMINDER_ID,
                title="Nicotine Level High",
                body=f"Your nicotine level ({current:.2f}mg) is above your target range {band}",
                fire_at=now,
            )

        projection = engine.project(now, REMINDER_HORIZON, _REMINDER_STEP, alerting)
        low, high = projection.low_crossing, projection.high_crossing
        if low is None and high is None:
            logger.info("No boundary crossing within %s; no reminder", REMINDER_HORIZON)
            return None

        if low is not None and (high is None or low <= high):
            level = engine.level_at(low)
            return Alert(
                id=REMINDER_ID,
                title="Nicotine Level Dropping",
                body=f"Your nicotine level will reach {level:.2f}mg, below your target range",
                fire_at=low,
            )
        level = engine.level_at(high)
        return Alert(
            id=REMINDER_ID,
            title="Nicotine Level Rising",
            body=f"Your nicotine level will reach {level:.2f}mg, above your target range",
            fire_at=high,
        )
