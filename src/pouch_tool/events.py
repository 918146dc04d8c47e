"""Eventos de cambio de estado emitidos por el coordinador de sesiones."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from pouch_tool.model import Session, utcnow

logger = logging.getLogger(__name__)


class EventType(Enum):
    SESSION_STARTED = "session_started"
    SESSION_STOPPED = "session_stopped"
    REMOTE_SESSION_STARTED = "remote_session_started"
    REMOTE_SESSION_ENDED = "remote_session_ended"
    STALE_SESSION_CLOSED = "stale_session_closed"
    ANOMALY = "anomaly"


@dataclass(frozen=True)
class SessionEvent:
    type: EventType
    session_id: str | None = None
    session: Session | None = None
    detail: str = ""
    ts: datetime = field(default_factory=utcnow)


Listener = Callable[[SessionEvent], None]


class EventBus:
    """Synchronous fan-out; a failing listener never blocks the others."""

    def __init__(self) -> None:
        self.listeners: list[Listener] = []

    def subscribe(self, fn: Listener) -> Callable[[], None]:
        """Register ``fn``; returns a callable that unsubscribes it."""
        self.listeners.append(fn)

        def _unsubscribe() -> None:
            if fn in self.listeners:
                self.listeners.remove(fn)

        return _unsubscribe

    def emit(self, event: SessionEvent) -> None:
        for listener in list(self.listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Listener failed for %s", event.type.value)

    def emit_started(self, session: Session, *, remote: bool = False) -> None:
        kind = EventType.REMOTE_SESSION_STARTED if remote else EventType.SESSION_STARTED
        self.emit(SessionEvent(kind, session_id=session.id, session=session))

    def emit_ended(self, session_id: str, *, remote: bool = False) -> None:
        kind = EventType.REMOTE_SESSION_ENDED if remote else EventType.SESSION_STOPPED
        self.emit(SessionEvent(kind, session_id=session_id))

    def emit_stale_closed(self, session: Session) -> None:
        self.emit(
            SessionEvent(EventType.STALE_SESSION_CLOSED, session_id=session.id, session=session)
        )

    def emit_anomaly(self, detail: str, canonical_id: str | None = None) -> None:
        self.emit(SessionEvent(EventType.ANOMALY, session_id=canonical_id, detail=detail))
