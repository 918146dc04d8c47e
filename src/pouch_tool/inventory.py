"""Inventario de latas: descuento por pouch y alertas de stock bajo."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Protocol

from pouch_tool.model import Alert, Can, Session, utcnow
from pouch_tool.notifications import NotificationSink

logger = logging.getLogger(__name__)

INVENTORY_ALERT_PREFIX = "can.inventory."
ALERT_COOLDOWN = timedelta(hours=24)


class InventoryEffects(Protocol):
    """Called once for every session this device starts."""

    def pouch_logged(self, session: Session) -> Can | None: ...


class InventoryBackend(Protocol):
    def take_pouch(self, can_id: str) -> Can | None: ...

    def last_inventory_alert(self, can_id: str) -> datetime | None: ...

    def record_inventory_alert(self, can_id: str, at: datetime) -> None: ...


def inventory_alert_id(can_id: str) -> str:
    return f"{INVENTORY_ALERT_PREFIX}{can_id}"


class CanInventory:
    """Takes one pouch from the session's can and warns when stock runs low.

    A session's ``source`` is the id of the can it came from. Sessions
    without a source, or from an unknown or empty can, leave the inventory
    unchanged. Low-stock alerts for a can are sent at most once per
    cooldown period.
    """

    def __init__(
        self,
        backend: InventoryBackend,
        sink: NotificationSink,
        *,
        threshold: int = 5,
        cooldown: timedelta = ALERT_COOLDOWN,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._backend = backend
        self._sink = sink
        self.threshold = threshold
        self.cooldown = cooldown
        self._clock = clock

    def pouch_logged(self, session: Session) -> Can | None:
        if not session.source:
            return None
        can = self._backend.take_pouch(session.source)
        if can is None:
            logger.info("Can %s unknown or empty; inventory unchanged", session.source)
            return None
        logger.info("Can %s: %d pouches left", can.id, can.pouch_count)
        self.check_low_stock(can)
        return can

    def can_alert(self, can_id: str, now: datetime) -> bool:
        last = self._backend.last_inventory_alert(can_id)
        return last is None or now - last >= self.cooldown

    def check_low_stock(self, can: Can) -> Alert | None:
        """Schedule a low-stock alert for ``can`` if due; returns it."""
        if self.threshold <= 0 or not 0 < can.pouch_count <= self.threshold:
            return None
        now = self._clock()
        if not self.can_alert(can.id, now):
            logger.debug("Inventory alert for %s skipped: within cooldown", can.id)
            return None
        alert = Alert(
            id=inventory_alert_id(can.id),
            title="Low Inventory Alert",
            body=f"{can.label or 'Can'} has only {can.pouch_count} pouches remaining",
            fire_at=now,
        )
        self._sink.schedule(alert)
        self._backend.record_inventory_alert(can.id, now)
        return alert
