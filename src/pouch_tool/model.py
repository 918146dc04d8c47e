"""Modelos tipados para sesiones de consumo, muestras y proyecciones."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta

from dateutil import tz

UTC = tz.tzutc()


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(tz=UTC)


def new_session_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class Session:
    """One pouch-use event (insertion until removal)."""

    id: str
    nicotine_mg: float
    start_time: datetime
    planned_duration_s: float
    end_time: datetime | None = None
    created_at: datetime | None = None
    origin: str = ""
    source: str | None = None

    @property
    def is_open(self) -> bool:
        return self.end_time is None

    @property
    def planned_end(self) -> datetime:
        return self.start_time + timedelta(seconds=self.planned_duration_s)

    @property
    def removal_time(self) -> datetime:
        """Actual removal, or the end of the planned window if never removed."""
        if self.end_time is not None:
            return self.end_time
        return self.planned_end

    @property
    def label(self) -> str:
        return f"{self.nicotine_mg:g}mg pouch"

    def closed_at(self, end_time: datetime) -> Session:
        """Return a closed copy; end_time never precedes start_time."""
        return replace(self, end_time=max(end_time, self.start_time))


@dataclass(frozen=True)
class KineticsSample:
    """Level at one instant. Derived, never stored."""

    timestamp: datetime
    level: float


@dataclass(frozen=True)
class Projection:
    """Sampled level series plus the first low/high crossings found."""

    samples: tuple[KineticsSample, ...]
    low_crossing: datetime | None = None
    high_crossing: datetime | None = None

    @property
    def current_level(self) -> float:
        return self.samples[0].level if self.samples else 0.0

    @property
    def peak(self) -> KineticsSample | None:
        if not self.samples:
            return None
        return max(self.samples, key=lambda s: s.level)


@dataclass(frozen=True)
class TargetRange:
    """User target band for the bloodstream level (mg)."""

    low: float
    high: float
    alert_margin: float = 0.0

    def __post_init__(self) -> None:
        if min(self.low, self.high, self.alert_margin) < 0:
            raise ValueError("TargetRange values must be non-negative")
        if self.low >= self.high:
            raise ValueError(f"TargetRange low ({self.low}) must be below high ({self.high})")

    @property
    def effective_low(self) -> float:
        return max(0.0, self.low - self.alert_margin)

    def alerting(self) -> TargetRange:
        """Range used for reminders: low widened by the alert margin."""
        return TargetRange(low=self.effective_low, high=self.high)


@dataclass(frozen=True)
class PlannedPouch:
    """Hypothetical pouch for what-if forecasts, assumed to start now."""

    nicotine_mg: float
    duration_s: float


@dataclass(frozen=True)
class DisplaySnapshot:
    """Values pushed to the glanceable display."""

    session_id: str
    level: float
    peak: float
    label: str
    effective_end: datetime
    status: str = "Absorbing..."
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class Alert:
    """One notification request handed to the delivery collaborator."""

    id: str
    title: str
    body: str
    fire_at: datetime


@dataclass(frozen=True)
class Can:
    """A can of pouches in the local inventory."""

    id: str
    brand: str
    flavor: str = ""
    strength_mg: float = 0.0
    pouch_count: int = 0
    initial_count: int = 0
    barcode: str | None = None

    @property
    def label(self) -> str:
        return f"{self.brand} {self.flavor}".strip()
