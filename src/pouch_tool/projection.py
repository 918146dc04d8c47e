"""Proyección del nivel de nicotina y búsqueda de cruces de umbral."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, time, timedelta, tzinfo

from dateutil import tz

from pouch_tool.kinetics import DEFAULT_MODEL, KineticsModel
from pouch_tool.ledger import SessionLedger, SessionQuery
from pouch_tool.model import KineticsSample, PlannedPouch, Projection, Session, TargetRange

logger = logging.getLogger(__name__)

DEFAULT_HORIZON = timedelta(hours=10)
DEFAULT_SAMPLE_INTERVAL = timedelta(minutes=5)
_CROSSING_RESOLUTION_S = 1.0

LevelFunction = Callable[[datetime], float]


@dataclass(frozen=True)
class Prediction:
    """What-if forecast at one instant."""

    time: datetime
    predicted_level: float
    baseline_level: float


class ProjectionEngine:
    """Samples a level function forward in time."""

    def __init__(
        self,
        level_at: LevelFunction,
        *,
        sessions: Sequence[Session] = (),
        model: KineticsModel = DEFAULT_MODEL,
    ) -> None:
        """Create an engine.

        Args:
            level_at: Total level at an instant.
            sessions: Sessions behind ``level_at`` (used for what-if forecasts).
            model: Kinetics model used for hypothetical pouches.
        """
        self._level_at = level_at
        self._sessions = tuple(sessions)
        self._model = model

    @classmethod
    def for_sessions(
        cls, sessions: Sequence[Session], model: KineticsModel = DEFAULT_MODEL
    ) -> ProjectionEngine:
        snapshot = tuple(sessions)
        return cls(
            lambda at: model.total_level(snapshot, at),
            sessions=snapshot,
            model=model,
        )

    @classmethod
    async def from_ledger(
        cls,
        ledger: SessionLedger,
        at: datetime,
        model: KineticsModel = DEFAULT_MODEL,
    ) -> ProjectionEngine:
        """Build an engine from the sessions that can still matter at ``at``."""
        since = at - timedelta(seconds=model.lookback_s)
        sessions = await ledger.query(SessionQuery(started_after=since))
        return cls.for_sessions(sessions, model)

    @property
    def sessions(self) -> tuple[Session, ...]:
        return self._sessions

    def level_at(self, at: datetime) -> float:
        return max(0.0, self._level_at(at))

    def project(
        self,
        start: datetime,
        horizon: timedelta = DEFAULT_HORIZON,
        sample_interval: timedelta = DEFAULT_SAMPLE_INTERVAL,
        target_range: TargetRange | None = None,
    ) -> Projection:
        """Sample levels from ``start`` to ``start + horizon`` inclusive.

        Only the first downward crossing of ``low`` and the first upward
        crossing of ``high`` are kept. Each is refined by bisection inside
        the bracketing sample interval.
        """
        if sample_interval.total_seconds() <= 0:
            raise ValueError("sample_interval must be positive")

        end = start + max(horizon, timedelta(0))
        samples: list[KineticsSample] = []
        low_crossing: datetime | None = None
        high_crossing: datetime | None = None

        current = start
        previous: KineticsSample | None = None
        while current <= end:
            sample = KineticsSample(current, self.level_at(current))
            samples.append(sample)

            if previous is not None and target_range is not None:
                low, high = target_range.low, target_range.high
                if low_crossing is None and previous.level > low >= sample.level:
                    low_crossing = self._refine(
                        previous.timestamp, sample.timestamp, lambda v: v <= low
                    )
                    logger.info(
                        "Projected low crossing at %s (%.3fmg)", low_crossing, sample.level
                    )
                if high_crossing is None and previous.level <= high < sample.level:
                    high_crossing = self._refine(
                        previous.timestamp, sample.timestamp, lambda v: v > high
                    )
                    logger.info(
                        "Projected high crossing at %s (%.3fmg)", high_crossing, sample.level
                    )

            previous = sample
            current = current + sample_interval

        return Projection(
            samples=tuple(samples),
            low_crossing=low_crossing,
            high_crossing=high_crossing,
        )

    def _refine(
        self,
        before: datetime,
        after: datetime,
        crossed: Callable[[float], bool],
    ) -> datetime:
        """Crossing instant strictly inside (before, after), to 1s."""
        lo, hi = before, after
        while (hi - lo).total_seconds() > _CROSSING_RESOLUTION_S:
            mid = lo + (hi - lo) / 2
            if crossed(self.level_at(mid)):
                hi = mid
            else:
                lo = mid
        if hi == after:
            # Crossing lies in the last second before the later sample.
            return lo + (hi - lo) / 2
        return hi

    def predict_at(
        self,
        target_time: datetime,
        planned_pouches: Sequence[PlannedPouch],
        now: datetime,
    ) -> Prediction:
        """Baseline level at ``target_time`` plus pouches assumed to start ``now``."""
        baseline = self.level_at(target_time)
        planned = 0.0
        for pouch in planned_pouches:
            hypothetical = Session(
                id="planned",
                nicotine_mg=pouch.nicotine_mg,
                start_time=now,
                planned_duration_s=pouch.duration_s,
            )
            planned += self._model.contribution(hypothetical, target_time)
        return Prediction(
            time=target_time,
            predicted_level=max(0.0, baseline + planned),
            baseline_level=max(0.0, baseline),
        )

    def predict_at_bedtime(
        self,
        now: datetime,
        bedtime: time,
        planned_pouches: Sequence[PlannedPouch],
        tzinfo: tzinfo | None = None,
    ) -> Prediction:
        return self.predict_at(next_bedtime(now, bedtime, tzinfo), planned_pouches, now)


def next_bedtime(now: datetime, bedtime: time, tzinfo: tzinfo | None = None) -> datetime:
    """Next occurrence of ``bedtime`` (local wall clock) at or after ``now``."""
    zone = tzinfo or tz.tzlocal()
    local_now = now.astimezone(zone)
    candidate = datetime.combine(local_now.date(), bedtime, tzinfo=zone)
    if local_now > candidate:
        candidate = datetime.combine(
            local_now.date() + timedelta(days=1), bedtime, tzinfo=zone
        )
    return candidate
