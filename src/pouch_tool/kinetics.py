"""Modelo de absorción y eliminación de nicotina (dos fases, forma cerrada)."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta

from pouch_tool.model import Session

logger = logging.getLogger(__name__)

# ~30% of the pouch content reaches the bloodstream (6mg -> 1.8mg).
ABSORPTION_FRACTION = 0.30
HALF_LIFE_SECONDS = 2 * 3600.0
# 5 half-lives: older sessions contribute < 3.2% of their seed.
LOOKBACK_SECONDS = 10 * 3600.0
_MIN_RELEASE_SECONDS = 1.0


@dataclass(frozen=True)
class KineticsModel:
    """Linear absorption during use, exponential decay after removal.

    All functions are total over their numeric domain: inputs outside it are
    clamped and outputs are never negative.
    """

    absorption_fraction: float = ABSORPTION_FRACTION
    half_life_s: float = HALF_LIFE_SECONDS
    lookback_s: float = LOOKBACK_SECONDS

    def peak_level(self, nicotine_mg: float) -> float:
        """Maximum absorbed amount for a full-length session."""
        return max(0.0, nicotine_mg * self.absorption_fraction)

    def absorption_progress(self, elapsed_s: float, planned_s: float) -> float:
        """Fraction of the absorption window already elapsed, in [0, 1]."""
        release = max(_MIN_RELEASE_SECONDS, planned_s)
        return min(max(elapsed_s / release, 0.0), 1.0)

    def total_absorbed(self, nicotine_mg: float, use_time_s: float, planned_s: float) -> float:
        """Absorbed amount if the pouch is removed after ``use_time_s``.

        Example: 6mg removed at 900s of a 1800s window -> 6 * 0.30 * 0.5 = 0.9mg.
        """
        return self.peak_level(nicotine_mg) * self.absorption_progress(use_time_s, planned_s)

    def current_level(self, nicotine_mg: float, elapsed_s: float, planned_s: float) -> float:
        """Level during the absorption phase."""
        return self.total_absorbed(nicotine_mg, elapsed_s, planned_s)

    def decayed_level(self, initial_level: float, since_removal_s: float) -> float:
        """Remaining level ``since_removal_s`` after removal: N0 * 0.5^(t / T1/2)."""
        if initial_level <= 0:
            return 0.0
        t = max(0.0, since_removal_s)
        return max(0.0, initial_level * 0.5 ** (t / self.half_life_s))

    def contribution(self, session: Session, at: datetime) -> float:
        """Level contributed by one session at ``at``."""
        if at <= session.start_time:
            return 0.0
        removal = session.removal_time
        if at <= removal:
            elapsed = (at - session.start_time).total_seconds()
            return self.current_level(session.nicotine_mg, elapsed, session.planned_duration_s)

        use_time = (removal - session.start_time).total_seconds()
        seed = self.total_absorbed(session.nicotine_mg, use_time, session.planned_duration_s)
        return self.decayed_level(seed, (at - removal).total_seconds())

    def in_lookback(self, session: Session, at: datetime) -> bool:
        return at - timedelta(seconds=self.lookback_s) <= session.start_time <= at

    def total_level(self, sessions: Iterable[Session], at: datetime) -> float:
        """Sum of contributions of sessions started within the lookback window."""
        total = 0.0
        count = 0
        for session in sessions:
            if not self.in_lookback(session, at):
                continue
            part = self.contribution(session, at)
            logger.debug(
                "Session %s (%smg): contribution %.4fmg", session.id, session.nicotine_mg, part
            )
            total += part
            count += 1
        logger.debug("Total level at %s: %.3fmg from %d sessions", at, total, count)
        return max(0.0, total)


DEFAULT_MODEL = KineticsModel()
