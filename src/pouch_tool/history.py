"""Historial de sesiones y resumen diario de consumo (pandas)."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import date, datetime, tzinfo

import pandas as pd
from dateutil import tz

from pouch_tool.kinetics import DEFAULT_MODEL, KineticsModel
from pouch_tool.model import Projection, Session

SESSION_COLUMNS = [
    "date",
    "datetime",
    "end",
    "nicotine_mg",
    "planned_minutes",
    "actual_minutes",
    "status",
    "absorbed_mg",
    "source",
]

DAILY_COLUMNS = [
    "date",
    "pouch_count",
    "total_mg",
    "avg_mg",
    "absorbed_mg",
]


def sessions_to_frame(
    sessions: Sequence[Session],
    now: datetime,
    model: KineticsModel = DEFAULT_MODEL,
    tzinfo: tzinfo | None = None,
) -> pd.DataFrame:
    """One row per session, in local time, oldest first.

    Open sessions use the time elapsed so far (capped at the planned
    window) as their actual use time.
    """
    zone = tzinfo or tz.tzlocal()
    rows = []
    for s in sessions:
        if s.end_time is not None:
            use_s = (s.end_time - s.start_time).total_seconds()
        else:
            use_s = min(max(0.0, (now - s.start_time).total_seconds()), s.planned_duration_s)
        start_local = s.start_time.astimezone(zone)
        rows.append(
            {
                "date": start_local.date(),
                "datetime": start_local,
                "end": s.end_time.astimezone(zone) if s.end_time is not None else pd.NaT,
                "nicotine_mg": s.nicotine_mg,
                "planned_minutes": round(s.planned_duration_s / 60, 1),
                "actual_minutes": round(use_s / 60, 1),
                "status": _status(s, use_s),
                "absorbed_mg": round(
                    model.total_absorbed(s.nicotine_mg, use_s, s.planned_duration_s), 3
                ),
                "source": s.source,
            }
        )
    df = pd.DataFrame(rows)
    if df.empty:
        return pd.DataFrame(columns=SESSION_COLUMNS)
    return df[SESSION_COLUMNS].sort_values("datetime").reset_index(drop=True)


def _status(session: Session, use_s: float) -> str:
    if session.is_open:
        return "open"
    if use_s >= session.planned_duration_s:
        return "complete"
    return "removed early"


def daily_usage_summary(sessions_frame: pd.DataFrame) -> pd.DataFrame:
    """Aggregate sessions by day (count/total/avg/absorbed)."""
    if sessions_frame.empty:
        return pd.DataFrame(columns=DAILY_COLUMNS)
    g = sessions_frame.groupby("date", as_index=False).agg(
        pouch_count=("nicotine_mg", "count"),
        total_mg=("nicotine_mg", "sum"),
        avg_mg=("nicotine_mg", "mean"),
        absorbed_mg=("absorbed_mg", "sum"),
    )
    g["avg_mg"] = g["avg_mg"].round(2)
    g["absorbed_mg"] = g["absorbed_mg"].round(3)
    return g[DAILY_COLUMNS].sort_values("date").reset_index(drop=True)


def build_calendar(min_day: date, max_day: date) -> pd.DataFrame:
    """Build inclusive day calendar DataFrame."""
    days = pd.date_range(start=min_day, end=max_day, freq="D")
    return pd.DataFrame({"date": days.date})


def fill_missing_days(daily: pd.DataFrame) -> pd.DataFrame:
    """Add zero-usage rows for days without sessions inside the range."""
    if daily.empty:
        return daily
    cal = build_calendar(min(daily["date"]), max(daily["date"]))
    out = cal.merge(daily, on="date", how="left")
    out["pouch_count"] = out["pouch_count"].fillna(0).astype(int)
    for col in ("total_mg", "absorbed_mg"):
        out[col] = out[col].fillna(0.0)
    return out[DAILY_COLUMNS].reset_index(drop=True)


def projection_to_frame(
    projection: Projection, tzinfo: tzinfo | None = None
) -> pd.DataFrame:
    """Samples as (datetime, level_mg) in local time."""
    zone = tzinfo or tz.tzlocal()
    df = pd.DataFrame(
        [
            {"datetime": s.timestamp.astimezone(zone), "level_mg": round(s.level, 4)}
            for s in projection.samples
        ]
    )
    if df.empty:
        return pd.DataFrame(columns=["datetime", "level_mg"])
    return df
