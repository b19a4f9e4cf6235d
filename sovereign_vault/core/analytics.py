"""
Record Analytics

Aggregates over a partition's domain records for dashboards: today's
readings and a seven-day intensity summary. Read-only; the ledger is
not involved.

All day boundaries are UTC midnights.
"""

from __future__ import annotations

from datetime import datetime, time, timedelta, timezone
from statistics import fmean
from typing import Sequence

from ..schemas import (
    AnalyticsSummary,
    DailyAverage,
    EmotionalState,
    TodayStats,
)

SUMMARY_DAYS = 7

# Mean intensity must move this many points between halves of the week to count as a trend
TREND_THRESHOLD = 5.0


def start_of_day(moment: datetime) -> datetime:
    """UTC midnight at or before moment."""
    day = moment.astimezone(timezone.utc).date()
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def _mean(values: Sequence[float]) -> float:
    return fmean(values) if values else 0.0


def today_stats(states: Sequence[EmotionalState], risk_event_count: int) -> TodayStats:
    """Stats over states already filtered to today."""
    intensities = [s.intensity for s in states]
    return TodayStats(
        avg_intensity=_mean(intensities),
        peak_intensity=max(intensities, default=0.0),
        state_count=len(intensities),
        risk_event_count=risk_event_count,
    )


def trend_direction(states: Sequence[EmotionalState]) -> str:
    """
    Compare mean intensity of the older and newer half of the readings.

    Fewer than two readings is always "stable".
    """
    ordered = sorted(states, key=lambda s: s.timestamp)
    if len(ordered) < 2:
        return "stable"

    middle = len(ordered) // 2
    delta = _mean([s.intensity for s in ordered[middle:]]) - _mean(
        [s.intensity for s in ordered[:middle]]
    )
    if delta > TREND_THRESHOLD:
        return "up"
    if delta < -TREND_THRESHOLD:
        return "down"
    return "stable"


def weekly_summary(
    states: Sequence[EmotionalState],
    total_risk_events: int,
    now: datetime,
) -> AnalyticsSummary:
    """
    Summarize states from the last SUMMARY_DAYS days.

    states may include older readings; they are ignored.
    """
    today = start_of_day(now)
    window_start = today - timedelta(days=SUMMARY_DAYS - 1)
    recent = [s for s in states if s.timestamp >= window_start]

    weekly = []
    for offset in range(SUMMARY_DAYS):
        day_start = today - timedelta(days=offset)
        day_end = day_start + timedelta(days=1)
        day_values = [s.intensity for s in recent if day_start <= s.timestamp < day_end]
        weekly.append(DailyAverage(day=day_start.date().isoformat(), avg=_mean(day_values)))

    return AnalyticsSummary(
        avg_intensity=_mean([s.intensity for s in recent]),
        trend_direction=trend_direction(recent),
        total_states=len(recent),
        total_risk_events=total_risk_events,
        weekly_average=weekly,
    )
