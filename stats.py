# stats.py
# =============================================================================
# Workout statistics: period windows, aggregates and streaks.
# Pure functions over already-fetched rows: no DB access, no clock reads.
# =============================================================================

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Dict, Iterable, Optional, Tuple

PERIODS = ("week", "month", "year")
DEFAULT_PERIOD = "month"

_DAY_START = time.min
_DAY_END = time(23, 59, 59, 999000)


# -----------------------------------------------------------------------------
# Result types
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class PeriodAggregate:
    total_minutes: int = 0
    session_count: int = 0
    average_duration: int = 0
    type_breakdown: Dict[str, int] = field(default_factory=dict)


@dataclass
class TypeStat:
    count: int = 0
    minutes: int = 0


@dataclass
class DailyStat:
    sessions: int = 0
    minutes: int = 0


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def _as_day(value) -> date:
    """Truncate a date or datetime to its calendar day."""
    if isinstance(value, datetime):
        return value.date()
    return value


def _round_half_up(numerator: int, denominator: int) -> int:
    # Integer arithmetic so 2.5 -> 3 (Python's round() would give 2)
    return (2 * numerator + denominator) // (2 * denominator)


def normalize_period(period: Optional[str]) -> str:
    if period in PERIODS:
        return period
    return DEFAULT_PERIOD


# -----------------------------------------------------------------------------
# Aggregates
# -----------------------------------------------------------------------------
def period_aggregate(workouts: Iterable) -> PeriodAggregate:
    """Totals, session count, rounded average and per-type counts.

    Each row needs ``duration_minutes`` and ``type``. An empty input gives a
    zeroed aggregate rather than a division error.
    """
    total = 0
    count = 0
    breakdown: Counter = Counter()
    for w in workouts:
        total += int(w.duration_minutes)
        count += 1
        breakdown[w.type] += 1
    average = _round_half_up(total, count) if count else 0
    return PeriodAggregate(
        total_minutes=total,
        session_count=count,
        average_duration=average,
        type_breakdown=dict(breakdown),
    )


def type_stats(workouts: Iterable) -> Dict[str, TypeStat]:
    by_type: Dict[str, TypeStat] = {}
    for w in workouts:
        stat = by_type.setdefault(w.type, TypeStat())
        stat.count += 1
        stat.minutes += int(w.duration_minutes)
    return by_type


def daily_stats(workouts: Iterable) -> Dict[str, DailyStat]:
    """Sessions and minutes per ISO day, oldest day first."""
    by_day: Dict[str, DailyStat] = {}
    for w in workouts:
        key = _as_day(w.date).isoformat()
        stat = by_day.setdefault(key, DailyStat())
        stat.sessions += 1
        stat.minutes += int(w.duration_minutes)
    return dict(sorted(by_day.items()))


# -----------------------------------------------------------------------------
# Period windows
# -----------------------------------------------------------------------------
def date_range_for_period(
    period: Optional[str], reference: datetime
) -> Tuple[datetime, datetime]:
    """Inclusive full-day window for week (Sun-Sat), month or year.

    Unknown periods fall back to the month window.
    """
    today = _as_day(reference)
    period = normalize_period(period)

    if period == "week":
        # date.weekday() is Monday=0 .. Sunday=6; weeks here start on Sunday
        start = today - timedelta(days=(today.weekday() + 1) % 7)
        end = start + timedelta(days=6)
    elif period == "year":
        start = date(today.year, 1, 1)
        end = date(today.year, 12, 31)
    else:
        start = date(today.year, today.month, 1)
        if today.month == 12:
            end = date(today.year + 1, 1, 1) - timedelta(days=1)
        else:
            end = date(today.year, today.month + 1, 1) - timedelta(days=1)

    return datetime.combine(start, _DAY_START), datetime.combine(end, _DAY_END)


# -----------------------------------------------------------------------------
# Streak
# -----------------------------------------------------------------------------
def compute_streak(workout_dates: Iterable, reference_date) -> int:
    """Consecutive days with a workout, counting back from ``reference_date``.

    Dates are collapsed to calendar days first so several workouts on one day
    count once. Days after the reference date are skipped. The streak is 0
    when nothing was logged on the reference date itself.
    """
    check = _as_day(reference_date)
    streak = 0
    for day in sorted({_as_day(d) for d in workout_dates}, reverse=True):
        if day > check:
            continue
        if day == check:
            streak += 1
            check -= timedelta(days=1)
        else:
            break
    return streak
