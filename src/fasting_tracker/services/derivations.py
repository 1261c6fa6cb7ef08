"""Pure timer and statistics derivations."""

from collections.abc import Iterable
from datetime import UTC, date, datetime, timedelta
from zoneinfo import ZoneInfo

from fasting_tracker.domain.fasting import (
    FastingPreset,
    FastingSession,
    FastingTimer,
    UNBOUNDED_HOURS,
)
from fasting_tracker.domain.stats import HealthStatus
from fasting_tracker.domain.tracking import DailyAggregate, WeightEntry

SECONDS_PER_HOUR = 3600
WEEK_DAYS = 7
STREAK_LOOKBACK_DAYS = 30

_BMI_BANDS: tuple[tuple[float, str], ...] = (
    (18.5, "underweight"),
    (25.0, "normal"),
    (30.0, "overweight"),
    (35.0, "obese_class_1"),
    (40.0, "obese_class_2"),
)


def elapsed_seconds(start_time: datetime, now: datetime) -> int:
    """Whole seconds since start, clamped at zero for clocks set backwards."""
    return max(0, int((now - start_time).total_seconds()))


def target_seconds(preset: FastingPreset) -> int:
    """Target fast length in seconds, or -1 for an unbounded preset."""
    if preset.is_unbounded:
        return UNBOUNDED_HOURS
    return preset.fast_hours * SECONDS_PER_HOUR


def compute_timer(
    session: FastingSession, preset: FastingPreset, now: datetime
) -> FastingTimer:
    """Derive the timer snapshot for an open session."""
    elapsed = elapsed_seconds(session.start_time, now)
    target = target_seconds(preset)
    if target == UNBOUNDED_HOURS:
        return FastingTimer(
            elapsed_seconds=elapsed,
            remaining_seconds=0,
            target_seconds=target,
            is_completed=False,
            is_extended=True,
            start_time=session.start_time,
            preset_type=session.preset_type,
        )
    remaining = max(0, target - elapsed)
    return FastingTimer(
        elapsed_seconds=elapsed,
        remaining_seconds=remaining,
        target_seconds=target,
        is_completed=remaining == 0,
        is_extended=False,
        start_time=session.start_time,
        preset_type=session.preset_type,
    )


def duration_hours(start_time: datetime, end_time: datetime) -> float:
    """Length of a closed session in fractional hours."""
    return max(0.0, (end_time - start_time).total_seconds() / SECONDS_PER_HOUR)


def calculate_bmi(weight_kg: float | None, height_cm: float | None) -> float | None:
    """Body mass index from kilograms and centimetres."""
    if not weight_kg or not height_cm:
        return None
    height_m = height_cm / 100
    return weight_kg / (height_m * height_m)


def classify_bmi(bmi: float) -> str:
    """Return the health band for a BMI value."""
    for upper, label in _BMI_BANDS:
        if bmi < upper:
            return label
    return "obese_class_3"


def health_status(weight_kg: float | None, height_cm: float | None) -> HealthStatus | None:
    bmi = calculate_bmi(weight_kg, height_cm)
    if bmi is None:
        return None
    return HealthStatus(bmi=bmi, status=classify_bmi(bmi))


def local_day(instant: datetime, tz: ZoneInfo) -> date:
    """Calendar day of an instant in the user's timezone."""
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=UTC)
    return instant.astimezone(tz).date()


def current_streak(
    days: Iterable[date], today: date, lookback_days: int = STREAK_LOOKBACK_DAYS
) -> int:
    """Count consecutive days with a completed fast.

    The run ends today, or yesterday when nothing has been completed yet
    today, and never reaches further back than the lookback window.
    """
    window_start = today - timedelta(days=lookback_days)
    active = {day for day in days if window_start <= day <= today}
    cursor = today if today in active else today - timedelta(days=1)
    streak = 0
    while cursor in active:
        streak += 1
        cursor -= timedelta(days=1)
    return streak


def daily_fasting_hours(
    sessions: Iterable[FastingSession], tz: ZoneInfo
) -> list[DailyAggregate]:
    """Sum completed session hours per start day."""
    totals: dict[date, float] = {}
    for session in sessions:
        if not session.is_completed or session.duration_hours is None:
            continue
        day = local_day(session.start_time, tz)
        totals[day] = totals.get(day, 0.0) + session.duration_hours
    return [DailyAggregate(day=day, total=total) for day, total in sorted(totals.items())]


def trailing_days(today: date, count: int = WEEK_DAYS) -> list[date]:
    """The last ``count`` calendar days, oldest first, ending today."""
    return [today - timedelta(days=offset) for offset in range(count - 1, -1, -1)]


def weekly_series(
    aggregates: Iterable[DailyAggregate], today: date, count: int = WEEK_DAYS
) -> list[float]:
    """Per-day totals for the trailing window; missing days are 0."""
    by_day = {aggregate.day: aggregate.total for aggregate in aggregates}
    return [by_day.get(day, 0.0) for day in trailing_days(today, count)]


def weight_change(entries: list[WeightEntry]) -> float:
    """Newest minus oldest weight of a most-recent-first list."""
    if len(entries) < 2:
        return 0.0
    return entries[0].weight - entries[-1].weight


def target_reached(
    entries: list[WeightEntry], current: float | None, target: float | None
) -> bool:
    """True once the current weight reaches the target.

    The direction is taken from the oldest known entry: losing towards a
    lower target or gaining towards a higher one.
    """
    if current is None or target is None:
        return False
    if not entries:
        return current == target
    start = entries[-1].weight
    if start >= target:
        return current <= target
    return current >= target
