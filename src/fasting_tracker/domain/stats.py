"""Domain models for statistics."""

from dataclasses import dataclass
from datetime import date


@dataclass(frozen=True)
class FastingStats:
    """Aggregates over completed fasting sessions."""

    total_sessions: int
    avg_duration: float | None
    total_hours: float


@dataclass(frozen=True)
class WeeklyStats:
    """Trailing seven-day summary."""

    fasting: FastingStats
    weight_change: float
    total_hydration: float
    current_streak: int


@dataclass(frozen=True)
class WeeklyChartData:
    """Per-day series for the trailing seven days, oldest first."""

    days: list[date]
    fasting_hours: list[float]
    hydration_ml: list[float]


@dataclass(frozen=True)
class HealthStatus:
    """BMI and its band."""

    bmi: float
    status: str
