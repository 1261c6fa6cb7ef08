"""Application state container for fasting, weight, hydration and achievements."""

import asyncio
import logging
import warnings
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime, timedelta
from typing import Protocol, TypeVar
from zoneinfo import ZoneInfo

import pydantic

from fasting_tracker.domain.achievements import (
    ACHIEVEMENT_SEEDS,
    LONGEST_FAST,
    STREAK_7,
    STREAK_30,
    WEIGHT_MILESTONE,
    Achievement,
)
from fasting_tracker.domain.fasting import (
    FASTING_PRESETS,
    FastingPreset,
    FastingSession,
    FastingTimer,
)
from fasting_tracker.domain.profile import AppSettings, ProfilePatch, UserProfile
from fasting_tracker.domain.stats import (
    FastingStats,
    HealthStatus,
    WeeklyChartData,
    WeeklyStats,
)
from fasting_tracker.domain.tracking import (
    DailyAggregate,
    HydrationEntry,
    HydrationInput,
    WeightEntry,
    WeightInput,
)
from fasting_tracker.errors import (
    DataIntegrityWarning,
    FastingTrackerError,
    SessionAlreadyActiveError,
    ValidationError,
)
from fasting_tracker.services.derivations import (
    STREAK_LOOKBACK_DAYS,
    WEEK_DAYS,
    compute_timer,
    current_streak,
    daily_fasting_hours,
    duration_hours,
    health_status,
    local_day,
    target_reached,
    trailing_days,
    weekly_series,
    weight_change,
)

_logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_PRESET = "16:8"
TARGET_WEIGHT_KEY = "target_weight"
LONGEST_FAST_HOURS = 24
STREAK_7_DAYS = 7
STREAK_30_DAYS = 30


class TrackerGateway(Protocol):
    """Persistence interface for the tracker's records."""

    async def initialize_schema(self) -> int:
        """Create tables, seed achievements once, return the achievement count."""

    async def start_fasting_session(self, preset_type: str, start_time: datetime) -> int:
        """Insert an open session and return its id."""

    async def close_fasting_session(
        self, session_id: int, end_time: datetime, duration_hours: float
    ) -> None:
        """Close and complete an open session."""

    async def get_current_fasting_session(self) -> FastingSession | None:
        """Return the open session, if present."""

    async def list_completed_sessions(
        self, since: datetime | None = None
    ) -> list[FastingSession]:
        """Return completed sessions started since an instant."""

    async def get_fasting_stats(self, since: datetime | None = None) -> FastingStats:
        """Return aggregates over completed sessions."""

    async def add_weight_entry(self, weight: float, day: date) -> int:
        """Append a weight entry and return its id."""

    async def list_weight_entries(self, limit: int = 30) -> list[WeightEntry]:
        """Return recent weight entries, newest first."""

    async def list_weight_entries_since(self, day: date) -> list[WeightEntry]:
        """Return weight entries dated on or after a day, newest first."""

    async def add_hydration_entry(self, amount: float, day: date) -> int:
        """Append a signed hydration entry and return its id."""

    async def get_hydration_total(self, day: date) -> float:
        """Return the summed hydration for a day."""

    async def list_hydration_entries(self, day: date) -> list[HydrationEntry]:
        """Return the individual hydration entries of a day."""

    async def list_daily_hydration(self, since: date) -> list[DailyAggregate]:
        """Return per-day hydration totals since a day."""

    async def list_achievements(self) -> list[Achievement]:
        """Return all achievement rows."""

    async def unlock_achievement(self, achievement_type: str, unlocked_at: datetime) -> bool:
        """Unlock a locked achievement; return whether anything changed."""

    async def reset_achievements(self) -> None:
        """Lock all achievements."""

    async def repair_duplicate_achievements(self) -> int:
        """Replace achievement rows with the canonical set; return the count."""

    async def get_user_profile(self) -> UserProfile | None:
        """Return the current profile, if present."""

    async def save_user_profile(self, patch: ProfilePatch) -> UserProfile:
        """Create or update the current profile."""

    async def get_settings(self) -> dict[str, str]:
        """Return persisted settings as strings."""

    async def set_setting(self, key: str, value: str) -> None:
        """Persist a single setting."""

    async def reset_all(self) -> None:
        """Wipe every table and re-seed achievements."""


@dataclass(frozen=True)
class AppState:
    """Immutable snapshot of everything the UI renders."""

    initialized: bool = False
    current_session: FastingSession | None = None
    weight_entries: list[WeightEntry] = field(default_factory=list)
    current_weight: float | None = None
    target_weight: float | None = None
    daily_hydration_total: float = 0.0
    hydration_goal: float = 2000.0
    achievements: list[Achievement] = field(default_factory=list)
    duplicate_achievements: int | None = None
    user_profile: UserProfile | None = None
    weekly_stats: WeeklyStats | None = None
    weekly_chart: WeeklyChartData | None = None
    settings: AppSettings = field(default_factory=AppSettings)


Listener = Callable[[AppState], None]

_EMPTY_STATS = WeeklyStats(
    fasting=FastingStats(total_sessions=0, avg_duration=None, total_hours=0.0),
    weight_change=0.0,
    total_hydration=0.0,
    current_streak=0,
)


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


@dataclass
class AppStore:
    """Owns the in-memory app state and every operation that changes it."""

    gateway: TrackerGateway
    timezone: ZoneInfo = field(default_factory=lambda: ZoneInfo("UTC"))
    weight_history_limit: int = 30
    hydration_goal: float = 2000.0
    clock: Callable[[], datetime] = _utc_now
    fasting_presets: dict[str, FastingPreset] = field(
        default_factory=lambda: dict(FASTING_PRESETS)
    )
    state: AppState = field(init=False)
    _listeners: list[Listener] = field(default_factory=list, init=False)

    def __post_init__(self) -> None:
        self.state = AppState(hydration_goal=self.hydration_goal)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener for state changes and return its unsubscriber."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def today(self) -> date:
        return local_day(self.clock(), self.timezone)

    async def initialize(self) -> AppState:
        """Prepare the database and load whatever can be loaded.

        Each load is independent; the store always ends up initialized so the
        UI never waits on a subsystem that failed.
        """
        try:
            await self.gateway.initialize_schema()
        except FastingTrackerError:
            _logger.exception("Database initialization failed")

        changes: dict[str, object] = {"initialized": True}

        session = await self._best_effort(
            "current fasting session", self.gateway.get_current_fasting_session
        )
        if not isinstance(session, _Missing):
            changes["current_session"] = session

        achievements = await self._best_effort(
            "achievements", self.gateway.list_achievements
        )
        if not isinstance(achievements, _Missing):
            changes.update(_achievement_changes(achievements))

        entries = await self._best_effort(
            "weight entries",
            lambda: self.gateway.list_weight_entries(self.weight_history_limit),
        )
        if not isinstance(entries, _Missing):
            changes["weight_entries"] = entries
            changes["current_weight"] = entries[0].weight if entries else None

        profile = await self._best_effort("user profile", self.gateway.get_user_profile)
        if not isinstance(profile, _Missing):
            changes["user_profile"] = profile

        hydration = await self._best_effort(
            "daily hydration", lambda: self.gateway.get_hydration_total(self.today())
        )
        if not isinstance(hydration, _Missing):
            changes["daily_hydration_total"] = hydration

        stored = await self._best_effort("settings", self.gateway.get_settings)
        if not isinstance(stored, _Missing):
            changes.update(_settings_changes(stored))

        self._update(**changes)
        _logger.info("App initialization completed")
        return self.state

    async def start_fasting(self, preset_key: str) -> FastingSession:
        """Open a new fasting session for a known preset."""
        if preset_key not in self.fasting_presets:
            raise ValidationError(f"Unknown fasting preset: {preset_key}")
        if self.state.current_session is not None:
            raise SessionAlreadyActiveError(
                f"Fasting session {self.state.current_session.id} is still open"
            )
        start_time = self.clock()
        session_id = await self.gateway.start_fasting_session(preset_key, start_time)
        session = FastingSession(
            id=session_id,
            start_time=start_time,
            end_time=None,
            duration_hours=None,
            preset_type=preset_key,
            is_completed=False,
        )
        self._update(current_session=session)
        _logger.info("Fasting started: session_id=%s preset=%s", session_id, preset_key)
        return session

    async def end_fasting(self) -> FastingSession | None:
        """Close the open session, then re-evaluate achievements.

        A storage failure propagates and leaves the session open in memory so
        the caller can retry.
        """
        session = self.state.current_session
        if session is None:
            return None
        end_time = max(self.clock(), session.start_time)
        hours = duration_hours(session.start_time, end_time)
        await self.gateway.close_fasting_session(session.id, end_time, hours)
        closed = replace(
            session, end_time=end_time, duration_hours=hours, is_completed=True
        )
        _logger.info("Fasting ended: session_id=%s hours=%.2f", session.id, hours)
        try:
            await self.check_streak_achievements()
        except FastingTrackerError:
            _logger.exception(
                "Achievement check failed after ending session %s", session.id
            )
        self._update(current_session=None)
        return closed

    def get_fasting_timer(self, now: datetime | None = None) -> FastingTimer | None:
        """Timer snapshot for the open session, or None when not fasting."""
        session = self.state.current_session
        if session is None:
            return None
        preset = self.fasting_presets.get(
            session.preset_type, self.fasting_presets[DEFAULT_PRESET]
        )
        return compute_timer(session, preset, now or self.clock())

    async def add_weight(self, value: object) -> list[WeightEntry]:
        """Record a weight for today."""
        return await self.add_weight_entry(value, self.today())

    async def add_weight_entry(self, value: object, day: date) -> list[WeightEntry]:
        """Record a weight for a given day and reload the recent window."""
        weight = _validate_weight(value)
        await self.gateway.add_weight_entry(weight, day)
        entries = await self.gateway.list_weight_entries(self.weight_history_limit)
        self._update(weight_entries=entries, current_weight=weight)
        await self._check_weight_milestone_logged()
        return entries

    async def add_hydration(self, delta: object) -> float:
        """Record a signed hydration change for today and return the day's total."""
        amount = _validate_hydration(delta)
        today = self.today()
        await self.gateway.add_hydration_entry(amount, today)
        total = await self.gateway.get_hydration_total(today)
        self._update(daily_hydration_total=total)
        return total

    async def load_daily_hydration(self) -> float:
        total = await self.gateway.get_hydration_total(self.today())
        self._update(daily_hydration_total=total)
        return total

    async def check_streak_achievements(self) -> list[str]:
        """Unlock streak and long-fast achievements; return newly unlocked types."""
        now = self.clock()
        streak = await self._current_streak(now)
        stats = await self.gateway.get_fasting_stats()

        earned = []
        if streak >= STREAK_7_DAYS:
            earned.append(STREAK_7)
        if streak >= STREAK_30_DAYS:
            earned.append(STREAK_30)
        # Averages over all sessions rather than taking the longest one.
        if stats.avg_duration is not None and stats.avg_duration >= LONGEST_FAST_HOURS:
            earned.append(LONGEST_FAST)

        unlocked = await self._unlock(earned, now)
        achievements = await self.gateway.list_achievements()
        self._update(**_achievement_changes(achievements))
        return unlocked

    async def check_weight_milestone(self) -> bool:
        """Unlock the weight goal once the current weight reaches the target."""
        if not target_reached(
            self.state.weight_entries,
            self.state.current_weight,
            self.state.target_weight,
        ):
            return False
        unlocked = await self._unlock([WEIGHT_MILESTONE], self.clock())
        achievements = await self.gateway.list_achievements()
        self._update(**_achievement_changes(achievements))
        return bool(unlocked)

    async def load_weekly_stats(self) -> WeeklyStats:
        """Summarize the trailing seven days.

        Sub-queries fail independently; a failed part keeps its previously
        loaded value.
        """
        now = self.clock()
        today = local_day(now, self.timezone)
        first_day = today - timedelta(days=WEEK_DAYS - 1)
        fasting, weights, hydration, streak = await asyncio.gather(
            self.gateway.get_fasting_stats(now - timedelta(days=WEEK_DAYS)),
            self.gateway.list_weight_entries_since(first_day),
            self.gateway.list_daily_hydration(first_day),
            self._current_streak(now),
            return_exceptions=True,
        )
        previous = self.state.weekly_stats or _EMPTY_STATS
        stats = WeeklyStats(
            fasting=_merged("weekly fasting stats", fasting, previous.fasting),
            weight_change=_merged(
                "weekly weight change",
                weights,
                previous.weight_change,
                transform=weight_change,
            ),
            total_hydration=_merged(
                "weekly hydration",
                hydration,
                previous.total_hydration,
                transform=lambda rows: sum(weekly_series(rows, today)),
            ),
            current_streak=_merged("current streak", streak, previous.current_streak),
        )
        self._update(weekly_stats=stats)
        return stats

    async def load_weekly_chart_data(self) -> WeeklyChartData:
        """Per-day fasting hours and hydration for the trailing seven days."""
        now = self.clock()
        today = local_day(now, self.timezone)
        sessions, hydration = await asyncio.gather(
            self.gateway.list_completed_sessions(now - timedelta(days=WEEK_DAYS + 1)),
            self.gateway.list_daily_hydration(today - timedelta(days=WEEK_DAYS - 1)),
            return_exceptions=True,
        )
        previous = self.state.weekly_chart
        empty = [0.0] * WEEK_DAYS
        chart = WeeklyChartData(
            days=trailing_days(today),
            fasting_hours=_merged(
                "weekly fasting chart",
                sessions,
                previous.fasting_hours if previous else empty,
                transform=lambda rows: weekly_series(
                    daily_fasting_hours(rows, self.timezone), today
                ),
            ),
            hydration_ml=_merged(
                "weekly hydration chart",
                hydration,
                previous.hydration_ml if previous else empty,
                transform=lambda rows: weekly_series(rows, today),
            ),
        )
        self._update(weekly_chart=chart)
        return chart

    async def reset_achievements(self) -> list[Achievement]:
        await self.gateway.reset_achievements()
        achievements = await self.gateway.list_achievements()
        self._update(**_achievement_changes(achievements))
        return achievements

    async def repair_duplicate_achievements(self) -> list[Achievement]:
        """Collapse duplicated achievement rows back to the canonical set."""
        count = await self.gateway.repair_duplicate_achievements()
        _logger.info("Achievement repair finished: count=%s", count)
        achievements = await self.gateway.list_achievements()
        self._update(**_achievement_changes(achievements))
        return achievements

    async def clear_all_data(self) -> AppState:
        """Wipe every table, reset memory to defaults and initialize again."""
        await self.gateway.reset_all()
        self.state = AppState(hydration_goal=self.hydration_goal)
        self._notify()
        return await self.initialize()

    async def export_snapshot(self) -> dict[str, object]:
        """Weight history, all-time fasting stats and unlocked achievements."""
        stats = await self.gateway.get_fasting_stats()
        return {
            "exported_at": self.clock().isoformat(),
            "weight_entries": [
                {"date": entry.date.isoformat(), "weight": entry.weight}
                for entry in self.state.weight_entries
            ],
            "fasting_stats": {
                "total_sessions": stats.total_sessions,
                "avg_duration": stats.avg_duration,
                "total_hours": stats.total_hours,
            },
            "achievements": [
                {
                    "type": achievement.type,
                    "title": achievement.title,
                    "unlocked_at": achievement.unlocked_at.isoformat()
                    if achievement.unlocked_at
                    else None,
                }
                for achievement in self.state.achievements
                if achievement.is_unlocked
            ],
        }

    async def update_user_profile(self, **fields: object) -> UserProfile:
        try:
            patch = ProfilePatch.model_validate(fields)
        except pydantic.ValidationError as exc:
            raise ValidationError(f"Invalid profile: {exc}") from exc
        profile = await self.gateway.save_user_profile(patch)
        self._update(user_profile=profile)
        return profile

    async def update_settings(self, **fields: object) -> AppSettings:
        """Validate and persist user preferences."""
        try:
            settings = AppSettings.model_validate(
                {**self.state.settings.model_dump(), **fields}
            )
        except pydantic.ValidationError as exc:
            raise ValidationError(f"Invalid settings: {exc}") from exc
        for key in fields:
            await self.gateway.set_setting(key, str(getattr(settings, key)))
        self._update(settings=settings)
        return settings

    async def set_target_weight(self, value: object) -> float:
        weight = _validate_weight(value)
        await self.gateway.set_setting(TARGET_WEIGHT_KEY, str(weight))
        self._update(target_weight=weight)
        await self._check_weight_milestone_logged()
        return weight

    def get_health_summary(self) -> HealthStatus | None:
        """BMI of the current weight against the profile height."""
        profile = self.state.user_profile
        return health_status(
            self.state.current_weight, profile.height if profile else None
        )

    async def _current_streak(self, now: datetime) -> int:
        sessions = await self.gateway.list_completed_sessions(
            now - timedelta(days=STREAK_LOOKBACK_DAYS + 1)
        )
        days = [local_day(session.start_time, self.timezone) for session in sessions]
        return current_streak(days, local_day(now, self.timezone))

    async def _unlock(self, achievement_types: list[str], now: datetime) -> list[str]:
        already = {
            achievement.type
            for achievement in self.state.achievements
            if achievement.is_unlocked
        }
        unlocked = []
        for achievement_type in achievement_types:
            if achievement_type in already:
                continue
            if await self.gateway.unlock_achievement(achievement_type, now):
                _logger.info("Achievement unlocked: type=%s", achievement_type)
                unlocked.append(achievement_type)
        return unlocked

    async def _check_weight_milestone_logged(self) -> None:
        try:
            await self.check_weight_milestone()
        except FastingTrackerError:
            _logger.exception("Weight milestone check failed")

    async def _best_effort(
        self, label: str, load: Callable[[], Awaitable[T]]
    ) -> "T | _Missing":
        try:
            return await load()
        except FastingTrackerError:
            _logger.exception("Failed to load %s", label)
            return _MISSING

    def _update(self, **changes: object) -> None:
        self.state = replace(self.state, **changes)
        self._notify()

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self.state)
            except Exception:
                _logger.exception("State listener failed")


class _Missing:
    """Marker for a load that failed."""


_MISSING = _Missing()


def _merged(
    label: str,
    result: object,
    previous: T,
    transform: Callable[[object], T] | None = None,
) -> T:
    if isinstance(result, FastingTrackerError):
        _logger.error("Failed to load %s: %s", label, result)
        return previous
    if isinstance(result, BaseException):
        raise result
    if transform is None:
        return result  # type: ignore[return-value]
    return transform(result)


def _achievement_changes(achievements: list[Achievement]) -> dict[str, object]:
    duplicate = None
    if len(achievements) > len(ACHIEVEMENT_SEEDS):
        duplicate = len(achievements)
        _logger.warning(
            "Duplicate achievements detected: count=%s expected=%s",
            duplicate,
            len(ACHIEVEMENT_SEEDS),
        )
        warnings.warn(
            f"{duplicate} achievement rows stored, expected {len(ACHIEVEMENT_SEEDS)}",
            DataIntegrityWarning,
            stacklevel=3,
        )
    return {"achievements": achievements, "duplicate_achievements": duplicate}


def _settings_changes(stored: dict[str, str]) -> dict[str, object]:
    changes: dict[str, object] = {}
    known = {key: stored[key] for key in AppSettings.model_fields if key in stored}
    try:
        changes["settings"] = AppSettings.model_validate(known)
    except pydantic.ValidationError:
        _logger.exception("Ignoring invalid stored settings")
    raw_target = stored.get(TARGET_WEIGHT_KEY)
    if raw_target is not None:
        try:
            changes["target_weight"] = _validate_weight(raw_target)
        except ValidationError:
            _logger.exception("Ignoring invalid stored target weight")
    return changes


def _validate_weight(value: object) -> float:
    if isinstance(value, bool):
        raise ValidationError("Weight must be a number")
    try:
        return WeightInput.model_validate({"weight": value}).weight
    except pydantic.ValidationError as exc:
        raise ValidationError(f"Weight must be a number in (0, 500]: {value!r}") from exc


def _validate_hydration(value: object) -> float:
    if isinstance(value, bool):
        raise ValidationError("Hydration amount must be a number")
    try:
        return HydrationInput.model_validate({"amount": value}).amount
    except pydantic.ValidationError as exc:
        raise ValidationError(f"Hydration amount must be a number: {value!r}") from exc
