"""Domain models for fasting sessions."""

from dataclasses import dataclass
from datetime import datetime

from pydantic import BaseModel, Field

EXTENDED_PRESET = "extended"
UNBOUNDED_HOURS = -1


@dataclass(frozen=True)
class FastingPreset:
    """A named fasting schedule; fast_hours of -1 means no target."""

    fast_hours: int
    eat_hours: int

    @property
    def is_unbounded(self) -> bool:
        return self.fast_hours == UNBOUNDED_HOURS


FASTING_PRESETS: dict[str, FastingPreset] = {
    "16:8": FastingPreset(fast_hours=16, eat_hours=8),
    "18:6": FastingPreset(fast_hours=18, eat_hours=6),
    "20:4": FastingPreset(fast_hours=20, eat_hours=4),
    "24h": FastingPreset(fast_hours=24, eat_hours=0),
    EXTENDED_PRESET: FastingPreset(fast_hours=UNBOUNDED_HOURS, eat_hours=0),
}


@dataclass(frozen=True)
class FastingSession:
    """Represents a persisted fasting session."""

    id: int
    start_time: datetime
    end_time: datetime | None
    duration_hours: float | None
    preset_type: str
    is_completed: bool

    @property
    def is_open(self) -> bool:
        return self.end_time is None


@dataclass(frozen=True)
class FastingTimer:
    """Snapshot of the running fasting timer."""

    elapsed_seconds: int
    remaining_seconds: int
    target_seconds: int
    is_completed: bool
    is_extended: bool
    start_time: datetime
    preset_type: str


class FastingSessionPatch(BaseModel):
    """Fields of a fasting session that may be updated after creation."""

    end_time: datetime | None = None
    duration_hours: float | None = Field(default=None, ge=0)
    preset_type: str | None = None
    is_completed: bool | None = None
