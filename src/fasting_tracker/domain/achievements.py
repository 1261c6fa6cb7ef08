"""Domain models for achievements."""

from dataclasses import dataclass
from datetime import datetime

STREAK_7 = "streak_7"
STREAK_30 = "streak_30"
LONGEST_FAST = "longest_fast"
WEIGHT_MILESTONE = "weight_milestone"


@dataclass(frozen=True)
class AchievementSeed:
    """Canonical definition of an achievement row."""

    type: str
    title: str
    description: str


ACHIEVEMENT_SEEDS: tuple[AchievementSeed, ...] = (
    AchievementSeed(
        type=STREAK_7,
        title="7-Day Streak",
        description="Complete 7 consecutive days of fasting",
    ),
    AchievementSeed(
        type=STREAK_30,
        title="30-Day Streak",
        description="Complete 30 consecutive days of fasting",
    ),
    AchievementSeed(
        type=LONGEST_FAST,
        title="Marathon Faster",
        description="Complete a 24-hour fast",
    ),
    AchievementSeed(
        type=WEIGHT_MILESTONE,
        title="Weight Goal",
        description="Reach your target weight",
    ),
)


@dataclass(frozen=True)
class Achievement:
    """Represents a persisted achievement."""

    id: int
    type: str
    title: str
    description: str | None
    unlocked_at: datetime | None
    is_unlocked: bool
