"""Domain models for weight and hydration logs."""

from dataclasses import dataclass
from datetime import date, datetime

from pydantic import BaseModel, Field


@dataclass(frozen=True)
class WeightEntry:
    """A single body weight measurement."""

    id: int
    weight: float
    date: date
    created_at: datetime | None


@dataclass(frozen=True)
class HydrationEntry:
    """A signed hydration amount; negative values are corrections."""

    id: int
    amount: float
    date: date
    created_at: datetime | None


@dataclass(frozen=True)
class DailyAggregate:
    """A per-day total, e.g. fasting hours or hydration ml."""

    day: date
    total: float


class WeightInput(BaseModel):
    """A weight value as entered by the user, in kilograms."""

    weight: float = Field(gt=0, le=500, allow_inf_nan=False)


class HydrationInput(BaseModel):
    """A signed hydration change in millilitres."""

    amount: float = Field(allow_inf_nan=False)
