"""User profile and settings models."""

from dataclasses import dataclass
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


@dataclass(frozen=True)
class UserProfile:
    """The current user profile (latest row)."""

    id: int
    name: str | None
    age: int | None
    height: float | None
    gender: str | None
    created_at: datetime | None
    updated_at: datetime | None


class ProfilePatch(BaseModel):
    """Updatable profile fields; height is in centimetres."""

    name: str | None = Field(default=None, max_length=100)
    age: int | None = Field(default=None, ge=1, le=150)
    height: float | None = Field(default=None, gt=0, le=300)
    gender: str | None = None


class AppSettings(BaseModel):
    """User-facing preferences persisted as key/value rows."""

    model_config = ConfigDict(extra="forbid")

    weight_unit: Literal["kg", "lb"] = "kg"
    hydration_unit: Literal["ml", "oz"] = "ml"
    reminder_time: str = Field(default="08:00", pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
