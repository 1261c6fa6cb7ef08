"""Application configuration."""

import os
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic_settings import BaseSettings, SettingsConfigDict

_ENVIRONMENT = os.getenv("ENVIRONMENT", "local")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    database_path: str = "fasting_app.db"
    connection_retries: int = 3
    connection_retry_delay_seconds: float = 1.0
    timezone: str = "UTC"
    weight_history_limit: int = 30
    hydration_goal_ml: float = 2000.0
    timer_tick_seconds: float = 1.0
    environment: str = _ENVIRONMENT

    model_config = SettingsConfigDict(
        env_file=(f".env.{_ENVIRONMENT}", ".env"),
        extra="ignore",
    )


def parse_timezone(raw: str | None) -> ZoneInfo:
    """Resolve an IANA timezone name, falling back to UTC."""
    if raw is None:
        return ZoneInfo("UTC")
    cleaned = raw.strip()
    if not cleaned:
        return ZoneInfo("UTC")
    try:
        return ZoneInfo(cleaned)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")
