"""Dependency container wiring for the application."""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from fasting_tracker.adapters.sqlite_connection import SqliteConnectionManager
from fasting_tracker.adapters.sqlite_gateway import SqliteGateway
from fasting_tracker.app_logging import configure_logging
from fasting_tracker.config import Settings, parse_timezone
from fasting_tracker.domain.fasting import FastingTimer
from fasting_tracker.services.store import AppStore
from fasting_tracker.services.ticker import FastingTicker


@dataclass
class AppContainer:
    """Holds application-wide dependencies."""

    settings: Settings
    connection_manager: SqliteConnectionManager
    gateway: SqliteGateway
    store: AppStore
    close_resources: Callable[[], Awaitable[None]]


def build_container(settings: Settings | None = None) -> AppContainer:
    """Create the default dependency container."""
    configure_logging()
    resolved_settings = settings or Settings()
    connection_manager = SqliteConnectionManager(
        database_path=resolved_settings.database_path,
        retries=resolved_settings.connection_retries,
        retry_delay_seconds=resolved_settings.connection_retry_delay_seconds,
    )
    gateway = SqliteGateway(connection_manager)
    store = AppStore(
        gateway=gateway,
        timezone=parse_timezone(resolved_settings.timezone),
        weight_history_limit=resolved_settings.weight_history_limit,
        hydration_goal=resolved_settings.hydration_goal_ml,
    )

    async def close_resources() -> None:
        await connection_manager.close()

    return AppContainer(
        settings=resolved_settings,
        connection_manager=connection_manager,
        gateway=gateway,
        store=store,
        close_resources=close_resources,
    )


def build_ticker(
    container: AppContainer, on_tick: Callable[[FastingTimer], None]
) -> FastingTicker:
    """Create a timer ticker using the configured interval."""
    return FastingTicker(
        store=container.store,
        on_tick=on_tick,
        interval_seconds=container.settings.timer_tick_seconds,
    )
