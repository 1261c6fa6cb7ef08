"""Shared test fixtures."""

import asyncio
import sqlite3
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta

import aiosqlite
import pytest

from fasting_tracker.adapters.sqlite_connection import (
    SqliteConnectionManager,
    open_sqlite,
)
from fasting_tracker.adapters.sqlite_gateway import SqliteGateway
from fasting_tracker.config import Settings
from fasting_tracker.domain.achievements import ACHIEVEMENT_SEEDS
from fasting_tracker.domain.fasting import FastingSession
from fasting_tracker.errors import StorageError
from fasting_tracker.services.store import AppStore

NOW = datetime(2026, 3, 14, 12, 0, tzinfo=UTC)
TODAY = NOW.date()


@dataclass
class FakeClock:
    """Deterministic clock for the store."""

    now: datetime = NOW

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


@dataclass
class CountingOpener:
    """Opener that counts calls and can fail the first attempts."""

    calls: int = 0
    failures: int = 0
    delay_seconds: float = 0.0

    async def __call__(self, database_path: str) -> aiosqlite.Connection:
        self.calls += 1
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if self.calls <= self.failures:
            raise sqlite3.OperationalError("unable to open database file")
        return await open_sqlite(database_path)


@dataclass
class FlakyGateway:
    """Delegates to a real gateway but fails the named operations."""

    inner: SqliteGateway
    failing: set[str] = field(default_factory=set)
    calls: list[str] = field(default_factory=list)

    def __getattr__(self, name: str):  # type: ignore[no-untyped-def]
        attribute = getattr(self.inner, name)
        if not callable(attribute):
            return attribute

        async def call(*args, **kwargs):  # type: ignore[no-untyped-def]
            self.calls.append(name)
            if name in self.failing:
                raise StorageError(name, "injected failure")
            return await attribute(*args, **kwargs)

        return call


def make_gateway(database_path: str, opener=None) -> SqliteGateway:  # type: ignore[no-untyped-def]
    manager = SqliteConnectionManager(
        database_path=database_path,
        retries=3,
        retry_delay_seconds=0.0,
        opener=opener or open_sqlite,
    )
    return SqliteGateway(manager)


def completed_session(days_ago: int, hours: float = 16.0) -> FastingSession:
    """A closed session that started ``days_ago`` days before NOW."""
    start = NOW - timedelta(days=days_ago, hours=2)
    return FastingSession(
        id=0,
        start_time=start,
        end_time=start + timedelta(hours=hours),
        duration_hours=hours,
        preset_type="16:8",
        is_completed=True,
    )


def days_ago(count: int) -> date:
    return TODAY - timedelta(days=count)


async def create_legacy_achievements(gateway: SqliteGateway, copies: int) -> None:
    """Create an achievements table without the UNIQUE constraint, duplicated."""

    async def op(connection: aiosqlite.Connection) -> None:
        await connection.execute(
            "CREATE TABLE achievements ("
            "id INTEGER PRIMARY KEY AUTOINCREMENT, "
            "type TEXT NOT NULL, "
            "title TEXT NOT NULL, "
            "description TEXT, "
            "unlocked_at TEXT, "
            "is_unlocked BOOLEAN DEFAULT 0)"
        )
        for _ in range(copies):
            await connection.executemany(
                "INSERT INTO achievements (type, title, description) VALUES (?, ?, ?)",
                [(seed.type, seed.title, seed.description) for seed in ACHIEVEMENT_SEEDS],
            )

    await gateway.with_connection("create_legacy_achievements", op)


@pytest.fixture
def database_path(tmp_path) -> str:  # type: ignore[no-untyped-def]
    return str(tmp_path / "fasting_app.db")


@pytest.fixture
def settings(database_path: str) -> Settings:
    return Settings(
        database_path=database_path,
        connection_retry_delay_seconds=0.0,
        timer_tick_seconds=0.01,
    )


@pytest.fixture
def gateway(database_path: str) -> Iterator[SqliteGateway]:
    gateway = make_gateway(database_path)
    yield gateway
    asyncio.run(gateway.connection_manager.close())


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(gateway: SqliteGateway, clock: FakeClock) -> AppStore:
    return AppStore(gateway=gateway, clock=clock)
