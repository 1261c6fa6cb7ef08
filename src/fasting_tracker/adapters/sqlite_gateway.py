"""SQLite-backed gateway for every persisted record."""

import asyncio
import logging
import sqlite3
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from typing import TypeVar

import aiosqlite

from fasting_tracker.adapters.sqlite_connection import SqliteConnectionManager
from fasting_tracker.domain.achievements import ACHIEVEMENT_SEEDS, Achievement
from fasting_tracker.domain.fasting import FastingSession, FastingSessionPatch
from fasting_tracker.domain.profile import ProfilePatch, UserProfile
from fasting_tracker.domain.stats import FastingStats
from fasting_tracker.domain.tracking import (
    DailyAggregate,
    HydrationEntry,
    WeightEntry,
)
from fasting_tracker.errors import (
    FastingTrackerError,
    SessionAlreadyActiveError,
    StorageError,
    ValidationError,
)
from fasting_tracker.services.store import TrackerGateway

_logger = logging.getLogger(__name__)

T = TypeVar("T")

ACHIEVEMENTS_INITIALIZED = "achievements_initialized"

_TABLES = (
    "fasting_sessions",
    "weight_entries",
    "hydration_entries",
    "achievements",
    "user_settings",
    "user_profile",
    "app_metadata",
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS fasting_sessions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    start_time TEXT NOT NULL,
    end_time TEXT,
    duration_hours REAL,
    preset_type TEXT,
    is_completed BOOLEAN DEFAULT 0,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS weight_entries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    weight REAL NOT NULL,
    date TEXT NOT NULL,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS hydration_entries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    amount REAL NOT NULL,
    date TEXT NOT NULL,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS achievements (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    type TEXT NOT NULL UNIQUE,
    title TEXT NOT NULL,
    description TEXT,
    unlocked_at TEXT,
    is_unlocked BOOLEAN DEFAULT 0
);

CREATE TABLE IF NOT EXISTS user_settings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    key TEXT UNIQUE NOT NULL,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS user_profile (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT,
    age INTEGER,
    height REAL,
    gender TEXT,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS app_metadata (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    key TEXT UNIQUE NOT NULL,
    value TEXT NOT NULL
);
"""

_SESSION_PATCH_COLUMNS = {
    "end_time": "end_time",
    "duration_hours": "duration_hours",
    "preset_type": "preset_type",
    "is_completed": "is_completed",
}

_PROFILE_PATCH_COLUMNS = {
    "name": "name",
    "age": "age",
    "height": "height",
    "gender": "gender",
}


@dataclass
class SqliteGateway(TrackerGateway):
    """Mediates all reads and writes to the embedded database.

    Multi-statement units (schema seeding, full reset, achievement repair,
    session inserts and profile saves) run in one transaction under an
    exclusive lock that achievement readers also take.
    """

    connection_manager: SqliteConnectionManager
    _exclusive: asyncio.Lock = field(default_factory=asyncio.Lock, init=False)

    async def with_connection(
        self,
        operation: str,
        op: Callable[[aiosqlite.Connection], Awaitable[T]],
        *,
        entity_id: object | None = None,
    ) -> T:
        """Run ``op`` on a validated connection, discarding it on any error."""
        connection = await self.connection_manager.get_connection()
        try:
            return await op(connection)
        except Exception as exc:
            await self.connection_manager.discard()
            _logger.error(
                "Database operation failed: operation=%s entity_id=%s error=%s",
                operation,
                entity_id,
                exc,
            )
            if isinstance(exc, FastingTrackerError):
                raise
            if isinstance(exc, sqlite3.Error | ValueError):
                raise StorageError(operation, str(exc)) from exc
            raise

    async def _exclusively(
        self,
        operation: str,
        op: Callable[[aiosqlite.Connection], Awaitable[T]],
        *,
        entity_id: object | None = None,
    ) -> T:
        async with self._exclusive:
            return await self.with_connection(operation, op, entity_id=entity_id)

    async def initialize_schema(self) -> int:
        """Create tables and seed achievements once; return the achievement count."""

        async def op(connection: aiosqlite.Connection) -> int:
            await connection.executescript(_SCHEMA)
            async with _transaction(connection):
                count = await _count(connection, "achievements")
                if count == 0:
                    _logger.info("Seeding achievements for the first time")
                    await _seed_achievements(connection)
                    await _put_metadata(connection, ACHIEVEMENTS_INITIALIZED, "true")
                    return len(ACHIEVEMENT_SEEDS)
                flag = await _get_metadata(connection, ACHIEVEMENTS_INITIALIZED)
                if flag is None:
                    _logger.warning(
                        "Achievements present without init flag: count=%s", count
                    )
                    await _put_metadata(connection, ACHIEVEMENTS_INITIALIZED, "true")
                return count

        return await self._exclusively("initialize_schema", op)

    async def start_fasting_session(self, preset_type: str, start_time: datetime) -> int:
        """Insert an open session unless one is already open."""

        async def op(connection: aiosqlite.Connection) -> int:
            async with _transaction(connection):
                await _ensure_no_open_session(connection)
                cursor = await connection.execute(
                    "INSERT INTO fasting_sessions (start_time, preset_type) VALUES (?, ?)",
                    (_format_instant(start_time), preset_type),
                )
                return int(cursor.lastrowid)

        return await self._exclusively("start_fasting_session", op)

    async def close_fasting_session(
        self, session_id: int, end_time: datetime, duration_hours: float
    ) -> None:
        """Close an open session and mark it completed."""

        async def op(connection: aiosqlite.Connection) -> None:
            cursor = await connection.execute(
                "UPDATE fasting_sessions "
                "SET end_time = ?, duration_hours = ?, is_completed = 1 "
                "WHERE id = ? AND end_time IS NULL",
                (_format_instant(end_time), duration_hours, session_id),
            )
            if cursor.rowcount == 0:
                raise StorageError(
                    "close_fasting_session", f"no open session with id {session_id}"
                )

        await self.with_connection("close_fasting_session", op, entity_id=session_id)

    async def save_fasting_session(self, session: FastingSession) -> int:
        """Insert a session with all of its fields; the id is assigned."""
        if session.end_time is not None and session.end_time < session.start_time:
            raise ValidationError("end_time must not precede start_time")

        async def op(connection: aiosqlite.Connection) -> int:
            async with _transaction(connection):
                if session.end_time is None:
                    await _ensure_no_open_session(connection)
                cursor = await connection.execute(
                    "INSERT INTO fasting_sessions "
                    "(start_time, end_time, duration_hours, preset_type, is_completed) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (
                        _format_instant(session.start_time),
                        _format_instant(session.end_time),
                        session.duration_hours,
                        session.preset_type,
                        int(session.is_completed),
                    ),
                )
                return int(cursor.lastrowid)

        return await self._exclusively("save_fasting_session", op)

    async def update_fasting_session(
        self, session_id: int, patch: FastingSessionPatch
    ) -> int:
        """Apply the set fields of a patch; return the number of changed rows."""
        values = patch.model_dump(exclude_unset=True)
        if not values:
            return 0
        assignments = ", ".join(f"{_SESSION_PATCH_COLUMNS[key]} = ?" for key in values)
        params = [_to_sql(value) for value in values.values()]

        async def op(connection: aiosqlite.Connection) -> int:
            cursor = await connection.execute(
                f"UPDATE fasting_sessions SET {assignments} WHERE id = ?",  # noqa: S608
                (*params, session_id),
            )
            return cursor.rowcount

        return await self.with_connection(
            "update_fasting_session", op, entity_id=session_id
        )

    async def get_current_fasting_session(self) -> FastingSession | None:
        """Return the open session, if any."""

        async def op(connection: aiosqlite.Connection) -> FastingSession | None:
            async with connection.execute(
                "SELECT * FROM fasting_sessions WHERE end_time IS NULL "
                "ORDER BY start_time DESC LIMIT 1"
            ) as cursor:
                row = await cursor.fetchone()
            return _parse_session(row) if row else None

        return await self.with_connection("get_current_fasting_session", op)

    async def list_completed_sessions(
        self, since: datetime | None = None
    ) -> list[FastingSession]:
        """Return completed sessions started at or after ``since``, oldest first."""

        async def op(connection: aiosqlite.Connection) -> list[FastingSession]:
            if since is None:
                sql = (
                    "SELECT * FROM fasting_sessions WHERE is_completed = 1 "
                    "ORDER BY start_time ASC"
                )
                params: tuple[object, ...] = ()
            else:
                sql = (
                    "SELECT * FROM fasting_sessions "
                    "WHERE is_completed = 1 AND start_time >= ? "
                    "ORDER BY start_time ASC"
                )
                params = (_format_instant(since),)
            async with connection.execute(sql, params) as cursor:
                rows = await cursor.fetchall()
            return [_parse_session(row) for row in rows]

        return await self.with_connection("list_completed_sessions", op)

    async def get_fasting_stats(self, since: datetime | None = None) -> FastingStats:
        """Count, average and total hours of completed sessions."""

        async def op(connection: aiosqlite.Connection) -> FastingStats:
            sql = (
                "SELECT COUNT(*) AS total_sessions, "
                "AVG(duration_hours) AS avg_duration, "
                "COALESCE(SUM(duration_hours), 0) AS total_hours "
                "FROM fasting_sessions WHERE is_completed = 1"
            )
            params: tuple[object, ...] = ()
            if since is not None:
                sql += " AND start_time >= ?"
                params = (_format_instant(since),)
            async with connection.execute(sql, params) as cursor:
                row = await cursor.fetchone()
            return FastingStats(
                total_sessions=int(row["total_sessions"]),
                avg_duration=(
                    float(row["avg_duration"])
                    if row["avg_duration"] is not None
                    else None
                ),
                total_hours=float(row["total_hours"]),
            )

        return await self.with_connection("get_fasting_stats", op)

    async def add_weight_entry(self, weight: float, day: date) -> int:
        async def op(connection: aiosqlite.Connection) -> int:
            cursor = await connection.execute(
                "INSERT INTO weight_entries (weight, date) VALUES (?, ?)",
                (weight, day.isoformat()),
            )
            return int(cursor.lastrowid)

        return await self.with_connection("add_weight_entry", op)

    async def list_weight_entries(self, limit: int = 30) -> list[WeightEntry]:
        """Return the most recent weight entries, newest first."""

        async def op(connection: aiosqlite.Connection) -> list[WeightEntry]:
            async with connection.execute(
                "SELECT * FROM weight_entries ORDER BY date DESC, id DESC LIMIT ?",
                (limit,),
            ) as cursor:
                rows = await cursor.fetchall()
            return [_parse_weight(row) for row in rows]

        return await self.with_connection("list_weight_entries", op)

    async def list_weight_entries_since(self, day: date) -> list[WeightEntry]:
        """Return weight entries dated on or after ``day``, newest first."""

        async def op(connection: aiosqlite.Connection) -> list[WeightEntry]:
            async with connection.execute(
                "SELECT * FROM weight_entries WHERE date >= ? "
                "ORDER BY date DESC, id DESC",
                (day.isoformat(),),
            ) as cursor:
                rows = await cursor.fetchall()
            return [_parse_weight(row) for row in rows]

        return await self.with_connection("list_weight_entries_since", op)

    async def add_hydration_entry(self, amount: float, day: date) -> int:
        async def op(connection: aiosqlite.Connection) -> int:
            cursor = await connection.execute(
                "INSERT INTO hydration_entries (amount, date) VALUES (?, ?)",
                (amount, day.isoformat()),
            )
            return int(cursor.lastrowid)

        return await self.with_connection("add_hydration_entry", op)

    async def get_hydration_total(self, day: date) -> float:
        """Arithmetic sum of all hydration entries for a day."""

        async def op(connection: aiosqlite.Connection) -> float:
            async with connection.execute(
                "SELECT COALESCE(SUM(amount), 0) AS total "
                "FROM hydration_entries WHERE date = ?",
                (day.isoformat(),),
            ) as cursor:
                row = await cursor.fetchone()
            return float(row["total"])

        return await self.with_connection("get_hydration_total", op)

    async def list_hydration_entries(self, day: date) -> list[HydrationEntry]:
        """Return the individual entries of a day in insertion order."""

        async def op(connection: aiosqlite.Connection) -> list[HydrationEntry]:
            async with connection.execute(
                "SELECT * FROM hydration_entries WHERE date = ? ORDER BY id ASC",
                (day.isoformat(),),
            ) as cursor:
                rows = await cursor.fetchall()
            return [
                HydrationEntry(
                    id=int(row["id"]),
                    amount=float(row["amount"]),
                    date=_parse_day(row["date"]),
                    created_at=_parse_instant(row["created_at"]),
                )
                for row in rows
            ]

        return await self.with_connection("list_hydration_entries", op)

    async def list_daily_hydration(self, since: date) -> list[DailyAggregate]:
        """Per-day hydration totals from ``since`` onwards, oldest first."""

        async def op(connection: aiosqlite.Connection) -> list[DailyAggregate]:
            async with connection.execute(
                "SELECT date, SUM(amount) AS total FROM hydration_entries "
                "WHERE date >= ? GROUP BY date ORDER BY date ASC",
                (since.isoformat(),),
            ) as cursor:
                rows = await cursor.fetchall()
            return [
                DailyAggregate(day=_parse_day(row["date"]), total=float(row["total"]))
                for row in rows
            ]

        return await self.with_connection("list_daily_hydration", op)

    async def list_achievements(self) -> list[Achievement]:
        """Return achievements, unlocked first and most recently unlocked first."""

        async def op(connection: aiosqlite.Connection) -> list[Achievement]:
            async with connection.execute(
                "SELECT * FROM achievements "
                "ORDER BY is_unlocked DESC, unlocked_at DESC, id ASC"
            ) as cursor:
                rows = await cursor.fetchall()
            return [_parse_achievement(row) for row in rows]

        return await self._exclusively("list_achievements", op)

    async def count_achievements(self) -> int:
        async def op(connection: aiosqlite.Connection) -> int:
            return await _count(connection, "achievements")

        return await self._exclusively("count_achievements", op)

    async def unlock_achievement(self, achievement_type: str, unlocked_at: datetime) -> bool:
        """Unlock a locked achievement; return False when it was already unlocked."""

        async def op(connection: aiosqlite.Connection) -> bool:
            cursor = await connection.execute(
                "UPDATE achievements SET is_unlocked = 1, unlocked_at = ? "
                "WHERE type = ? AND is_unlocked = 0",
                (_format_instant(unlocked_at), achievement_type),
            )
            return cursor.rowcount > 0

        return await self.with_connection(
            "unlock_achievement", op, entity_id=achievement_type
        )

    async def reset_achievements(self) -> None:
        """Lock every achievement again without deleting rows."""

        async def op(connection: aiosqlite.Connection) -> None:
            await connection.execute(
                "UPDATE achievements SET is_unlocked = 0, unlocked_at = NULL"
            )

        await self.with_connection("reset_achievements", op)

    async def repair_duplicate_achievements(self) -> int:
        """Replace all achievement rows with the canonical seed set."""

        async def op(connection: aiosqlite.Connection) -> int:
            async with _transaction(connection):
                await connection.execute("DELETE FROM achievements")
                await connection.execute(
                    "DELETE FROM sqlite_sequence WHERE name = ?", ("achievements",)
                )
                await _seed_achievements(connection)
                await _put_metadata(connection, ACHIEVEMENTS_INITIALIZED, "true")
                count = await _count(connection, "achievements")
            _logger.info("Repaired achievements: count=%s", count)
            return count

        return await self._exclusively("repair_duplicate_achievements", op)

    async def get_user_profile(self) -> UserProfile | None:
        """Return the latest profile row."""

        async def op(connection: aiosqlite.Connection) -> UserProfile | None:
            return await _latest_profile(connection)

        return await self.with_connection("get_user_profile", op)

    async def save_user_profile(self, patch: ProfilePatch) -> UserProfile:
        """Update the latest profile with the set fields, creating it if absent."""
        values = patch.model_dump(exclude_unset=True)

        async def op(connection: aiosqlite.Connection) -> UserProfile:
            async with _transaction(connection):
                existing = await _latest_profile(connection)
                if existing is None:
                    columns = [_PROFILE_PATCH_COLUMNS[key] for key in values]
                    if columns:
                        placeholders = ", ".join("?" for _ in columns)
                        await connection.execute(
                            f"INSERT INTO user_profile ({', '.join(columns)}) "  # noqa: S608
                            f"VALUES ({placeholders})",
                            tuple(values.values()),
                        )
                    else:
                        await connection.execute(
                            "INSERT INTO user_profile DEFAULT VALUES"
                        )
                else:
                    assignments = "".join(
                        f"{_PROFILE_PATCH_COLUMNS[key]} = ?, " for key in values
                    )
                    await connection.execute(
                        f"UPDATE user_profile SET {assignments}"  # noqa: S608
                        "updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                        (*values.values(), existing.id),
                    )
                profile = await _latest_profile(connection)
            if profile is None:
                raise StorageError("save_user_profile", "profile row missing after write")
            return profile

        return await self._exclusively("save_user_profile", op)

    async def get_settings(self) -> dict[str, str]:
        async def op(connection: aiosqlite.Connection) -> dict[str, str]:
            async with connection.execute(
                "SELECT key, value FROM user_settings ORDER BY key"
            ) as cursor:
                rows = await cursor.fetchall()
            return {row["key"]: row["value"] for row in rows}

        return await self.with_connection("get_settings", op)

    async def set_setting(self, key: str, value: str) -> None:
        async def op(connection: aiosqlite.Connection) -> None:
            await connection.execute(
                "INSERT INTO user_settings (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, value),
            )

        await self.with_connection("set_setting", op, entity_id=key)

    async def get_metadata(self, key: str) -> str | None:
        async def op(connection: aiosqlite.Connection) -> str | None:
            return await _get_metadata(connection, key)

        return await self.with_connection("get_metadata", op, entity_id=key)

    async def set_metadata(self, key: str, value: str) -> None:
        async def op(connection: aiosqlite.Connection) -> None:
            await _put_metadata(connection, key, value)

        await self.with_connection("set_metadata", op, entity_id=key)

    async def reset_all(self) -> None:
        """Wipe every table and restore the seeded achievements."""

        async def op(connection: aiosqlite.Connection) -> None:
            async with _transaction(connection):
                for table in _TABLES:
                    await connection.execute(f"DELETE FROM {table}")  # noqa: S608
                await connection.execute("DELETE FROM sqlite_sequence")
                await _seed_achievements(connection)
                await _put_metadata(connection, ACHIEVEMENTS_INITIALIZED, "true")
            _logger.info("All data cleared and achievements re-seeded")

        await self._exclusively("reset_all", op)


@asynccontextmanager
async def _transaction(connection: aiosqlite.Connection) -> AsyncIterator[None]:
    await connection.execute("BEGIN IMMEDIATE")
    try:
        yield
    except Exception:
        try:
            await connection.execute("ROLLBACK")
        except (sqlite3.Error, ValueError) as rollback_exc:
            _logger.warning("Rollback failed: %s", rollback_exc)
        raise
    await connection.execute("COMMIT")


async def _count(connection: aiosqlite.Connection, table: str) -> int:
    async with connection.execute(
        f"SELECT COUNT(*) AS count FROM {table}"  # noqa: S608
    ) as cursor:
        row = await cursor.fetchone()
    return int(row["count"])


async def _ensure_no_open_session(connection: aiosqlite.Connection) -> None:
    async with connection.execute(
        "SELECT id FROM fasting_sessions WHERE end_time IS NULL LIMIT 1"
    ) as cursor:
        row = await cursor.fetchone()
    if row is not None:
        raise SessionAlreadyActiveError(f"Fasting session {row['id']} is still open")


async def _seed_achievements(connection: aiosqlite.Connection) -> None:
    await connection.executemany(
        "INSERT OR IGNORE INTO achievements (type, title, description) VALUES (?, ?, ?)",
        [(seed.type, seed.title, seed.description) for seed in ACHIEVEMENT_SEEDS],
    )


async def _get_metadata(connection: aiosqlite.Connection, key: str) -> str | None:
    async with connection.execute(
        "SELECT value FROM app_metadata WHERE key = ?", (key,)
    ) as cursor:
        row = await cursor.fetchone()
    return row["value"] if row else None


async def _put_metadata(connection: aiosqlite.Connection, key: str, value: str) -> None:
    await connection.execute(
        "INSERT INTO app_metadata (key, value) VALUES (?, ?) "
        "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
        (key, value),
    )


async def _latest_profile(connection: aiosqlite.Connection) -> UserProfile | None:
    async with connection.execute(
        "SELECT * FROM user_profile ORDER BY id DESC LIMIT 1"
    ) as cursor:
        row = await cursor.fetchone()
    return _parse_profile(row) if row else None


def _format_instant(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def _to_sql(value: object) -> object:
    if isinstance(value, datetime):
        return _format_instant(value)
    if isinstance(value, bool):
        return int(value)
    return value


def _parse_instant(raw: object) -> datetime | None:
    if not isinstance(raw, str) or not raw:
        return None
    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _parse_day(raw: str) -> date:
    return date.fromisoformat(raw[:10])


def _parse_session(row: aiosqlite.Row) -> FastingSession:
    start_time = _parse_instant(row["start_time"])
    if start_time is None:
        raise StorageError("parse_session", f"session {row['id']} has no start_time")
    return FastingSession(
        id=int(row["id"]),
        start_time=start_time,
        end_time=_parse_instant(row["end_time"]),
        duration_hours=(
            float(row["duration_hours"]) if row["duration_hours"] is not None else None
        ),
        preset_type=row["preset_type"] or "",
        is_completed=bool(row["is_completed"]),
    )


def _parse_weight(row: aiosqlite.Row) -> WeightEntry:
    return WeightEntry(
        id=int(row["id"]),
        weight=float(row["weight"]),
        date=_parse_day(row["date"]),
        created_at=_parse_instant(row["created_at"]),
    )


def _parse_achievement(row: aiosqlite.Row) -> Achievement:
    return Achievement(
        id=int(row["id"]),
        type=row["type"],
        title=row["title"],
        description=row["description"],
        unlocked_at=_parse_instant(row["unlocked_at"]),
        is_unlocked=bool(row["is_unlocked"]),
    )


def _parse_profile(row: aiosqlite.Row) -> UserProfile:
    return UserProfile(
        id=int(row["id"]),
        name=row["name"],
        age=int(row["age"]) if row["age"] is not None else None,
        height=float(row["height"]) if row["height"] is not None else None,
        gender=row["gender"],
        created_at=_parse_instant(row["created_at"]),
        updated_at=_parse_instant(row["updated_at"]),
    )
