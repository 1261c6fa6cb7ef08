"""Single shared SQLite connection with coalesced opening and retries."""

import asyncio
import logging
import sqlite3
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

import aiosqlite

from fasting_tracker.errors import ConnectionExhaustedError, StoreConnectionError

_logger = logging.getLogger(__name__)

Opener = Callable[[str], Awaitable[aiosqlite.Connection]]


async def open_sqlite(database_path: str) -> aiosqlite.Connection:
    """Open the embedded database in autocommit mode with row access by name."""
    connection = await aiosqlite.connect(database_path, isolation_level=None)
    connection.row_factory = aiosqlite.Row
    await connection.execute("PRAGMA journal_mode = WAL")
    return connection


@dataclass
class SqliteConnectionManager:
    """Owns the one database handle shared by every gateway call.

    Concurrent callers that race to open the database park on the same lock,
    so only one open is ever in flight. Any failure discards the handle and
    the next access reopens it.
    """

    database_path: str
    retries: int = 3
    retry_delay_seconds: float = 1.0
    opener: Opener = open_sqlite
    _connection: aiosqlite.Connection | None = field(default=None, init=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False)

    @property
    def is_open(self) -> bool:
        return self._connection is not None

    async def connect(self) -> aiosqlite.Connection:
        """Return the shared connection, opening it once if needed."""
        connection = self._connection
        if connection is not None:
            return connection
        async with self._lock:
            if self._connection is not None:
                return self._connection
            _logger.info("Opening database connection: path=%s", self.database_path)
            try:
                self._connection = await self.opener(self.database_path)
            except (sqlite3.Error, OSError, ValueError) as exc:
                self._connection = None
                _logger.error(
                    "Failed to open database: path=%s error=%s",
                    self.database_path,
                    exc,
                )
                raise StoreConnectionError(
                    f"Could not open database at {self.database_path}"
                ) from exc
            return self._connection

    async def get_connection(self, retries: int | None = None) -> aiosqlite.Connection:
        """Return a connection that has answered a trivial query.

        Failed attempts discard the handle and back off linearly
        (base delay times the attempt number) before reopening.
        """
        attempts = retries if retries is not None else self.retries
        for attempt in range(1, attempts + 1):
            try:
                connection = await self.connect()
                async with connection.execute("SELECT 1") as cursor:
                    await cursor.fetchone()
                return connection
            except (StoreConnectionError, sqlite3.Error, ValueError) as exc:
                _logger.warning(
                    "Database connection attempt %s/%s failed: %s",
                    attempt,
                    attempts,
                    exc,
                )
                await self.discard()
                if attempt == attempts:
                    raise ConnectionExhaustedError(attempts) from exc
                await asyncio.sleep(self.retry_delay_seconds * attempt)
        raise ConnectionExhaustedError(attempts)

    async def discard(self) -> None:
        """Drop the shared handle so the next access reopens it."""
        connection = self._connection
        self._connection = None
        if connection is None:
            return
        try:
            await connection.close()
        except (sqlite3.Error, ValueError) as exc:
            _logger.warning("Error closing discarded database connection: %s", exc)

    async def close(self) -> None:
        """Close the connection on shutdown."""
        async with self._lock:
            await self.discard()
