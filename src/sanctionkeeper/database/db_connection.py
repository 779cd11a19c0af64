"""
Database connection management: one long-lived aiosqlite connection.

SQLite is single-writer. Writes are serialised at the application layer with
``_write_sem`` so coroutines queue instead of fighting the busy timeout, and
every write runs inside ``transaction()`` which commits on clean exit and rolls
back on error. Reads go straight to the shared connection (WAL mode).

Because writes are serialised, a read-then-write inside one ``transaction()``
block is atomic with respect to every other writer in this process. The
sanction store relies on that for its conditional deactivate.

Usage
-----
    manager = ConnectionManager()
    await manager.open(path)

    async with manager.read() as conn:
        cursor = await conn.execute("SELECT ...")

    async with manager.transaction() as conn:
        await conn.execute("UPDATE ...")

    await manager.close()
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

import aiosqlite

from sanctionkeeper.util.logger import get_logger

logger = get_logger("database_connection")

_PRAGMAS = [
    "PRAGMA journal_mode = WAL",
    "PRAGMA foreign_keys = ON",
    "PRAGMA synchronous = NORMAL",    # safe with WAL
    "PRAGMA temp_store = MEMORY",
    "PRAGMA busy_timeout = 5000",
]


class ConnectionManager:
    """
    Wrapper around a single aiosqlite connection shared by every repository.

    * Reads  - ``async with read()``; WAL allows concurrent reads.
    * Writes - ``async with transaction()``; serialised by ``_write_sem``.
    """

    def __init__(self) -> None:
        self._conn: aiosqlite.Connection | None = None
        self._write_sem = asyncio.Semaphore(1)
        self._path: Path | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self, path: Path) -> None:
        """
        Open the database and apply pragmas. Call once at startup.

        Args:
            path: Path to the SQLite database file.
        """
        if self._conn is not None:
            logger.warning("[DB CONNECTION] open() called but connection already exists, ignoring")
            return

        self._path = path
        path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = await aiosqlite.connect(path)
        self._conn.row_factory = aiosqlite.Row

        for pragma in _PRAGMAS:
            await self._conn.execute(pragma)
        await self._conn.commit()

        logger.info("[DB CONNECTION] Opened connection to %s", path)

    async def close(self) -> None:
        """Flush the WAL and close the connection."""
        if self._conn is None:
            return

        try:
            await self._conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
            await self._conn.commit()
        except Exception:
            logger.exception("[DB CONNECTION] WAL checkpoint failed during close")
        finally:
            await self._conn.close()
            self._conn = None
            logger.info("[DB CONNECTION] Connection closed")

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    @property
    def path(self) -> Path | None:
        return self._path

    # ------------------------------------------------------------------
    # Connection access
    # ------------------------------------------------------------------

    @property
    def connection(self) -> aiosqlite.Connection:
        """
        The raw aiosqlite connection.

        Raises:
            RuntimeError: If the connection has not been opened yet.
        """
        if self._conn is None:
            raise RuntimeError(
                "ConnectionManager: connection is not open. "
                "Call await manager.open(path) at startup."
            )
        return self._conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """
        Serialised write transaction: commits on clean exit, rolls back on error.

        Raises:
            RuntimeError: If the connection is not open.
        """
        conn = self.connection

        async with self._write_sem:
            try:
                yield conn
                await conn.commit()
            except BaseException:
                await conn.rollback()
                raise

    @asynccontextmanager
    async def read(self) -> AsyncIterator[aiosqlite.Connection]:
        """Symmetric counterpart of ``transaction()`` for reads. No semaphore."""
        yield self.connection
