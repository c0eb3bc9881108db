"""Async SQLite store shared by ingestion, queries and the retention sweep."""

import logging
from pathlib import Path

import aiosqlite

from kandle.errors import PersistenceError
from kandle.persistence.models import SCHEMA

logger = logging.getLogger(__name__)


class Database:
    """
    One aiosqlite connection in WAL mode.

    Ingestion and the sweeper share the connection; busy_timeout lets a
    second process (such as a CLI sweep) wait for the write lock instead of
    failing straight away.
    """

    def __init__(self, path: Path, busy_timeout_ms: int = 5000) -> None:
        self._path = path
        self._busy_timeout_ms = busy_timeout_ms
        self._connection: aiosqlite.Connection | None = None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def is_connected(self) -> bool:
        return self._connection is not None

    @property
    def connection(self) -> aiosqlite.Connection:
        if self._connection is None:
            raise PersistenceError("Database not connected", code="NOT_CONNECTED")
        return self._connection

    async def connect(self) -> None:
        """Open the store, apply pragmas and create missing tables."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._connection = await aiosqlite.connect(self._path)
        self._connection.row_factory = aiosqlite.Row
        for pragma in (
            "PRAGMA journal_mode=WAL",
            "PRAGMA foreign_keys=ON",
            f"PRAGMA busy_timeout={int(self._busy_timeout_ms)}",
        ):
            await self._connection.execute(pragma)

        for statement in SCHEMA:
            await self._connection.execute(statement)
        await self._connection.commit()
        logger.info("Candle store ready: %s", self._path)

    async def disconnect(self) -> None:
        if self._connection:
            await self._connection.close()
            self._connection = None
            logger.info("Candle store closed: %s", self._path)

    async def execute(
        self, sql: str, parameters: tuple | dict | None = None
    ) -> aiosqlite.Cursor:
        if parameters is None:
            return await self.connection.execute(sql)
        return await self.connection.execute(sql, parameters)

    async def write(self, sql: str, parameters: tuple | dict | None = None) -> int:
        """Run one write statement, commit it and return the affected row count."""
        cursor = await self.execute(sql, parameters)
        await self.connection.commit()
        return cursor.rowcount

    async def fetchone(
        self, sql: str, parameters: tuple | dict | None = None
    ) -> aiosqlite.Row | None:
        cursor = await self.execute(sql, parameters)
        return await cursor.fetchone()

    async def fetchall(
        self, sql: str, parameters: tuple | dict | None = None
    ) -> list[aiosqlite.Row]:
        cursor = await self.execute(sql, parameters)
        return await cursor.fetchall()

    async def commit(self) -> None:
        await self.connection.commit()
