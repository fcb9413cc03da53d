"""Base class for SQLite storage adapters."""

import asyncio
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from typing import Any

import aiosqlite

MEMORY_DB = ":memory:"


class AsyncConnectionManager:
    """Manages aiosqlite connections for one database.

    Initializes the schema once. For :memory: databases a persistent
    connection is kept, since SQLite in-memory databases are
    connection-scoped.
    """

    def __init__(self, db_path: str, schema: str) -> None:
        self._db_path = db_path
        self._schema = schema
        self._initialized = False
        self._init_lock: asyncio.Lock | None = None
        self._persistent_conn: aiosqlite.Connection | None = None

    def _get_lock(self) -> asyncio.Lock:
        """Get or create the initialization lock (lazy to avoid event loop issues)."""
        if self._init_lock is None:
            self._init_lock = asyncio.Lock()
        return self._init_lock

    @property
    def is_memory(self) -> bool:
        return self._db_path == MEMORY_DB

    async def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        async with self._get_lock():
            if self._initialized:
                return
            if self.is_memory:
                self._persistent_conn = await aiosqlite.connect(MEMORY_DB)
                await self._persistent_conn.executescript(self._schema)
            else:
                async with aiosqlite.connect(self._db_path) as db:
                    await db.execute("PRAGMA journal_mode=WAL")
                    await db.executescript(self._schema)
                    await db.commit()
            self._initialized = True

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[aiosqlite.Connection]:
        """Context manager yielding a ready connection.

        File-based connections are closed on exit; the :memory: connection
        stays open until close().
        """
        await self._ensure_initialized()
        if self.is_memory:
            if self._persistent_conn is None:
                raise RuntimeError("Memory database connection not initialized")
            yield self._persistent_conn
            return
        db = await aiosqlite.connect(self._db_path)
        try:
            yield db
        finally:
            await db.close()

    async def close(self) -> None:
        """Close the persistent connection (for :memory: databases)."""
        if self._persistent_conn is not None:
            await self._persistent_conn.close()
            self._persistent_conn = None
            self._initialized = False


class SQLiteStorageBase:
    """Base class for SQLite storage adapters.

    Subclasses provide the schema and map rows to domain models.
    """

    def __init__(self, db_path: str, schema: str) -> None:
        self._db_path = db_path
        self._manager = AsyncConnectionManager(db_path, schema)

    async def close(self) -> None:
        await self._manager.close()

    @asynccontextmanager
    async def async_connection(self) -> AsyncIterator[aiosqlite.Connection]:
        async with self._manager.connection() as conn:
            yield conn

    async def _select(self, query: str, params: Iterable[Any] = ()) -> list[Any]:
        """Run a SELECT and return every row."""
        async with self.async_connection() as db:
            async with db.execute(query, tuple(params)) as cursor:
                return list(await cursor.fetchall())

    async def _execute(
        self, query: str, params: Iterable[Any] = ()
    ) -> tuple[int, int | None]:
        """Run a statement and commit.

        Returns:
            Tuple of (affected row count, last inserted row id).
        """
        async with self.async_connection() as db:
            cursor = await db.execute(query, tuple(params))
            await db.commit()
            return cursor.rowcount, cursor.lastrowid

    async def _execute_many(self, query: str, rows: Iterable[tuple[Any, ...]]) -> None:
        async with self.async_connection() as db:
            await db.executemany(query, list(rows))
            await db.commit()
