"""
Connection sharing for message tables.

Several ``MessageTable`` objects (one per table name, or one per
``ShortTermMemory``) often point at the same database file.  A ``StorePool``
gives them one ``aiosqlite.Connection`` per resolved path and one
``asyncio.Lock`` that every statement on that connection runs under, so a
transaction begun by one table never picks up another table's statements.

Usage::

    pool = StorePool()
    chats = await ShortTermMemory.create(config, pool=pool)
    notes = await ShortTermMemory.create(config, pool=pool, table_name="AgentNotes")
    ...
    await pool.close_all()
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import aiosqlite
import structlog

_logger = structlog.get_logger("mneme.store.pool")


def resolve_path(db_path: str) -> str:
    """Return the absolute, ~-expanded form of *db_path* used as the pool key."""
    return str(Path(db_path).expanduser().resolve())


async def open_connection(
    db_path: str,
    *,
    wal_mode: bool = True,
    connection_timeout: float = 30.0,
) -> aiosqlite.Connection:
    """Open and configure a connection to *db_path*, creating parent directories."""
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = await aiosqlite.connect(db_path, timeout=connection_timeout)
    try:
        conn.row_factory = aiosqlite.Row
        if wal_mode:
            await conn.execute("PRAGMA journal_mode=WAL")
        await conn.execute("PRAGMA synchronous=NORMAL")
    except Exception:
        await conn.close()
        raise
    return conn


class StorePool:
    """
    One open connection and one statement lock per database path.

    Bound to the event loop it is used on. Tables borrowing a connection never
    close it; the owner calls ``close_path()`` or ``close_all()``.
    """

    def __init__(self) -> None:
        self._connections: dict[str, aiosqlite.Connection] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._opening: dict[str, asyncio.Lock] = {}

    async def acquire(
        self,
        db_path: str,
        *,
        wal_mode: bool = True,
        connection_timeout: float = 30.0,
    ) -> aiosqlite.Connection:
        """
        Return the connection for *db_path*, opening it on first use.

        ``wal_mode`` and ``connection_timeout`` only apply to that first open.
        """
        resolved = resolve_path(db_path)
        conn = self._connections.get(resolved)
        if conn is not None:
            return conn

        opening = self._opening.setdefault(resolved, asyncio.Lock())
        async with opening:
            conn = self._connections.get(resolved)
            if conn is None:
                conn = await open_connection(
                    resolved, wal_mode=wal_mode, connection_timeout=connection_timeout
                )
                self._connections[resolved] = conn
                self._locks[resolved] = asyncio.Lock()
                _logger.debug("pool_connection_opened", db_path=resolved)
        return conn

    def lock(self, db_path: str) -> asyncio.Lock:
        """Return the statement lock for *db_path*. ``KeyError`` before ``acquire()``."""
        return self._locks[resolve_path(db_path)]

    async def close_path(self, db_path: str) -> None:
        resolved = resolve_path(db_path)
        conn = self._connections.pop(resolved, None)
        self._locks.pop(resolved, None)
        self._opening.pop(resolved, None)
        if conn is not None:
            await conn.close()
            _logger.debug("pool_connection_closed", db_path=resolved)

    async def close_all(self) -> None:
        """Close every connection in the pool."""
        for path in list(self._connections):
            await self.close_path(path)

    def __len__(self) -> int:
        return len(self._connections)
