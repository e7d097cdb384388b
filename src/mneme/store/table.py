"""SQLite-backed message table: the durable source of truth for every key."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

import aiosqlite
import structlog

from mneme.errors import (
    ConfigError,
    MessageLimitExceededError,
    MessageLimitReachedError,
    StoreError,
)
from mneme.models.config import TABLE_NAME_PATTERN, StoreConfig
from mneme.store.pool import open_connection

if TYPE_CHECKING:
    from mneme.store.pool import StorePool

# ── Row model ──────────────────────────────────────────────────────────────────


@dataclass(slots=True)
class PersistedRow:
    """
    One stored message row, as read (no validation).

    ``payload`` is ``bytes`` only when the stored text is not valid UTF-8;
    decoding it then fails in the codec rather than in the driver.
    """

    id: int
    key: str
    role: str
    payload: str | bytes = field(repr=False)
    created_at: int = field(repr=False)


_SCHEMA = """
CREATE TABLE IF NOT EXISTS "{table}" (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    key         TEXT    NOT NULL CHECK (length(key) <= {max_key_length}),
    role        TEXT    NOT NULL CHECK (role IN ('user', 'system', 'assistant', 'function')),
    payload     TEXT    NOT NULL,
    created_at  INTEGER NOT NULL
                DEFAULT (CAST((julianday('now') - 2440587.5) * 86400000 AS INTEGER))
);
CREATE INDEX IF NOT EXISTS "{table}_key_order" ON "{table}" (key, created_at, id);
"""

# Tables created before the unique index may hold several system rows per
# key. Only the newest in canonical order survives.
_DEDUPE_SYSTEM_ROWS = """
DELETE FROM "{table}"
WHERE role = 'system' AND EXISTS (
    SELECT 1 FROM "{table}" AS newer
    WHERE newer.key = "{table}".key
      AND newer.role = 'system'
      AND (newer.created_at > "{table}".created_at
           OR (newer.created_at = "{table}".created_at AND newer.id > "{table}".id))
)
"""

_SYSTEM_INDEX = """
CREATE UNIQUE INDEX IF NOT EXISTS "{table}_system_key" ON "{table}" (key) WHERE role = 'system'
"""

_COLUMNS = "id, key, role, CAST(payload AS BLOB) AS payload, created_at"


# ── MessageTable ───────────────────────────────────────────────────────────────


class MessageTable:
    """
    Row-level access to one message table.

    Ordering everywhere is ``created_at ASC, id ASC``.  At most one
    ``system`` row exists per key; a partial unique index backs the upsert so
    the database itself, not application code, settles concurrent writers.

    The table name is validated once against ``TABLE_NAME_PATTERN`` and then
    always double-quoted; all values are bound parameters.

    Usage::

        table = MessageTable(StoreConfig(db_path="memory.db"), "ChatMessages")
        await table.initialize()
        try:
            await table.insert_interactive_row("conv-1", "user", payload, limit=20)
            rows = await table.query_partition("conv-1")
        finally:
            await table.close()
    """

    def __init__(
        self,
        config: StoreConfig,
        table_name: str = "ChatMessages",
        pool: StorePool | None = None,
        *,
        max_key_length: int = 255,
    ) -> None:
        if not TABLE_NAME_PATTERN.match(table_name):
            raise ConfigError(
                f"Invalid table name {table_name!r}: must match {TABLE_NAME_PATTERN.pattern}"
            )
        self._config = config
        self._db_path = str(Path(config.db_path).expanduser())
        self._table = table_name
        self._max_key_length = max_key_length
        self._pool = pool
        self._conn: aiosqlite.Connection | None = None
        self._lock: asyncio.Lock | None = None
        self._logger = structlog.get_logger("mneme.store").bind(table=table_name)

    @property
    def table_name(self) -> str:
        return self._table

    async def initialize(self) -> None:
        """
        Open (or borrow) a connection and create the table if it is absent.

        Raises:
            ConfigError: If the database cannot be opened or the DDL fails.
        """
        try:
            if self._pool is not None:
                conn = await self._pool.acquire(
                    self._db_path,
                    wal_mode=self._config.wal_mode,
                    connection_timeout=self._config.connection_timeout,
                )
                lock = self._pool.lock(self._db_path)
            else:
                conn = await open_connection(
                    self._db_path,
                    wal_mode=self._config.wal_mode,
                    connection_timeout=self._config.connection_timeout,
                )
                lock = asyncio.Lock()
        except (aiosqlite.Error, OSError) as exc:
            raise ConfigError(f"Cannot open database {self._db_path!r}: {exc}") from exc

        self._conn = conn
        self._lock = lock
        try:
            await self.create_table_if_absent()
        except aiosqlite.Error as exc:
            await self.close()
            raise ConfigError(f"Cannot create table {self._table!r}: {exc}") from exc
        self._logger.info("table_initialized", db_path=self._db_path)

    async def create_table_if_absent(self) -> None:
        """
        Apply the table DDL idempotently.

        Duplicate system rows left by older tables are collapsed to the newest
        one per key before the unique system index is created.
        """
        schema = _SCHEMA.format(table=self._table, max_key_length=self._max_key_length)
        async with self._transaction() as conn:
            await conn.executescript(schema)
            cursor = await conn.execute(_DEDUPE_SYSTEM_ROWS.format(table=self._table))
            if cursor.rowcount > 0:
                self._logger.warning("duplicate_system_rows_removed", removed=cursor.rowcount)
            await conn.execute(_SYSTEM_INDEX.format(table=self._table))

    async def close(self) -> None:
        """
        Release the connection.

        A pool-owned connection is left open (the pool manages its lifetime);
        a private one is closed.
        """
        if self._conn is None:
            return
        if self._pool is None:
            await self._conn.close()
        self._conn = None
        self._lock = None

    # ── Writes ─────────────────────────────────────────────────────────────────

    async def upsert_system_row(self, key: str, payload: str) -> None:
        """Insert the system row for *key*, or replace its payload if one exists."""
        async with self._transaction() as conn:
            await conn.execute(
                f"""
                INSERT INTO "{self._table}" (key, role, payload) VALUES (?, 'system', ?)
                ON CONFLICT (key) WHERE role = 'system'
                DO UPDATE SET payload = excluded.payload, created_at = excluded.created_at
                """,
                (key, payload),
            )

    async def insert_interactive_row(
        self,
        key: str,
        role: str,
        payload: str,
        *,
        limit: int | None = None,
    ) -> None:
        """
        Append one interactive row.

        When *limit* is given the current interactive count is re-read inside
        the write transaction and the insert is refused if it would exceed it.

        Raises:
            MessageLimitExceededError: The key already holds more than *limit* rows.
            MessageLimitReachedError: The key already holds *limit* rows.
        """
        await self.batch_insert_interactive_rows(key, [(role, payload)], limit=limit)

    async def batch_insert_interactive_rows(
        self,
        key: str,
        rows: Sequence[tuple[str, str]],
        *,
        limit: int | None = None,
    ) -> None:
        """
        Append ``(role, payload)`` rows in one all-or-nothing transaction.

        Raises:
            MessageLimitExceededError: The key already holds more than *limit* rows.
            MessageLimitReachedError: ``current + len(rows)`` would exceed *limit*.
        """
        if not rows:
            return
        async with self._transaction(immediate=limit is not None) as conn:
            if limit is not None:
                current = await self._count_interactive(conn, key)
                if current > limit:
                    raise MessageLimitExceededError(key, limit, current)
                if current + len(rows) > limit:
                    raise MessageLimitReachedError(key, limit)
            await conn.executemany(
                f'INSERT INTO "{self._table}" (key, role, payload) VALUES (?, ?, ?)',
                [(key, role, payload) for role, payload in rows],
            )

    async def delete_system_row(self, key: str) -> int:
        """Delete the system row for *key*. Returns the number of rows removed."""
        return await self._delete(
            f"""DELETE FROM "{self._table}" WHERE key = ? AND role = 'system'""", (key,)
        )

    async def delete_all_interactive(self, key: str) -> int:
        """Delete every interactive row for *key*."""
        return await self._delete(
            f"""DELETE FROM "{self._table}" WHERE key = ? AND role != 'system'""", (key,)
        )

    async def delete_oldest_interactive(self, key: str, count: int) -> int:
        """Delete the *count* oldest interactive rows for *key* (fewer if fewer exist)."""
        if count <= 0:
            return 0
        return await self._delete(
            f"""
            DELETE FROM "{self._table}" WHERE id IN (
                SELECT id FROM "{self._table}"
                WHERE key = ? AND role != 'system'
                ORDER BY created_at ASC, id ASC
                LIMIT ?
            )
            """,
            (key, count),
        )

    async def delete_all(self, key: str) -> int:
        """Delete every row for *key*."""
        return await self._delete(f'DELETE FROM "{self._table}" WHERE key = ?', (key,))

    # ── Queries ────────────────────────────────────────────────────────────────

    async def query_partition(self, key: str) -> list[PersistedRow]:
        """Return every row for *key* in canonical order."""
        rows = await self._fetchall(
            f"""
            SELECT {_COLUMNS} FROM "{self._table}"
            WHERE key = ? ORDER BY created_at ASC, id ASC
            """,
            (key,),
        )
        return [self._row_to_persisted(r) for r in rows]

    async def query_system_row(self, key: str) -> PersistedRow | None:
        """
        Return the system row for *key*, or None.

        Tables written before the unique index existed may hold several; the
        newest wins, matching what a full partition load keeps.
        """
        rows = await self._fetchall(
            f"""
            SELECT {_COLUMNS} FROM "{self._table}"
            WHERE key = ? AND role = 'system' ORDER BY created_at ASC, id ASC
            """,
            (key,),
        )
        if not rows:
            return None
        return self._row_to_persisted(rows[-1])

    async def count_interactive(self, key: str) -> int:
        """Return the number of interactive rows for *key*."""
        rows = await self._fetchall(
            f"""SELECT COUNT(*) FROM "{self._table}" WHERE key = ? AND role != 'system'""",
            (key,),
        )
        return rows[0][0] if rows else 0

    async def list_keys(self) -> list[str]:
        """Return every key that has at least one row, sorted."""
        rows = await self._fetchall(f'SELECT DISTINCT key FROM "{self._table}" ORDER BY key', ())
        return [r[0] for r in rows]

    # ── Private Helpers ────────────────────────────────────────────────────────

    def _conn_or_raise(self) -> tuple[aiosqlite.Connection, asyncio.Lock]:
        if self._conn is None or self._lock is None:
            raise StoreError("Store is not initialized. Call initialize() first.")
        return self._conn, self._lock

    @asynccontextmanager
    async def _transaction(self, *, immediate: bool = False) -> AsyncIterator[aiosqlite.Connection]:
        """
        Run a write transaction on the shared connection.

        ``immediate`` takes SQLite's write lock up front (``BEGIN IMMEDIATE``) so
        that reads inside the transaction cannot be invalidated by another
        process before the write lands.
        """
        conn, lock = self._conn_or_raise()
        async with lock:
            if immediate:
                await conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                await conn.rollback()
                raise
            else:
                await conn.commit()

    async def _fetchall(self, sql: str, params: tuple[Any, ...]) -> list[aiosqlite.Row]:
        conn, lock = self._conn_or_raise()
        async with lock, conn.execute(sql, params) as cursor:
            return list(await cursor.fetchall())

    async def _delete(self, sql: str, params: tuple[Any, ...]) -> int:
        async with self._transaction() as conn:
            cursor = await conn.execute(sql, params)
            deleted = cursor.rowcount
        self._logger.debug("rows_deleted", key=params[0], deleted=deleted)
        return deleted

    async def _count_interactive(self, conn: aiosqlite.Connection, key: str) -> int:
        async with conn.execute(
            f"""SELECT COUNT(*) FROM "{self._table}" WHERE key = ? AND role != 'system'""",
            (key,),
        ) as cursor:
            row = await cursor.fetchone()
        return row[0] if row else 0

    @staticmethod
    def _row_to_persisted(row: aiosqlite.Row) -> PersistedRow:
        payload: str | bytes = row["payload"]
        if isinstance(payload, bytes):
            try:
                payload = payload.decode("utf-8")
            except UnicodeDecodeError:
                pass  # left as bytes for the codec to reject
        return PersistedRow(
            id=row["id"],
            key=row["key"],
            role=row["role"],
            payload=payload,
            created_at=row["created_at"],
        )
