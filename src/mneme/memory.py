"""ShortTermMemory — per-key chat memory backed by SQLite and an LRU cache."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Awaitable, Callable, Sequence
from contextlib import asynccontextmanager
from typing import Any

import aiosqlite
import structlog
from pydantic import BaseModel, ValidationError

from mneme.cache.partition import CachedPartition, CacheStats, PartitionCache
from mneme.errors import (
    CapacityError,
    CodecError,
    ConfigError,
    MessageLimitExceededError,
    PartitionLoadError,
    StoreError,
)
from mneme.models.codec import freeze, from_persisted
from mneme.models.config import MemoryConfig
from mneme.models.message import Message, is_system
from mneme.store.pool import StorePool
from mneme.store.table import MessageTable, PersistedRow


class ShortTermMemory:
    """
    Per-key short-term memory for chat messages.

    Each key owns at most one system message and an ordered, bounded list of
    interactive (user / assistant / function) messages.  The SQLite table is
    the source of truth; a process-local LRU cache of whole partitions
    answers repeated reads.

    Cache rules:

    - Reads of the interactive list load the whole partition on a miss and
      seed the cache.  A lone ``get_system_message()`` miss does not, so a
      half-loaded partition can never pass for a complete one.
    - Writes go to the store first, then mirror onto the cache entry only if
      the key is already warm.  Cold keys stay cold.
    - A failed store write invalidates the key's entry before the error is
      raised, so the next read goes back to the store.

    Usage::

        async with ShortTermMemory.open(db_path="memory.db") as memory:
            await memory.put("conv-1", SystemMessage(content="Be brief."))
            await memory.put("conv-1", UserMessage(content="Hi!"))
            history = await memory.get_all("conv-1")
    """

    def __init__(
        self,
        table: MessageTable,
        config: MemoryConfig | None = None,
        cache: PartitionCache | None = None,
    ) -> None:
        self._config = config or MemoryConfig()
        self._table = table
        if cache is None:
            cache = PartitionCache(self._config.cache_capacity or 0)
        self._cache = cache
        self._logger = structlog.get_logger("mneme.memory").bind(table=table.table_name)

    # ── Construction / lifecycle ──────────────────────────────────────────────

    @classmethod
    async def create(
        cls,
        config: MemoryConfig | None = None,
        *,
        db_path: str | None = None,
        pool: StorePool | None = None,
        **overrides: Any,
    ) -> ShortTermMemory:
        """
        Build a memory, open its table and create it if absent.

        Args:
            config: Base configuration. Defaults to ``MemoryConfig()``.
            db_path: Override ``config.store.db_path`` (useful for testing).
            pool: Optional shared connection pool. The caller closes it.
            **overrides: Individual ``MemoryConfig`` fields, e.g.
                ``max_messages_per_key=5``.

        Raises:
            ConfigError: If the configuration is invalid or the database
                cannot be opened.
        """
        cfg = config or MemoryConfig()
        if db_path is not None or overrides:
            data = cfg.model_dump()
            data.update(overrides)
            if db_path is not None:
                data["store"] = {**data["store"], "db_path": db_path}
            try:
                cfg = MemoryConfig.model_validate(data)
            except ValidationError as exc:
                raise ConfigError(f"Invalid memory configuration: {exc}") from exc

        table = MessageTable(
            cfg.store, cfg.table_name, pool=pool, max_key_length=cfg.max_key_length
        )
        memory = cls(table, cfg)
        await memory.initialize()
        return memory

    @classmethod
    @asynccontextmanager
    async def open(
        cls,
        config: MemoryConfig | None = None,
        *,
        db_path: str | None = None,
        pool: StorePool | None = None,
        **overrides: Any,
    ) -> AsyncGenerator[ShortTermMemory, None]:
        """Create a memory and close it when the ``async with`` block exits."""
        memory = await cls.create(config, db_path=db_path, pool=pool, **overrides)
        try:
            yield memory
        finally:
            await memory.close()

    async def initialize(self) -> None:
        await self._table.initialize()
        self._logger.info(
            "memory_initialized",
            max_messages_per_key=self._config.max_messages_per_key,
            cache_capacity=self._cache.capacity,
        )

    async def close(self) -> None:
        """Release the store connection and drop every cached partition."""
        self._cache.clear()
        await self._table.close()

    async def __aenter__(self) -> ShortTermMemory:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.close()

    @property
    def config(self) -> MemoryConfig:
        return self._config

    @property
    def table(self) -> MessageTable:
        return self._table

    @property
    def cache(self) -> PartitionCache:
        return self._cache

    @property
    def max_messages_per_key(self) -> int:
        return self._config.max_messages_per_key

    # ── Reads ─────────────────────────────────────────────────────────────────

    async def get_system_message(self, key: str) -> Message | None:
        """
        Return the system message for *key*, or None if it has none.

        A cache miss queries only the system row and leaves the cache cold.

        Raises:
            CodecError: The stored payload is malformed.
            StoreError: The store query failed.
        """
        entry = self._cache.get(key)
        if entry is not None:
            self._logger.debug("memory_cache_hit", key=key, op="get_system_message")
            return entry.system_message()

        try:
            row = await self._table.query_system_row(key)
        except aiosqlite.Error as exc:
            raise StoreError(f"Failed to fetch system message for key {key!r}", exc) from exc
        if row is None:
            return None
        return self._decode(row)

    async def get_interactive_messages(self, key: str) -> list[Message]:
        """
        Return the interactive messages for *key* in creation order.

        Raises:
            MessageLimitExceededError: The store holds more than the limit.
            CodecError: A stored payload is malformed.
            StoreError: The store query failed.
        """
        partition = await self._partition(key)
        return partition.interactive_messages()

    async def get_all(self, key: str) -> list[Message]:
        """Return the system message (if any) followed by the interactive messages."""
        partition = await self._partition(key)
        messages = partition.interactive_messages()
        system = partition.system_message()
        return [system, *messages] if system is not None else messages

    async def count_interactive(self, key: str) -> int:
        """Return the number of interactive messages stored for *key*."""
        return len(await self._partition(key))

    async def is_full(self, key: str) -> bool:
        """
        Return True when *key* holds ``max_messages_per_key`` interactive messages.

        Raises:
            MessageLimitExceededError: The store holds more than the limit.
        """
        return await self.count_interactive(key) >= self._config.max_messages_per_key

    async def keys(self) -> list[str]:
        """Return every key with at least one stored message."""
        try:
            return await self._table.list_keys()
        except aiosqlite.Error as exc:
            raise StoreError("Failed to list keys", exc) from exc

    def cache_stats(self) -> CacheStats:
        return self._cache.stats()

    # ── Writes ────────────────────────────────────────────────────────────────

    async def put(self, key: str, message: Message | Sequence[Message]) -> None:
        """
        Store one message or a batch of messages for *key*.

        A system message replaces the key's system slot.  Interactive messages
        are appended.  In a batch only the last system message is kept and
        the interactive messages are inserted all-or-nothing.

        Raises:
            MessageLimitReachedError: The insert would exceed ``max_messages_per_key``.
            MessageLimitExceededError: The store already holds more than the limit.
            StoreError: The store write failed.
        """
        if isinstance(message, BaseModel):
            await self._put_one(key, message)
        else:
            await self._put_many(key, list(message))

    async def remove_system_message(self, key: str) -> None:
        """Delete the system message for *key*. No-op when there is none."""
        await self._write(
            key,
            "remove system message",
            lambda: self._table.delete_system_row(key),
            lambda entry: entry.clear_system(),
        )

    async def remove_interactive_messages(self, key: str, count: int | None = None) -> None:
        """
        Delete interactive messages for *key*.

        Args:
            key: The key to trim.
            count: Number of oldest messages to delete. ``None`` deletes all of
                them; counts larger than the stored total delete everything.

        Raises:
            ValueError: If *count* is negative.
        """
        if count is None:
            await self._write(
                key,
                "remove interactive messages",
                lambda: self._table.delete_all_interactive(key),
                lambda entry: entry.clear_interactive(),
            )
            return
        if count < 0:
            raise ValueError(f"count must be >= 0, got {count}")
        if count == 0:
            return
        await self._write(
            key,
            f"remove {count} oldest interactive messages",
            lambda: self._table.delete_oldest_interactive(key, count),
            lambda entry: entry.drop_oldest(count),
        )

    async def remove_all(self, key: str) -> None:
        """Delete every message for *key* and drop its cache entry."""
        with self._cache.writing(key):
            try:
                await self._table.delete_all(key)
            except aiosqlite.Error as exc:
                raise StoreError(f"Failed to remove all messages for key {key!r}", exc) from exc
            finally:
                self._invalidate(key)
        self._logger.debug("memory_key_cleared", key=key)

    # ── Private Helpers ───────────────────────────────────────────────────────

    async def _put_one(self, key: str, message: Message) -> None:
        frozen = freeze(message)
        if is_system(message):
            await self._write(
                key,
                "put system message",
                lambda: self._table.upsert_system_row(key, frozen.data),
                lambda entry: entry.set_system(frozen),
            )
            return
        await self._write(
            key,
            "add message",
            lambda: self._table.insert_interactive_row(
                key, frozen.role, frozen.data, limit=self._config.max_messages_per_key
            ),
            lambda entry: entry.append(frozen),
        )

    async def _put_many(self, key: str, messages: list[Message]) -> None:
        if not messages:
            return
        system = [m for m in messages if is_system(m)]
        interactive = [freeze(m) for m in messages if not is_system(m)]
        if len(system) > 1:
            self._logger.debug(
                "batch_system_messages_collapsed", key=key, discarded=len(system) - 1
            )

        if interactive:
            await self._write(
                key,
                f"add {len(interactive)} messages",
                lambda: self._table.batch_insert_interactive_rows(
                    key,
                    [(m.role, m.data) for m in interactive],
                    limit=self._config.max_messages_per_key,
                ),
                lambda entry: entry.extend(interactive),
            )
        if system:
            await self._put_one(key, system[-1])

    async def _write(
        self,
        key: str,
        action: str,
        operation: Callable[[], Awaitable[object]],
        mirror: Callable[[CachedPartition], object],
    ) -> None:
        """Run a store mutation, then mirror it onto a warm cache entry."""
        with self._cache.writing(key):
            try:
                await operation()
            except CapacityError as exc:
                self._logger.info(
                    "memory_capacity_rejected", key=key, action=action, error=str(exc)
                )
                raise
            except aiosqlite.Error as exc:
                self._invalidate(key)
                self._logger.warning("store_write_failed", key=key, action=action, error=str(exc))
                raise StoreError(f"Failed to {action} for key {key!r}", exc) from exc
            except BaseException:
                self._invalidate(key)
                raise
            self._mirror(key, action, mirror)

    async def _partition(self, key: str) -> CachedPartition:
        entry = self._cache.get(key)
        if entry is not None:
            self._logger.debug("memory_cache_hit", key=key)
            return entry
        return await self._load(key)

    async def _load(self, key: str) -> CachedPartition:
        """Load the full partition for *key* from the store and try to seed the cache."""
        self._cache.begin_load(key)
        loaded: CachedPartition | None = None
        try:
            try:
                rows = await self._table.query_partition(key)
            except aiosqlite.Error as exc:
                raise StoreError(f"Failed to load messages for key {key!r}", exc) from exc
            partition = self._build_partition(key, rows)
            if len(partition) > self._config.max_messages_per_key:
                raise MessageLimitExceededError(
                    key, self._config.max_messages_per_key, len(partition)
                )
            loaded = partition
        finally:
            seeded = self._seed(key, loaded)

        self._logger.debug(
            "partition_loaded",
            key=key,
            system=loaded.system is not None,
            interactive=len(loaded),
            cached=seeded,
        )
        return loaded

    def _build_partition(self, key: str, rows: list[PersistedRow]) -> CachedPartition:
        partition = CachedPartition()
        failures: list[CodecError] = []
        for row in rows:
            try:
                frozen = freeze(self._decode(row))
            except CodecError as exc:
                failures.append(exc)
                continue
            if frozen.role == "system":
                # Last one wins if legacy data holds several.
                partition.set_system(frozen)
            else:
                partition.append(frozen)
        if failures:
            raise PartitionLoadError(key, failures)
        return partition

    @staticmethod
    def _decode(row: PersistedRow) -> Message:
        message = from_persisted(row.payload)
        if message.role != row.role:
            raise CodecError(
                f"row {row.id} has role {row.role!r} but payload role {message.role!r}",
                row.payload,
            )
        return message

    # Cache faults are logged, never raised.

    def _mirror(
        self, key: str, action: str, mirror: Callable[[CachedPartition], object]
    ) -> None:
        try:
            if self._cache.update(key, mirror):
                self._logger.debug("memory_cache_updated", key=key, action=action)
        except Exception as exc:
            self._logger.warning("cache_update_failed", key=key, action=action, error=str(exc))
            self._invalidate(key)

    def _seed(self, key: str, partition: CachedPartition | None) -> bool:
        try:
            return self._cache.finish_load(key, partition)
        except Exception as exc:
            self._logger.warning("cache_seed_failed", key=key, error=str(exc))
            return False

    def _invalidate(self, key: str) -> None:
        try:
            if self._cache.invalidate(key):
                self._logger.warning("cache_entry_invalidated", key=key)
        except Exception as exc:
            self._logger.warning("cache_invalidate_failed", key=key, error=str(exc))

