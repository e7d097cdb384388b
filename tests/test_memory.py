"""Tests for ShortTermMemory: cache/store consistency, capacity and failure handling."""

from __future__ import annotations

import asyncio

import aiosqlite
import pytest

from mneme.errors import (
    CapacityError,
    CodecError,
    MessageLimitExceededError,
    MessageLimitReachedError,
    PartitionLoadError,
    StoreError,
)
from mneme.memory import ShortTermMemory
from mneme.models.codec import from_persisted, to_persisted
from mneme.models.message import AssistantMessage, FunctionCall, FunctionMessage, ToolCall
from tests.conftest import assistant, system, user


async def _store_view(table, key):
    """Decode what the table holds for *key*: (system, [interactive])."""
    rows = await table.query_partition(key)
    sys_rows = [from_persisted(r.payload) for r in rows if r.role == "system"]
    return (
        sys_rows[-1] if sys_rows else None,
        [from_persisted(r.payload) for r in rows if r.role != "system"],
    )


class TestEmptyKeys:
    async def test_unknown_key_reads_empty(self, memory):
        """A key with no rows reads as empty from every getter."""
        assert await memory.get_all("nobody") == []
        assert await memory.get_system_message("nobody") is None
        assert await memory.get_interactive_messages("nobody") == []

    async def test_empty_key_is_not_full(self, memory):
        """is_full is False for a key with no rows."""
        assert await memory.is_full("nobody") is False


class TestCachePopulation:
    async def test_get_system_message_miss_does_not_warm(self, memory):
        """A system-only read on a cold key does not populate the cache."""
        await memory.put("k", system("S"))
        assert await memory.get_system_message("k") == system("S")
        assert not memory.cache.has("k")

    async def test_interactive_read_warms(self, memory):
        """Reading interactive messages seeds the cache entry."""
        await memory.put("k", user("hi"))
        await memory.get_interactive_messages("k")
        assert memory.cache.has("k")

    async def test_write_to_cold_key_stays_cold(self, memory):
        """Writes to a cold key do not create a cache entry."""
        await memory.put("k", user("hi"))
        await memory.put("k", system("S"))
        assert not memory.cache.has("k")

    async def test_warm_system_read_served_from_cache(self, memory, table):
        """A warm key answers get_system_message without touching the store."""
        await memory.put("k", system("S"))
        await memory.get_all("k")
        await table.delete_system_row("k")  # out-of-band change, invisible to the cache
        assert await memory.get_system_message("k") == system("S")

    async def test_returned_messages_do_not_alias_cache(self, memory):
        """Mutating returned messages does not change what is cached."""
        await memory.put("k", [system("S"), user("hi")])
        first = await memory.get_all("k")
        first[0].content = "tampered"
        first[1].content = "tampered"
        first.append(user("extra"))
        assert await memory.get_all("k") == [system("S"), user("hi")]

    async def test_caller_mutation_after_put_does_not_leak(self, memory):
        """Mutating a message after put does not change the cached copy."""
        await memory.get_all("k")
        msg = user("original")
        await memory.put("k", msg)
        msg.content = "changed"
        assert await memory.get_interactive_messages("k") == [user("original")]


class TestSystemSlot:
    @pytest.mark.parametrize("warm", [False, True])
    async def test_second_system_message_replaces_first(self, memory, table, warm):
        """A later system message replaces the earlier one in cache and store."""
        if warm:
            await memory.get_all("k")
        await memory.put("k", system("A"))
        await memory.put("k", system("B"))
        assert await memory.get_system_message("k") == system("B")
        assert (await memory.get_all("k"))[0] == system("B")
        rows = [r for r in await table.query_partition("k") if r.role == "system"]
        assert len(rows) == 1

    async def test_remove_system_message_keeps_interactive(self, memory, table):
        """Removing the system message leaves the interactive messages alone."""
        await memory.put("k", [system("S"), user("a"), assistant("b")])
        await memory.get_all("k")
        await memory.remove_system_message("k")
        assert memory.cache.has("k")
        assert await memory.get_system_message("k") is None
        assert await memory.get_interactive_messages("k") == [user("a"), assistant("b")]
        assert await _store_view(table, "k") == (None, [user("a"), assistant("b")])

    async def test_remove_absent_system_message_is_noop(self, memory):
        """Removing a missing system message succeeds and changes nothing."""
        await memory.remove_system_message("k")
        assert await memory.get_system_message("k") is None


class TestOrdering:
    @pytest.mark.parametrize("warm", [False, True])
    async def test_order_preserved(self, memory, table, warm):
        """Interactive messages come back in the order they were put."""
        if warm:
            await memory.get_all("k")
        messages = [user("m1"), assistant("m2"), user("m3")]
        for m in messages:
            await memory.put("k", m)
        assert await memory.get_interactive_messages("k") == messages
        assert await memory.get_interactive_messages("k") == messages  # now warm either way
        assert (await _store_view(table, "k"))[1] == messages

    async def test_get_all_puts_system_first(self, memory):
        """get_all returns the system message ahead of interactive ones."""
        await memory.put("k", user("m1"))
        await memory.put("k", system("S"))
        assert await memory.get_all("k") == [system("S"), user("m1")]

    async def test_tool_metadata_round_trips(self, memory):
        """Tool calls and function results are stored and returned unchanged."""
        call = AssistantMessage(
            tool_calls=[ToolCall(id="c1", function=FunctionCall(name="f", arguments='{"x": 1}'))]
        )
        result = FunctionMessage(content="ok", name="f", tool_call_id="c1")
        await memory.put("k", [call, result])
        assert await memory.get_interactive_messages("k") == [call, result]


class TestBatchPut:
    async def test_last_system_message_wins(self, memory, table):
        """In a batch with several system messages only the last is kept."""
        await memory.put("k", [system("A"), user("u1"), system("B"), user("u2")])
        assert await memory.get_all("k") == [system("B"), user("u1"), user("u2")]
        assert await _store_view(table, "k") == (system("B"), [user("u1"), user("u2")])

    async def test_batch_mirrors_onto_warm_entry(self, memory, table):
        """A batch put on a warm key updates the cached entry to match the store."""
        await memory.put("k", user("u0"))
        await memory.get_all("k")
        await memory.put("k", [user("u1"), system("S")])
        assert memory.cache.has("k")
        assert await memory.get_all("k") == [system("S"), user("u0"), user("u1")]
        assert await _store_view(table, "k") == (system("S"), [user("u0"), user("u1")])

    async def test_overflowing_batch_is_rejected_whole(self, memory, table):
        """A batch that would pass the limit writes nothing, system message included."""
        await memory.put("k", [user("a"), user("b")])
        with pytest.raises(MessageLimitReachedError):
            await memory.put("k", [system("S"), user("c"), user("d")])
        assert await table.count_interactive("k") == 2
        assert await memory.get_system_message("k") is None

    async def test_empty_batch_is_noop(self, memory):
        """Putting an empty list writes nothing."""
        await memory.put("k", [])
        assert await memory.get_all("k") == []


class TestCapacity:
    async def test_fourth_put_fails(self, memory, table):
        """The put past the limit raises MessageLimitReachedError with the fixed message."""
        for i in range(3):
            await memory.put("k", user(f"m{i}"))
        with pytest.raises(CapacityError) as exc_info:
            await memory.put("k", user("m3"))
        assert isinstance(exc_info.value, MessageLimitReachedError)
        assert str(exc_info.value) == (
            "Cannot add more messages. Maximum limit of '3' reached for key: 'k'"
        )
        assert await table.count_interactive("k") == 3

    async def test_capacity_failure_keeps_warm_entry(self, memory):
        """A rejected put leaves the warm cache entry in place."""
        for i in range(3):
            await memory.put("k", user(f"m{i}"))
        await memory.get_all("k")
        with pytest.raises(MessageLimitReachedError):
            await memory.put("k", user("m3"))
        assert memory.cache.has("k")
        assert len(await memory.get_interactive_messages("k")) == 3

    async def test_system_message_does_not_count(self, memory):
        """The system message is not counted against the limit."""
        for i in range(3):
            await memory.put("k", user(f"m{i}"))
        await memory.put("k", system("S"))
        assert await memory.count_interactive("k") == 3

    async def test_is_full(self, memory):
        """is_full turns True once the key holds exactly the limit."""
        await memory.put("k", [user("a"), user("b")])
        assert await memory.is_full("k") is False
        await memory.put("k", user("c"))
        assert await memory.is_full("k") is True

    async def test_overflow_on_load_fails_without_truncating(self, memory, table):
        """A key already over the limit raises on read and write and is not trimmed."""
        await table.batch_insert_interactive_rows(
            "k", [("user", to_persisted(user(f"m{i}"))) for i in range(4)]
        )
        with pytest.raises(MessageLimitExceededError):
            await memory.get_interactive_messages("k")
        with pytest.raises(MessageLimitExceededError):
            await memory.get_all("k")
        with pytest.raises(MessageLimitExceededError):
            await memory.is_full("k")
        with pytest.raises(CapacityError):
            await memory.put("k", user("m4"))
        assert not memory.cache.has("k")
        assert await table.count_interactive("k") == 4

    async def test_lowered_limit_is_detected(self, memory, make_memory):
        """A memory with a lower limit reports existing overflow on load."""
        await memory.put("k", [user("a"), user("b"), user("c")])
        stricter = await make_memory(max_messages_per_key=2)
        with pytest.raises(MessageLimitExceededError) as exc_info:
            await stricter.get_interactive_messages("k")
        assert exc_info.value.count == 3
        assert exc_info.value.limit == 2

    async def test_concurrent_puts_respect_limit(self, memory, table):
        """Concurrent puts never store more than the limit."""
        results = await asyncio.gather(
            *(memory.put("k", user(f"m{i}")) for i in range(8)),
            return_exceptions=True,
        )
        failures = [r for r in results if isinstance(r, BaseException)]
        assert len(failures) == 5
        assert all(isinstance(f, MessageLimitReachedError) for f in failures)
        assert await table.count_interactive("k") == 3


class TestRemoval:
    async def test_partial_removal_cache_and_store_agree(self, make_memory, table):
        """Removing the oldest N on a warm key keeps cache and store equal."""
        memory = await make_memory(max_messages_per_key=5)
        messages = [user(f"m{i}") for i in range(1, 6)]
        await memory.put("k", messages)
        await memory.get_all("k")
        await memory.remove_interactive_messages("k", 2)
        assert memory.cache.has("k")
        assert await memory.get_interactive_messages("k") == messages[2:]
        assert (await _store_view(table, "k"))[1] == messages[2:]

    async def test_partial_removal_on_cold_key(self, make_memory, table):
        """Removing the oldest N on a cold key affects only the store."""
        memory = await make_memory(max_messages_per_key=5)
        messages = [user(f"m{i}") for i in range(1, 6)]
        await memory.put("k", messages)
        await memory.remove_interactive_messages("k", 2)
        assert await memory.get_interactive_messages("k") == messages[2:]

    async def test_removing_more_than_exist_clears(self, memory):
        """Removing more than exist empties the interactive list."""
        await memory.put("k", [system("S"), user("a"), user("b")])
        await memory.get_all("k")
        await memory.remove_interactive_messages("k", 10)
        assert await memory.get_all("k") == [system("S")]

    async def test_remove_all_interactive(self, memory, table):
        """Removing without a count clears interactive messages and keeps the system one."""
        await memory.put("k", [system("S"), user("a"), user("b")])
        await memory.get_all("k")
        await memory.remove_interactive_messages("k")
        assert await memory.get_all("k") == [system("S")]
        assert await table.count_interactive("k") == 0

    async def test_zero_count_is_noop_and_negative_rejected(self, memory):
        """A count of zero does nothing; a negative count raises ValueError."""
        await memory.put("k", user("a"))
        await memory.remove_interactive_messages("k", 0)
        assert await memory.count_interactive("k") == 1
        with pytest.raises(ValueError):
            await memory.remove_interactive_messages("k", -1)

    async def test_remove_all_is_idempotent(self, memory, table):
        """remove_all empties the key and can be repeated."""
        await memory.put("k", [system("S"), user("a")])
        await memory.get_all("k")
        await memory.remove_all("k")
        assert not memory.cache.has("k")
        assert await memory.get_all("k") == []
        await memory.remove_all("k")
        assert await memory.get_all("k") == []
        assert await table.query_partition("k") == []

    async def test_remove_all_frees_capacity(self, memory):
        """After remove_all the key accepts new messages again."""
        await memory.put("k", [user("a"), user("b"), user("c")])
        await memory.remove_all("k")
        await memory.put("k", user("d"))
        assert await memory.get_interactive_messages("k") == [user("d")]


class TestFailureHandling:
    async def test_store_failure_on_write_invalidates(self, memory, monkeypatch):
        """A driver error on write drops the cache entry and raises StoreError with the cause."""
        await memory.put("k", user("a"))
        await memory.get_all("k")
        assert memory.cache.has("k")

        async def broken(*args, **kwargs):
            raise aiosqlite.OperationalError("disk I/O error")

        monkeypatch.setattr(memory.table, "insert_interactive_row", broken)
        with pytest.raises(StoreError) as exc_info:
            await memory.put("k", user("b"))
        assert isinstance(exc_info.value.cause, aiosqlite.OperationalError)
        assert exc_info.value.__cause__ is exc_info.value.cause
        assert "add message" in str(exc_info.value)
        assert not memory.cache.has("k")

    async def test_store_failure_on_remove_all_still_invalidates(self, memory, monkeypatch):
        """A driver error in remove_all still drops the cache entry."""
        await memory.put("k", user("a"))
        await memory.get_all("k")

        async def broken(*args, **kwargs):
            raise aiosqlite.OperationalError("database is locked")

        monkeypatch.setattr(memory.table, "delete_all", broken)
        with pytest.raises(StoreError):
            await memory.remove_all("k")
        assert not memory.cache.has("k")

    async def test_store_failure_on_read_raises_store_error(self, memory, monkeypatch):
        """A driver error during load surfaces as StoreError."""
        async def broken(*args, **kwargs):
            raise aiosqlite.OperationalError("no such table")

        monkeypatch.setattr(memory.table, "query_partition", broken)
        with pytest.raises(StoreError):
            await memory.get_interactive_messages("k")

    async def test_overlong_key_surfaces_store_error(self, memory):
        """A key longer than the column allows fails with StoreError."""
        with pytest.raises(StoreError):
            await memory.put("k" * 300, user("a"))

    async def test_malformed_row_aborts_load(self, memory, table):
        """Undecodable rows fail the whole load with every failure listed."""
        await memory.put("k", user("good"))
        await table.insert_interactive_row("k", "user", "{not json")
        await table.insert_interactive_row("k", "assistant", '{"role": "wizard", "content": "x"}')
        with pytest.raises(PartitionLoadError) as exc_info:
            await memory.get_interactive_messages("k")
        assert isinstance(exc_info.value, CodecError)
        assert len(exc_info.value.failures) == 2
        assert not memory.cache.has("k")

    async def test_role_mismatch_is_a_codec_error(self, memory, table):
        """A payload whose role disagrees with its row is a CodecError."""
        await table.insert_interactive_row("k", "user", to_persisted(assistant("x")))
        with pytest.raises(CodecError):
            await memory.get_all("k")

    async def test_malformed_system_row(self, memory, table):
        """A malformed system payload raises CodecError from get_system_message."""
        await table.upsert_system_row("k", '{"role": "system"}')
        with pytest.raises(CodecError):
            await memory.get_system_message("k")

    @pytest.mark.parametrize("role", ["user", "system"])
    async def test_non_utf8_payload_is_a_codec_error(self, memory, config, pool, role):
        """A stored payload that is not UTF-8 raises CodecError, not StoreError."""
        conn = await pool.acquire(config.store.db_path)
        await conn.execute(
            'INSERT INTO "ChatMessages" (key, role, payload) VALUES (?, ?, CAST(? AS TEXT))',
            ("k", role, b'{"role": "' + role.encode() + b'", "content": "\xff"}'),
        )
        await conn.commit()

        with pytest.raises(CodecError) as exc_info:
            await memory.get_all("k")
        assert not isinstance(exc_info.value, StoreError)
        assert "UTF-8" in str(exc_info.value)
        if role == "system":
            with pytest.raises(CodecError):
                await memory.get_system_message("k")
        assert not memory.cache.has("k")

    async def test_opens_table_with_duplicate_system_rows(self, tmp_path):
        """A table holding several system rows for a key opens and serves the newest."""
        path = str(tmp_path / "legacy.db")
        async with aiosqlite.connect(path) as db:
            await db.execute(
                'CREATE TABLE "ChatMessages" ('
                "id INTEGER PRIMARY KEY AUTOINCREMENT, key TEXT NOT NULL, role TEXT NOT NULL, "
                "payload TEXT NOT NULL, created_at INTEGER NOT NULL)"
            )
            await db.executemany(
                'INSERT INTO "ChatMessages" (key, role, payload, created_at) VALUES (?, ?, ?, ?)',
                [
                    ("k", "system", to_persisted(system("old")), 1),
                    ("k", "user", to_persisted(user("hi")), 2),
                    ("k", "system", to_persisted(system("new")), 3),
                ],
            )
            await db.commit()

        async with ShortTermMemory.open(db_path=path) as memory:
            assert await memory.get_system_message("k") == system("new")
            assert await memory.get_all("k") == [system("new"), user("hi")]
            await memory.put("k", system("newest"))
            assert await memory.get_system_message("k") == system("newest")


class TestConsistency:
    async def test_mixed_sequence_agrees_with_store(self, make_memory, table):
        """After mixed writes the cached view, a fresh load and the store agree."""
        memory = await make_memory(max_messages_per_key=6)
        await memory.put("k", [system("S1"), user("a"), assistant("b")])
        await memory.get_all("k")
        await memory.put("k", user("c"))
        await memory.put("k", system("S2"))
        await memory.remove_interactive_messages("k", 1)
        await memory.put("k", [user("d"), assistant("e")])
        await memory.remove_system_message("k")
        await memory.put("k", system("S3"))

        cached = await memory.get_all("k")
        memory.cache.invalidate("k")
        loaded = await memory.get_all("k")
        sys_msg, interactive = await _store_view(table, "k")
        expected = [system("S3"), assistant("b"), user("c"), user("d"), assistant("e")]
        assert cached == loaded == [sys_msg, *interactive] == expected

    async def test_concurrent_loads_agree(self, memory):
        """Concurrent cold reads all return the same partition."""
        await memory.put("k", [system("S"), user("a"), user("b")])
        results = await asyncio.gather(*(memory.get_all("k") for _ in range(5)))
        assert all(r == [system("S"), user("a"), user("b")] for r in results)
        assert memory.cache.has("k")

    async def test_reads_and_writes_interleaved(self, make_memory, table):
        """Interleaved reads and writes end with cache and store equal."""
        memory = await make_memory(max_messages_per_key=50)
        writes = [memory.put("k", user(f"m{i}")) for i in range(20)]
        reads = [memory.get_interactive_messages("k") for _ in range(20)]
        await asyncio.gather(*[op for pair in zip(writes, reads) for op in pair])
        assert await memory.get_interactive_messages("k") == (await _store_view(table, "k"))[1]
        assert len(await memory.get_interactive_messages("k")) == 20

    async def test_disabled_cache(self, make_memory):
        """With the cache disabled every read goes to the store and nothing is cached."""
        memory = await make_memory(cache_capacity=None)
        await memory.put("k", [system("S"), user("a")])
        assert await memory.get_all("k") == [system("S"), user("a")]
        assert not memory.cache.has("k")
        assert memory.cache_stats().size == 0

    async def test_lru_capacity_bounds_cache(self, make_memory):
        """The cache holds at most cache_capacity keys, evicting the oldest."""
        memory = await make_memory(cache_capacity=2)
        for key in ["a", "b", "c"]:
            await memory.put(key, user(key))
            await memory.get_all(key)
        assert memory.cache_stats().size == 2
        assert not memory.cache.has("a")
        assert await memory.get_interactive_messages("a") == [user("a")]

    async def test_keys(self, memory):
        """keys lists every key with rows, sorted."""
        await memory.put("b", user("x"))
        await memory.put("a", system("S"))
        assert await memory.keys() == ["a", "b"]
