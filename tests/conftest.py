"""Shared fixtures for Mneme tests."""

from __future__ import annotations

import pytest
import pytest_asyncio

from mneme.memory import ShortTermMemory
from mneme.models.config import MemoryConfig, StoreConfig
from mneme.models.message import AssistantMessage, SystemMessage, UserMessage
from mneme.store.pool import StorePool
from mneme.store.table import MessageTable


@pytest.fixture
def config(tmp_path):
    """MemoryConfig with a temp database path and a small per-key limit."""
    return MemoryConfig(
        max_messages_per_key=3,
        store=StoreConfig(db_path=str(tmp_path / "test.db")),
    )


@pytest_asyncio.fixture
async def pool():
    """StorePool for the test database. Closed after each test."""
    p = StorePool()
    yield p
    await p.close_all()


@pytest_asyncio.fixture
async def table(config, pool):
    """Initialized MessageTable sharing the pool connection with ``memory``."""
    t = MessageTable(config.store, config.table_name, pool=pool)
    await t.initialize()
    yield t
    await t.close()


@pytest_asyncio.fixture
async def memory(config, pool, table):
    """ShortTermMemory (limit 3, cache on) over the same database as ``table``."""
    m = await ShortTermMemory.create(config, pool=pool)
    yield m
    await m.close()


@pytest_asyncio.fixture
async def make_memory(config, pool, table):
    """Factory for extra memories over the same database with config overrides."""
    created: list[ShortTermMemory] = []

    async def _make(**overrides) -> ShortTermMemory:
        m = await ShortTermMemory.create(config.model_copy(update=overrides), pool=pool)
        created.append(m)
        return m

    yield _make
    for m in created:
        await m.close()


def user(text: str) -> UserMessage:
    return UserMessage(content=text)


def assistant(text: str) -> AssistantMessage:
    return AssistantMessage(content=text)


def system(text: str) -> SystemMessage:
    return SystemMessage(content=text)
