"""Configuration models for Mneme."""

from __future__ import annotations

import re

from pydantic import BaseModel, Field, field_validator

TABLE_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class StoreConfig(BaseModel):
    """Configuration for the SQLite persistence layer."""

    db_path: str = Field(
        default="~/.mneme/memory.db",
        description="Path to the SQLite database file. ~ is expanded at runtime.",
    )

    wal_mode: bool = True
    """Use WAL journal mode for better concurrent read performance."""

    connection_timeout: float = 30.0
    """Seconds to wait for the database lock before raising."""


class MemoryConfig(BaseModel):
    """
    Top-level configuration for a ``ShortTermMemory``.

    Example::

        config = MemoryConfig(
            max_messages_per_key=50,
            cache_capacity=None,           # disable the in-memory cache
            store=StoreConfig(db_path="/var/lib/app/memory.db"),
        )
    """

    max_messages_per_key: int = Field(
        default=20,
        ge=1,
        description="Maximum number of interactive messages kept per key.",
    )

    cache_capacity: int | None = Field(
        default=20,
        ge=0,
        description="Number of key partitions held in the LRU cache. None or 0 disables it.",
    )

    table_name: str = Field(
        default="ChatMessages",
        description="Name of the table holding the messages.",
    )

    max_key_length: int = Field(
        default=255,
        ge=1,
        le=4096,
        description="Upper bound on key length, enforced by the table definition.",
    )

    store: StoreConfig = Field(default_factory=StoreConfig)

    @field_validator("table_name")
    @classmethod
    def validate_table_name(cls, value: str) -> str:
        if not TABLE_NAME_PATTERN.match(value):
            raise ValueError(
                f"Invalid table name {value!r}: must match {TABLE_NAME_PATTERN.pattern}"
            )
        return value

    @property
    def cache_enabled(self) -> bool:
        return bool(self.cache_capacity)
