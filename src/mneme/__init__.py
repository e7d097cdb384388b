"""
Mneme — per-key short-term memory for chat messages.

Primary entry point::

    from mneme import ShortTermMemory, SystemMessage, UserMessage

    async with ShortTermMemory.open(db_path="memory.db", max_messages_per_key=50) as memory:
        await memory.put("conv-1", [SystemMessage(content="Be brief."), UserMessage(content="Hi")])
        history = await memory.get_all("conv-1")
"""

from mneme.cache import CachedPartition, CacheStats, PartitionCache
from mneme.errors import (
    CapacityError,
    CodecError,
    ConfigError,
    MessageLimitExceededError,
    MessageLimitReachedError,
    MnemeError,
    PartitionLoadError,
    StoreError,
)
from mneme.memory import ShortTermMemory
from mneme.models import (
    AssistantMessage,
    FrozenMessage,
    FunctionCall,
    FunctionMessage,
    MemoryConfig,
    Message,
    Prompt,
    PromptInsertion,
    StoreConfig,
    SystemMessage,
    ToolCall,
    UserMessage,
    freeze,
    from_persisted,
    to_persisted,
)
from mneme.store import MessageTable, PersistedRow, StorePool

__version__ = "0.1.0"

__all__ = [
    # Core
    "ShortTermMemory",
    # Config
    "MemoryConfig",
    "StoreConfig",
    # Messages
    "Message",
    "SystemMessage",
    "UserMessage",
    "AssistantMessage",
    "FunctionMessage",
    "Prompt",
    "PromptInsertion",
    "ToolCall",
    "FunctionCall",
    # Codec
    "FrozenMessage",
    "freeze",
    "from_persisted",
    "to_persisted",
    # Store
    "MessageTable",
    "PersistedRow",
    "StorePool",
    # Cache
    "PartitionCache",
    "CachedPartition",
    "CacheStats",
    # Errors
    "MnemeError",
    "ConfigError",
    "CodecError",
    "PartitionLoadError",
    "CapacityError",
    "MessageLimitReachedError",
    "MessageLimitExceededError",
    "StoreError",
]
