"""Mneme data models."""

from mneme.models.codec import FrozenMessage, freeze, from_persisted, to_persisted
from mneme.models.config import MemoryConfig, StoreConfig
from mneme.models.message import (
    INTERACTIVE_ROLES,
    ROLES,
    AssistantMessage,
    Content,
    FunctionCall,
    FunctionMessage,
    Message,
    Prompt,
    PromptInsertion,
    Role,
    SystemMessage,
    ToolCall,
    UserMessage,
    is_system,
)

__all__ = [
    # Config
    "MemoryConfig",
    "StoreConfig",
    # Content
    "Content",
    "Prompt",
    "PromptInsertion",
    "FunctionCall",
    "ToolCall",
    # Messages
    "Message",
    "SystemMessage",
    "UserMessage",
    "AssistantMessage",
    "FunctionMessage",
    "Role",
    "ROLES",
    "INTERACTIVE_ROLES",
    "is_system",
    # Codec
    "FrozenMessage",
    "freeze",
    "from_persisted",
    "to_persisted",
]
