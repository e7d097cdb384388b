"""Chat message variants stored by Mneme."""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field

# ── Content ────────────────────────────────────────────────────────────────────


class PromptInsertion(BaseModel):
    """A typed value spliced between two literal fragments of a ``Prompt``."""

    type: Literal["text", "json", "image_url"] = "text"
    value: str


class Prompt(BaseModel):
    """
    A structured prompt: literal fragments interleaved with typed insertions.

    ``fragments[0] insertions[0] fragments[1] insertions[1] ... fragments[-1]``.
    There is normally one more fragment than there are insertions; surplus
    items on either side are appended in order by ``render()``.
    """

    fragments: list[str] = Field(default_factory=list)
    insertions: list[PromptInsertion] = Field(default_factory=list)

    def render(self) -> str:
        """Join fragments and insertion values into a single string."""
        out: list[str] = []
        for i in range(max(len(self.fragments), len(self.insertions))):
            if i < len(self.fragments):
                out.append(self.fragments[i])
            if i < len(self.insertions):
                out.append(self.insertions[i].value)
        return "".join(out)


Content = str | Prompt


# ── Tool calls ─────────────────────────────────────────────────────────────────


class FunctionCall(BaseModel):
    name: str
    arguments: str = "{}"
    """JSON-encoded arguments, stored verbatim."""


class ToolCall(BaseModel):
    """Tool-call metadata attached to assistant messages. Never interpreted by Mneme."""

    id: str
    type: Literal["function"] = "function"
    function: FunctionCall
    extra: dict[str, Any] = Field(default_factory=dict)
    """Provider-specific fields carried along untouched."""


# ── Message variants ───────────────────────────────────────────────────────────


class SystemMessage(BaseModel):
    """Instruction/context message. At most one per key."""

    role: Literal["system"] = "system"
    content: Content
    name: str | None = None


class UserMessage(BaseModel):
    role: Literal["user"] = "user"
    content: Content
    name: str | None = None


class AssistantMessage(BaseModel):
    """A model reply, optionally carrying tool calls instead of (or beside) content."""

    role: Literal["assistant"] = "assistant"
    content: Content | None = None
    name: str | None = None
    tool_calls: list[ToolCall] | None = None


class FunctionMessage(BaseModel):
    """The result of a function/tool invocation fed back to the model."""

    role: Literal["function"] = "function"
    content: Content
    name: str | None = None
    tool_call_id: str | None = None


# Discriminated union on ``role``.
Message = Annotated[
    SystemMessage | UserMessage | AssistantMessage | FunctionMessage,
    Field(discriminator="role"),
]

Role = Literal["system", "user", "assistant", "function"]

ROLES: frozenset[str] = frozenset({"system", "user", "assistant", "function"})
INTERACTIVE_ROLES: frozenset[str] = frozenset({"user", "assistant", "function"})


def is_system(message: SystemMessage | UserMessage | AssistantMessage | FunctionMessage) -> bool:
    """Return True when *message* belongs in the per-key system slot."""
    return message.role == "system"
