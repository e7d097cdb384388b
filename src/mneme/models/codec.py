"""
Message codec: persisted JSON form and immutable cache snapshots.

Persisted form is the JSON text of a message with ``None`` fields omitted.
``FrozenMessage`` holds that same text, so a cached snapshot has no mutation
points at all; every ``thaw()`` builds a brand-new ``Message``.
"""

from __future__ import annotations

from dataclasses import dataclass

from pydantic import TypeAdapter, ValidationError

from mneme.errors import CodecError
from mneme.models.message import Message, Role

_adapter: TypeAdapter[Message] = TypeAdapter(Message)


def to_persisted(message: Message) -> str:
    """Encode *message* as JSON text. Defined for every variant; never raises."""
    return message.model_dump_json(exclude_none=True)


def from_persisted(payload: str | bytes) -> Message:
    """
    Decode a persisted payload back into a message variant.

    Raises:
        CodecError: If the payload is not UTF-8 or not JSON, or is JSON that
            does not describe a system, user, assistant or function message.
    """
    if isinstance(payload, bytes):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise CodecError(f"payload is not valid UTF-8: {exc.reason}", payload) from exc
    try:
        return _adapter.validate_json(payload)
    except ValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        reason = first.get("msg", str(exc))
        loc = ".".join(str(p) for p in first.get("loc", ()))
        raise CodecError(f"{loc}: {reason}" if loc else reason, payload) from exc


@dataclass(frozen=True, slots=True)
class FrozenMessage:
    """Immutable snapshot of a message, safe to share across callers."""

    role: Role
    data: str

    def thaw(self) -> Message:
        """Return an independent, mutable copy of the snapshotted message."""
        return _adapter.validate_json(self.data)


def freeze(message: Message) -> FrozenMessage:
    """Snapshot *message* for the cache. Later mutation of *message* has no effect."""
    return FrozenMessage(role=message.role, data=to_persisted(message))
