"""Exception hierarchy for Mneme."""

from __future__ import annotations


class MnemeError(Exception):
    """Base class for all Mneme errors."""


class ConfigError(MnemeError):
    """Raised when the memory cannot be configured or its store cannot be opened."""


# ── Codec ──────────────────────────────────────────────────────────────────────


class CodecError(MnemeError):
    """Raised when a persisted payload cannot be decoded into a known message variant."""

    def __init__(self, reason: str, payload: str | bytes | None = None) -> None:
        super().__init__(f"Cannot decode persisted message: {reason}")
        self.reason = reason
        self.payload = payload


class PartitionLoadError(CodecError):
    """Raised when one or more rows of a partition fail to decode during a full load."""

    def __init__(self, key: str, failures: list[CodecError]) -> None:
        reasons = "; ".join(f.reason for f in failures)
        super().__init__(f"{len(failures)} row(s) failed for key {key!r}: {reasons}")
        self.key = key
        self.failures = failures


# ── Capacity ───────────────────────────────────────────────────────────────────


class CapacityError(MnemeError):
    """Base class for per-key interactive message limit violations."""

    def __init__(self, message: str, key: str, limit: int) -> None:
        super().__init__(message)
        self.key = key
        self.limit = limit


class MessageLimitReachedError(CapacityError):
    """Raised when a write would take the interactive count past the limit."""

    def __init__(self, key: str, limit: int) -> None:
        super().__init__(
            f"Cannot add more messages. Maximum limit of '{limit}' reached for key: '{key}'",
            key,
            limit,
        )


class MessageLimitExceededError(CapacityError):
    """Raised when the store already holds more interactive messages than the limit."""

    def __init__(self, key: str, limit: int, count: int) -> None:
        super().__init__(
            f"Stored message count '{count}' exceeds maximum limit of '{limit}' for key: '{key}'",
            key,
            limit,
        )
        self.count = count


# ── Store ──────────────────────────────────────────────────────────────────────


class StoreError(MnemeError):
    """Raised when the durable store fails. The driver exception is kept in ``cause``."""

    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        detail = f"{message}: {cause}" if cause is not None else message
        super().__init__(detail)
        self.cause = cause
