"""Mneme persistence layer."""

from mneme.store.pool import StorePool
from mneme.store.table import MessageTable, PersistedRow

__all__ = [
    "MessageTable",
    "PersistedRow",
    "StorePool",
]
