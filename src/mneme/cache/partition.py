"""
LRU cache of key partitions.

Each entry mirrors one key's stored state: the system slot and the ordered
interactive list, both held as ``FrozenMessage`` snapshots.  Entries are
mutated in place by writers and copied out to readers.

Every operation runs under one ``threading.Lock`` per cache instance and
never awaits while holding it, so the cache is safe both for coroutines on
one event loop and for threads sharing an instance.

Load fencing
------------
A reader that misses loads the partition from the store *outside* the lock.
A writer running at the same time may change the store after that query but
reach the cache before the reader seeds it, which would leave a stale entry.
To prevent this, loaders bracket their store query with ``begin_load()`` /
``finish_load()`` and writers bracket their store mutation with
``writing()``.  A load seeds the cache only if no write for the same key was
in flight or started while it ran; otherwise the entry is simply not
created and the next read loads again.
"""

from __future__ import annotations

import threading
from collections import OrderedDict
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager

import structlog
from pydantic import BaseModel

from mneme.models.codec import FrozenMessage
from mneme.models.message import Message

_logger = structlog.get_logger("mneme.cache")


class CachedPartition:
    """
    Cached state for one key.

    ``system is None`` means "this key has no system message"; the entry
    existing at all is what distinguishes that from "not loaded yet".
    """

    __slots__ = ("interactive", "system")

    def __init__(
        self,
        system: FrozenMessage | None = None,
        interactive: Iterable[FrozenMessage] = (),
    ) -> None:
        self.system = system
        self.interactive: list[FrozenMessage] = list(interactive)

    def copy(self) -> CachedPartition:
        return CachedPartition(self.system, self.interactive)

    # ── In-place mutation (called under the cache lock) ──────────────────────

    def set_system(self, message: FrozenMessage) -> None:
        self.system = message

    def clear_system(self) -> None:
        self.system = None

    def append(self, message: FrozenMessage) -> None:
        self.interactive.append(message)

    def extend(self, messages: Iterable[FrozenMessage]) -> None:
        self.interactive.extend(messages)

    def drop_oldest(self, count: int) -> int:
        """Remove up to *count* messages from the front. Returns how many were removed."""
        dropped = min(max(count, 0), len(self.interactive))
        del self.interactive[:dropped]
        return dropped

    def clear_interactive(self) -> None:
        self.interactive.clear()

    # ── Thawed views ──────────────────────────────────────────────────────────

    def system_message(self) -> Message | None:
        return self.system.thaw() if self.system is not None else None

    def interactive_messages(self) -> list[Message]:
        return [m.thaw() for m in self.interactive]

    def __len__(self) -> int:
        return len(self.interactive)

    def __repr__(self) -> str:
        return f"CachedPartition(system={self.system is not None}, interactive={len(self)})"


class CacheStats(BaseModel):
    """Counters for a ``PartitionCache``."""

    hits: int = 0
    misses: int = 0
    evictions: int = 0
    seeds_skipped: int = 0
    size: int = 0
    capacity: int = 0


class PartitionCache:
    """
    Bounded LRU mapping of key → ``CachedPartition``.

    A capacity of 0 disables the cache: lookups miss and nothing is stored.
    """

    def __init__(self, capacity: int = 20) -> None:
        if capacity < 0:
            raise ValueError("capacity must be >= 0")
        self._capacity = capacity
        self._entries: OrderedDict[str, CachedPartition] = OrderedDict()
        self._lock = threading.Lock()
        self._loading: dict[str, int] = {}
        self._writing: dict[str, int] = {}
        self._dirty: set[str] = set()
        self._stats = CacheStats(capacity=capacity)

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def enabled(self) -> bool:
        return self._capacity > 0

    # ── Basic operations ──────────────────────────────────────────────────────

    def has(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def get(self, key: str) -> CachedPartition | None:
        """Return a copy of the entry for *key* and mark it recently used, or None."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._stats.misses += 1
                return None
            self._entries.move_to_end(key)
            self._stats.hits += 1
            return entry.copy()

    def put(self, key: str, entry: CachedPartition) -> None:
        """Insert or replace the entry for *key*, evicting the least recently used."""
        with self._lock:
            self._store(key, entry)

    def invalidate(self, key: str) -> bool:
        """Drop the entry for *key*. Returns False when there was none."""
        with self._lock:
            self._touch(key)
            return self._entries.pop(key, None) is not None

    def update(self, key: str, mutate: Callable[[CachedPartition], object]) -> bool:
        """
        Apply *mutate* to the warm entry for *key* as one critical section.

        Cold keys are left cold. Returns True when an entry was mutated.
        """
        with self._lock:
            self._touch(key)
            entry = self._entries.get(key)
            if entry is None:
                return False
            mutate(entry)
            return True

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> CacheStats:
        with self._lock:
            return self._stats.model_copy(update={"size": len(self._entries)})

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.has(key)

    # ── Load / write fencing ──────────────────────────────────────────────────

    def begin_load(self, key: str) -> None:
        """Register an in-flight load of *key* from the store."""
        if not self.enabled:
            return
        with self._lock:
            self._loading[key] = self._loading.get(key, 0) + 1

    def finish_load(self, key: str, entry: CachedPartition | None) -> bool:
        """
        End a load started with ``begin_load()`` and seed the cache with *entry*.

        Pass ``None`` when the load failed. The entry is stored only if *key*
        is still cold and no write touched it while the load ran. Returns
        True when the cache was seeded.
        """
        if not self.enabled:
            return False
        with self._lock:
            remaining = self._loading.get(key, 1) - 1
            stale = key in self._dirty or key in self._writing
            if remaining <= 0:
                self._loading.pop(key, None)
                self._dirty.discard(key)
            else:
                self._loading[key] = remaining
            if entry is None:
                return False
            if stale or key in self._entries:
                self._stats.seeds_skipped += 1
                return False
            self._store(key, entry)
            return True

    @contextmanager
    def writing(self, key: str) -> Iterator[None]:
        """Mark a store mutation of *key* as in flight for the duration of the block."""
        if not self.enabled:
            yield
            return
        with self._lock:
            self._writing[key] = self._writing.get(key, 0) + 1
            self._touch(key)
        try:
            yield
        finally:
            with self._lock:
                remaining = self._writing.get(key, 1) - 1
                if remaining <= 0:
                    self._writing.pop(key, None)
                else:
                    self._writing[key] = remaining

    # ── Private Helpers (lock held) ───────────────────────────────────────────

    def _store(self, key: str, entry: CachedPartition) -> None:
        if not self.enabled:
            return
        self._entries[key] = entry.copy()
        self._entries.move_to_end(key)
        while len(self._entries) > self._capacity:
            evicted, _ = self._entries.popitem(last=False)
            self._stats.evictions += 1
            _logger.debug("cache_entry_evicted", key=evicted)

    def _touch(self, key: str) -> None:
        if key in self._loading:
            self._dirty.add(key)
