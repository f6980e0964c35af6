"""Unbounded in-memory LRU cache with eviction under system memory pressure."""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

import psutil

from boltcache.config import get_config

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD_PERCENT = 80

UsageFn = Callable[[], tuple[int, int]]


@dataclass
class CachedResponse:
    """A response body with its headers, as kept in memory."""

    body: bytes
    headers: list[tuple[str, str]] = field(default_factory=list)


class MemoryCache:
    """Thread-safe, unbounded least-recently-used mapping."""

    def __init__(self) -> None:
        self._entries: OrderedDict[str, CachedResponse] = OrderedDict()
        self._lock = threading.RLock()

    def get(self, key: str) -> CachedResponse | None:
        """Return the entry for ``key`` and mark it most recently used."""
        with self._lock:
            value = self._entries.get(key)
            if value is not None:
                self._entries.move_to_end(key)
            return value

    def put(self, key: str, value: CachedResponse) -> None:
        """Insert or replace ``key`` as the most recently used entry."""
        with self._lock:
            self._entries[key] = value
            self._entries.move_to_end(key)

    def pop_lru(self) -> tuple[str, CachedResponse] | None:
        """Remove and return the least recently used entry, if any."""
        with self._lock:
            if not self._entries:
                return None
            return self._entries.popitem(last=False)

    def clear(self) -> int:
        """Remove every entry and return how many there were."""
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            return count

    def keys(self) -> list[str]:
        """Keys from least to most recently used."""
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries


MEMORY_CACHE = MemoryCache()


def get_memory_usage_kib() -> tuple[int, int]:
    """Return ``(used, total)`` system memory in KiB."""
    stats = psutil.virtual_memory()
    used = stats.total - stats.available
    return used // 1024, stats.total // 1024


def get_from_memory(key: str) -> CachedResponse | None:
    """Look ``key`` up in the shared memory cache."""
    return MEMORY_CACHE.get(key)


def load_into_memory(data: Iterable[tuple[str, CachedResponse]]) -> None:
    """Insert entries into the shared cache, then evict if memory is tight."""
    for key, value in data:
        MEMORY_CACHE.put(key, value)
        logger.info("Inserted key '%s' into MEMORY_CACHE", key)
    maybe_evict_if_needed(MEMORY_CACHE)


def maybe_evict_if_needed(cache: MemoryCache, get_usage: UsageFn | None = None) -> int:
    """Evict LRU entries while memory use is at or above the threshold.

    Returns the number of entries evicted.
    """
    usage = get_usage or get_memory_usage_kib
    config = get_config()
    threshold = (
        config.memory_eviction.threshold_percent if config is not None else DEFAULT_THRESHOLD_PERCENT
    )

    used, total = usage()
    if total <= 0:
        return 0
    usage_percent = used * 100 // total
    if usage_percent < threshold:
        return 0

    logger.info("MEMORY_CACHE over threshold (%s%% used). Cleaning LRU...", usage_percent)
    evicted = 0
    while usage()[0] * 100 // total >= threshold:
        entry = cache.pop_lru()
        if entry is None:
            break
        evicted += 1
        logger.info("Evicted key '%s' from MEMORY_CACHE", entry[0])
    return evicted