"""Per-path latency limits and failover tracking."""

from __future__ import annotations

import functools
import re
import threading
import time

from boltcache.config import ConfigError, get_config

FAILOVER_WINDOW_SECS = 300.0

_lock = threading.Lock()
_failures: dict[str, float] = {}


def should_failover(uri: str) -> bool:
    """True if ``uri`` exceeded its latency limit within the failover window."""
    with _lock:
        last = _failures.get(uri)
    if last is None:
        return False
    return time.monotonic() - last < FAILOVER_WINDOW_SECS


def mark_latency_fail(uri: str) -> None:
    """Record that ``uri`` just exceeded its latency limit."""
    now = time.monotonic()
    with _lock:
        _failures[uri] = now


def last_failure(uri: str) -> float | None:
    """Monotonic timestamp of the last latency failure of ``uri``."""
    with _lock:
        return _failures.get(uri)


def clear_latency_failures() -> None:
    """Forget all recorded latency failures."""
    with _lock:
        _failures.clear()


@functools.lru_cache(maxsize=256)
def _compile(pattern: str) -> re.Pattern[str] | None:
    try:
        return re.compile(pattern)
    except re.error:
        return None


def get_max_latency_for_path(uri: str) -> int:
    """Latency limit in milliseconds: first matching rule, else the default."""
    config = get_config()
    if config is None:
        raise ConfigError("CONFIG not initialized")
    failover = config.latency_failover
    for rule in failover.path_rules:
        regex = _compile(rule.pattern)
        if regex is not None and regex.search(uri):
            return rule.max_latency_ms
    return failover.default_max_latency_ms