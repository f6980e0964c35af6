"""Background eviction of the memory cache as system memory use grows."""

from __future__ import annotations

import asyncio
import logging

from boltcache.memory import MEMORY_CACHE, UsageFn, get_memory_usage_kib, maybe_evict_if_needed

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECS = 1.0

_tasks: set[asyncio.Task[int]] = set()


async def eviction_loop(
    get_usage: UsageFn,
    interval: float = DEFAULT_INTERVAL_SECS,
    iterations: int | None = None,
) -> int:
    """Check memory use every ``interval`` seconds and evict when it rises.

    Eviction is attempted whenever the usage percentage is higher than at
    the previous check. Runs forever unless ``iterations`` is given, and
    returns how many times eviction was attempted.
    """
    last_percent = 0
    triggered = 0
    done = 0
    while iterations is None or done < iterations:
        used, total = get_usage()
        if total > 0:
            current_percent = used * 100 // total
            if current_percent > last_percent:
                logger.debug(
                    "Memory usage increased from %s%% to %s%%, attempting eviction...",
                    last_percent,
                    current_percent,
                )
                maybe_evict_if_needed(MEMORY_CACHE)
                triggered += 1
            last_percent = current_percent
        else:
            logger.warning("Total memory reported as zero; skipping eviction check")
        done += 1
        if iterations is None or done < iterations:
            await asyncio.sleep(interval)
    return triggered


def start_background_eviction_task_with(
    get_usage: UsageFn, interval: float = DEFAULT_INTERVAL_SECS
) -> asyncio.Task[int]:
    """Start :func:`eviction_loop` on the running event loop and return its task."""
    loop = asyncio.get_running_loop()
    task = loop.create_task(eviction_loop(get_usage, interval))
    _tasks.add(task)
    task.add_done_callback(_tasks.discard)
    logger.info("Background memory eviction task started")
    return task


def start_background_eviction_task() -> asyncio.Task[int]:
    """Start background eviction driven by the real system memory usage."""
    return start_background_eviction_task_with(get_memory_usage_kib)