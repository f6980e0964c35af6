"""Administrative cache invalidation."""

from __future__ import annotations

import asyncio
import logging

from aiohttp import web

from boltcache import local_storage
from boltcache.local_storage import StorageError
from boltcache.memory import MEMORY_CACHE

logger = logging.getLogger(__name__)

MEMORY_ONLY_MESSAGE = "Cleared in-memory cache only"
ALL_BACKENDS_MESSAGE = "Cleared in-memory cache and requested deletion from all backends"


def invalidate_cache(backend: bool = False) -> dict[str, str]:
    """Clear the memory cache and, if ``backend`` is set, persistent storage too."""
    count = MEMORY_CACHE.clear()
    logger.info("Cleared all %s entries from in-memory cache", count)

    if backend:
        try:
            local_storage.delete_all_from_cache()
        except StorageError as exc:
            logger.warning("A backend deletion task failed: %s", exc)
        logger.info("Requested full deletion from all persistent backends")

    return {"message": ALL_BACKENDS_MESSAGE if backend else MEMORY_ONLY_MESSAGE}


def _parse_bool(value: str | None) -> bool:
    if value is None:
        return False
    if value == "true":
        return True
    if value == "false":
        return False
    raise web.HTTPBadRequest(
        text=f"Failed to deserialize query string: invalid value for `backend`: {value!r}"
    )


async def invalidate_handler(request: web.Request) -> web.Response:
    """Handle ``DELETE /cache?backend=true``."""
    backend = _parse_bool(request.query.get("backend"))
    body = await asyncio.to_thread(invalidate_cache, backend)
    return web.json_response(body, status=200)