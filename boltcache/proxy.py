"""Caching reverse-proxy request handling."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import threading
import time
from collections.abc import Iterable

import aiohttp
from aiohttp import web

from boltcache import local_storage
from boltcache.config import ConfigError, StorageBackend, get_config
from boltcache.latency import get_max_latency_for_path, mark_latency_fail, should_failover
from boltcache.local_storage import StorageError
from boltcache.memory import CachedResponse, get_from_memory, load_into_memory
from boltcache.metrics import METRICS

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENT_REQUESTS = 200
DEFAULT_CONTENT_TYPE = "application/octet-stream"
NO_CACHE_MESSAGE = "Downstream error and no cache"
TOO_MANY_REQUESTS_MESSAGE = "Too many concurrent requests and no cache available"

# Framing headers are recomputed by the server for every response.
_HOP_BY_HOP = frozenset({"connection", "keep-alive", "transfer-encoding", "content-length"})

Headers = list[tuple[str, str]]


class DownstreamError(Exception):
    """Raised when the downstream service fails or times out."""


class ConcurrencyLimiter:
    """Non-blocking counter of in-flight downstream requests."""

    def __init__(self, limit: int) -> None:
        if limit < 0:
            raise ValueError("limit must not be negative")
        self._limit = limit
        self._in_use = 0
        self._lock = threading.Lock()

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def available(self) -> int:
        with self._lock:
            return self._limit - self._in_use

    def try_acquire(self) -> bool:
        """Take a slot if one is free; return whether it was taken."""
        with self._lock:
            if self._in_use >= self._limit:
                return False
            self._in_use += 1
            return True

    def release(self) -> None:
        """Give back a slot taken by :meth:`try_acquire`."""
        with self._lock:
            if self._in_use == 0:
                raise RuntimeError("release() called without a matching acquire")
            self._in_use -= 1


CLIENT_SESSION_KEY = web.AppKey("client_session", aiohttp.ClientSession)
LIMITER_KEY = web.AppKey("concurrency_limiter", ConcurrencyLimiter)

_default_limiter: ConcurrencyLimiter | None = None
_default_limiter_lock = threading.Lock()
_background: set[asyncio.Task[bool]] = set()


def _limiter_for(request: web.Request) -> ConcurrencyLimiter:
    limiter = request.app.get(LIMITER_KEY)
    if limiter is not None:
        return limiter
    global _default_limiter
    with _default_limiter_lock:
        if _default_limiter is None:
            config = get_config()
            limit = (
                config.max_concurrent_requests
                if config is not None
                else DEFAULT_MAX_CONCURRENT_REQUESTS
            )
            _default_limiter = ConcurrencyLimiter(limit)
        return _default_limiter


def hash_uri(uri: str) -> str:
    """Hex SHA-256 digest of ``uri``."""
    return hashlib.sha256(uri.encode("utf-8")).hexdigest()


def cache_key(uri: str, headers: Iterable[tuple[str, str]], ignored: Iterable[str] = ()) -> str:
    """Cache key from the URI and the request headers not in ``ignored``."""
    skip = {name.lower() for name in ignored}
    relevant = [
        (name.lower(), value) for name, value in headers if name.lower() not in skip
    ]
    relevant.sort(key=lambda pair: pair[0])
    joined = ";".join(f"{name}:{value}" for name, value in relevant)
    return hash_uri(f"{uri}|{joined}")


def _make_response(
    status: int, body: bytes, headers: Iterable[tuple[str, str]], default_type: bool
) -> web.Response:
    out = [(name, value) for name, value in headers if name.lower() not in _HOP_BY_HOP]
    if default_type and not any(name.lower() == "content-type" for name, _ in out):
        out.append(("Content-Type", DEFAULT_CONTENT_TYPE))
    return web.Response(status=status, body=bytes(body), headers=out)


def build_response(body: bytes, headers: Iterable[tuple[str, str]]) -> web.Response:
    """A 200 response with ``body`` and ``headers``, defaulting the content type."""
    return _make_response(200, body, headers, default_type=True)


async def forward_request(
    session: aiohttp.ClientSession, uri: str, headers: Iterable[tuple[str, str]]
) -> tuple[int, Headers, bytes]:
    """GET ``uri`` from the downstream service; return status, headers and body."""
    config = get_config()
    if config is None:
        raise ConfigError("CONFIG not initialized")
    url = f"{config.downstream_base_url}{uri}"
    timeout = aiohttp.ClientTimeout(total=config.downstream_timeout_secs)
    try:
        async with session.get(
            url, headers=list(headers), timeout=timeout, allow_redirects=False
        ) as resp:
            body = await resp.read()
            return resp.status, [(k.lower(), v) for k, v in resp.headers.items()], body
    except asyncio.TimeoutError as exc:
        logger.warning("Timeout after %ss for '%s'", config.downstream_timeout_secs, url)
        raise DownstreamError(f"timeout after {config.downstream_timeout_secs}s for '{url}'") from exc
    except (aiohttp.ClientError, ValueError) as exc:
        logger.warning("Request to downstream '%s' failed: %s", url, exc)
        raise DownstreamError(f"request to '{url}' failed: {exc}") from exc


async def persist(key: str, data: bytes, headers: Iterable[tuple[str, str]]) -> bool:
    """Write a response to the configured persistent backend; return success."""
    config = get_config()
    label = config.storage_backend.name.capitalize() if config is not None else "unknown"
    METRICS.increment("cachebolt_persist_attempts_total", {"backend": label})
    if config is None:
        logger.error("CONFIG not initialized. Unable to persist cache.")
        METRICS.increment("cachebolt_persist_errors_total", {"backend": label})
        return False
    if config.storage_backend is not StorageBackend.LOCAL:
        logger.error("Storage backend '%s' is not available; key '%s' not persisted", label, key)
        return False
    try:
        await asyncio.to_thread(local_storage.store_in_cache, key, data, list(headers))
    except StorageError as exc:
        logger.error("Failed to persist key '%s': %s", key, exc)
        return False
    return True


async def _load_persistent(key: str) -> tuple[bytes, Headers] | None:
    config = get_config()
    if config is None:
        return None
    if config.storage_backend is not StorageBackend.LOCAL:
        logger.warning(
            "Storage backend '%s' is not available; no persistent fallback for '%s'",
            config.storage_backend.value,
            key,
        )
        return None
    return await asyncio.to_thread(local_storage.load_from_cache, key)


async def try_cache(key: str) -> web.Response:
    """Serve ``key`` from memory, then persistent storage, else a 502."""
    cached = get_from_memory(key)
    if cached is not None:
        logger.info("Fallback hit from MEMORY_CACHE for '%s'", key)
        METRICS.increment("cachebolt_memory_fallback_hits_total")
        return build_response(cached.body, cached.headers)

    fallback = await _load_persistent(key)
    if fallback is None:
        METRICS.increment("cachebolt_fallback_miss_total")
        return web.Response(status=502, text=NO_CACHE_MESSAGE)

    data, headers = fallback
    logger.info("Fallback from persistent cache for '%s'", key)
    METRICS.increment("cachebolt_persistent_fallback_hits_total")
    load_into_memory([(key, CachedResponse(body=data, headers=list(headers)))])
    return build_response(data, headers)


async def _forward(request: web.Request, uri: str) -> tuple[int, Headers, bytes]:
    headers = list(request.headers.items())
    session = request.app.get(CLIENT_SESSION_KEY)
    if session is not None:
        return await forward_request(session, uri, headers)
    async with aiohttp.ClientSession(auto_decompress=False) as temporary:
        return await forward_request(temporary, uri, headers)


def _schedule_persist(key: str, data: bytes, headers: Headers) -> None:
    task = asyncio.get_running_loop().create_task(persist(key, data, headers))
    _background.add(task)
    task.add_done_callback(_background.discard)


async def proxy_handler(request: web.Request) -> web.Response:
    """Serve a GET from the downstream service, falling back to the caches."""
    uri = request.raw_path
    labels = {"uri": uri}
    METRICS.increment("cachebolt_proxy_requests_total", labels)

    config = get_config()
    ignored = config.ignored_headers_set() if config is not None else set()
    key = cache_key(uri, request.headers.items(), ignored)

    if should_failover(uri):
        logger.info("Using fallback for '%s'", uri)
        METRICS.increment("cachebolt_failover_total", labels)
        return await try_cache(key)

    cached = get_from_memory(key)
    if cached is not None:
        METRICS.increment("cachebolt_memory_hits_total", labels)
        return build_response(cached.body, cached.headers)

    limiter = _limiter_for(request)
    if not limiter.try_acquire():
        METRICS.increment("cachebolt_rejected_due_to_concurrency_total", labels)
        cached = get_from_memory(key)
        if cached is not None:
            METRICS.increment("cachebolt_memory_hits_total", labels)
            return build_response(cached.body, cached.headers)
        return web.Response(status=502, text=TOO_MANY_REQUESTS_MESSAGE)

    try:
        start = time.monotonic()
        try:
            status, headers, body = await _forward(request, uri)
        except DownstreamError:
            logger.warning("Downstream service failed for '%s'", uri)
            METRICS.increment("cachebolt_downstream_failures_total", labels)
            return await try_cache(key)

        elapsed_ms = int((time.monotonic() - start) * 1000)
        threshold_ms = get_max_latency_for_path(uri)
        METRICS.observe("cachebolt_proxy_request_latency_ms", labels, elapsed_ms)
        if elapsed_ms > threshold_ms:
            logger.warning(
                "Latency %sms exceeded threshold %sms for '%s'", elapsed_ms, threshold_ms, uri
            )
            mark_latency_fail(uri)
            METRICS.observe("cachebolt_latency_exceeded_ms", labels, elapsed_ms)
            METRICS.increment("cachebolt_latency_exceeded_total", labels)

        if should_failover(uri):
            logger.info("Skipping cache store due to fallback mode for '%s'", uri)
        else:
            load_into_memory([(key, CachedResponse(body=body, headers=list(headers)))])
            _schedule_persist(key, body, headers)
            METRICS.increment("cachebolt_memory_store_total", labels)

        return _make_response(status, body, headers, default_type=False)
    finally:
        limiter.release()