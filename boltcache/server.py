"""HTTP server wiring: command line, logging, routes and startup."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
from collections.abc import AsyncIterator, Sequence

import aiohttp
from aiohttp import web

from boltcache.admin import invalidate_handler
from boltcache.config import Config, ConfigError, StorageBackend, get_config, set_config
from boltcache.eviction import start_background_eviction_task
from boltcache.metrics import METRICS
from boltcache.proxy import CLIENT_SESSION_KEY, LIMITER_KEY, ConcurrencyLimiter, proxy_handler

logger = logging.getLogger(__name__)

VERSION = "0.1.0"
HOST = "0.0.0.0"
PORT = 3000
DEFAULT_CONFIG_PATH = "config.yaml"
LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"

_LEVELS = {
    "trace": logging.DEBUG,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "off": logging.CRITICAL + 1,
}


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse the command line; ``--config`` defaults to ``config.yaml``."""
    parser = argparse.ArgumentParser(
        prog="boltcache",
        description="Intelligent reverse proxy with in-memory and multi-cloud caching",
    )
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG_PATH,
        help="Path to the YAML configuration file",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    return parser.parse_args(argv)


def init_logging(app_id: str) -> int:
    """Configure the root logger from ``LOG_LEVEL`` (default info); return the level."""
    raw = os.environ.get("LOG_LEVEL", "info")
    level = _LEVELS.get(raw.strip().lower(), logging.INFO)
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
    root.setLevel(level)
    logger.info("Logging initialized for app_id: %s", app_id)
    return level


def init_selected_backend(config: Config | None) -> StorageBackend:
    """Prepare the configured persistent backend and return which one it is."""
    if config is None:
        logger.error("No storage backend configured. Terminating execution.")
        raise ConfigError("No storage backend configured.")
    backend = config.storage_backend
    if backend is StorageBackend.LOCAL:
        logger.info("Local storage backend selected (no setup required).")
    else:
        logger.warning(
            "Storage backend '%s' has no client available; responses are cached in memory only.",
            backend.value,
        )
    return backend


async def metrics_handler(request: web.Request) -> web.Response:
    """Handle ``GET /metrics`` with the text exposition of all metrics."""
    return web.Response(text=METRICS.render())


async def _client_session(app: web.Application) -> AsyncIterator[None]:
    session = aiohttp.ClientSession(auto_decompress=False)
    app[CLIENT_SESSION_KEY] = session
    yield
    await session.close()


async def _background_eviction(app: web.Application) -> AsyncIterator[None]:
    task = start_background_eviction_task()
    yield
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task


def create_app(config: Config | None = None) -> web.Application:
    """Build the application: metrics, cache invalidation and the proxy route."""
    if config is None:
        config = get_config()
        if config is None:
            raise ConfigError("CONFIG not initialized")
    else:
        set_config(config)

    app = web.Application()
    app[LIMITER_KEY] = ConcurrencyLimiter(config.max_concurrent_requests)
    app.cleanup_ctx.append(_client_session)
    app.cleanup_ctx.append(_background_eviction)
    app.router.add_get("/metrics", metrics_handler)
    app.router.add_delete("/cache", invalidate_handler)
    app.router.add_get("/{path:.+}", proxy_handler)
    return app


def main(argv: Sequence[str] | None = None) -> int:
    """Load the configuration and serve on port 3000; return the exit status."""
    args = parse_args(argv)
    try:
        config = Config.from_file(args.config)
    except ConfigError as exc:
        logger.error("Failed to load config from '%s': %s", args.config, exc)
        return 1

    init_logging(config.app_id)
    set_config(config)
    try:
        init_selected_backend(config)
    except ConfigError:
        return 1

    app = create_app(config)
    logger.info("Server listening at http://%s:%s", HOST, PORT)
    web.run_app(app, host=HOST, port=PORT, print=None)
    return 0