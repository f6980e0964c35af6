"""Persistent cache of responses as gzip-compressed JSON files on local disk."""

from __future__ import annotations

import base64
import gzip
import json
import logging
import zlib
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

from boltcache.config import get_config

logger = logging.getLogger(__name__)

STORAGE_ROOT = Path("storage") / "cache"


class StorageError(Exception):
    """Raised when the local cache cannot be written, read or cleared."""


@dataclass
class CachedBlob:
    """A cached response: base64-encoded body plus its headers."""

    body: str
    headers: list[tuple[str, str]] = field(default_factory=list)

    @classmethod
    def from_body(cls, data: bytes, headers: Iterable[tuple[str, str]]) -> CachedBlob:
        """Build a blob from raw body bytes."""
        return cls(
            body=base64.b64encode(bytes(data)).decode("ascii"),
            headers=[(str(name), str(value)) for name, value in headers],
        )

    def decode_body(self) -> bytes:
        """Return the raw body bytes."""
        try:
            return base64.b64decode(self.body, validate=True)
        except ValueError as exc:
            raise StorageError(f"invalid base64 body: {exc}") from exc

    def to_json(self) -> bytes:
        """Serialize as compact JSON, headers as two-element arrays."""
        document = {"body": self.body, "headers": [list(pair) for pair in self.headers]}
        return json.dumps(document, separators=(",", ":"), ensure_ascii=False).encode("utf-8")

    @classmethod
    def from_json(cls, raw: bytes | str) -> CachedBlob:
        """Parse a blob from JSON, raising StorageError when it is malformed."""
        try:
            document = json.loads(raw)
        except ValueError as exc:
            raise StorageError(f"invalid JSON: {exc}") from exc
        if not isinstance(document, dict):
            raise StorageError("cached blob must be a JSON object")
        body = document.get("body")
        headers = document.get("headers")
        if not isinstance(body, str):
            raise StorageError("cached blob field `body` must be a string")
        if not isinstance(headers, list):
            raise StorageError("cached blob field `headers` must be a list")
        pairs = []
        for pair in headers:
            if (
                not isinstance(pair, list)
                or len(pair) != 2
                or not all(isinstance(part, str) for part in pair)
            ):
                raise StorageError("each header must be a pair of strings")
            pairs.append((pair[0], pair[1]))
        return cls(body=body, headers=pairs)


def build_local_cache_path(key: str) -> Path | None:
    """Path ``storage/cache/{app_id}/{key}.gz``, or None without a configuration."""
    config = get_config()
    if config is None:
        return None
    return STORAGE_ROOT / config.app_id / f"{key}.gz"


def store_in_cache(key: str, data: bytes, headers: Iterable[tuple[str, str]]) -> Path:
    """Write a response to disk and return the file it was written to."""
    path = build_local_cache_path(key)
    if path is None:
        raise StorageError("CONFIG is not initialized; cannot build cache path")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except (OSError, ValueError) as exc:
        raise StorageError(f"Failed to create local storage directory {path.parent}: {exc}") from exc

    compressed = gzip.compress(CachedBlob.from_body(data, headers).to_json())
    try:
        path.write_bytes(compressed)
    except (OSError, ValueError) as exc:
        raise StorageError(f"Failed to write cache file for key '{key}': {exc}") from exc
    logger.info("Stored key '%s' in local cache at %s", key, path)
    return path


def load_from_cache(key: str) -> tuple[bytes, list[tuple[str, str]]] | None:
    """Read a cached response; None if it is missing or cannot be decoded."""
    path = build_local_cache_path(key)
    if path is None:
        return None
    try:
        compressed = path.read_bytes()
    except (OSError, ValueError) as exc:
        logger.warning("Failed to read cached file %s: %s", path, exc)
        return None
    try:
        decompressed = gzip.decompress(compressed)
    except (OSError, EOFError, zlib.error) as exc:
        logger.error("Failed to decompress local cache file %s: %s", path, exc)
        return None
    try:
        blob = CachedBlob.from_json(decompressed)
        return blob.decode_body(), blob.headers
    except StorageError as exc:
        logger.error("Failed to decode cached entry for key '%s': %s", key, exc)
        return None


def delete_all_from_cache() -> int:
    """Delete every ``.gz`` file of the current app and return how many went."""
    config = get_config()
    if config is None:
        raise StorageError("CONFIG is not initialized; cannot delete local cache")
    dir_path = STORAGE_ROOT / config.app_id
    try:
        entries = list(dir_path.iterdir())
    except OSError as exc:
        raise StorageError(f"Failed to read local cache directory: {exc}") from exc

    deleted = 0
    for entry in entries:
        if entry.suffix != ".gz":
            continue
        try:
            entry.unlink()
        except OSError as exc:
            logger.warning("Failed to delete file %s: %s", entry, exc)
            continue
        deleted += 1
        logger.info("Deleted local cache file %s", entry)
    logger.info("Deleted %s local cache files under %s", deleted, dir_path)
    return deleted