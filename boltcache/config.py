"""Application configuration loaded from a YAML file."""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when a configuration cannot be read, parsed or validated."""


class StorageBackend(Enum):
    """Persistent storage backends for cached responses."""

    GCS = "gcs"
    S3 = "s3"
    AZURE = "azure"
    LOCAL = "local"


@dataclass
class MemoryEviction:
    """Eviction policy: evict once system memory use reaches this percentage."""

    threshold_percent: int


@dataclass
class MaxLatencyRule:
    """Latency limit in milliseconds for request paths matching a regex."""

    pattern: str
    max_latency_ms: int


@dataclass
class LatencyFailover:
    """Latency limits that decide when a path is served from the cache."""

    default_max_latency_ms: int
    path_rules: list[MaxLatencyRule] = field(default_factory=list)


def _field(data: Mapping[str, Any], key: str, where: str) -> Any:
    if key not in data:
        raise ConfigError(f"missing field `{key}`{where}")
    return data[key]


def _string(data: Mapping[str, Any], key: str, where: str = "") -> str:
    value = _field(data, key, where)
    if not isinstance(value, str):
        raise ConfigError(f"field `{key}`{where} must be a string")
    return value


def _unsigned(data: Mapping[str, Any], key: str, where: str = "") -> int:
    value = _field(data, key, where)
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ConfigError(f"field `{key}`{where} must be a non-negative integer")
    return value


def _mapping(data: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = _field(data, key, "")
    if not isinstance(value, Mapping):
        raise ConfigError(f"field `{key}` must be a mapping")
    return value


def _parse_rules(section: Mapping[str, Any]) -> list[MaxLatencyRule]:
    raw_rules = _field(section, "path_rules", " in latency_failover")
    if not isinstance(raw_rules, list):
        raise ConfigError("field `path_rules` in latency_failover must be a list")
    rules = []
    for raw in raw_rules:
        if not isinstance(raw, Mapping):
            raise ConfigError("each entry of `path_rules` must be a mapping")
        rules.append(
            MaxLatencyRule(
                pattern=_string(raw, "pattern", " in path_rules"),
                max_latency_ms=_unsigned(raw, "max_latency_ms", " in path_rules"),
            )
        )
    return rules


def _parse_ignored_headers(data: Mapping[str, Any]) -> list[str] | None:
    value = data.get("ignored_headers")
    if value is None:
        return None
    if not isinstance(value, list) or not all(isinstance(h, str) for h in value):
        raise ConfigError("field `ignored_headers` must be a list of strings")
    return list(value)


@dataclass
class Config:
    """All tunable behaviour of the proxy."""

    app_id: str
    gcs_bucket: str
    s3_bucket: str
    azure_container: str
    max_concurrent_requests: int
    downstream_base_url: str
    downstream_timeout_secs: int
    memory_eviction: MemoryEviction
    latency_failover: LatencyFailover
    storage_backend: StorageBackend
    ignored_headers: list[str] | None = None

    @classmethod
    def from_file(cls, path: str | Path) -> Config:
        """Read, parse and validate a YAML configuration file."""
        try:
            contents = Path(path).read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigError(f"cannot read config file '{path}': {exc}") from exc
        try:
            data = yaml.safe_load(contents)
        except yaml.YAMLError as exc:
            raise ConfigError(f"malformed YAML in '{path}': {exc}") from exc
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Any) -> Config:
        """Build and validate a configuration from parsed YAML data."""
        if not isinstance(data, Mapping):
            raise ConfigError("configuration must be a mapping")

        eviction = _mapping(data, "memory_eviction")
        failover = _mapping(data, "latency_failover")
        backend_name = _string(data, "storage_backend")
        try:
            backend = StorageBackend(backend_name)
        except ValueError as exc:
            raise ConfigError(f"unknown storage_backend '{backend_name}'") from exc

        config = cls(
            app_id=_string(data, "app_id"),
            gcs_bucket=_string(data, "gcs_bucket"),
            s3_bucket=_string(data, "s3_bucket"),
            azure_container=_string(data, "azure_container"),
            max_concurrent_requests=_unsigned(data, "max_concurrent_requests"),
            downstream_base_url=_string(data, "downstream_base_url"),
            downstream_timeout_secs=_unsigned(data, "downstream_timeout_secs"),
            memory_eviction=MemoryEviction(
                threshold_percent=_unsigned(eviction, "threshold_percent", " in memory_eviction")
            ),
            latency_failover=LatencyFailover(
                default_max_latency_ms=_unsigned(
                    failover, "default_max_latency_ms", " in latency_failover"
                ),
                path_rules=_parse_rules(failover),
            ),
            storage_backend=backend,
            ignored_headers=_parse_ignored_headers(data),
        )

        if config.storage_backend is StorageBackend.GCS and not config.gcs_bucket.strip():
            raise ConfigError("GCS backend selected but gcs_bucket is empty.")

        rules = config.latency_failover.path_rules
        if not rules:
            logger.info(
                "No per-path latency rules defined. Using default max latency: %sms",
                config.latency_failover.default_max_latency_ms,
            )
        for rule in rules:
            logger.info(
                "Latency rule: pattern = '%s', max_latency = %sms",
                rule.pattern,
                rule.max_latency_ms,
            )
        return config

    def ignored_headers_set(self) -> set[str]:
        """Lower-cased names of headers left out of cache keys."""
        return {header.lower() for header in self.ignored_headers or ()}


_lock = threading.Lock()
_current: Config | None = None


def set_config(config: Config) -> None:
    """Install the configuration shared across the application."""
    global _current
    with _lock:
        _current = config


def get_config() -> Config | None:
    """Return the shared configuration, or None if none is installed."""
    with _lock:
        return _current


def clear_config() -> None:
    """Remove the shared configuration."""
    global _current
    with _lock:
        _current = None