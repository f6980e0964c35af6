"""Caching reverse proxy with an in-memory LRU cache, local disk persistence and latency failover."""

__version__ = "0.1.0"
__all__ = ["__version__"]