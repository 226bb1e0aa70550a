"""
Key-value store drivers.

The cache and the circuit breaker keep all of their state in a shared
store so that any number of edge instances can run side by side.
"""

from shared.errors import ConfigurationError

from .base import KeyValueStore
from .memory_store import MemoryStore
from .redis_store import RedisStore


def create_store(driver: str, redis_url: str) -> KeyValueStore:
    """Build the store selected by ``driver`` ("redis" or "memory")."""
    driver = (driver or "").lower()
    if driver == "redis":
        return RedisStore(redis_url)
    if driver in ("memory", "array"):
        return MemoryStore()
    raise ConfigurationError(f"Unknown store driver '{driver}'", {"driver": driver})


__all__ = ["KeyValueStore", "MemoryStore", "RedisStore", "create_store"]
