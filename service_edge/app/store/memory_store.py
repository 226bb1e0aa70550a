"""
In-process store driver.

Used for single-instance deployments and tests. Expiry is evaluated
lazily against an injectable clock.
"""

import copy
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple

from shared.logging import get_logger
from .base import KeyValueStore


class MemoryStore(KeyValueStore):
    """Dictionary-backed store with TTL."""

    name = "memory"

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._data: Dict[str, Tuple[Any, Optional[float]]] = {}
        self._lock = threading.Lock()
        self.logger = get_logger("edge.store.memory")

    def _alive(self, key: str) -> Optional[Tuple[Any, Optional[float]]]:
        item = self._data.get(key)
        if item is None:
            return None
        _, expires_at = item
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return item

    async def get(self, key: str) -> Optional[Any]:
        with self._lock:
            item = self._alive(key)
            if item is None:
                return None
            # Callers must not be able to mutate stored state in place
            return copy.deepcopy(item[0])

    async def put(self, key: str, value: Any, ttl_seconds: int) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds and ttl_seconds > 0 else None
        with self._lock:
            self._data[key] = (copy.deepcopy(value), expires_at)

    async def forget(self, key: str) -> bool:
        with self._lock:
            item = self._alive(key)
            if item is None:
                return False
            del self._data[key]
            return True

    async def increment(self, key: str, amount: int = 1, ttl_seconds: Optional[int] = None) -> int:
        with self._lock:
            item = self._alive(key)
            if item is None:
                expires_at = self._clock() + ttl_seconds if ttl_seconds else None
                value = amount
            else:
                current, expires_at = item
                value = int(current) + amount
            self._data[key] = (value, expires_at)
            return value

    def keys(self):
        """Live keys, for diagnostics and tests."""
        with self._lock:
            return [key for key in list(self._data) if self._alive(key) is not None]

    async def close(self) -> None:
        with self._lock:
            self._data.clear()
