"""
Key-value store contract used by the response cache and circuit breaker.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional


class KeyValueStore(ABC):
    """Minimal shared store: get/put/forget/increment with per-entry TTL.

    Values are JSON-compatible Python objects. Implementations only need
    per-key atomicity; no multi-key transactions or native tags.
    Driver failures surface as ``StoreUnavailableError``.
    """

    name = "abstract"

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Return the stored value, or None when absent or expired."""

    @abstractmethod
    async def put(self, key: str, value: Any, ttl_seconds: int) -> None:
        """Store ``value`` under ``key`` for ``ttl_seconds``."""

    @abstractmethod
    async def forget(self, key: str) -> bool:
        """Delete ``key``. Returns True when something was removed."""

    @abstractmethod
    async def increment(self, key: str, amount: int = 1, ttl_seconds: Optional[int] = None) -> int:
        """Atomically add ``amount`` to an integer counter and return the new value.

        ``ttl_seconds`` is applied only when the counter is created.
        """

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None
