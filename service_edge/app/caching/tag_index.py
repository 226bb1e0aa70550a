"""
Store-backed tag index.

Each tag owns one store entry mapping cache key -> expiry timestamp. The
store has no native tag groups, so the index is maintained alongside the
cache entries and pruned lazily whenever it is read or rewritten.
"""

import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List

from shared.logging import get_logger
from ..store.base import KeyValueStore


@dataclass
class FlushResult:
    referenced: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)


class TagIndex:
    """Read, extend and flush per-tag key indexes."""

    def __init__(self, store: KeyValueStore, key_for_tag: Callable[[str], str],
                 clock: Callable[[], float] = time.time):
        self.store = store
        self.key_for_tag = key_for_tag
        self.clock = clock
        self.logger = get_logger("edge.cache.tag_index")

    def _prune(self, raw) -> Dict[str, float]:
        """Drop malformed and expired key/expiry pairs."""
        if not isinstance(raw, dict):
            return {}
        now = self.clock()
        live = {}
        for key, expires_at in raw.items():
            try:
                expires_at = float(expires_at)
            except (TypeError, ValueError):
                continue
            if expires_at > now:
                live[str(key)] = expires_at
        return live

    async def read(self, tag: str) -> Dict[str, float]:
        """Live cache keys referenced by ``tag``."""
        return self._prune(await self.store.get(self.key_for_tag(tag)))

    async def add(self, tags: Iterable[str], cache_key: str, ttl: int) -> None:
        """Reference ``cache_key`` from every tag until it expires."""
        expires_at = self.clock() + ttl
        for tag in tags:
            index = await self.read(tag)
            index[cache_key] = expires_at
            # Keep the index alive as long as its longest-lived key
            index_ttl = max(1, int(max(index.values()) - self.clock()) + 1)
            await self.store.put(self.key_for_tag(tag), index, index_ttl)

    async def flush(self, tag: str) -> FlushResult:
        """Delete every entry referenced by ``tag``, then the index itself.

        Keys that already expired or vanished are a no-op.
        """
        index = await self.read(tag)
        removed = []
        for cache_key in index:
            if await self.store.forget(cache_key):
                removed.append(cache_key)
        await self.store.forget(self.key_for_tag(tag))

        if index:
            self.logger.debug(
                "Flushed tag index",
                tag=tag,
                referenced=len(index),
                removed=len(removed),
            )
        return FlushResult(referenced=list(index), removed=removed)
