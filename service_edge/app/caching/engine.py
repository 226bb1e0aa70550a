"""
Response cache engine with dynamic tag-based invalidation.

Read path: ``lookup`` -> hit short-circuits, miss -> origin -> ``store``.
Write path: origin -> ``invalidate`` flushes every tag the equivalent GET
would have carried.

The store is the only shared state. Any store failure degrades to
"proceed without caching"; the request itself never fails because of
the cache.
"""

import time
from typing import Any, Callable, Dict, Iterable, Optional, TYPE_CHECKING

from shared.config import CacheSettings
from shared.logging import get_logger
from ..domain.models import (
    RequestDescriptor,
    ResponseClassification,
    ResponseDescriptor,
    classify_response,
)
from ..domain.requests import path_under
from ..store.base import KeyValueStore
from .keys import CacheKeyDeriver
from .models import CacheEntry, header_subset
from .tag_index import TagIndex

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


class ResponseCacheEngine:
    """Lookup, store and invalidate cached API responses."""

    def __init__(
        self,
        settings: CacheSettings,
        backend: KeyValueStore,
        *,
        deriver: Optional[CacheKeyDeriver] = None,
        metrics: Optional["MetricsCollector"] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.backend = backend
        self.deriver = deriver or CacheKeyDeriver(settings)
        self.metrics = metrics
        self.clock = clock
        self.tag_index = TagIndex(backend, self.deriver.tag_index_key, clock=clock)
        self.logger = get_logger("edge.cache")
        self._mutation_methods = {method.upper() for method in settings.mutation_methods}

    # Eligibility

    def is_eligible(self, request: RequestDescriptor) -> bool:
        """All conditions under which a request may be served from / stored in cache."""
        if not self.settings.enabled:
            return False
        if request.method != "GET":
            return False
        if request.is_authenticated and not self.settings.cache_authenticated:
            return False

        cache_control = (request.header("cache-control") or "").lower()
        if "no-cache" in cache_control or "no-store" in cache_control:
            return False

        return True

    def is_mutation(self, request: RequestDescriptor) -> bool:
        return self.settings.enabled and request.method in self._mutation_methods

    def is_excluded(self, path: str) -> bool:
        return any(path_under(path, prefix) for prefix in self.settings.excluded_paths)

    def classify(self, response: ResponseDescriptor) -> ResponseClassification:
        return classify_response(
            response.status_code,
            response.header("content-type"),
            self.settings.cacheable_content_types,
        )

    def ttl_for(self, request: RequestDescriptor) -> int:
        if request.route_ttl is not None:
            return int(request.route_ttl)
        return int(self.settings.ttl)

    # Read path

    async def lookup(self, request: RequestDescriptor) -> Optional[CacheEntry]:
        """Return the cached entry for ``request``, or None on miss or store error."""
        key = self.deriver.cache_key(request)

        try:
            raw = await self.backend.get(key)
        except Exception as e:
            self.logger.warning("Cache lookup failed", key=key, error=str(e))
            self._count_error("lookup")
            return None

        entry = CacheEntry.from_dict(raw) if raw is not None else None
        if raw is not None and entry is None:
            self.logger.warning("Discarding corrupt cache entry", key=key)

        if entry is None:
            await self._record("misses")
            return None

        await self._record("hits")
        return entry

    async def store(self, request: RequestDescriptor, response: ResponseDescriptor,
                    classification: Optional[ResponseClassification] = None) -> Optional[CacheEntry]:
        """Write a cacheable 2xx response and index it under its tags."""
        classification = classification or self.classify(response)
        if not classification.cacheable:
            return None

        key = self.deriver.cache_key(request)
        tags = self.deriver.tags(request)
        ttl = self.ttl_for(request)
        if ttl <= 0:
            return None

        entry = CacheEntry(
            key=key,
            body=response.body,
            status_code=response.status_code,
            headers=header_subset(response.headers),
            tags=tags,
            created_at=self.clock(),
            ttl=ttl,
        )

        try:
            await self.backend.put(key, entry.to_dict(), ttl)
            await self.tag_index.add(tags, key, ttl)
        except Exception as e:
            self.logger.error("Cache store failed", key=key, error=str(e))
            self._count_error("store")
            return None

        self.logger.debug("API response cached", key=key, ttl=ttl, tags=tags)
        return entry

    # Write path

    async def invalidate(self, request: RequestDescriptor,
                         read_equivalent: Optional[RequestDescriptor] = None) -> int:
        """Flush everything the GET equivalent of ``request`` is tagged with.

        ``read_equivalent`` is the GET of the same URL as the router would
        resolve it, carrying that route's policy tags; without it the mutation
        is re-addressed as a GET keeping its own route identity.
        Falls back to the exact GET key when no tag referenced anything.
        Returns the number of cache entries removed.
        """
        if read_equivalent is None:
            read_equivalent = request.as_method("GET")
        tags = self.deriver.tags(read_equivalent)

        try:
            referenced, removed = await self._flush(tags)
            if not referenced:
                key = self.deriver.cache_key(read_equivalent)
                if await self.backend.forget(key):
                    removed += 1
        except Exception as e:
            self.logger.error("Cache invalidation failed", path=request.path, error=str(e))
            self._count_error("invalidate")
            return 0

        if removed:
            self.logger.info(
                "Cache invalidated",
                method=request.method,
                path=request.path,
                tags=len(tags),
                removed=removed,
            )
            self._count_invalidations(removed, "mutation")
        return removed

    async def invalidate_tags(self, tags: Iterable[str]) -> int:
        """Flush explicit tags (administrative purge)."""
        tags = [tag for tag in tags if tag]
        try:
            _, removed = await self._flush(tags)
        except Exception as e:
            self.logger.error("Tag invalidation failed", tags=tags, error=str(e))
            self._count_error("invalidate")
            return 0

        self.logger.info("Cache tags invalidated", tags=tags, removed=removed)
        self._count_invalidations(removed, "manual")
        return removed

    async def _flush(self, tags: Iterable[str]):
        referenced = 0
        removed = 0
        for tag in tags:
            result = await self.tag_index.flush(tag)
            referenced += len(result.referenced)
            removed += len(result.removed)
        return referenced, removed

    # Metrics

    async def _record(self, counter: str) -> None:
        if self.metrics:
            result = "hit" if counter == "hits" else "miss"
            self.metrics.increment_counter("edge_cache_requests_total", result=result)
        if not self.settings.track_metrics:
            return
        try:
            await self.backend.increment(self.deriver.metrics_key(counter))
        except Exception as e:
            self.logger.debug("Failed to record cache metric", counter=counter, error=str(e))

    def _count_error(self, operation: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("edge_cache_errors_total", operation=operation)

    def _count_invalidations(self, removed: int, reason: str) -> None:
        if self.metrics and removed:
            self.metrics.increment_counter("edge_cache_invalidations_total", removed, reason=reason)

    async def stats(self) -> Dict[str, Any]:
        """Hit/miss counters persisted in the store."""
        try:
            hits = int(await self.backend.get(self.deriver.metrics_key("hits")) or 0)
            misses = int(await self.backend.get(self.deriver.metrics_key("misses")) or 0)
        except Exception as e:
            self.logger.error("Cache stats error", error=str(e))
            return {"error": str(e), "driver": self.backend.name}

        total = hits + misses
        return {
            "driver": self.backend.name,
            "enabled": self.settings.enabled,
            "hits": hits,
            "misses": misses,
            "total_requests": total,
            "hit_rate_percent": round(hits / total * 100, 1) if total else 0.0,
        }
