"""
Unit tests for the response cache engine.
"""

import json

import pytest
from unittest.mock import AsyncMock, MagicMock

from service_edge.app.caching.engine import ResponseCacheEngine
from service_edge.app.domain.models import RequestDescriptor, ResponseDescriptor
from shared.config import CacheSettings
from shared.errors import StoreUnavailableError
from shared.metrics import MetricsCollector


def make_request(method="GET", path="/api/v1/customers/42/invoices", query_string="", **kwargs):
    return RequestDescriptor(method=method, path=path, query_string=query_string, **kwargs)


def json_response(payload, status_code=200, content_type="application/json"):
    return ResponseDescriptor(
        status_code=status_code,
        headers={"content-type": content_type, "x-internal": "secret"},
        body=json.dumps(payload).encode("utf-8"),
    )


class TestResponseCacheEngine:
    """Test cases for ResponseCacheEngine."""

    @pytest.fixture
    def settings(self):
        """Enabled cache settings."""
        return CacheSettings(enabled=True, driver="memory")

    @pytest.fixture
    def engine(self, settings, memory_store, clock):
        """Create engine over the in-memory store."""
        return ResponseCacheEngine(settings, memory_store, clock=clock)

    @pytest.mark.asyncio
    async def test_lookup_miss_then_hit_returns_stored_response(self, engine):
        """Test a hit returns exactly what the miss stored."""
        request = make_request()
        response = json_response({"invoices": [1, 2, 3]})

        assert await engine.lookup(request) is None

        stored = await engine.store(request, response)
        hit = await engine.lookup(request)

        assert stored is not None
        assert hit.body == response.body
        assert hit.status_code == 200
        assert hit.headers == {"content-type": "application/json"}

    @pytest.mark.asyncio
    async def test_store_records_tags(self, engine):
        """Test stored entries carry their derived tags."""
        entry = await engine.store(make_request(), json_response({}))

        assert "customers" in entry.tags
        assert "customers:42" in entry.tags
        assert "customers:42:invoices" in entry.tags
        assert "customers:{id}:invoices" in entry.tags
        assert entry.key in await engine.tag_index.read("customers:{id}:invoices")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code,content_type", [
        (500, "application/json"),
        (404, "application/json"),
        (301, "application/json"),
        (200, "text/event-stream"),
        (200, "image/png"),
    ])
    async def test_non_cacheable_responses_are_not_stored(self, engine, memory_store, status_code, content_type):
        """Test errors, redirects, streams and binary bodies are skipped."""
        result = await engine.store(make_request(), json_response({}, status_code, content_type))

        assert result is None
        assert memory_store.keys() == []

    @pytest.mark.asyncio
    async def test_default_ttl(self, engine, clock):
        """Test entries expire after the global TTL."""
        request = make_request()
        await engine.store(request, json_response({}))

        clock.advance(299)
        assert await engine.lookup(request) is not None

        clock.advance(2)
        assert await engine.lookup(request) is None

    @pytest.mark.asyncio
    async def test_route_ttl_takes_precedence(self, engine, clock):
        """Test route-specific TTL overrides the default."""
        request = make_request(route_ttl=10)
        entry = await engine.store(request, json_response({}))

        assert entry.ttl == 10
        clock.advance(11)
        assert await engine.lookup(request) is None

    @pytest.mark.asyncio
    async def test_invalidate_removes_entries_sharing_tags(self, engine):
        """Test a mutation purges every entry its tags reference."""
        invoices = make_request()
        customer = make_request(path="/api/v1/customers/42")
        orders = make_request(path="/api/v1/orders/7")
        for request in (invoices, customer, orders):
            await engine.store(request, json_response({"path": request.path}))

        removed = await engine.invalidate(make_request("POST"))

        assert removed == 2
        assert await engine.lookup(invoices) is None
        assert await engine.lookup(customer) is None
        assert await engine.lookup(orders) is not None

    @pytest.mark.asyncio
    async def test_invalidate_collection_purges_all_pages(self, engine):
        """Test one collection-level mutation purges every page."""
        page_1 = make_request(path="/api/users", query_string="page=1")
        page_2 = make_request(path="/api/users", query_string="page=2")
        await engine.store(page_1, json_response({"page": 1}))
        await engine.store(page_2, json_response({"page": 2}))

        assert await engine.invalidate(make_request("POST", path="/api/users")) == 2
        assert await engine.lookup(page_1) is None
        assert await engine.lookup(page_2) is None

    @pytest.mark.asyncio
    async def test_invalidate_falls_back_to_exact_key(self, engine, memory_store):
        """Test the exact GET key is dropped when no tag referenced anything."""
        request = make_request()
        key = engine.deriver.cache_key(request)
        await memory_store.put(key, {"untagged": True}, 60)

        removed = await engine.invalidate(make_request("DELETE"))

        assert removed == 1
        assert await memory_store.get(key) is None

    @pytest.mark.asyncio
    async def test_invalidate_tags(self, engine):
        """Test manual tag invalidation."""
        request = make_request()
        await engine.store(request, json_response({}))

        assert await engine.invalidate_tags(["customers:42", ""]) == 1
        assert await engine.lookup(request) is None
        assert await engine.invalidate_tags(["customers:42"]) == 0

    @pytest.mark.asyncio
    async def test_corrupt_entry_is_a_miss(self, engine, memory_store):
        """Test unreadable entries are treated as misses."""
        request = make_request()
        await memory_store.put(engine.deriver.cache_key(request), {"body": "%%%"}, 60)

        assert await engine.lookup(request) is None

    @pytest.mark.asyncio
    async def test_stats_count_hits_and_misses(self, engine):
        """Test store-backed hit/miss counters."""
        request = make_request()
        await engine.lookup(request)
        await engine.store(request, json_response({}))
        await engine.lookup(request)
        await engine.lookup(request)

        stats = await engine.stats()

        assert stats["hits"] == 2
        assert stats["misses"] == 1
        assert stats["total_requests"] == 3
        assert stats["hit_rate_percent"] == 66.7

    @pytest.mark.asyncio
    async def test_tracking_disabled(self, memory_store, clock):
        """Test counters stay untouched without metric tracking."""
        engine = ResponseCacheEngine(
            CacheSettings(enabled=True, track_metrics=False), memory_store, clock=clock
        )
        await engine.lookup(make_request())

        assert (await engine.stats())["misses"] == 0


class TestEligibility:
    """Test cases for the caching eligibility gate."""

    @pytest.fixture
    def engine(self, memory_store):
        return ResponseCacheEngine(CacheSettings(enabled=True), memory_store)

    def test_plain_get_is_eligible(self, engine):
        assert engine.is_eligible(make_request()) is True

    def test_disabled_cache(self, memory_store):
        engine = ResponseCacheEngine(CacheSettings(enabled=False), memory_store)
        assert engine.is_eligible(make_request()) is False
        assert engine.is_mutation(make_request("POST")) is False

    @pytest.mark.parametrize("method", ["POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"])
    def test_only_get_is_eligible(self, engine, method):
        assert engine.is_eligible(make_request(method)) is False

    def test_authenticated_callers_bypass_by_default(self, engine, memory_store):
        request = make_request(user_id="user-1")
        assert engine.is_eligible(request) is False

        allowing = ResponseCacheEngine(CacheSettings(enabled=True, cache_authenticated=True), memory_store)
        assert allowing.is_eligible(request) is True

    @pytest.mark.parametrize("directive", ["no-cache", "no-store", "max-age=0, No-Cache"])
    def test_cache_control_directives(self, engine, directive):
        request = make_request(headers={"cache-control": directive})
        assert engine.is_eligible(request) is False

    def test_mutation_methods(self, engine):
        assert engine.is_mutation(make_request("PATCH")) is True
        assert engine.is_mutation(make_request("GET")) is False

    def test_excluded_paths(self, engine):
        assert engine.is_excluded("/health") is True
        assert engine.is_excluded("/api/v1/cache/stats") is True
        assert engine.is_excluded("/api/v1/customers") is False
        assert engine.is_excluded("/health/live") is True
        assert engine.is_excluded("/healthcare/patients") is False
        assert engine.is_excluded("/api/v1/cached-reports") is False


class TestStoreFailures:
    """Test cases for store outages: the cache degrades, never fails."""

    @pytest.fixture
    def failing_store(self):
        store = MagicMock()
        store.name = "redis"
        error = StoreUnavailableError("get", "connection refused")
        store.get = AsyncMock(side_effect=error)
        store.put = AsyncMock(side_effect=error)
        store.forget = AsyncMock(side_effect=error)
        store.increment = AsyncMock(side_effect=error)
        return store

    @pytest.fixture
    def metrics(self):
        return MetricsCollector("edge-test")

    @pytest.fixture
    def engine(self, failing_store, metrics):
        return ResponseCacheEngine(CacheSettings(enabled=True), failing_store, metrics=metrics)

    def errors(self, metrics, operation):
        return metrics.registry.get_sample_value("edge_cache_errors_total", {"operation": operation})

    @pytest.mark.asyncio
    async def test_lookup_error_is_a_miss(self, engine, metrics):
        assert await engine.lookup(make_request()) is None
        assert self.errors(metrics, "lookup") == 1

    @pytest.mark.asyncio
    async def test_store_error_is_swallowed(self, engine, metrics):
        assert await engine.store(make_request(), json_response({})) is None
        assert self.errors(metrics, "store") == 1

    @pytest.mark.asyncio
    async def test_invalidate_error_is_swallowed(self, engine, metrics):
        assert await engine.invalidate(make_request("POST")) == 0
        assert self.errors(metrics, "invalidate") == 1

    @pytest.mark.asyncio
    async def test_stats_error(self, engine):
        stats = await engine.stats()
        assert "error" in stats
        assert stats["driver"] == "redis"
