"""
Unit tests for the cache and circuit breaker middleware.
"""

import asyncio

import pytest
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from fastapi.testclient import TestClient

from service_edge.app.caching import ResponseCacheEngine, ResponseCacheMiddleware, cache_policy
from service_edge.app.domain.models import classify_response
from service_edge.app.resilience import CircuitBreaker, CircuitBreakerMiddleware, CircuitState
from shared.config import CacheSettings, CircuitBreakerSettings

FLAKY_SCOPE = "GET:/api/v1/flaky"


class EdgeHarness:
    """Small FastAPI app wrapped in both edge middlewares."""

    def __init__(self, store, clock, cache=None, breaker=None):
        self.calls = {}
        self.flaky_status = 200

        cache_settings = cache or CacheSettings(enabled=True, driver="memory")
        breaker_settings = breaker or CircuitBreakerSettings(enabled=True, failure_threshold=3, timeout=60)
        self.engine = ResponseCacheEngine(cache_settings, store, clock=clock)
        self.breaker = CircuitBreaker(breaker_settings, store, clock=clock)

        app = FastAPI()
        app.add_middleware(
            CircuitBreakerMiddleware,
            breaker=self.breaker,
            cacheable_content_types=cache_settings.cacheable_content_types,
        )
        app.add_middleware(ResponseCacheMiddleware, engine=self.engine)

        @app.middleware("http")
        async def fake_auth(request: Request, call_next):
            user = request.headers.get("x-user")
            if user:
                request.state.user_info = {"user_id": user}
            return await call_next(request)

        @app.get("/api/v1/customers/{customer_id}/invoices")
        async def list_invoices(customer_id: str):
            return {"customer": customer_id, "call": self.hit("invoices")}

        @app.post("/api/v1/customers/{customer_id}/invoices")
        async def create_invoice(customer_id: str):
            self.hit("create")
            return JSONResponse(status_code=201, content={"created": True})

        @app.get("/api/v1/report.png")
        async def report_image():
            self.hit("image")
            return Response(content=b"\x89PNG", media_type="image/png")

        @app.get("/api/v1/reports")
        @cache_policy(ttl=5, tags=["reports"])
        async def list_reports():
            return {"call": self.hit("reports")}

        @app.get("/api/v1/widgets")
        @cache_policy(tags=["board"])
        async def list_widgets():
            return {"call": self.hit("widgets")}

        @app.post("/api/v1/widgets")
        async def create_widget():
            self.hit("create_widget")
            return JSONResponse(status_code=201, content={"created": True})

        @app.get("/api/v1/dashboard")
        @cache_policy(tags=["board"])
        async def dashboard():
            return {"call": self.hit("dashboard")}

        @app.get("/healthcare/patients")
        async def list_patients():
            return {"call": self.hit("patients")}

        @app.get("/api/v1/flaky")
        async def flaky():
            self.hit("flaky")
            return JSONResponse(status_code=self.flaky_status, content={"status": self.flaky_status})

        @app.get("/api/v1/explode")
        async def explode():
            self.hit("explode")
            raise RuntimeError("origin exploded")

        @app.get("/health")
        async def health():
            return {"status": "ok"}

        self.app = app
        self.client = TestClient(app, raise_server_exceptions=False)

    def hit(self, name):
        self.calls[name] = self.calls.get(name, 0) + 1
        return self.calls[name]

    def open_circuit(self, scope):
        async def fail():
            for _ in range(self.breaker.settings.failure_threshold):
                await self.breaker.after_call(scope, classify_response(500, None, ()), 1)

        asyncio.run(fail())

    def circuit_state(self, scope):
        return asyncio.run(self.breaker.load(scope)).state


@pytest.fixture
def harness(memory_store, clock):
    return EdgeHarness(memory_store, clock)


class TestResponseCacheMiddleware:
    """Test cases for ResponseCacheMiddleware."""

    def test_miss_then_hit(self, harness):
        first = harness.client.get("/api/v1/customers/42/invoices")
        second = harness.client.get("/api/v1/customers/42/invoices")

        assert first.headers["X-Cache-Status"] == "MISS"
        assert second.headers["X-Cache-Status"] == "HIT"
        assert second.json() == first.json() == {"customer": "42", "call": 1}
        assert second.status_code == 200
        assert second.headers["Age"] == "0"
        assert "X-Cache-Time" in second.headers
        assert harness.calls["invoices"] == 1

    def test_age_grows_with_time(self, harness, clock):
        harness.client.get("/api/v1/customers/42/invoices")
        clock.advance(12)

        response = harness.client.get("/api/v1/customers/42/invoices")

        assert response.headers["Age"] == "12"

    def test_query_strings_are_cached_separately(self, harness):
        harness.client.get("/api/v1/customers/42/invoices?page=1")
        response = harness.client.get("/api/v1/customers/42/invoices?page=2")

        assert response.headers["X-Cache-Status"] == "MISS"
        assert harness.calls["invoices"] == 2

    def test_mutation_invalidates(self, harness):
        harness.client.get("/api/v1/customers/42/invoices")

        created = harness.client.post("/api/v1/customers/42/invoices")
        after = harness.client.get("/api/v1/customers/42/invoices")

        assert created.status_code == 201
        assert "X-Cache-Status" not in created.headers
        assert after.headers["X-Cache-Status"] == "MISS"
        assert after.json()["call"] == 2

    def test_mutation_to_other_customer_purges_collection(self, harness):
        harness.client.get("/api/v1/customers/42/invoices")
        harness.client.post("/api/v1/customers/7/invoices")

        response = harness.client.get("/api/v1/customers/42/invoices")

        assert response.headers["X-Cache-Status"] == "MISS"

    def test_binary_responses_are_not_cached(self, harness):
        harness.client.get("/api/v1/report.png")
        response = harness.client.get("/api/v1/report.png")

        assert response.headers["X-Cache-Status"] == "MISS"
        assert response.content == b"\x89PNG"
        assert harness.calls["image"] == 2

    def test_error_responses_are_not_cached(self, harness):
        harness.flaky_status = 500
        harness.client.get("/api/v1/flaky")
        harness.client.get("/api/v1/flaky")

        assert harness.calls["flaky"] == 2

    def test_authenticated_requests_bypass(self, harness):
        harness.client.get("/api/v1/customers/42/invoices", headers={"X-User": "user-1"})
        response = harness.client.get("/api/v1/customers/42/invoices", headers={"X-User": "user-1"})

        assert response.headers["X-Cache-Status"] == "BYPASS"
        assert harness.calls["invoices"] == 2

    def test_no_cache_directive_bypasses(self, harness):
        harness.client.get("/api/v1/customers/42/invoices")
        response = harness.client.get(
            "/api/v1/customers/42/invoices", headers={"Cache-Control": "no-cache"}
        )

        assert response.headers["X-Cache-Status"] == "BYPASS"
        assert response.json()["call"] == 2

    def test_route_policy_ttl(self, harness, clock):
        harness.client.get("/api/v1/reports")
        assert harness.client.get("/api/v1/reports").headers["X-Cache-Status"] == "HIT"

        clock.advance(6)

        assert harness.client.get("/api/v1/reports").headers["X-Cache-Status"] == "MISS"

    def test_route_policy_tags(self, harness):
        harness.client.get("/api/v1/reports")

        removed = asyncio.run(harness.engine.invalidate_tags(["reports"]))

        assert removed == 1

    def test_excluded_paths_bypass_both_layers(self, harness):
        response = harness.client.get("/health")

        assert response.status_code == 200
        assert "X-Cache-Status" not in response.headers
        assert "X-Circuit-Breaker-State" not in response.headers

    def test_excluded_prefixes_match_whole_segments(self, harness):
        harness.client.get("/healthcare/patients")
        response = harness.client.get("/healthcare/patients")

        assert response.headers["X-Cache-Status"] == "HIT"
        assert response.headers["X-Circuit-Breaker-Id"] == "GET:/healthcare/patients"
        assert harness.calls["patients"] == 1

    def test_mutation_flushes_tags_of_the_get_route(self, harness):
        harness.client.get("/api/v1/widgets")
        harness.client.get("/api/v1/dashboard")
        assert harness.client.get("/api/v1/dashboard").headers["X-Cache-Status"] == "HIT"

        assert harness.client.post("/api/v1/widgets").status_code == 201

        assert harness.client.get("/api/v1/dashboard").headers["X-Cache-Status"] == "MISS"
        assert harness.client.get("/api/v1/widgets").headers["X-Cache-Status"] == "MISS"
        assert harness.calls["dashboard"] == 2

    def test_mutation_rejected_by_circuit_keeps_cache(self, harness):
        path = "/api/v1/customers/42/invoices"
        harness.client.get(path)
        harness.open_circuit(f"POST:{path}")

        rejected = harness.client.post(path)

        assert rejected.status_code == 503
        assert "create" not in harness.calls
        assert harness.client.get(path).headers["X-Cache-Status"] == "HIT"

    def test_disabled_cache_is_transparent(self, memory_store, clock):
        harness = EdgeHarness(memory_store, clock, cache=CacheSettings(enabled=False))

        harness.client.get("/api/v1/customers/42/invoices")
        response = harness.client.get("/api/v1/customers/42/invoices")

        assert "X-Cache-Status" not in response.headers
        assert harness.calls["invoices"] == 2


class TestCircuitBreakerMiddleware:
    """Test cases for CircuitBreakerMiddleware."""

    def test_headers_on_admitted_calls(self, harness):
        response = harness.client.get("/api/v1/flaky")

        assert response.headers["X-Circuit-Breaker-State"] == "closed"
        assert response.headers["X-Circuit-Breaker-Id"] == FLAKY_SCOPE

    def test_failures_open_the_circuit(self, harness):
        harness.flaky_status = 503
        for _ in range(3):
            assert harness.client.get("/api/v1/flaky").status_code == 503

        response = harness.client.get("/api/v1/flaky")

        assert response.status_code == 503
        assert response.json()["error"] == "Service Temporarily Unavailable"
        assert response.json()["circuit_breaker"]["state"] == "open"
        assert response.headers["X-Circuit-Breaker-State"] == "open"
        assert response.headers["Retry-After"] == "60"
        assert harness.calls["flaky"] == 3

    def test_fallback_status_code_is_configurable(self, memory_store, clock):
        harness = EdgeHarness(
            memory_store,
            clock,
            breaker=CircuitBreakerSettings(enabled=True, failure_threshold=1, fallback_status_code=429),
        )
        harness.open_circuit(FLAKY_SCOPE)

        assert harness.client.get("/api/v1/flaky").status_code == 429

    def test_half_open_trial_closes_circuit(self, harness, clock):
        harness.flaky_status = 500
        for _ in range(3):
            harness.client.get("/api/v1/flaky")
        clock.advance(61)
        harness.flaky_status = 200

        response = harness.client.get("/api/v1/flaky")

        assert response.status_code == 200
        assert response.headers["X-Circuit-Breaker-State"] == "half_open"
        assert harness.circuit_state(FLAKY_SCOPE) is CircuitState.CLOSED

    def test_exceptions_are_recorded_and_propagated(self, harness):
        for _ in range(3):
            assert harness.client.get("/api/v1/explode").status_code == 500

        response = harness.client.get("/api/v1/explode")

        assert response.status_code == 503
        assert harness.calls["explode"] == 3

    def test_cache_hit_bypasses_open_circuit(self, harness):
        harness.client.get("/api/v1/flaky")
        harness.open_circuit(FLAKY_SCOPE)

        cached = harness.client.get("/api/v1/flaky")
        uncached = harness.client.get("/api/v1/flaky", headers={"Cache-Control": "no-cache"})

        assert cached.status_code == 200
        assert cached.headers["X-Cache-Status"] == "HIT"
        assert uncached.status_code == 503

    def test_disabled_breaker_is_transparent(self, memory_store, clock):
        harness = EdgeHarness(memory_store, clock, breaker=CircuitBreakerSettings(enabled=False))
        harness.flaky_status = 500
        for _ in range(10):
            response = harness.client.get("/api/v1/flaky")

        assert response.status_code == 500
        assert "X-Circuit-Breaker-State" not in response.headers
