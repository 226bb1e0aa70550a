"""
Edge service: response cache and circuit breaker in front of an origin API.
"""

import time
from typing import Callable, List, Optional

from fastapi import Request, Response
from pydantic import BaseModel, Field

from shared.base_service import BaseService
from shared.config import ServiceConfig, get_config
from shared.metrics import MetricsCollector, get_metrics_collector
from .adapters import OriginClient
from .caching import ResponseCacheEngine, ResponseCacheMiddleware
from .domain.requests import FORWARD_ROUTE_NAME
from .resilience import CircuitBreaker, CircuitBreakerMiddleware
from .resilience.breaker import FallbackPayload
from .store import KeyValueStore, create_store

FORWARD_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


class InvalidateTagsRequest(BaseModel):
    """Body of a manual tag invalidation."""

    tags: List[str] = Field(..., min_length=1)


class EdgeService(BaseService):
    """Edge resilience layer service implementation."""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        store: Optional[KeyValueStore] = None,
        origin: Optional[OriginClient] = None,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], float] = time.time,
        fallback_payload: Optional[FallbackPayload] = None,
    ):
        config = config or get_config("edge", 8000)
        metrics = metrics or get_metrics_collector(config.service_name)

        self.store = store or create_store(config.cache.driver, config.redis_url)
        self.origin = origin or OriginClient(config.origin_url, config.origin_timeout_seconds)
        self.cache_engine = ResponseCacheEngine(
            config.cache,
            self.store,
            metrics=metrics,
            clock=clock,
        )
        self.circuit_breaker = CircuitBreaker(
            config.circuit_breaker,
            self.store,
            metrics=metrics,
            clock=clock,
            fallback_payload=fallback_payload,
        )

        super().__init__(config.service_name, config.port, config=config, metrics=metrics)

        self._setup_edge_routes()
        self._setup_lifecycle()

        self.logger.info(
            "Edge service configured",
            store=self.store.name,
            cache_enabled=config.cache.enabled,
            circuit_breaker_enabled=config.circuit_breaker.enabled,
            origin=config.origin_url,
        )

    def _setup_middleware(self):
        """Set up middleware.

        Starlette runs the last added middleware first, so the resulting
        order is: request timing -> response cache -> circuit breaker ->
        router. A cache hit never consults the breaker.
        """
        self.app.add_middleware(
            CircuitBreakerMiddleware,
            breaker=self.circuit_breaker,
            cacheable_content_types=self.cache_engine.settings.cacheable_content_types,
            metrics=self.metrics,
        )
        self.app.add_middleware(ResponseCacheMiddleware, engine=self.cache_engine)
        super()._setup_middleware()

    def _setup_lifecycle(self):
        @self.app.on_event("shutdown")
        async def _shutdown():
            await self.origin.close()
            await self.store.close()

    def _setup_edge_routes(self):
        """Set up admin routes and the origin forwarding route."""

        @self.app.get("/api/v1/cache/stats")
        async def cache_stats():
            """Cache hit/miss counters."""
            return await self.cache_engine.stats()

        @self.app.post("/api/v1/cache/invalidate")
        async def invalidate_tags(body: InvalidateTagsRequest):
            """Flush every cache entry referenced by the given tags."""
            removed = await self.cache_engine.invalidate_tags(body.tags)
            return {"tags": body.tags, "removed": removed}

        @self.app.get("/api/v1/circuit-breakers/{scope:path}")
        async def circuit_breaker_state(scope: str):
            """Persisted circuit record and advisory counters for a scope."""
            return await self.circuit_breaker.snapshot(scope)

        # Must stay last: matches every path not handled above
        @self.app.api_route(
            "/{path:path}",
            methods=FORWARD_METHODS,
            name=FORWARD_ROUTE_NAME,
            include_in_schema=False,
        )
        async def forward(path: str, request: Request):
            """Forward the request to the origin API."""
            upstream = await self.origin.forward(
                request.method,
                request.url.path,
                request.url.query,
                dict(request.headers),
                await request.body(),
            )
            return Response(
                content=upstream.body,
                status_code=upstream.status_code,
                headers=upstream.headers,
            )

    async def _check_dependencies(self):
        """Check edge dependencies."""
        return {"store": "ok" if await self.store.ping() else "error"}


def create_app(config: Optional[ServiceConfig] = None, store: Optional[KeyValueStore] = None,
               origin: Optional[OriginClient] = None):
    """Create FastAPI application."""
    service = EdgeService(config=config, store=store, origin=origin)
    return service.app


if __name__ == "__main__":
    service = EdgeService()
    service.run()
