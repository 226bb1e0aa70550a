"""
Starlette middleware putting the response cache in front of the origin.
"""

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from shared.logging import get_logger, set_user_context
from ..domain.models import ResponseDescriptor
from ..domain.requests import describe_request
from .engine import ResponseCacheEngine
from .models import CacheEntry

CACHE_STATUS_HEADER = "X-Cache-Status"


async def read_body(response) -> bytes:
    """Drain a streaming response produced by ``call_next``."""
    return b"".join([chunk async for chunk in response.body_iterator])


class ResponseCacheMiddleware(BaseHTTPMiddleware):
    """Serve eligible GETs from cache and invalidate on mutations."""

    def __init__(self, app, engine: ResponseCacheEngine):
        super().__init__(app)
        self.engine = engine
        self.logger = get_logger("edge.cache.middleware")

    async def dispatch(self, request: Request, call_next):
        settings = self.engine.settings
        if not settings.enabled or self.engine.is_excluded(request.url.path):
            return await call_next(request)

        descriptor = describe_request(request, settings.route_ttls, settings.route_tags)
        set_user_context(descriptor.user_id)

        if self.engine.is_mutation(descriptor):
            read_equivalent = describe_request(
                request, settings.route_ttls, settings.route_tags, method="GET"
            )
            response = await call_next(request)
            # A write rejected by the circuit breaker never reached the origin
            if not getattr(request.state, "circuit_rejected", False):
                await self.engine.invalidate(descriptor, read_equivalent)
            return response

        if not self.engine.is_eligible(descriptor):
            response = await call_next(request)
            if descriptor.method == "GET":
                response.headers[CACHE_STATUS_HEADER] = "BYPASS"
            return response

        entry = await self.engine.lookup(descriptor)
        if entry is not None:
            self.logger.debug("Serving cached response", path=descriptor.path, key=entry.key)
            return self._hit_response(entry)

        response = await call_next(request)

        classification = getattr(request.state, "response_classification", None)
        if classification is None:
            classification = self.engine.classify(
                ResponseDescriptor(
                    status_code=response.status_code,
                    headers={"content-type": response.headers.get("content-type", "")},
                )
            )

        if classification.cacheable:
            body = await read_body(response)
            await self.engine.store(
                descriptor,
                ResponseDescriptor(
                    status_code=response.status_code,
                    headers={name.lower(): value for name, value in response.headers.items()},
                    body=body,
                ),
                classification,
            )
            response = Response(
                content=body,
                status_code=response.status_code,
                headers=response.headers,
            )

        response.headers[CACHE_STATUS_HEADER] = "MISS"
        return response

    def _hit_response(self, entry: CacheEntry) -> Response:
        response = Response(
            content=entry.body,
            status_code=entry.status_code,
            headers=entry.headers,
        )
        response.headers[CACHE_STATUS_HEADER] = "HIT"
        response.headers["Age"] = str(entry.age(self.engine.clock()))
        response.headers["X-Cache-Time"] = entry.created_at_iso
        return response
