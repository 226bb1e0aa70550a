"""
Starlette middleware wrapping origin calls in the circuit breaker.
"""

import time
from typing import Optional, Sequence, TYPE_CHECKING

from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from ..domain.models import classify_response
from ..domain.requests import describe_request
from .breaker import CircuitBreaker

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


class CircuitBreakerMiddleware(BaseHTTPMiddleware):
    """Reject calls to failing scopes and observe the rest."""

    def __init__(self, app, breaker: CircuitBreaker, cacheable_content_types: Sequence[str] = (),
                 metrics: Optional["MetricsCollector"] = None):
        super().__init__(app)
        self.breaker = breaker
        self.cacheable_content_types = list(cacheable_content_types)
        self.metrics = metrics

    async def dispatch(self, request: Request, call_next):
        if not self.breaker.settings.enabled or self.breaker.is_excluded(request.url.path):
            return await call_next(request)

        scope = self.breaker.scope_for(describe_request(request))
        admission = await self.breaker.before_call(scope)

        if not admission.allowed:
            request.state.circuit_rejected = True
            return JSONResponse(
                status_code=self.breaker.settings.fallback_status_code,
                content=self.breaker.fallback_body(admission),
                headers=self.breaker.fallback_headers(admission),
            )

        start_time = time.time()
        try:
            response = await call_next(request)
        except Exception as e:
            await self.breaker.record_exception(scope, e)
            raise

        elapsed = time.time() - start_time
        if self.metrics:
            self.metrics.observe_histogram("edge_origin_duration_seconds", elapsed)

        # Classified once; the response cache reuses it
        classification = classify_response(
            response.status_code,
            response.headers.get("content-type"),
            self.cacheable_content_types,
        )
        request.state.response_classification = classification

        await self.breaker.after_call(scope, classification, elapsed * 1000)

        response.headers["X-Circuit-Breaker-State"] = admission.state.value
        response.headers["X-Circuit-Breaker-Id"] = scope
        return response
