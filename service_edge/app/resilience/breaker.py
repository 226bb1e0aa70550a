"""
Store-backed circuit breaker.

Every decision re-reads the scope's ``CircuitRecord`` from the shared
store, so any number of edge instances agree on the circuit state. When
the store itself is unavailable the breaker fails open.
"""

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, TYPE_CHECKING

from shared.config import CircuitBreakerSettings
from shared.errors import CircuitOpenError
from shared.logging import get_logger
from ..domain.models import RequestDescriptor, ResponseClassification, classify_response
from ..domain.requests import path_under
from ..store.base import KeyValueStore
from .state import CircuitRecord, CircuitState, CircuitStateTracker

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector

# Per-scope advisory counters
COUNTERS = ("failures", "successes", "opens", "closes", "rejections")

FallbackPayload = Callable[[str, Dict[str, Any]], Dict[str, Any]]


@dataclass(frozen=True)
class Admission:
    """Outcome of asking the breaker whether a call may proceed."""

    scope: str
    allowed: bool
    record: CircuitRecord
    retry_after: int = 0

    @property
    def state(self) -> CircuitState:
        return self.record.state


class CircuitBreaker:
    """Admit, reject and observe calls per scope."""

    def __init__(
        self,
        settings: CircuitBreakerSettings,
        store: KeyValueStore,
        *,
        metrics: Optional["MetricsCollector"] = None,
        clock: Callable[[], float] = time.time,
        fallback_payload: Optional[FallbackPayload] = None,
    ):
        self.settings = settings
        self.store = store
        self.metrics = metrics
        self.clock = clock
        self.fallback_payload = fallback_payload
        self.tracker = CircuitStateTracker(settings.failure_threshold, settings.timeout)
        self.logger = get_logger("edge.circuit_breaker")
        self._error_codes = set(settings.error_codes)

    # Scopes and keys

    def scope_for(self, request: RequestDescriptor) -> str:
        """Scope identifier for ``request`` according to the configured mode."""
        mode = self.settings.scope
        if mode == "route":
            return request.route_name or request.path
        if mode == "path":
            first = next((part for part in request.path.split("/") if part), None)
            return first or "root"
        return f"{request.method}:{request.path}"

    def is_excluded(self, path: str) -> bool:
        return any(path_under(path, prefix) for prefix in self.settings.excluded_paths)

    def record_key(self, scope: str) -> str:
        return f"{self.settings.key_prefix}state:{scope}"

    def counter_key(self, scope: str, counter: str) -> str:
        return f"{self.settings.key_prefix}metrics:{scope}:{counter}"

    def trial_key(self, scope: str, record: CircuitRecord) -> str:
        return f"{self.settings.key_prefix}trial:{scope}:{record.opened_at}"

    # Record persistence

    async def load(self, scope: str) -> CircuitRecord:
        return CircuitRecord.from_dict(await self.store.get(self.record_key(scope)))

    async def _save(self, scope: str, record: CircuitRecord) -> None:
        try:
            await self.store.put(self.record_key(scope), record.to_dict(), self.settings.record_ttl)
        except Exception as e:
            self.logger.error("Failed to persist circuit state", scope=scope, error=str(e))
            self._event("store_error")

    # Admission

    async def before_call(self, scope: str) -> Admission:
        """Decide whether a call for ``scope`` may reach the origin."""
        now = self.clock()
        try:
            record = await self.load(scope)
        except Exception as e:
            self.logger.warning("Circuit state unavailable, failing open", scope=scope, error=str(e))
            self._event("store_error")
            return Admission(scope=scope, allowed=True, record=CircuitRecord())

        observed = self.tracker.observe(record, now)
        if observed is not record:
            self.logger.info("Circuit breaker transitioning to half-open", scope=scope)
            await self._save(scope, observed)

        if observed.state is CircuitState.OPEN:
            await self._count(scope, "rejections")
            return Admission(
                scope=scope,
                allowed=False,
                record=observed,
                retry_after=self.tracker.retry_after(observed, now),
            )

        if observed.state is CircuitState.HALF_OPEN and self.settings.half_open_single_trial:
            if not await self._claim_trial(scope, observed):
                await self._count(scope, "rejections")
                return Admission(scope=scope, allowed=False, record=observed, retry_after=1)

        return Admission(scope=scope, allowed=True, record=observed)

    async def _claim_trial(self, scope: str, record: CircuitRecord) -> bool:
        """Atomically elect the single half-open trial for this open period."""
        try:
            claimed = await self.store.increment(
                self.trial_key(scope, record),
                ttl_seconds=max(1, int(self.settings.timeout)),
            )
        except Exception as e:
            self.logger.warning("Half-open trial election failed", scope=scope, error=str(e))
            self._event("store_error")
            return True
        return claimed == 1

    # Observation

    def is_failure(self, status_code: int, elapsed_ms: float) -> bool:
        return status_code in self._error_codes or elapsed_ms > self.settings.slow_threshold_ms

    async def after_call(self, scope: str, classification: ResponseClassification,
                         elapsed_ms: float) -> Optional[CircuitRecord]:
        """Record the outcome of a call that was admitted."""
        status_code = classification.status_code
        failed = self.is_failure(status_code, elapsed_ms)
        if failed:
            self.logger.debug(
                "Circuit failure observed",
                scope=scope,
                status_code=status_code,
                elapsed_ms=round(elapsed_ms, 2),
            )
        return await self._apply(scope, failed)

    async def record_exception(self, scope: str, error: BaseException) -> Optional[CircuitRecord]:
        """Count a raised origin call as a failure. The caller re-raises."""
        self.logger.warning("Circuit call raised", scope=scope, error=str(error))
        return await self._apply(scope, True)

    async def _apply(self, scope: str, failed: bool) -> Optional[CircuitRecord]:
        now = self.clock()
        try:
            record = await self.load(scope)
        except Exception as e:
            self.logger.warning("Circuit state unavailable, outcome dropped", scope=scope, error=str(e))
            self._event("store_error")
            return None

        record = self.tracker.observe(record, now)
        if failed:
            updated, transitions = self.tracker.on_failure(record, now)
            await self._count(scope, "failures")
        else:
            updated, transitions = self.tracker.on_success(record)
            await self._count(scope, "successes")

        if updated != record:
            await self._save(scope, updated)

        for transition in transitions:
            await self._count(scope, transition)
            if updated.state is CircuitState.OPEN:
                self.logger.warning(
                    "Circuit breaker opened",
                    scope=scope,
                    failures=updated.failure_count,
                    threshold=self.tracker.failure_threshold,
                )
            else:
                self.logger.info("Circuit breaker closed", scope=scope)
        return updated

    async def call(self, scope: str, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Run ``func`` under the breaker; rejected calls raise ``CircuitOpenError``.

        ``func`` may return an object with a ``status_code`` attribute to be
        classified like an HTTP response; anything else counts as success.
        """
        admission = await self.before_call(scope)
        if not admission.allowed:
            raise CircuitOpenError(
                scope=scope,
                state=admission.state.value,
                retry_after=admission.retry_after,
            )

        start_time = time.time()
        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            await self.record_exception(scope, e)
            raise

        elapsed_ms = (time.time() - start_time) * 1000
        classification = classify_response(getattr(result, "status_code", 200), None, ())
        await self.after_call(scope, classification, elapsed_ms)
        return result

    # Fallback

    def fallback_body(self, admission: Admission) -> Dict[str, Any]:
        """Payload returned instead of calling the origin while rejecting."""
        circuit = {
            "state": admission.state.value,
            "opened_at": _iso(admission.record.opened_at),
            "retry_after": admission.retry_after,
        }
        if self.fallback_payload is not None:
            return self.fallback_payload(admission.scope, circuit)

        return {
            "error": "Service Temporarily Unavailable",
            "message": "The service is currently experiencing issues. Please try again later.",
            "circuit_breaker": circuit,
        }

    def fallback_headers(self, admission: Admission) -> Dict[str, str]:
        return {
            "X-Circuit-Breaker-State": admission.state.value,
            "X-Circuit-Breaker-Id": admission.scope,
            "Retry-After": str(admission.retry_after),
        }

    # Introspection

    async def snapshot(self, scope: str) -> Dict[str, Any]:
        """Persisted record plus advisory counters for ``scope``."""
        record = await self.load(scope)
        now = self.clock()
        counters = {}
        for counter in COUNTERS:
            counters[counter] = int(await self.store.get(self.counter_key(scope, counter)) or 0)

        return {
            "scope": scope,
            "state": record.state.value,
            "failure_count": record.failure_count,
            "opened_at": _iso(record.opened_at),
            "retry_after": self.tracker.retry_after(record, now),
            "failure_threshold": self.tracker.failure_threshold,
            "timeout": self.settings.timeout,
            "counters": counters,
        }

    # Counters

    async def _count(self, scope: str, counter: str) -> None:
        self._event(counter)
        try:
            await self.store.increment(
                self.counter_key(scope, counter),
                ttl_seconds=self.settings.record_ttl,
            )
        except Exception as e:
            self.logger.debug("Failed to record circuit counter", scope=scope, counter=counter, error=str(e))

    def _event(self, event: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("edge_circuit_events_total", event=event)


def _iso(timestamp: Optional[float]) -> Optional[str]:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()
