"""
Circuit breaker state machine.

Pure transition logic over a ``CircuitRecord``; nothing here touches the
store. ``CircuitBreaker`` reads the record, asks the tracker what the next
record is, and writes it back.

    CLOSED --(failure_count reaches threshold)--> OPEN
    OPEN --(timeout elapsed, observed on read)--> HALF_OPEN
    HALF_OPEN --(success)--> CLOSED
    HALF_OPEN --(failure)--> OPEN (fresh opened_at)
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"        # Normal operation
    OPEN = "open"            # Failing, requests blocked
    HALF_OPEN = "half_open"  # Testing if the scope recovered


# Transition events, counted per scope
OPENED = "opens"
CLOSED = "closes"


@dataclass(frozen=True)
class CircuitRecord:
    """Persisted per-scope circuit state."""

    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    opened_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "failure_count": self.failure_count,
            "opened_at": self.opened_at,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "CircuitRecord":
        """Rebuild a record; anything unreadable is a fresh CLOSED record."""
        if not isinstance(data, dict):
            return cls()
        try:
            state = CircuitState(data.get("state", CircuitState.CLOSED.value))
            failure_count = max(0, int(data.get("failure_count") or 0))
            opened_at = data.get("opened_at")
            opened_at = float(opened_at) if opened_at is not None else None
        except (TypeError, ValueError):
            return cls()

        if state is CircuitState.OPEN and opened_at is None:
            # An OPEN record without a timestamp could never time out
            return cls(state=CircuitState.CLOSED, failure_count=failure_count)
        if state is CircuitState.CLOSED:
            opened_at = None
        return cls(state=state, failure_count=failure_count, opened_at=opened_at)


class CircuitStateTracker:
    """Compute the next ``CircuitRecord`` for an observation."""

    def __init__(self, failure_threshold: int, timeout: float):
        self.failure_threshold = max(1, int(failure_threshold))
        self.timeout = float(timeout)

    def elapsed(self, record: CircuitRecord, now: float) -> float:
        if record.opened_at is None:
            return 0.0
        return max(0.0, now - record.opened_at)

    def retry_after(self, record: CircuitRecord, now: float) -> int:
        """Seconds until an OPEN record may be probed again."""
        if record.state is not CircuitState.OPEN:
            return 0
        return int(max(0.0, self.timeout - self.elapsed(record, now)))

    def observe(self, record: CircuitRecord, now: float) -> CircuitRecord:
        """Apply the time-based OPEN -> HALF_OPEN transition."""
        if record.state is CircuitState.OPEN and self.elapsed(record, now) >= self.timeout:
            return replace(record, state=CircuitState.HALF_OPEN)
        return record

    def on_success(self, record: CircuitRecord) -> Tuple[CircuitRecord, List[str]]:
        if record.state is CircuitState.HALF_OPEN:
            return CircuitRecord(state=CircuitState.CLOSED), [CLOSED]

        if record.state is CircuitState.CLOSED:
            # Recovery credit: a success pays back one failure but never closes anything
            return replace(record, failure_count=max(0, record.failure_count - 1)), []

        return record, []

    def on_failure(self, record: CircuitRecord, now: float) -> Tuple[CircuitRecord, List[str]]:
        if record.state is CircuitState.HALF_OPEN:
            return replace(record, state=CircuitState.OPEN, opened_at=now), [OPENED]

        if record.state is CircuitState.CLOSED:
            failure_count = record.failure_count + 1
            if failure_count >= self.failure_threshold:
                return CircuitRecord(
                    state=CircuitState.OPEN,
                    failure_count=failure_count,
                    opened_at=now,
                ), [OPENED]
            return replace(record, failure_count=failure_count), []

        # Already OPEN: a straggler that was admitted before the circuit opened
        return record, []
