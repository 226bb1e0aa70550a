"""
Store-backed circuit breaker.
"""

from .breaker import Admission, CircuitBreaker
from .middleware import CircuitBreakerMiddleware
from .state import CircuitRecord, CircuitState, CircuitStateTracker

__all__ = [
    "Admission",
    "CircuitBreaker",
    "CircuitBreakerMiddleware",
    "CircuitRecord",
    "CircuitState",
    "CircuitStateTracker",
]
