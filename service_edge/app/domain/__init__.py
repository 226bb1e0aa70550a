"""
Domain types shared by the response cache and the circuit breaker.
"""

from .models import (
    RequestDescriptor,
    ResponseDescriptor,
    ResponseKind,
    ResponseClassification,
    classify_response,
)
from .requests import describe_request, resolve_route

__all__ = [
    "RequestDescriptor",
    "ResponseDescriptor",
    "ResponseKind",
    "ResponseClassification",
    "classify_response",
    "describe_request",
    "resolve_route",
]
