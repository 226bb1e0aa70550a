"""
Framework-neutral request/response descriptors.

The cache engine and circuit breaker only ever see these; the Starlette
middleware translates real requests and responses into them.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence


@dataclass(frozen=True)
class RequestDescriptor:
    """What the edge layer needs to know about an inbound request."""

    method: str
    path: str
    query_string: str = ""
    headers: Dict[str, str] = field(default_factory=dict)
    user_id: Optional[str] = None
    route_name: Optional[str] = None
    route_ttl: Optional[int] = None
    route_tags: List[str] = field(default_factory=list)

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.headers.get(name.lower(), default)

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None

    def as_method(self, method: str) -> "RequestDescriptor":
        """Same request addressed with another HTTP method."""
        return RequestDescriptor(
            method=method,
            path=self.path,
            query_string=self.query_string,
            headers=self.headers,
            user_id=self.user_id,
            route_name=self.route_name,
            route_ttl=self.route_ttl,
            route_tags=list(self.route_tags),
        )


@dataclass
class ResponseDescriptor:
    """An origin response as seen by the cache."""

    status_code: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    def header(self, name: str, default: str = "") -> str:
        return self.headers.get(name.lower(), default)


class ResponseKind(Enum):
    """Closed set of response classifications."""
    CACHEABLE_SUCCESS = "cacheable_success"
    ERROR = "error"
    REDIRECT = "redirect"
    STREAMED = "streamed"
    BINARY = "binary"


STREAMING_CONTENT_TYPES = ("text/event-stream", "application/x-ndjson")


@dataclass(frozen=True)
class ResponseClassification:
    """Decided once per response, consumed by both cache and breaker."""

    kind: ResponseKind
    status_code: int
    content_type: str = ""

    @property
    def cacheable(self) -> bool:
        return self.kind is ResponseKind.CACHEABLE_SUCCESS


def classify_response(status_code: int, content_type: Optional[str],
                      cacheable_content_types: Sequence[str]) -> ResponseClassification:
    """Classify a response from its status and content type."""
    content_type = (content_type or "").lower()

    if status_code >= 400 or status_code < 200:
        kind = ResponseKind.ERROR
    elif 300 <= status_code < 400:
        kind = ResponseKind.REDIRECT
    elif any(marker in content_type for marker in STREAMING_CONTENT_TYPES):
        kind = ResponseKind.STREAMED
    elif any(allowed.lower() in content_type for allowed in cacheable_content_types):
        kind = ResponseKind.CACHEABLE_SUCCESS
    else:
        kind = ResponseKind.BINARY

    return ResponseClassification(kind=kind, status_code=status_code, content_type=content_type)
