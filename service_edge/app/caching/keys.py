"""
Cache key and invalidation tag derivation.

Keys identify one cacheable response; tags group responses for bulk
invalidation. Both are pure functions of the request descriptor and the
cache settings, so a read and a mutation addressing the same path always
agree on them.

Tag scheme for ``/api/v1/customers/42/invoices`` (``api``/``v1`` ignored)::

    path:customers, collection:customers          root tags
    customers, customers:42, customers:42:invoices    raw cumulative
    customers:{id}, customers:{id}:invoices       normalized cumulative
    uri:customers/42/invoices, uri:customers/{id}/invoices

Raw tags address one resource, normalized tags address a whole
collection regardless of the identifiers in the path.
"""

import hashlib
import re
from typing import Iterable, List, Optional, Sequence

from shared.config import CacheSettings
from ..domain.models import RequestDescriptor

ID_PLACEHOLDER = "{id}"
GUEST_MARKER = "guest"

_NUMERIC = re.compile(r"^\d+$")
_HEX_ID = re.compile(r"^(?:[0-9a-f]{24}|[0-9a-f]{32}|[0-9a-f]{40})$")
_UUID = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$")
# Crockford base32, no I, L, O or U
_ULID = re.compile(r"^[0-9a-hjkmnp-tv-z]{26}$")


def is_identifier(segment: str) -> bool:
    """True for numeric, 24/32/40-hex, UUID and ULID path segments."""
    value = segment.lower()
    return bool(
        _NUMERIC.match(value)
        or _HEX_ID.match(value)
        or _UUID.match(value)
        or _ULID.match(value)
    )


def normalize_segment(segment: str) -> str:
    return ID_PLACEHOLDER if is_identifier(segment) else segment


def cumulative_tags(segments: Sequence[str]) -> List[str]:
    """``[a, b, c]`` -> ``[a, a:b, a:b:c]``."""
    return [":".join(segments[:depth]) for depth in range(1, len(segments) + 1)]


def _unique(values: Iterable[str]) -> List[str]:
    seen = set()
    ordered = []
    for value in values:
        if value and value not in seen:
            seen.add(value)
            ordered.append(value)
    return ordered


class CacheKeyDeriver:
    """Derive cache keys and tag sets from request descriptors."""

    def __init__(self, settings: CacheSettings):
        self.settings = settings
        self._ignored = {segment.lower() for segment in settings.ignore_segments}

    def cache_key(self, request: RequestDescriptor) -> str:
        """Fixed-length fingerprint of path, query, identity and vary headers.

        The method is not part of the key, so a mutation maps onto the
        key of the GET that addressed the same resource.
        """
        identity = GUEST_MARKER
        if self.settings.per_user and request.user_id is not None:
            identity = f"user:{request.user_id}"

        header_context = ""
        for name in self.settings.vary_headers:
            value = request.header(name)
            if value is not None:
                header_context += f":{name.lower()}:{value}"

        material = f"{request.path}?{request.query_string}:{identity}{header_context}"
        return f"{self.settings.key_prefix}{hashlib.md5(material.encode('utf-8')).hexdigest()}"

    def segments(self, path: str) -> List[str]:
        """Lower-cased, non-empty, non-ignored segments truncated to max depth."""
        parts = [part.lower() for part in path.split("/") if part]
        kept = [part for part in parts if part not in self._ignored]
        return kept[: max(0, self.settings.max_depth)]

    def tags(self, request: RequestDescriptor) -> List[str]:
        """Invalidation tags for a request (method-agnostic)."""
        if not self.settings.dynamic_tags:
            return self.static_tags(request)

        segments = self.segments(request.path)
        tags: List[str] = []

        if segments:
            root = segments[0]
            tags.extend([f"path:{root}", f"collection:{root}"])
            tags.extend(cumulative_tags(segments))

            normalized = segments
            if self.settings.normalize_ids:
                normalized = [normalize_segment(segment) for segment in segments]
                tags.extend(cumulative_tags(normalized))

            tags.append("uri:" + "/".join(segments))
            tags.append("uri:" + "/".join(normalized))

        return _unique(tags + self._route_tags(request))

    def static_tags(self, request: RequestDescriptor) -> List[str]:
        """Tags used when dynamic tagging is switched off."""
        tags: List[str] = []
        first = next((part for part in request.path.split("/") if part), None)
        if first:
            tags.append(f"path:{first.lower()}")
        return _unique(tags + self._route_tags(request))

    def _route_tags(self, request: RequestDescriptor) -> List[str]:
        tags = []
        if request.route_name:
            tags.append(f"route:{request.route_name}")
        tags.extend(request.route_tags)
        return tags

    def tag_index_key(self, tag: str) -> str:
        return f"{self.settings.key_prefix}tag:{tag}"

    def metrics_key(self, name: str) -> str:
        return f"{self.settings.key_prefix}metrics:{name}"


def cache_policy(ttl: Optional[int] = None, tags: Optional[Sequence[str]] = None):
    """Attach a per-route cache policy to an endpoint.

    ``ttl`` overrides the global default; ``tags`` are added to every
    entry the route produces and to its invalidations.
    """
    def decorator(func):
        func.__cache_policy__ = {"ttl": ttl, "tags": list(tags or [])}
        return func
    return decorator
