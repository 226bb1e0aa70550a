"""
Cache entry model.
"""

import base64
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

# Only these response headers travel with a cached body
CACHED_HEADERS = (
    "content-type",
    "content-encoding",
    "etag",
    "last-modified",
)


@dataclass(frozen=True)
class CacheEntry:
    """One cached response. Never mutated after it is written."""

    key: str
    body: bytes
    status_code: int
    headers: Dict[str, str] = field(default_factory=dict)
    tags: List[str] = field(default_factory=list)
    created_at: float = 0.0
    ttl: int = 0

    def age(self, now: float) -> int:
        return max(0, int(now - self.created_at))

    @property
    def created_at_iso(self) -> str:
        return datetime.fromtimestamp(self.created_at, tz=timezone.utc).isoformat()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "body": base64.b64encode(self.body).decode("ascii"),
            "status": self.status_code,
            "headers": dict(self.headers),
            "tags": list(self.tags),
            "created_at": self.created_at,
            "ttl": self.ttl,
        }

    @classmethod
    def from_dict(cls, data: Any) -> Optional["CacheEntry"]:
        """Rebuild an entry; returns None for anything that is not a valid entry."""
        if not isinstance(data, dict):
            return None
        try:
            return cls(
                key=str(data["key"]),
                body=base64.b64decode(data["body"], validate=True),
                status_code=int(data["status"]),
                headers={str(k): str(v) for k, v in (data.get("headers") or {}).items()},
                tags=[str(tag) for tag in data.get("tags") or []],
                created_at=float(data["created_at"]),
                ttl=int(data.get("ttl", 0)),
            )
        except (KeyError, TypeError, ValueError):
            return None


def header_subset(headers: Dict[str, str]) -> Dict[str, str]:
    """Allow-listed headers worth replaying on a hit."""
    lowered = {name.lower(): value for name, value in headers.items()}
    return {name: lowered[name] for name in CACHED_HEADERS if name in lowered}
