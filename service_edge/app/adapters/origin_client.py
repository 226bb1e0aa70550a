"""
HTTP client forwarding requests to the origin API component.
"""

from typing import Dict, Optional

import httpx

from shared.errors import ExternalServiceError
from shared.logging import get_logger
from ..domain.models import ResponseDescriptor

# Never forwarded in either direction
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "host",
    "content-length",
}


def strip_hop_by_hop(headers: Dict[str, str]) -> Dict[str, str]:
    return {
        name.lower(): value
        for name, value in headers.items()
        if name.lower() not in HOP_BY_HOP_HEADERS
    }


class OriginClient:
    """Client for the API component behind the edge layer."""

    def __init__(self, origin_url: str, timeout: float = 30.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.origin_url = origin_url.rstrip("/")
        self.timeout = timeout
        self.logger = get_logger("edge.origin.client")
        self._client = httpx.AsyncClient(
            base_url=self.origin_url,
            timeout=timeout,
            transport=transport,
        )

    async def forward(self, method: str, path: str, query_string: str = "",
                      headers: Optional[Dict[str, str]] = None, body: bytes = b"") -> ResponseDescriptor:
        """Send one request to the origin and return its full response."""
        url = path if not query_string else f"{path}?{query_string}"
        try:
            response = await self._client.request(
                method,
                url,
                headers=strip_hop_by_hop(headers or {}),
                content=body or None,
            )
        except httpx.TimeoutException:
            self.logger.error("Origin timeout", method=method, path=path, timeout=self.timeout)
            raise ExternalServiceError("origin", "Origin request timed out", {"path": path})
        except httpx.RequestError as e:
            self.logger.error("Origin request error", method=method, path=path, error=str(e))
            raise ExternalServiceError("origin", "Origin unavailable", {"path": path})

        headers = strip_hop_by_hop(dict(response.headers))
        # httpx has already decoded the body
        headers.pop("content-encoding", None)
        return ResponseDescriptor(
            status_code=response.status_code,
            headers=headers,
            body=response.content,
        )

    async def health_check(self) -> bool:
        """Check if the origin answers at all."""
        try:
            response = await self._client.get("/health")
            return response.status_code < 500
        except httpx.HTTPError:
            return False

    async def close(self) -> None:
        await self._client.aclose()
