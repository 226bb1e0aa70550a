"""
Translate Starlette requests into request descriptors.
"""

from typing import Any, Dict, Optional, Tuple

from starlette.requests import Request
from starlette.routing import Match

from .models import RequestDescriptor

# Catch-all route proxying to the origin; it carries no route identity
FORWARD_ROUTE_NAME = "origin_forward"


def path_under(path: str, prefix: str) -> bool:
    """True when ``path`` is ``prefix`` or lies below it on a segment boundary."""
    base = prefix.rstrip("/")
    return path == prefix or path == base or path.startswith(base + "/")


def resolve_route(request: Request, method: Optional[str] = None) -> Tuple[Optional[str], Any]:
    """Find the route that will serve ``request`` before routing runs.

    Middleware executes ahead of the router, so the matched route is not
    in the scope yet; replay the router's match to learn name and endpoint.
    With ``method`` the match is replayed as if the request used that method.
    """
    app = request.scope.get("app")
    router = getattr(app, "router", None)
    if router is None:
        return None, None

    scope = request.scope
    if method is not None:
        scope = dict(scope, method=method)

    for route in router.routes:
        match, _ = route.matches(scope)
        if match == Match.FULL:
            name = getattr(route, "name", None)
            if name == FORWARD_ROUTE_NAME:
                return None, None
            return name, getattr(route, "endpoint", None)
    return None, None


def _lookup(overrides: Optional[Dict[str, Any]], route_name: Optional[str], path: str):
    """Override keyed by route name, else by the longest matching path prefix."""
    if not overrides:
        return None
    if route_name and route_name in overrides:
        return overrides[route_name]

    prefixes = [key for key in overrides if key.startswith("/") and path_under(path, key)]
    if prefixes:
        return overrides[max(prefixes, key=len)]
    return None


def get_user_id(request: Request) -> Optional[str]:
    """Authenticated caller identity, as set by the auth layer on request.state."""
    user_info = getattr(request.state, "user_info", None)
    if isinstance(user_info, dict) and user_info.get("user_id"):
        return str(user_info["user_id"])
    return None


def describe_request(request: Request, route_ttls: Optional[Dict[str, int]] = None,
                     route_tags: Optional[Dict[str, list]] = None,
                     method: Optional[str] = None) -> RequestDescriptor:
    """Build a RequestDescriptor, folding in per-route cache policy.

    ``method`` describes the same URL as if addressed with that method,
    resolving the route and policy that method would reach.
    """
    method = (method or request.method).upper()
    route_name, endpoint = resolve_route(request, method)
    policy = getattr(endpoint, "__cache_policy__", None) or {}
    path = request.url.path

    ttl = policy.get("ttl")
    if ttl is None:
        ttl = _lookup(route_ttls, route_name, path)

    tags = list(policy.get("tags") or [])
    tags.extend(_lookup(route_tags, route_name, path) or [])

    return RequestDescriptor(
        method=method,
        path=path,
        query_string=request.url.query or "",
        headers={name.lower(): value for name, value in request.headers.items()},
        user_id=get_user_id(request),
        route_name=route_name,
        route_ttl=ttl,
        route_tags=tags,
    )
