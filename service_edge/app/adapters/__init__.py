"""
Adapters for services outside the edge layer.
"""

from .origin_client import OriginClient

__all__ = ["OriginClient"]
