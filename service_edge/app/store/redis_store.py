"""
Redis store driver.
"""

import json
from typing import Any, Optional

import redis.asyncio as redis

from shared.errors import StoreUnavailableError
from shared.logging import get_logger
from .base import KeyValueStore


class RedisStore(KeyValueStore):
    """Store backed by a shared Redis instance.

    Values are JSON encoded. INCR is atomic on the server, which is what
    the circuit breaker's counters and half-open trial gate rely on.
    """

    name = "redis"

    def __init__(self, redis_url: str, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.logger = get_logger("edge.store.redis")
        self._redis: Optional[redis.Redis] = None

    async def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=self.socket_timeout,
                socket_timeout=self.socket_timeout,
                health_check_interval=30,
            )
        return self._redis

    async def get(self, key: str) -> Optional[Any]:
        try:
            client = await self._get_redis()
            raw = await client.get(key)
        except Exception as e:
            raise StoreUnavailableError("get", str(e), {"key": key}) from e

        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        try:
            return json.loads(raw)
        except (TypeError, ValueError) as e:
            raise StoreUnavailableError("get", "undecodable value", {"key": key}) from e

    async def put(self, key: str, value: Any, ttl_seconds: int) -> None:
        try:
            client = await self._get_redis()
            payload = json.dumps(value)
            if ttl_seconds and ttl_seconds > 0:
                await client.set(key, payload, ex=int(ttl_seconds))
            else:
                await client.set(key, payload)
        except Exception as e:
            raise StoreUnavailableError("put", str(e), {"key": key}) from e

    async def forget(self, key: str) -> bool:
        try:
            client = await self._get_redis()
            removed = await client.delete(key)
        except Exception as e:
            raise StoreUnavailableError("forget", str(e), {"key": key}) from e
        return bool(removed)

    async def increment(self, key: str, amount: int = 1, ttl_seconds: Optional[int] = None) -> int:
        try:
            client = await self._get_redis()
            async with client.pipeline(transaction=True) as pipeline:
                if ttl_seconds:
                    # Creates the counter with its expiry; no-op when it exists
                    pipeline.set(key, 0, ex=int(ttl_seconds), nx=True)
                pipeline.incrby(key, amount)
                results = await pipeline.execute()
            value = results[-1]
        except Exception as e:
            raise StoreUnavailableError("increment", str(e), {"key": key}) from e
        return int(value)

    async def ping(self) -> bool:
        try:
            client = await self._get_redis()
            return bool(await client.ping())
        except Exception as e:
            self.logger.warning("Redis ping failed", error=str(e))
            return False

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self.logger.info("Redis store closed")
