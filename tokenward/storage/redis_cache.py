from __future__ import annotations

import json
from typing import Any, Awaitable, Optional, TypeVar

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from tokenward.logging import get_logger
from tokenward.storage.errors import CacheUnavailable

logger = get_logger(__name__)

T = TypeVar("T")


class RedisCache:
    """Redis-backed cache layer for profile snapshots and rate counters."""

    DEFAULT_OPERATION_TIMEOUT = 2.0

    # INCR, then set the window expiry on the first hit. A counter that somehow
    # lost its TTL gets one again so it cannot block a client forever.
    _INCREMENT_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
local ttl = tonumber(ARGV[1])
if ttl and ttl > 0 then
  if count == 1 or redis.call('TTL', KEYS[1]) == -1 then
    redis.call('EXPIRE', KEYS[1], ttl)
  end
end
return count
"""

    # DECR keeps the existing TTL, unlike GET followed by SET.
    _DECREMENT_IF_POSITIVE_SCRIPT = """
local current = tonumber(redis.call('GET', KEYS[1]))
if current == nil then
  return 0
end
if current > 0 then
  return redis.call('DECR', KEYS[1])
end
return current
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Optional[aioredis.Redis] = None,
    ) -> None:
        self.redis_url = redis_url
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._increment = self.client.register_script(self._INCREMENT_SCRIPT)
        self._decrement_if_positive = self.client.register_script(
            self._DECREMENT_IF_POSITIVE_SCRIPT
        )

    async def _guard(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await awaitable
        except (RedisError, OSError, TimeoutError) as exc:
            logger.warning(
                "cache_operation_failed",
                operation=operation,
                error_type=type(exc).__name__,
            )
            raise CacheUnavailable(operation, exc) from exc

    async def verify_connection(self) -> None:
        await self._guard("ping", self.client.ping())

    async def get(self, key: str) -> Optional[str]:
        return await self._guard("get", self.client.get(key))

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        if ttl_seconds is not None and ttl_seconds > 0:
            await self._guard("set", self.client.set(key, value, ex=ttl_seconds))
        else:
            await self._guard("set", self.client.set(key, value))

    async def delete(self, key: str) -> None:
        await self._guard("delete", self.client.delete(key))

    async def exists(self, key: str) -> bool:
        return bool(await self._guard("exists", self.client.exists(key)))

    async def increment(self, key: str, ttl_seconds: Optional[int] = None) -> int:
        count = await self._guard(
            "increment", self._increment(keys=[key], args=[int(ttl_seconds or 0)])
        )
        return int(count)

    async def decrement_if_positive(self, key: str) -> int:
        remaining = await self._guard(
            "decrement_if_positive", self._decrement_if_positive(keys=[key], args=[])
        )
        return int(remaining)

    async def ttl(self, key: str) -> Optional[int]:
        remaining = await self._guard("ttl", self.client.ttl(key))
        # -2 means missing, -1 means no expiry
        if remaining is None or int(remaining) < 0:
            return None
        return int(remaining)

    async def get_json(self, key: str) -> Optional[Any]:
        cached = await self.get(key)
        if cached is None:
            return None
        try:
            return json.loads(cached)
        except ValueError:
            logger.warning("cache_payload_invalid", key=key)
            return None

    async def set_json(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        await self.set(key, json.dumps(value), ttl_seconds)

    async def close(self) -> None:
        """Close the Redis connection pool. Call on shutdown."""
        await self.client.aclose()


__all__ = ["RedisCache"]
