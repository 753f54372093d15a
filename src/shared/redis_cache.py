"""
Shared cache tier backed by Redis.

Values are opaque bytes; serialization belongs to the caller. Connection and
server errors are reported as CacheUnavailableError so the cache tier can
fail open.
"""
from datetime import timedelta
from typing import Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from src.specs.common.errors import CacheUnavailableError

DEFAULT_PREFIX = "postservice:v1"


class RedisSharedCache:
    def __init__(self, redis_client: Redis, prefix: str = DEFAULT_PREFIX) -> None:
        self._redis = redis_client
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str, prefix: str = DEFAULT_PREFIX) -> "RedisSharedCache":
        client = Redis.from_url(url, socket_timeout=2.0, socket_connect_timeout=2.0)
        return cls(client, prefix=prefix)

    def make_key(self, key: str) -> str:
        """
        Namespace a cache key.

        Example:
            >>> cache.make_key("post:42")
            'postservice:v1:post:42'
        """
        return f"{self._prefix}:{key}" if self._prefix else key

    async def get(self, key: str) -> Optional[bytes]:
        try:
            return await self._redis.get(self.make_key(key))
        except (RedisError, OSError) as e:
            raise CacheUnavailableError(f"Redis get failed: {e}", details={"key": key}) from e

    async def set(self, key: str, value: bytes, ttl: timedelta) -> None:
        ttl_ms = max(1, int(ttl.total_seconds() * 1000))
        try:
            await self._redis.set(self.make_key(key), value, px=ttl_ms)
        except (RedisError, OSError) as e:
            raise CacheUnavailableError(f"Redis set failed: {e}", details={"key": key}) from e

    async def delete(self, *keys: str) -> None:
        if not keys:
            return
        try:
            await self._redis.delete(*(self.make_key(k) for k in keys))
        except (RedisError, OSError) as e:
            raise CacheUnavailableError(f"Redis delete failed: {e}", details={"keys": list(keys)}) from e

