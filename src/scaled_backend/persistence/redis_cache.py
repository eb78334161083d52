"""Redis cache backend using redis.asyncio."""

import json
import os
from typing import Any, Self

import redis.asyncio as redis

from scaled_backend.persistence.base import CacheBackend


class RedisCache(CacheBackend):
    """JSON-encoded key/value cache on Redis.

    Args:
        url: Redis URL. Defaults to the REDIS_URL environment variable.
        client: Pre-built redis.asyncio client (takes precedence over `url`).
        prefix: Prefix prepended to every key.
    """

    def __init__(
        self,
        url: str | None = None,
        client: redis.Redis | None = None,
        prefix: str = "",
    ) -> None:
        self._url = url or os.getenv("REDIS_URL", "redis://localhost:6379/0")
        self._client = client or redis.from_url(self._url, decode_responses=True)
        self._prefix = prefix

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def get(self, key: str) -> Any | None:
        raw = await self._client.get(self._key(key))
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        await self._client.set(self._key(key), json.dumps(value), ex=ttl_seconds)

    async def delete(self, key: str) -> None:
        await self._client.delete(self._key(key))

    async def close(self) -> None:
        await self._client.aclose()
