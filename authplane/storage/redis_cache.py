from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable, List, Optional, Sequence, Tuple

import redis.asyncio as aioredis
from redis import Redis

# (key, value, ttl_seconds)
CacheWrite = Tuple[str, str, int]


class RedisCache:
    """Thin Redis wrapper used as the fast invalidation index."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """Compute a TTL from an absolute expiry, clamped to at least 1 second."""

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    @staticmethod
    def _clamp_ttl(ttl_seconds: int) -> int:
        return max(1, int(ttl_seconds))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def get_many(self, keys: Sequence[str]) -> List[Optional[str]]:
        if not keys:
            return []
        return await self.client.mget(list(keys))

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.client.set(key, value, ex=self._clamp_ttl(ttl_seconds))

    async def set_many(self, items: Iterable[CacheWrite]) -> int:
        """Write every item in one pipelined round-trip."""
        pipe = self.client.pipeline()
        count = 0
        for key, value, ttl in items:
            pipe.set(key, value, ex=self._clamp_ttl(ttl))
            count += 1
        if count:
            await pipe.execute()
        return count

    async def delete(self, key: str) -> None:
        await self.client.delete(key)

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues in
    pytest, but exposes the same awaitable surface as :class:`RedisCache`.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self.client.ping()

    async def get(self, key: str) -> Optional[str]:
        return self.client.get(key)

    async def get_many(self, keys: Sequence[str]) -> List[Optional[str]]:
        if not keys:
            return []
        return self.client.mget(list(keys))

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self.client.set(key, value, ex=RedisCache._clamp_ttl(ttl_seconds))

    async def set_many(self, items: Iterable[CacheWrite]) -> int:
        pipe = self.client.pipeline()
        count = 0
        for key, value, ttl in items:
            pipe.set(key, value, ex=RedisCache._clamp_ttl(ttl))
            count += 1
        if count:
            pipe.execute()
        return count

    async def delete(self, key: str) -> None:
        self.client.delete(key)

    async def close(self) -> None:
        self.client.close()
