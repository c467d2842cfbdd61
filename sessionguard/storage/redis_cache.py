from __future__ import annotations

from typing import Dict, List, Optional

import redis.asyncio as aioredis
from redis import Redis


class RedisKVStore:
    """Thin async Redis wrapper exposing the session pipeline's KV capability set."""

    DEFAULT_OPERATION_TIMEOUT = 5.0  # seconds

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        # Timeouts are enforced here, at the network boundary, not inside the flow
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

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

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        await self.client.set(key, value, ex=ttl_seconds or None)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self.client.delete(*keys))

    async def exists(self, key: str) -> bool:
        return bool(await self.client.exists(key))

    async def incr(self, key: str) -> int:
        return int(await self.client.incr(key))

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        return bool(await self.client.expire(key, ttl_seconds))

    async def list_push(self, key: str, value: str) -> int:
        return int(await self.client.lpush(key, value))

    async def list_trim(self, key: str, start: int, end: int) -> None:
        await self.client.ltrim(key, start, end)

    async def list_range(self, key: str, start: int, end: int) -> List[str]:
        return list(await self.client.lrange(key, start, end))

    async def set_add(self, key: str, member: str) -> int:
        return int(await self.client.sadd(key, member))

    async def set_remove(self, key: str, member: str) -> int:
        return int(await self.client.srem(key, member))

    async def set_members(self, key: str) -> List[str]:
        return sorted(await self.client.smembers(key))

    async def hash_incr(self, key: str, field: str, amount: int = 1) -> int:
        return int(await self.client.hincrby(key, field, amount))

    async def hash_get_all(self, key: str) -> Dict[str, str]:
        return dict(await self.client.hgetall(key))

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down the runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


class SyncRedisKVStore:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes async methods so callers can await it
    uniformly like RedisKVStore.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0  # seconds

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
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

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        self.client.set(key, value, ex=ttl_seconds or None)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(self.client.delete(*keys))

    async def exists(self, key: str) -> bool:
        return bool(self.client.exists(key))

    async def incr(self, key: str) -> int:
        return int(self.client.incr(key))

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        return bool(self.client.expire(key, ttl_seconds))

    async def list_push(self, key: str, value: str) -> int:
        return int(self.client.lpush(key, value))

    async def list_trim(self, key: str, start: int, end: int) -> None:
        self.client.ltrim(key, start, end)

    async def list_range(self, key: str, start: int, end: int) -> List[str]:
        return list(self.client.lrange(key, start, end))

    async def set_add(self, key: str, member: str) -> int:
        return int(self.client.sadd(key, member))

    async def set_remove(self, key: str, member: str) -> int:
        return int(self.client.srem(key, member))

    async def set_members(self, key: str) -> List[str]:
        return sorted(self.client.smembers(key))

    async def hash_incr(self, key: str, field: str, amount: int = 1) -> int:
        return int(self.client.hincrby(key, field, amount))

    async def hash_get_all(self, key: str) -> Dict[str, str]:
        return dict(self.client.hgetall(key))

    async def ping(self) -> bool:
        return bool(self.client.ping())

    async def close(self) -> None:
        self.client.close()
