from __future__ import annotations

import json
from contextlib import contextmanager
from typing import Any, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from hrms.logging import get_logger
from hrms.storage.errors import CacheUnavailable

logger = get_logger(__name__)


@contextmanager
def _unavailable_on_error(operation: str, key: str):
    try:
        yield
    except RedisError as exc:
        logger.error("redis_operation_failed", operation=operation, key_prefix=key.split(":", 1)[0], error=str(exc))
        raise CacheUnavailable(f"redis {operation} failed") from exc


class RedisCache:
    """Redis-backed ephemeral store for OTPs, pending registrations and token mirrors."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Compare-and-delete: the key is removed only while it still holds the
    # expected value, so a single code can be consumed at most once.
    _DELETE_IF_EQUALS_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if current and current == ARGV[1] then
  redis.call('DEL', KEYS[1])
  return 1
end
return 0
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._delete_if_equals = self.client.register_script(self._DELETE_IF_EQUALS_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async one is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with _unavailable_on_error("set", key):
            await self.client.set(key, value, ex=max(1, int(ttl_seconds)))

    async def get(self, key: str) -> Optional[str]:
        with _unavailable_on_error("get", key):
            return await self.client.get(key)

    async def delete(self, key: str) -> int:
        with _unavailable_on_error("delete", key):
            return int(await self.client.delete(key))

    async def delete_pattern(self, prefix: str) -> int:
        """Delete every key starting with ``prefix``; returns the number removed."""
        removed = 0
        with _unavailable_on_error("delete_pattern", prefix):
            pipe = self.client.pipeline()
            queued = 0
            async for key in self.client.scan_iter(match=f"{prefix}*", count=500):
                pipe.delete(key)
                queued += 1
            if queued:
                results = await pipe.execute()
                removed = sum(int(r) for r in results)
        return removed

    async def pop(self, key: str) -> Optional[str]:
        """Atomically read and delete ``key``.

        Uses GETDEL (Redis 6.2+), so of several concurrent callers at most
        one observes the value.
        """
        with _unavailable_on_error("pop", key):
            return await self.client.getdel(key)

    async def delete_if_equals(self, key: str, expected: str) -> bool:
        with _unavailable_on_error("delete_if_equals", key):
            result = await self._delete_if_equals(keys=[key], args=[expected])
        return bool(int(result or 0))

    async def set_json(self, key: str, value: Any, ttl_seconds: int) -> None:
        await self.set(key, json.dumps(value, default=str), ttl_seconds)

    async def get_json(self, key: str) -> Optional[Any]:
        cached = await self.get(key)
        if cached is None:
            return None
        try:
            return json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            return None

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes async methods so it can be awaited
    uniformly like RedisCache.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._delete_if_equals = self._sync_client.register_script(
            RedisCache._DELETE_IF_EQUALS_SCRIPT
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._sync_client.ping()

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with _unavailable_on_error("set", key):
            self._sync_client.set(key, value, ex=max(1, int(ttl_seconds)))

    async def get(self, key: str) -> Optional[str]:
        with _unavailable_on_error("get", key):
            return self._sync_client.get(key)

    async def delete(self, key: str) -> int:
        with _unavailable_on_error("delete", key):
            return int(self._sync_client.delete(key))

    async def delete_pattern(self, prefix: str) -> int:
        with _unavailable_on_error("delete_pattern", prefix):
            keys = list(self._sync_client.scan_iter(match=f"{prefix}*", count=500))
            if not keys:
                return 0
            return int(self._sync_client.delete(*keys))

    async def pop(self, key: str) -> Optional[str]:
        with _unavailable_on_error("pop", key):
            return self._sync_client.getdel(key)

    async def delete_if_equals(self, key: str, expected: str) -> bool:
        with _unavailable_on_error("delete_if_equals", key):
            result = self._delete_if_equals(keys=[key], args=[expected])
        return bool(int(result or 0))

    async def set_json(self, key: str, value: Any, ttl_seconds: int) -> None:
        await self.set(key, json.dumps(value, default=str), ttl_seconds)

    async def get_json(self, key: str) -> Optional[Any]:
        cached = await self.get(key)
        if cached is None:
            return None
        try:
            return json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            return None

    async def close(self) -> None:
        """Close Redis connection."""
        self._sync_client.close()
