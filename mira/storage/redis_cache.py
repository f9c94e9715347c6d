from __future__ import annotations

import math
import time
from typing import Callable, Optional

import redis.asyncio as aioredis
from redis import Redis

from mira.storage.shared_state import WindowHit


class RedisSharedState:
    """Redis-backed shared state for multi-instance deployments."""

    backend = "redis"

    # Default operation timeout for Redis commands
    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Fixed window increment-and-check in one script so concurrent instances
    # cannot both pass a check on the last remaining slot.
    _FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local limit = tonumber(ARGV[2])
local window = tonumber(ARGV[3])

local data = redis.call('HMGET', key, 'start', 'count')
local start = tonumber(data[1])
local count = tonumber(data[2])

if start == nil or count == nil or now >= start + window then
  redis.call('HSET', key, 'start', ARGV[1], 'count', 1)
  redis.call('EXPIRE', key, math.max(math.ceil(window), 1))
  return {1, 1, '0'}
end

if count >= limit then
  return {0, count, tostring(start + window - now)}
end

count = redis.call('HINCRBY', key, 'count', 1)
return {1, count, '0'}
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        clock: Callable[[], float] = time.time,
        client: Optional[aioredis.Redis] = None,
    ) -> None:
        self.redis_url = redis_url
        self._clock = clock
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def hit_window(self, key: str, limit: int, window_seconds: float) -> WindowHit:
        allowed, count, retry_after = await self._fixed_window(
            keys=[key],
            args=[repr(self._clock()), limit, window_seconds],
        )
        return WindowHit(bool(int(allowed)), int(count), max(0.0, float(retry_after)))

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: float) -> None:
        await self.client.set(key, value, ex=max(1, math.ceil(ttl_seconds)))

    async def delete(self, key: str) -> None:
        await self.client.delete(key)

    async def sweep(self, *, window_seconds: Optional[float] = None) -> int:
        # Redis expires keys natively
        return 0

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
