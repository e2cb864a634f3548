from __future__ import annotations

from typing import Tuple

import redis.asyncio as aioredis
from redis import Redis


def _clamp_ttl(ttl_seconds: float) -> int:
    """Redis rejects zero or negative expirations; clamp to at least one second."""
    return max(1, int(ttl_seconds))


class RedisCache:
    """Thin Redis wrapper for refresh-token markers and rate-limit windows."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Fixed-window counter: the first hit in a window sets the expiry, so the
    # window resets through Redis TTL alone.
    _FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local window = tonumber(ARGV[1])

local current = redis.call('INCR', key)
if current == 1 then
  redis.call('EXPIRE', key, window)
end

local ttl = redis.call('TTL', key)
if ttl < 0 then
  redis.call('EXPIRE', key, window)
  ttl = window
end
return {current, ttl}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client avoids binding the async pool to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def exists(self, key: str) -> bool:
        return bool(await self.client.exists(key))

    async def create_if_absent(self, key: str, value: str, ttl_seconds: float) -> bool:
        """SET NX EX; True only for the caller that created the key."""
        created = await self.client.set(key, value, ex=_clamp_ttl(ttl_seconds), nx=True)
        return bool(created)

    async def set(self, key: str, value: str, ttl_seconds: float) -> None:
        await self.client.set(key, value, ex=_clamp_ttl(ttl_seconds))

    async def hit_window(self, key: str, window_seconds: int) -> Tuple[int, int]:
        """Count one request against ``key``; returns (count_in_window, seconds_left)."""
        current, ttl = await self._fixed_window(keys=[key], args=[_clamp_ttl(window_seconds)])
        return int(current), int(ttl)

    async def close(self) -> None:
        """Close the connection pool when shutting down or resetting the runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    under pytest, while exposing the same awaitable surface as RedisCache.
    """

    def __init__(
        self, redis_url: str, *, socket_timeout: float = RedisCache.DEFAULT_OPERATION_TIMEOUT
    ):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self._sync_client.register_script(
            RedisCache._FIXED_WINDOW_SCRIPT
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def exists(self, key: str) -> bool:
        return bool(self._sync_client.exists(key))

    async def create_if_absent(self, key: str, value: str, ttl_seconds: float) -> bool:
        return bool(self._sync_client.set(key, value, ex=_clamp_ttl(ttl_seconds), nx=True))

    async def set(self, key: str, value: str, ttl_seconds: float) -> None:
        self._sync_client.set(key, value, ex=_clamp_ttl(ttl_seconds))

    async def hit_window(self, key: str, window_seconds: int) -> Tuple[int, int]:
        current, ttl = self._fixed_window(keys=[key], args=[_clamp_ttl(window_seconds)])
        return int(current), int(ttl)

    async def close(self) -> None:
        self._sync_client.close()
