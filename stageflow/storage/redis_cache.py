from __future__ import annotations

import redis.asyncio as aioredis
from redis import Redis


def inflight_key(session_id: str, node_id: str) -> str:
    return f"stage:inflight:{session_id}:{node_id}"


class RedisCache:
    """Thin Redis wrapper for cross-process in-flight stage markers."""

    # Compare-and-delete so a worker never releases another worker's marker
    _RELEASE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._release = self.client.register_script(self._RELEASE_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived synchronous client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def acquire_inflight(
        self, session_id: str, node_id: str, token: str, ttl_seconds: int
    ) -> bool:
        """Take the marker for a (session, node) pair; False when already held."""
        acquired = await self.client.set(
            inflight_key(session_id, node_id), token, nx=True, ex=max(1, ttl_seconds)
        )
        return bool(acquired)

    async def release_inflight(self, session_id: str, node_id: str, token: str) -> bool:
        released = await self._release(keys=[inflight_key(session_id, node_id)], args=[token])
        return bool(released)

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes async methods so they can be awaited
    uniformly like RedisCache.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._release = self._sync_client.register_script(RedisCache._RELEASE_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._sync_client.ping()

    async def acquire_inflight(
        self, session_id: str, node_id: str, token: str, ttl_seconds: int
    ) -> bool:
        acquired = self._sync_client.set(
            inflight_key(session_id, node_id), token, nx=True, ex=max(1, ttl_seconds)
        )
        return bool(acquired)

    async def release_inflight(self, session_id: str, node_id: str, token: str) -> bool:
        released = self._release(keys=[inflight_key(session_id, node_id)], args=[token])
        return bool(released)

    async def close(self) -> None:
        """Close Redis connection."""
        self._sync_client.close()
