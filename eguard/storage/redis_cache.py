from __future__ import annotations

import hashlib
from typing import Tuple

import redis.asyncio as aioredis
from redis import Redis


def _cooldown_key(scope: str, subject: str) -> str:
    # Hash the subject so identities never appear in key names
    digest = hashlib.sha256(subject.encode()).hexdigest()
    return f"cooldown:{scope}:{digest}"


class RedisCache:
    """Thin Redis wrapper for cross-instance cooldown windows."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async pool is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def claim_cooldown(self, scope: str, subject: str, ttl_seconds: int) -> Tuple[bool, int]:
        """Atomically open a cooldown window.

        Returns ``(True, 0)`` when the window was free and is now claimed, or
        ``(False, remaining_seconds)`` while an earlier claim is still live.
        """
        key = _cooldown_key(scope, subject)
        claimed = await self.client.set(key, "1", nx=True, ex=max(int(ttl_seconds), 1))
        if claimed:
            return True, 0
        remaining = await self.client.ttl(key)
        return False, max(int(remaining), 1)

    async def release_cooldown(self, scope: str, subject: str) -> None:
        await self.client.delete(_cooldown_key(scope, subject))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Exposes the same awaitable API as ``RedisCache`` while talking to Redis
    through a blocking client, so no event loop is captured at construction.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self.client.ping()

    async def claim_cooldown(self, scope: str, subject: str, ttl_seconds: int) -> Tuple[bool, int]:
        key = _cooldown_key(scope, subject)
        if self.client.set(key, "1", nx=True, ex=max(int(ttl_seconds), 1)):
            return True, 0
        return False, max(int(self.client.ttl(key)), 1)

    async def release_cooldown(self, scope: str, subject: str) -> None:
        self.client.delete(_cooldown_key(scope, subject))

    async def close(self) -> None:
        self.client.close()
