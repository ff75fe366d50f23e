"""Cooldown claims against a stubbed Redis client."""

from unittest.mock import AsyncMock, MagicMock

from eguard.storage.redis_cache import RedisCache, SyncRedisCache, _cooldown_key


def test_key_hides_subject():
    key = _cooldown_key("two_factor", "7")
    assert key.startswith("cooldown:two_factor:")
    assert key != _cooldown_key("two_factor", "8")
    assert not key.endswith(":7")


class TestAsyncCache:
    """redis.asyncio backed cache."""

    def _cache(self):
        cache = RedisCache("redis://localhost:6379/0")
        cache.client = AsyncMock()
        return cache

    async def test_free_window_is_claimed(self):
        cache = self._cache()
        cache.client.set.return_value = True

        assert await cache.claim_cooldown("two_factor", "7", 180) == (True, 0)
        cache.client.set.assert_awaited_once_with(_cooldown_key("two_factor", "7"), "1", nx=True, ex=180)

    async def test_live_window_reports_remaining(self):
        cache = self._cache()
        cache.client.set.return_value = None
        cache.client.ttl.return_value = 42

        assert await cache.claim_cooldown("two_factor", "7", 180) == (False, 42)

    async def test_expiring_key_reports_at_least_one_second(self):
        cache = self._cache()
        cache.client.set.return_value = None
        cache.client.ttl.return_value = -2

        assert await cache.claim_cooldown("two_factor", "7", 180) == (False, 1)

    async def test_release_deletes_key(self):
        cache = self._cache()
        await cache.release_cooldown("two_factor", "7")
        cache.client.delete.assert_awaited_once_with(_cooldown_key("two_factor", "7"))


class TestSyncCache:
    """Blocking client used in test mode."""

    async def test_claim_and_release(self):
        cache = SyncRedisCache("redis://localhost:6379/0")
        cache.client = MagicMock()
        cache.client.set.side_effect = [True, None]
        cache.client.ttl.return_value = 100

        assert await cache.claim_cooldown("two_factor", "7", 0) == (True, 0)
        assert cache.client.set.call_args.kwargs["ex"] == 1
        assert await cache.claim_cooldown("two_factor", "7", 180) == (False, 100)

        await cache.release_cooldown("two_factor", "7")
        cache.client.delete.assert_called_once_with(_cooldown_key("two_factor", "7"))
