"""Unit tests for RedisCache key layout, using an in-process client double."""

from datetime import datetime, timedelta, timezone

import pytest

from authkernel.service.rbac import RedisPermissionCache
from authkernel.storage.redis_cache import RedisCache


class FakeAsyncRedis:
    def __init__(self):
        self.values = {}
        self.expiry = {}

    async def set(self, key, value, ex=None):
        self.values[key] = value
        self.expiry[key] = ex

    async def get(self, key):
        return self.values.get(key)

    async def exists(self, key):
        return 1 if key in self.values else 0

    async def delete(self, key):
        self.values.pop(key, None)

    async def aclose(self):
        self.values.clear()


class FakeScript:
    def __init__(self, client):
        self.client = client

    async def __call__(self, keys, args):
        key = keys[0]
        current = int(self.client.values.get(key, 0)) + 1
        self.client.values[key] = str(current)
        if current == 1:
            self.client.expiry[key] = args[0]
        return current


@pytest.fixture
def cache():
    cache = RedisCache("redis://localhost:6379/15", key_prefix="shop")
    cache.client = FakeAsyncRedis()
    cache._window_counter = FakeScript(cache.client)
    return cache


class TestRedisCache:
    """Tests for RedisCache."""

    def test_ttl_until_rounds_up(self):
        now = datetime(2026, 3, 1, tzinfo=timezone.utc)

        assert RedisCache.ttl_until(now + timedelta(seconds=9.2), now) == 10
        assert RedisCache.ttl_until(now - timedelta(seconds=5), now) == 1
        assert RedisCache.ttl_until((now + timedelta(seconds=30)).replace(tzinfo=None), now) == 30

    @pytest.mark.asyncio
    async def test_blacklist_keys_are_prefixed(self, cache):
        await cache.blacklist_token("jti-1", 60)

        assert cache.client.values == {"shop:auth:token:blacklist:jti-1": "1"}
        assert await cache.is_token_blacklisted("jti-1") is True
        await cache.remove_blacklisted_token("jti-1")
        assert await cache.is_token_blacklisted("jti-1") is False

    @pytest.mark.asyncio
    async def test_zero_ttl_is_not_written(self, cache):
        await cache.blacklist_token("jti-1", 0)

        assert cache.client.values == {}

    @pytest.mark.asyncio
    async def test_login_failure_window(self, cache):
        assert await cache.increment_login_failures("a@example.com", 900) == 1
        assert await cache.increment_login_failures("a@example.com", 900) == 2

        assert await cache.get_login_failures("a@example.com") == 2
        assert cache.client.expiry["shop:auth:brute-force:a@example.com"] == 900
        await cache.reset_login_failures("a@example.com")
        assert await cache.get_login_failures("a@example.com") == 0

    @pytest.mark.asyncio
    async def test_permission_cache_round_trip(self, cache):
        permissions = RedisPermissionCache(cache, 120)

        assert await permissions.get("u1") is None
        await permissions.set("u1", ["orders:read", "report:*"])
        assert await permissions.get("u1") == ["orders:read", "report:*"]
        assert cache.client.expiry["shop:auth:rbac:permissions:u1"] == 120
        await permissions.delete("u1")
        assert await permissions.get("u1") is None
