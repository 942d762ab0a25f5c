"""
Unit tests for the provenance view cache.
"""

import json
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from redis.exceptions import ConnectionError as RedisConnectionError

from shared.errors import StoreUnavailableError
from service_entitlement_sync.app.cache.redis_cache import SET_IF_GENERATION_SCRIPT, AssignmentViewCache
from service_entitlement_sync.app.sync.models import ItemKind, Provenance


class TestAssignmentViewCache:
    """Test cases for AssignmentViewCache."""

    @pytest.fixture
    def redis_client(self):
        return AsyncMock()

    @pytest.fixture
    def cache(self, redis_client):
        cache = AssignmentViewCache("redis://localhost:6379/0", ttl_seconds=60)
        cache.redis = redis_client
        return cache

    @pytest.fixture
    def view(self):
        return {
            ItemKind.PROGRAM: {"p1": Provenance.DUAL, "p2": Provenance.USERTYPE},
            ItemKind.COURSE: {"c1": Provenance.MANUAL},
        }

    @pytest.mark.asyncio
    async def test_start_pings_redis(self, redis_client):
        cache = AssignmentViewCache("redis://localhost:6379/0")

        with patch("service_entitlement_sync.app.cache.redis_cache.redis.from_url", return_value=redis_client):
            await cache.start()

        redis_client.ping.assert_awaited_once()
        assert cache.redis is redis_client

    @pytest.mark.asyncio
    async def test_start_failure(self, redis_client):
        redis_client.ping.side_effect = RedisConnectionError("refused")
        cache = AssignmentViewCache("redis://localhost:6379/0")

        with patch("service_entitlement_sync.app.cache.redis_cache.redis.from_url", return_value=redis_client):
            with pytest.raises(StoreUnavailableError):
                await cache.start()

        assert cache.redis is None

    @pytest.fixture
    def pipe(self, redis_client):
        pipe = MagicMock()
        pipe.__aenter__.return_value = pipe
        pipe.__aexit__.return_value = False
        pipe.execute = AsyncMock(return_value=[1, True, 1, True, 2])
        redis_client.pipeline = MagicMock(return_value=pipe)
        return pipe

    @pytest.mark.asyncio
    async def test_set_user_entitlements(self, cache, redis_client, view):
        redis_client.eval.return_value = 1

        assert await cache.set_user_entitlements("u1", view, "4") is True

        script, numkeys, generation_key, key, generation, ttl, payload = redis_client.eval.await_args.args
        assert script == SET_IF_GENERATION_SCRIPT
        assert numkeys == 2
        assert generation_key == "entitlements:generation:u1"
        assert key == "entitlements:user:u1"
        assert generation == "4"
        assert ttl == 60
        assert json.loads(payload) == {
            "program": {"p1": "dual", "p2": "usertype"},
            "course": {"c1": "manual"},
        }

    @pytest.mark.asyncio
    async def test_set_skipped_when_generation_moved(self, cache, redis_client, view):
        redis_client.eval.return_value = 0

        assert await cache.set_user_entitlements("u1", view, "4") is False

    @pytest.mark.asyncio
    async def test_set_without_generation_is_skipped(self, cache, redis_client, view):
        assert await cache.set_user_entitlements("u1", view, None) is False
        redis_client.eval.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_get_generation(self, cache, redis_client):
        redis_client.get.return_value = None
        assert await cache.get_generation("u1") == "0"

        redis_client.get.return_value = "7"
        assert await cache.get_generation("u1") == "7"
        redis_client.get.assert_awaited_with("entitlements:generation:u1")

    @pytest.mark.asyncio
    async def test_get_user_entitlements(self, cache, redis_client, view):
        redis_client.get.return_value = json.dumps({
            "program": {"p1": "dual", "p2": "usertype"},
            "course": {"c1": "manual"},
        })

        assert await cache.get_user_entitlements("u1") == view
        redis_client.get.assert_awaited_once_with("entitlements:user:u1")

    @pytest.mark.asyncio
    async def test_get_miss(self, cache, redis_client):
        redis_client.get.return_value = None

        assert await cache.get_user_entitlements("u1") is None

    @pytest.mark.asyncio
    async def test_errors_are_misses(self, cache, redis_client, view):
        redis_client.get.side_effect = RedisConnectionError("reset")
        redis_client.eval.side_effect = RedisConnectionError("reset")

        assert await cache.get_user_entitlements("u1") is None
        assert await cache.get_generation("u1") is None
        assert await cache.set_user_entitlements("u1", view, "0") is False

    @pytest.mark.asyncio
    async def test_corrupt_entry_is_a_miss(self, cache, redis_client):
        redis_client.get.return_value = '{"program": {"p1": "bogus"}}'

        assert await cache.get_user_entitlements("u1") is None

    @pytest.mark.asyncio
    async def test_invalidate_users(self, cache, pipe):
        assert await cache.invalidate_users(["u2", "u1", "u2"]) == 2

        assert [c.args for c in pipe.incr.call_args_list] == [
            ("entitlements:generation:u1",), ("entitlements:generation:u2",)
        ]
        pipe.expire.assert_called_with("entitlements:generation:u2", AssignmentViewCache.GENERATION_TTL_SECONDS)
        pipe.delete.assert_called_once_with("entitlements:user:u1", "entitlements:user:u2")
        pipe.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_invalidate_nothing(self, cache, pipe):
        assert await cache.invalidate_users(set()) == 0
        pipe.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_invalidation_bypasses_cache(self, cache, redis_client, pipe):
        pipe.execute.side_effect = RedisConnectionError("reset")

        assert await cache.invalidate_users(["u1"]) == 0
        assert cache.pending_invalidation == {"u1"}

        # Redis is still failing, so u1 is neither served nor written.
        assert await cache.get_user_entitlements("u1") is None
        assert await cache.get_generation("u1") is None
        redis_client.get.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_pending_invalidation_retried_on_next_write(self, cache, pipe):
        pipe.execute.side_effect = [RedisConnectionError("reset"), [1, True, 1, True, 1]]

        await cache.invalidate_users(["u1"])
        assert await cache.invalidate_users(["u2"]) == 1

        assert cache.pending_invalidation == set()
        pipe.delete.assert_called_with("entitlements:user:u1", "entitlements:user:u2")

    @pytest.mark.asyncio
    async def test_pending_invalidation_retried_on_read(self, cache, redis_client, pipe):
        pipe.execute.side_effect = [RedisConnectionError("reset"), [1, True, 0]]
        redis_client.get.return_value = None

        await cache.invalidate_users(["u1"])

        assert await cache.get_user_entitlements("u1") is None
        assert cache.pending_invalidation == set()
        redis_client.get.assert_awaited_once_with("entitlements:user:u1")

    @pytest.mark.asyncio
    async def test_disabled_cache_is_noop(self, view):
        cache = AssignmentViewCache("redis://localhost:6379/0")

        assert await cache.get_user_entitlements("u1") is None
        assert await cache.get_generation("u1") is None
        assert await cache.set_user_entitlements("u1", view, "0") is False
        assert await cache.invalidate_users(["u1"]) == 0
        assert await cache.get_cache_stats() == {"enabled": False}
        assert await cache.health_check() is False

    @pytest.mark.asyncio
    async def test_cache_stats(self, cache, redis_client):
        redis_client.info.return_value = {
            "redis_version": "7.2.0",
            "used_memory_human": "1.5M",
            "keyspace_hits": 30,
            "keyspace_misses": 10,
        }

        stats = await cache.get_cache_stats()

        assert stats["enabled"] is True
        assert stats["hit_rate"] == 0.75

    @pytest.mark.asyncio
    async def test_stop_closes_client(self, cache, redis_client):
        await cache.stop()

        redis_client.aclose.assert_awaited_once()
        assert cache.redis is None
