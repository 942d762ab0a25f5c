"""
Redis caching layer for per-user provenance views.
"""

import json
from typing import Any, Dict, Iterable, Optional, Set

import redis.asyncio as redis
from redis.exceptions import RedisError

from shared.errors import StoreUnavailableError
from shared.logging import get_logger
from ..sync.models import ItemKind, Provenance


# Stores the view only while the user's generation still matches the one
# read before the view was computed.
SET_IF_GENERATION_SCRIPT = """
local current = redis.call('GET', KEYS[1]) or '0'
if current ~= ARGV[1] then
    return 0
end
redis.call('SETEX', KEYS[2], ARGV[2], ARGV[3])
return 1
"""


class AssignmentViewCache:
    """Caches ``user_entitlements`` results keyed by user.

    Each user has a generation counter that every invalidation bumps. A reader
    takes the generation before computing a view and the view is stored only
    if no invalidation happened in between, so a view computed before a write
    is never cached after it. Users whose invalidation failed are not served
    from the cache until a later invalidation succeeds. Read failures are
    logged and treated as misses. When ``redis`` is ``None`` every method is
    a no-op.
    """

    USER_PREFIX = "entitlements:user:"
    GENERATION_PREFIX = "entitlements:generation:"
    GENERATION_TTL_SECONDS = 86400

    def __init__(self, redis_url: str, ttl_seconds: int = 300):
        self.redis_url = redis_url
        self.ttl_seconds = ttl_seconds
        self.logger = get_logger("entitlements.cache.redis")
        self.redis: Optional[redis.Redis] = None
        self.pending_invalidation: Set[str] = set()

    async def start(self):
        """Start the Redis cache."""
        try:
            self.redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
                health_check_interval=30
            )

            # Test connection
            await self.redis.ping()

            self.logger.info("Redis cache started")

        except (RedisError, OSError) as e:
            self.logger.error("Failed to start Redis cache", error=str(e))
            self.redis = None
            raise StoreUnavailableError(f"Redis start failed: {e}") from e

    async def stop(self):
        """Stop the Redis cache."""
        if self.redis:
            await self.redis.aclose()
            self.redis = None
            self.logger.info("Redis cache stopped")

    def _user_key(self, user_id: str) -> str:
        return f"{self.USER_PREFIX}{user_id}"

    def _generation_key(self, user_id: str) -> str:
        return f"{self.GENERATION_PREFIX}{user_id}"

    async def _is_stale(self, user_id: str) -> bool:
        """Retry pending invalidations and report whether the user still has one."""
        if self.pending_invalidation:
            await self.invalidate_users(())
        return user_id in self.pending_invalidation

    async def get_user_entitlements(self, user_id: str) -> Optional[Dict[ItemKind, Dict[str, Provenance]]]:
        """Get a cached provenance view."""
        if self.redis is None or await self._is_stale(user_id):
            return None

        try:
            cached_data = await self.redis.get(self._user_key(user_id))
            if not cached_data:
                return None

            data = json.loads(cached_data)
            self.logger.debug("Cache hit for user entitlements", user_id=user_id)
            return {
                ItemKind(kind): {item_id: Provenance(value) for item_id, value in items.items()}
                for kind, items in data.items()
            }

        except (RedisError, ValueError) as e:
            self.logger.error("Error getting cached entitlements", user_id=user_id, error=str(e))
            return None

    async def get_generation(self, user_id: str) -> Optional[str]:
        """Current generation of the user's view, or ``None`` when it must not be cached."""
        if self.redis is None or user_id in self.pending_invalidation:
            return None

        try:
            return await self.redis.get(self._generation_key(user_id)) or "0"

        except RedisError as e:
            self.logger.error("Error reading entitlement generation", user_id=user_id, error=str(e))
            return None

    async def set_user_entitlements(self, user_id: str, view: Dict[ItemKind, Dict[str, Provenance]],
                                    generation: Optional[str]) -> bool:
        """Cache a provenance view computed at ``generation``."""
        if self.redis is None or generation is None:
            return False

        try:
            data = {
                kind.value: {item_id: provenance.value for item_id, provenance in items.items()}
                for kind, items in view.items()
            }
            stored = await self.redis.eval(
                SET_IF_GENERATION_SCRIPT,
                2,
                self._generation_key(user_id),
                self._user_key(user_id),
                generation,
                self.ttl_seconds,
                json.dumps(data)
            )

            if not stored:
                self.logger.debug("Skipped caching outdated entitlements", user_id=user_id, generation=generation)
                return False

            self.logger.debug("Cached user entitlements", user_id=user_id, ttl=self.ttl_seconds)
            return True

        except RedisError as e:
            self.logger.error("Error caching entitlements", user_id=user_id, error=str(e))
            return False

    async def invalidate_users(self, user_ids: Iterable[str]) -> int:
        """Bump the users' generations and drop their cached views."""
        if self.redis is None:
            return 0

        users = sorted(set(user_ids) | self.pending_invalidation)
        if not users:
            return 0

        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                for user_id in users:
                    pipe.incr(self._generation_key(user_id))
                    pipe.expire(self._generation_key(user_id), self.GENERATION_TTL_SECONDS)
                pipe.delete(*[self._user_key(user_id) for user_id in users])
                results = await pipe.execute()

            self.pending_invalidation.difference_update(users)
            deleted = results[-1]
            self.logger.info("Invalidated user entitlements", users=len(users), deleted=deleted)
            return deleted

        except RedisError as e:
            self.pending_invalidation.update(users)
            self.logger.error("Error invalidating user entitlements", users=len(users), error=str(e))
            return 0

    async def get_cache_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        if self.redis is None:
            return {"enabled": False}

        try:
            info = await self.redis.info()
            return {
                "enabled": True,
                "redis_version": info.get("redis_version"),
                "used_memory": info.get("used_memory_human"),
                "keyspace_hits": info.get("keyspace_hits"),
                "keyspace_misses": info.get("keyspace_misses"),
                "hit_rate": self._calculate_hit_rate(info)
            }

        except RedisError as e:
            self.logger.error("Error getting cache stats", error=str(e))
            return {"enabled": True}

    def _calculate_hit_rate(self, info: Dict[str, Any]) -> float:
        """Calculate cache hit rate."""
        hits = info.get("keyspace_hits", 0)
        misses = info.get("keyspace_misses", 0)
        total = hits + misses

        if total == 0:
            return 0.0

        return hits / total

    async def health_check(self) -> bool:
        """Check Redis health."""
        if self.redis is None:
            return False
        try:
            await self.redis.ping()
            return True
        except (RedisError, OSError):
            return False
