"""Redis cache layer shared by the deal feed and universal search.

Every Redis failure surfaces as ``CacheUnavailable``; callers degrade to
cache-miss behaviour rather than failing the request.
"""

import hashlib
import json
from typing import Any, Iterable, Optional

import structlog
from redis.asyncio import Redis, from_url
from redis.exceptions import RedisError

from orben.config import settings
from orben.core.exceptions import CacheUnavailable

logger = structlog.get_logger(__name__)

FEED_VERSION_KEY = "deal:feed:version"


def deal_card_key(deal_id: Any) -> str:
    return f"deal:card:{deal_id}"


def feed_cache_key(version: int, **params: Any) -> str:
    """Key for one cached feed page under a given feed version.

    Args:
        version: Current value of the feed version counter
        **params: Query parameters that shape the page

    Returns:
        ``deal:feed:v{version}:{sha1(params)}``
    """
    canonical = json.dumps(params, sort_keys=True, default=str)
    digest = hashlib.sha1(canonical.encode("utf-8")).hexdigest()
    return f"deal:feed:v{version}:{digest}"


class CacheService:
    """Async Redis cache service.

    Provides key-value caching with TTL, counters and health checking.
    A pre-built client may be injected (tests pass an in-memory stand-in).
    """

    def __init__(self, redis_url: str, client: Optional[Redis] = None):
        """Initialize cache service.

        Args:
            redis_url: Redis connection URL (e.g., "redis://localhost:6379/0")
            client: Optional pre-built client
        """
        self.redis_url = redis_url
        self._redis: Optional[Redis] = client
        self.logger = logger.bind(service="cache_service")

    async def _get_redis(self) -> Redis:
        if self._redis is None:
            self._redis = from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
            )
            self.logger.info("redis_connection_created", url=self.redis_url)

        return self._redis

    def _unavailable(self, event: str, error: Exception, **context) -> CacheUnavailable:
        self.logger.error(event, error=str(error), **context)
        return CacheUnavailable(f"{event}: {error}")

    async def get(self, key: str) -> Optional[str]:
        """Get a value from cache.

        Args:
            key: Cache key

        Returns:
            Cached value as string, or None on a miss

        Raises:
            CacheUnavailable: If Redis cannot be reached
        """
        try:
            redis = await self._get_redis()
            value = await redis.get(key)
        except RedisError as e:
            raise self._unavailable("cache_get_failed", e, key=key) from e

        self.logger.debug("cache_hit" if value is not None else "cache_miss", key=key)
        return value

    async def set(self, key: str, value: str, ttl: int = 300) -> None:
        """Set a value with a TTL in seconds.

        Raises:
            CacheUnavailable: If Redis cannot be reached
        """
        try:
            redis = await self._get_redis()
            await redis.set(key, value, ex=ttl)
        except RedisError as e:
            raise self._unavailable("cache_set_failed", e, key=key) from e

        self.logger.debug("cache_set", key=key, ttl=ttl, value_length=len(value))

    async def get_json(self, key: str) -> Any:
        raw = await self.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            self.logger.warning("cache_value_not_json", key=key)
            return None

    async def set_json(self, key: str, value: Any, ttl: int = 300) -> None:
        await self.set(key, json.dumps(value, default=str), ttl=ttl)

    async def delete(self, key: str) -> bool:
        """Delete a key. Returns True if it existed."""
        try:
            redis = await self._get_redis()
            result = await redis.delete(key)
        except RedisError as e:
            raise self._unavailable("cache_delete_failed", e, key=key) from e

        self.logger.debug("cache_delete", key=key, deleted=bool(result))
        return bool(result)

    async def delete_many(self, keys: Iterable[str]) -> int:
        """Delete several keys at once. Returns the number that existed."""
        keys = list(keys)
        if not keys:
            return 0
        try:
            redis = await self._get_redis()
            deleted = await redis.delete(*keys)
        except RedisError as e:
            raise self._unavailable("cache_delete_failed", e, keys=len(keys)) from e

        self.logger.info("cache_keys_deleted", requested=len(keys), deleted=deleted)
        return int(deleted)

    async def incr(self, key: str) -> int:
        try:
            redis = await self._get_redis()
            return int(await redis.incr(key))
        except RedisError as e:
            raise self._unavailable("cache_incr_failed", e, key=key) from e

    async def get_feed_version(self) -> int:
        value = await self.get(FEED_VERSION_KEY)
        try:
            return int(value) if value is not None else 0
        except ValueError:
            return 0

    async def bump_feed_version(self) -> int:
        """Invalidate every cached feed page by moving to a new version."""
        version = await self.incr(FEED_VERSION_KEY)
        self.logger.info("feed_cache_version_bumped", version=version)
        return version

    async def health_check(self) -> bool:
        """Check Redis connectivity.

        Returns:
            True if Redis is healthy, False otherwise
        """
        try:
            redis = await self._get_redis()
            await redis.ping()
            return True
        except RedisError as e:
            self.logger.error("redis_health_check_failed", error=str(e))
            return False

    async def close(self) -> None:
        """Close Redis connection. Called on application shutdown."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None
            self.logger.info("redis_connection_closed")


# Global cache instance
_cache_instance: Optional[CacheService] = None


def get_cache_service() -> CacheService:
    """Get or create the global cache service instance.

    Returns:
        CacheService instance
    """
    global _cache_instance

    if _cache_instance is None:
        _cache_instance = CacheService(settings.REDIS_URL)
        logger.info("cache_service_initialized", redis_url=settings.REDIS_URL)

    return _cache_instance
