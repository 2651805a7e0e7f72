"""Redis connection and caching utilities.

Redis client is created lazily to avoid import-time side effects.
Cache failures are logged and reported as misses so an unavailable
Redis never fails a request.
"""

import json
from datetime import timedelta
from typing import Any, List, Optional

import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError

logger = structlog.get_logger()

# Redis client - initialized lazily
_redis_client: Optional[redis.Redis] = None


async def get_redis() -> redis.Redis:
    """Get Redis client instance.

    Client is created on first access, not at import time.
    """
    global _redis_client
    if _redis_client is None:
        from app.core.config import get_settings
        settings = get_settings()
        _redis_client = redis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
    return _redis_client


async def close_redis() -> None:
    """Close Redis connection."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None


async def redis_status() -> str:
    """Ping Redis and describe the result for health reporting."""
    try:
        client = await get_redis()
        await client.ping()
    except (RedisError, OSError) as e:
        return f"unhealthy: {str(e)[:50]}"
    return "healthy"


class Cache:
    """Cache utility class for Redis operations."""

    def __init__(self, prefix: str = "compoundefi"):
        self.prefix = prefix

    def _key(self, key: str) -> str:
        """Generate prefixed cache key."""
        return f"{self.prefix}:{key}"

    async def get(self, key: str) -> Optional[Any]:
        """Get value from cache."""
        try:
            client = await get_redis()
            value = await client.get(self._key(key))
        except (RedisError, OSError) as e:
            logger.warning("Cache read failed", key=key, error=str(e))
            return None
        if value is None:
            return None
        return json.loads(value)

    async def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[timedelta] = None
    ) -> None:
        """Set value in cache with optional TTL."""
        serialized = json.dumps(value, default=str)
        try:
            client = await get_redis()
            if ttl:
                await client.setex(self._key(key), ttl, serialized)
            else:
                await client.set(self._key(key), serialized)
        except (RedisError, OSError) as e:
            logger.warning("Cache write failed", key=key, error=str(e))

    async def delete(self, key: str) -> None:
        """Delete key from cache."""
        try:
            client = await get_redis()
            await client.delete(self._key(key))
        except (RedisError, OSError) as e:
            logger.warning("Cache delete failed", key=key, error=str(e))

    async def delete_pattern(self, pattern: str) -> List[str]:
        """Delete every key matching a glob pattern.

        Returns the unprefixed keys that were removed.
        """
        removed: List[str] = []
        try:
            client = await get_redis()
            async for full_key in client.scan_iter(match=self._key(pattern)):
                await client.delete(full_key)
                removed.append(full_key[len(self.prefix) + 1:])
        except (RedisError, OSError) as e:
            logger.warning("Cache pattern delete failed", pattern=pattern, error=str(e))
        return removed


# Default cache instance
cache = Cache()
