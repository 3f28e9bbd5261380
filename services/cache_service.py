"""Caching service with Redis backend and in-process fallback."""

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Dict
import structlog
import redis.asyncio as redis
from config import settings

logger = structlog.get_logger()


class CacheService:
    """Shared key-value cache with Redis backend.

    Every operation absorbs Redis errors and falls back to a local TTL
    dictionary, so callers never fail because the cache is unreachable.
    """

    def __init__(self, redis_client: Optional[redis.Redis] = None, default_ttl: Optional[int] = None):
        self.redis_client: Optional[redis.Redis] = redis_client
        self.local_cache: Dict[str, Dict[str, Any]] = {}
        self.cache_stats = {
            "hits": 0,
            "misses": 0,
            "sets": 0,
            "deletes": 0
        }
        self.default_ttl = default_ttl or settings.cache_default_ttl

    async def initialize(self):
        """Initialize Redis connection."""
        try:
            if settings.redis_url:
                self.redis_client = redis.from_url(
                    settings.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                    socket_connect_timeout=5,
                    socket_timeout=5
                )
                # Test connection
                await self.redis_client.ping()
                logger.info("Redis cache initialized successfully")
            else:
                logger.info("Redis not configured, using local cache only")
        except Exception as e:
            logger.warning("Failed to connect to Redis, falling back to local cache", error=str(e))
            self.redis_client = None

    async def close(self):
        """Close the Redis connection pool."""
        if self.redis_client:
            try:
                await self.redis_client.aclose()
            except Exception as e:
                logger.warning("Failed to close Redis connection", error=str(e))
            self.redis_client = None

    async def get(self, key: str, default: Any = None) -> Any:
        """Get value from cache."""
        # Try Redis first
        if self.redis_client:
            try:
                value = await self.redis_client.get(key)
                if value is not None:
                    self.cache_stats["hits"] += 1
                    return json.loads(value)
            except Exception as e:
                logger.warning("Redis get failed", key=key, error=str(e))

        # Fallback to local cache
        if key in self.local_cache:
            cache_entry = self.local_cache[key]
            if cache_entry["expires_at"] > datetime.now(timezone.utc):
                self.cache_stats["hits"] += 1
                return cache_entry["value"]
            else:
                # Expired, remove from local cache
                del self.local_cache[key]

        self.cache_stats["misses"] += 1
        return default

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """Set value in cache."""
        ttl = ttl or self.default_ttl
        try:
            serialized_value = json.dumps(value, default=str)
        except (TypeError, ValueError) as e:
            logger.error("Cache value is not serializable", key=key, error=str(e))
            return False

        # Try Redis first
        if self.redis_client:
            try:
                await self.redis_client.set(key, serialized_value, ex=ttl)
                self.cache_stats["sets"] += 1
                return True
            except Exception as e:
                logger.warning("Redis set failed", key=key, error=str(e))

        # Fallback to local cache
        self.local_cache[key] = {
            "value": json.loads(serialized_value),
            "expires_at": datetime.now(timezone.utc) + timedelta(seconds=ttl)
        }
        self.cache_stats["sets"] += 1

        # Clean up expired local cache entries periodically
        if len(self.local_cache) % 100 == 0:
            self._cleanup_local_cache()

        return True

    async def delete(self, key: str) -> bool:
        """Delete value from cache."""
        deleted = False

        if self.redis_client:
            try:
                result = await self.redis_client.delete(key)
                deleted = result > 0
            except Exception as e:
                logger.warning("Redis delete failed", key=key, error=str(e))

        # Also remove from local cache
        if key in self.local_cache:
            del self.local_cache[key]
            deleted = True

        if deleted:
            self.cache_stats["deletes"] += 1

        return deleted

    async def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        stats = dict(self.cache_stats)
        stats["local_cache_size"] = len(self.local_cache)
        stats["hit_rate"] = (
            stats["hits"] / (stats["hits"] + stats["misses"]) * 100
            if (stats["hits"] + stats["misses"]) > 0 else 0
        )

        if self.redis_client:
            try:
                redis_info = await self.redis_client.info("memory")
                stats["redis_memory_used"] = redis_info.get("used_memory_human", "N/A")
                stats["redis_connected"] = True
            except Exception:
                stats["redis_connected"] = False
        else:
            stats["redis_connected"] = False

        return stats

    def _cleanup_local_cache(self):
        """Clean up expired entries from local cache."""
        now = datetime.now(timezone.utc)
        expired_keys = [
            key for key, entry in self.local_cache.items()
            if entry["expires_at"] <= now
        ]

        for key in expired_keys:
            del self.local_cache[key]

        if expired_keys:
            logger.debug("Cleaned up expired cache entries", count=len(expired_keys))


# Global cache service instance
cache_service = CacheService()
