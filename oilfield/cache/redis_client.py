"""
Redis client configuration and connection management.

Used as a read-through cache for the current game config snapshot. Every
operation degrades to a miss on Redis errors.
"""

from typing import Optional, Union

import redis.asyncio as redis
from redis.asyncio import Redis

import structlog

from oilfield.core.config import settings

logger = structlog.get_logger(__name__)


class RedisClient:
    """Async Redis client wrapper with key prefixing."""

    def __init__(self, url: Optional[str] = None, prefix: Optional[str] = None):
        self.url = url or settings.redis_url
        self.prefix = settings.redis_prefix if prefix is None else prefix
        self._client: Optional[Redis] = None
        self._pool: Optional[redis.ConnectionPool] = None

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def connect(self) -> None:
        """Establish Redis connection."""
        try:
            if self._client is None:
                self._pool = redis.ConnectionPool.from_url(
                    self.url,
                    decode_responses=True,
                    max_connections=20,
                    retry_on_timeout=True,
                )
                self._client = Redis(connection_pool=self._pool)

                await self._client.ping()
                logger.info("Redis connection established", url=self.url)

        except Exception as e:
            logger.error("Failed to connect to Redis", url=self.url, error=str(e))
            self._client = None
            raise

    async def disconnect(self) -> None:
        """Close Redis connection."""
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.info("Redis connection closed")

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    async def get(self, key: str) -> Optional[str]:
        """Get value by key."""
        if self._client is None:
            return None
        try:
            return await self._client.get(self._key(key))
        except Exception as e:
            logger.error("Redis GET failed", key=key, error=str(e))
            return None

    async def set(self, key: str, value: Union[str, bytes, int, float], ex: Optional[int] = None) -> bool:
        """Set key-value with optional expiration."""
        if self._client is None:
            return False
        try:
            return bool(await self._client.set(self._key(key), value, ex=ex))
        except Exception as e:
            logger.error("Redis SET failed", key=key, error=str(e))
            return False

    async def delete(self, *keys: str) -> int:
        """Delete one or more keys."""
        if self._client is None:
            return 0
        try:
            return await self._client.delete(*(self._key(k) for k in keys))
        except Exception as e:
            logger.error("Redis DELETE failed", keys=keys, error=str(e))
            return 0


# Global client, connected during application startup when caching is enabled
redis_client = RedisClient()


def get_config_cache() -> Optional[RedisClient]:
    """The config cache if enabled and connected, else None."""
    if settings.config_cache_enabled and redis_client.is_connected:
        return redis_client
    return None
