"""Redis-backed caching for read-mostly data."""

from .redis_client import RedisClient, redis_client, get_config_cache

__all__ = ["RedisClient", "redis_client", "get_config_cache"]
