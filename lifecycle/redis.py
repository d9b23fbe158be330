"""
Redis client configuration using redis-py (asyncio).

Used for the dashboard metrics cache and for cross-process stage locks.
Neither is required: callers treat a missing client as "no cache, local
locks only".
"""

from typing import Optional
import logging

from redis import asyncio as aioredis
from redis.asyncio.client import Redis

from lifecycle.config import settings

logger = logging.getLogger(__name__)


class RedisClient:
    """Async Redis client wrapper."""

    _client: Optional[Redis] = None

    @classmethod
    def is_configured(cls) -> bool:
        return bool(settings.redis_url)

    @classmethod
    def get_client(cls) -> Redis:
        """Get or create Redis client."""
        if cls._client is None:
            if not settings.redis_url:
                raise RuntimeError("Redis not configured. Set REDIS_URL environment variable.")

            cls._client = aioredis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_timeout=5.0,
                health_check_interval=30,
            )
            logger.info("Redis client initialized")

        return cls._client

    @classmethod
    async def close(cls):
        """Close Redis client."""
        if cls._client:
            await cls._client.aclose()
            cls._client = None
            logger.info("Redis client closed")


def get_optional_redis() -> Optional[Redis]:
    """Redis client when configured, otherwise None."""
    if not RedisClient.is_configured():
        return None
    return RedisClient.get_client()
