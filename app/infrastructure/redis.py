"""Redis client wrapper for the webhook dedup fast path.

Redis is an optimisation only: when it is disabled or unreachable every
claim succeeds and the database dedup fence decides.
"""

import logging

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from app.settings import settings

logger = logging.getLogger(__name__)


class RedisClient:
    """Redis client wrapper for async operations."""

    def __init__(self) -> None:
        self._client: aioredis.Redis | None = None
        self._enabled: bool = settings.redis_enabled

    @property
    def enabled(self) -> bool:
        return self._enabled and self._client is not None

    async def connect(self) -> None:
        """Connect to Redis."""
        if not self._enabled:
            logger.info("Redis disabled - skipping connection")
            return
        if self._client is None:
            try:
                self._client = aioredis.from_url(
                    settings.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                )
                await self._client.ping()
                logger.info("Redis connected successfully")
            except RedisError as e:
                logger.warning(f"Redis connection failed: {e}. Continuing without Redis.")
                self._client = None
                self._enabled = False

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def setnx(self, key: str, value: str, ttl: int) -> bool:
        """Set key only if absent.

        Args:
            key: Redis key
            value: Value to set
            ttl: Time-to-live in seconds

        Returns:
            True if the key was set (first claim), False if it already existed
        """
        if not self.enabled:
            return True
        try:
            return bool(await self._client.set(key, value, nx=True, ex=ttl))
        except RedisError as e:
            logger.warning(f"Redis SETNX failed for {key}: {e}")
            return True

    async def delete(self, key: str) -> int:
        """Delete key from Redis.

        Returns:
            Number of keys deleted
        """
        if not self.enabled:
            return 0
        try:
            return await self._client.delete(key)
        except RedisError as e:
            logger.warning(f"Redis DELETE failed for {key}: {e}")
            return 0


# Global Redis client instance
redis_client = RedisClient()
