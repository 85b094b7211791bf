from __future__ import annotations

import logging
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..settings import get_settings

logger = logging.getLogger(__name__)


class RedisCrudService:
    """Async key operations against a Redis instance."""

    def __init__(self, url: str) -> None:
        """Create a Redis client for the given URL (e.g. redis://localhost:6379/0)."""
        self._url = url
        self._client: Redis[Any] | None = None

    async def connect(self) -> None:
        """Establish connection to Redis. Idempotent."""
        if self._client is not None:
            return
        self._client = Redis.from_url(
            self._url,
            decode_responses=True,
        )
        try:
            await self._client.ping()
            logger.info("Redis connection established: %s", self._url.split("@")[-1])
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis ping failed: %s", e)
            await self._client.aclose()
            self._client = None
            raise

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.debug("Redis connection closed")

    @property
    def client(self) -> Redis[Any] | None:
        """Return the underlying Redis client, or None if not connected."""
        return self._client

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool | None:
        """Set key only if it does not exist yet, expiring after ttl_seconds.

        Returns True if the key was written, False if it already existed and
        None when Redis is not connected or the command failed.
        """
        if self._client is None:
            return None
        try:
            written = await self._client.set(key, value, nx=True, ex=max(1, ttl_seconds))
            return bool(written)
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis set-if-absent %s failed: %s", key, e)
            return None


def get_redis_crud_service() -> RedisCrudService | None:
    """Return a Redis service if redis_url is configured, else None."""
    settings = get_settings()
    if not settings.redis_url or not settings.redis_url.strip():
        return None
    return RedisCrudService(settings.redis_url.strip())
