"""Connection pool management.

This module provides a lazily-initialized async Redis connection pool
shared by every component that needs Redis (currently the Redis-backed
session store).
"""

from typing import Optional

import redis.asyncio as redis
import structlog

from ..config import RedisConfig

logger = structlog.get_logger(__name__)


def _safe_url(url: str) -> str:
    """Strip credentials from a Redis URL for logging."""
    return url.split("@")[-1] if "@" in url else url


class RedisPool:
    """Centralized async Redis connection pool.

    Usage:
        pool = RedisPool(settings.redis)
        client = pool.get_client()
        await client.set("key", "value")
    """

    def __init__(self, config: RedisConfig):
        self._config = config
        self._pool: Optional[redis.ConnectionPool] = None
        self._client: Optional[redis.Redis] = None
        self._initialized = False

    def _initialize(self) -> None:
        """Initialize the connection pool lazily."""
        if self._initialized:
            return

        redis_url = self._config.get_url()
        try:
            self._pool = redis.ConnectionPool.from_url(
                redis_url,
                max_connections=self._config.redis_max_connections,
                decode_responses=True,
                socket_timeout=float(self._config.redis_socket_timeout),
                socket_connect_timeout=float(self._config.redis_socket_connect_timeout),
                retry_on_timeout=True,
            )
        except Exception as e:
            logger.error(
                "Failed to initialize Redis pool", url=_safe_url(redis_url), error=str(e)
            )
            raise

        self._client = redis.Redis(connection_pool=self._pool)
        self._initialized = True
        logger.info(
            "Redis connection pool initialized",
            max_connections=self._config.redis_max_connections,
            url=_safe_url(redis_url),
        )

    def get_client(self) -> redis.Redis:
        """Get an async Redis client from the shared pool.

        Returns:
            Async Redis client instance connected to the shared pool
        """
        if not self._initialized:
            self._initialize()
        assert self._client is not None, "Redis client not initialized"
        return self._client

    @property
    def pool_stats(self) -> dict:
        """Get connection pool statistics."""
        if not self._pool:
            return {"initialized": False}

        return {
            "initialized": True,
            "max_connections": self._pool.max_connections,
        }

    async def close(self) -> None:
        """Close the connection pool and release all connections."""
        if self._client:
            await self._client.aclose()
            logger.info("Redis connection pool closed")
        self._pool = None
        self._client = None
        self._initialized = False
