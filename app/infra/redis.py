"""
Redis Connection Management

Shared Redis connection backing the agent presence registry.

Every worker process talks to the same Redis, so the registry's sets and
per-agent hashes are the one place presence lives. The connection retries
with exponential backoff; callers get None (not an exception) when Redis is
unreachable and decide for themselves whether that is fatal.
"""

import logging
from typing import Optional

import redis.asyncio as redis
from redis.asyncio import Redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError, TimeoutError, RedisError

from app.config import settings

logger = logging.getLogger(__name__)

# Namespace for every key we own (several deployments may share one Redis)
APP_PREFIX = "callrouter:v1:"


def namespaced(*parts: str) -> str:
    """Build a key under APP_PREFIX, e.g. namespaced("presence", "agents")."""
    return APP_PREFIX + ":".join(parts)


class RedisClient:
    """
    Process-wide Redis connection.

    The client is created lazily on first use and pinged before it is
    handed out. A failed ping leaves no client behind, so the next caller
    tries again.
    """

    _client: Optional[Redis] = None
    _connected: bool = False

    @classmethod
    async def get_client(cls) -> Optional[Redis]:
        """
        Get or create the Redis client.

        Returns:
            Redis client, or None if Redis cannot be reached
        """
        if cls._client is not None and cls._connected:
            return cls._client

        try:
            retry = Retry(ExponentialBackoff(), retries=settings.redis_connect_retries)
            cls._client = redis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=settings.redis_socket_timeout_seconds,
                socket_timeout=settings.redis_socket_timeout_seconds,
                retry_on_timeout=True,
                retry=retry,
            )
            await cls._client.ping()
            cls._connected = True
            logger.info(f"Redis connected for presence ({APP_PREFIX})")
            return cls._client

        except (ConnectionError, TimeoutError, RedisError) as e:
            logger.error(f"Failed to connect to Redis: {e}")
            cls._connected = False
            cls._client = None
            return None

    @classmethod
    async def close(cls) -> None:
        """Close the connection pool."""
        if cls._client is None:
            return
        try:
            await cls._client.aclose()
        except RedisError as e:
            logger.error(f"Error closing Redis connection: {e}")
        finally:
            cls._client = None
            cls._connected = False

    @classmethod
    def is_connected(cls) -> bool:
        return cls._connected


async def get_redis() -> Optional[Redis]:
    """Shared Redis client, or None while Redis is unreachable."""
    return await RedisClient.get_client()


async def check_redis_health() -> bool:
    """Ping Redis for the readiness probe."""
    client = await get_redis()
    if client is None:
        return False
    try:
        await client.ping()
        return True
    except RedisError as e:
        logger.error(f"Redis health check failed: {e}")
        return False
