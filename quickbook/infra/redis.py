"""
Redis Connection Management

Shared client for conversation state, in-flight event claims and
per-conversation locks. Redis is optional: when it is unreachable callers
get None and keep state in process memory. Failed connects are not retried
on every message; the next attempt waits for the reconnect interval.
"""

import logging
import time
from typing import Optional

import redis.asyncio as redis
from redis.asyncio import Redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError, TimeoutError, RedisError

from quickbook.config import settings

logger = logging.getLogger(__name__)

# Namespace for every key this service writes
APP_PREFIX = "quickbook:v1:"


def namespaced(*parts: str) -> str:
    """Build a key under APP_PREFIX, e.g. namespaced("conversation", "state", "")."""
    return APP_PREFIX + ":".join(parts)


class RedisClient:
    """
    Process-wide Redis connection.

    The client is created lazily on first use and dropped on any connect
    failure; _retry_after holds off reconnects while Redis is down.
    """

    _client: Optional[Redis] = None
    _retry_after: float = 0.0

    @classmethod
    async def get_client(cls) -> Optional[Redis]:
        """
        Get the client, connecting if needed.

        Returns:
            Redis client, or None while Redis is unavailable
        """
        if cls._client is not None:
            return cls._client

        if time.monotonic() < cls._retry_after:
            return None

        client = redis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=settings.redis_socket_timeout_seconds,
            socket_timeout=settings.redis_socket_timeout_seconds,
            retry_on_timeout=True,
            retry=Retry(ExponentialBackoff(cap=1.0), retries=2),
        )
        try:
            await client.ping()
        except (ConnectionError, TimeoutError, RedisError) as e:
            cls._retry_after = time.monotonic() + settings.redis_reconnect_interval_seconds
            logger.error(
                f"Redis unavailable ({e}); using process memory for "
                f"{settings.redis_reconnect_interval_seconds:.0f}s"
            )
            await client.aclose()
            return None

        cls._client = client
        cls._retry_after = 0.0
        logger.info("Redis connection established")
        return client

    @classmethod
    def mark_unavailable(cls) -> None:
        """Drop the client after a command failure so the next call reconnects."""
        cls._client = None
        cls._retry_after = time.monotonic() + settings.redis_reconnect_interval_seconds

    @classmethod
    async def close(cls) -> None:
        """Close the connection pool."""
        if cls._client is None:
            return
        try:
            await cls._client.aclose()
            logger.info("Redis connection closed")
        except RedisError as e:
            logger.error(f"Error closing Redis connection: {e}")
        finally:
            cls._client = None
            cls._retry_after = 0.0


async def get_redis() -> Optional[Redis]:
    """Shared Redis client, or None if Redis is unavailable."""
    return await RedisClient.get_client()


async def check_redis_health() -> bool:
    """Ping Redis for the readiness probe."""
    client = await get_redis()
    if client is None:
        return False

    try:
        await client.ping()
    except RedisError as e:
        logger.error(f"Redis health check failed: {e}")
        RedisClient.mark_unavailable()
        return False
    return True
