"""Redis connection management for persisted token safety verdicts."""
import logging
from typing import Optional
from urllib.parse import urlparse

import redis.asyncio as redis

from ..config.settings import settings

logger = logging.getLogger(__name__)

# Global Redis client instance (None when persistence is disabled)
redis_client: Optional[redis.Redis] = None


def redis_enabled() -> bool:
    return bool(settings.redis_url)


async def get_redis() -> Optional[redis.Redis]:
    """Get the Redis client, or None when no REDIS_URL is configured."""
    if redis_client is None and redis_enabled():
        await init_redis()
    return redis_client


async def init_redis() -> None:
    """Initialize the Redis connection pool."""
    global redis_client

    if redis_client is not None:
        return

    redis_url = settings.redis_url
    if not redis_url:
        raise ValueError("Redis URL not configured")

    parsed_url = urlparse(redis_url)

    client = redis.Redis(
        host=parsed_url.hostname or "localhost",
        port=parsed_url.port or 6379,
        db=int(parsed_url.path[1:]) if parsed_url.path and len(parsed_url.path) > 1 else 0,
        password=parsed_url.password,
        username=parsed_url.username,
        encoding="utf-8",
        decode_responses=True,
        health_check_interval=30,
        socket_keepalive=True,
        retry_on_timeout=True,
        max_connections=10,
    )

    try:
        await client.ping()
    except redis.RedisError as e:
        logger.error(f"Redis connection failed: {e}")
        await client.aclose()
        raise

    redis_client = client
    logger.info(f"Redis connected to {parsed_url.hostname}:{parsed_url.port or 6379}")


async def close_redis() -> None:
    """Close the Redis connection."""
    global redis_client

    if redis_client is not None:
        await redis_client.aclose()
        redis_client = None
        logger.info("Redis connection closed")


async def health_check() -> bool:
    """Check Redis health; True when persistence is disabled."""
    if not redis_enabled():
        return True
    try:
        client = await get_redis()
        await client.ping()
        return True
    except (redis.RedisError, ValueError, OSError):
        return False
