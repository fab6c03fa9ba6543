import logging
import os
import redis
from typing import Optional

logger = logging.getLogger(__name__)

# Redis connection configuration
REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", "6379"))
REDIS_DB = int(os.getenv("REDIS_DB", "0"))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)

# Create Redis client for caching
redis_client: Optional[redis.Redis] = None


def get_redis_client() -> redis.Redis:
    """Get or create Redis client for caching"""
    global redis_client
    if redis_client is None:
        redis_client = redis.Redis(
            host=REDIS_HOST,
            port=REDIS_PORT,
            db=REDIS_DB,
            password=REDIS_PASSWORD,
            decode_responses=True,  # Automatically decode bytes to strings
            socket_connect_timeout=5,
            socket_timeout=5,
        )
    return redis_client


def cache_get(key: str) -> Optional[str]:
    """Read a cached value. Returns None when the key is missing or Redis is unavailable."""
    try:
        return get_redis_client().get(key)
    except Exception as e:
        logger.warning("Redis unavailable reading %s: %s", key, e)
        return None


def cache_set(key: str, value: str, ttl_seconds: int) -> None:
    """Write a cached value with TTL. Failures are logged and ignored."""
    try:
        get_redis_client().setex(key, ttl_seconds, value)
    except Exception as e:
        logger.warning("Redis unavailable writing %s: %s", key, e)


def close_redis():
    """Close Redis connection"""
    global redis_client
    if redis_client:
        redis_client.close()
        redis_client = None
