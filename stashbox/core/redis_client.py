"""
Redis connection used for cross-process sweep locks.

Redis is optional: when REDIS_URL is empty or the server is unreachable,
callers get None and fall back to process-local coordination (fail open).
"""
import logging
import time
from typing import Optional

import redis

from stashbox.core.config import settings

logger = logging.getLogger(__name__)

# Redis client (lazy initialization)
_redis_client: Optional[redis.Redis] = None
_last_failure_at: float = 0.0

RECONNECT_COOLDOWN_SECONDS = 30.0


def get_redis_client() -> Optional[redis.Redis]:
    """
    Get or create Redis client.

    Returns:
        redis.Redis, or None if Redis is disabled or unavailable
    """
    global _redis_client, _last_failure_at

    if not settings.REDIS_URL:
        return None

    if _redis_client is None:
        if time.monotonic() - _last_failure_at < RECONNECT_COOLDOWN_SECONDS and _last_failure_at:
            return None
        try:
            client = redis.from_url(
                settings.REDIS_URL,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
            )
            # Test connection
            client.ping()
            _redis_client = client
            logger.info("Redis connection established for sweep locks")
        except redis.RedisError as e:
            logger.error(f"Failed to connect to Redis: {e}")
            _last_failure_at = time.monotonic()
            _redis_client = None

    return _redis_client


def reset_redis_client() -> None:
    """Drop the cached client so the next call reconnects."""
    global _redis_client, _last_failure_at
    _redis_client = None
    _last_failure_at = time.monotonic()
