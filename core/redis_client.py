"""
Shared Redis connection used for rate limiting and order events.

The client is created on first use so that importing a module never
opens a connection.
"""
import logging
from typing import Optional

import redis
from django.conf import settings

logger = logging.getLogger(__name__)

_client: Optional[redis.Redis] = None


def get_redis_client() -> Optional[redis.Redis]:
    """
    Return a connected client, or None when Redis is unreachable.
    """
    global _client
    if _client is None:
        try:
            client = redis.Redis.from_url(
                settings.REDIS_URL,
                decode_responses=True,
                socket_connect_timeout=5
            )
            client.ping()
        except (redis.ConnectionError, redis.TimeoutError) as e:
            logger.warning(f"Redis connection failed: {e}")
            return None
        _client = client
    return _client


def reset_redis_client() -> None:
    global _client
    _client = None
