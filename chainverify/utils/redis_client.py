"""
Redis client
"""
import redis.asyncio as redis
from chainverify.config import get_settings

settings = get_settings()


def create_redis_client() -> redis.Redis:
    """
    Build a Redis client

    Returns a fresh client bound to the running event loop; the caller closes it.
    """
    return redis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=10,
        socket_timeout=5,             # read/write timeout (seconds)
        socket_connect_timeout=5,
        retry_on_timeout=True,
        retry_on_error=[redis.ConnectionError, redis.TimeoutError],
        health_check_interval=30,
    )
