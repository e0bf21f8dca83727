"""Process-wide Redis client.

Caches, job queues, the realtime bridge and the rate limiter all share this
one pool. It is only created when a Redis backend is configured.
"""

import logging

import redis.asyncio as redis

logger = logging.getLogger(__name__)

_client: redis.Redis | None = None


async def init_redis(url: str, *, max_connections: int = 50) -> redis.Redis:
    """Create the shared client once and return it."""
    global _client  # noqa: PLW0603
    if _client is None:
        _client = redis.from_url(  # type: ignore[no-untyped-call]
            url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=max_connections,
            health_check_interval=30,
        )
        logger.info("Redis client created (max %d connections)", max_connections)
    return _client


def redis_configured() -> bool:
    return _client is not None


def get_redis() -> redis.Redis:
    if _client is None:
        msg = "Redis not initialized. Call init_redis() first."
        raise RuntimeError(msg)
    return _client


async def close_redis() -> None:
    global _client  # noqa: PLW0603
    if _client is not None:
        await _client.aclose()
        _client = None
