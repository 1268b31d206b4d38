"""
Redis client initialization and connection management.

Used as a short-lived cache (payment provider access tokens).
"""

import logging

import redis.asyncio as redis
from backend.app.core.config import settings

logger = logging.getLogger("loyalty.redis")

# Create async Redis client
redis_client = redis.from_url(
    settings.redis_url,
    decode_responses=settings.redis_decode_responses,
)


async def get_redis():
    """FastAPI dependency returning the shared Redis client."""
    return redis_client


async def ping_redis() -> bool:
    """True when Redis answers, False when it is unreachable."""
    try:
        return await redis_client.ping()
    except redis.RedisError as exc:
        logger.warning("Redis ping failed: %s", exc)
        return False
