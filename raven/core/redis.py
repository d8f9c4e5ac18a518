"""
Redis connection for the quota counters. Only created when FF_USE_REDIS is on.
"""

import logging

import redis.asyncio as aioredis

from .config import Settings

logger = logging.getLogger(__name__)


def create_redis(settings: Settings) -> aioredis.Redis:
    if not settings.redis_url:
        raise ValueError("FF_USE_REDIS is on but REDIS_URL is not set.")
    client = aioredis.from_url(
        settings.redis_url,
        decode_responses=True,
        socket_connect_timeout=5,
    )
    logger.info("Redis client created")
    return client


async def close_redis(client) -> None:
    if client is not None:
        await client.aclose()
        logger.info("Redis client closed")
