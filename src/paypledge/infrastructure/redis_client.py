"""Redis client shared by the cross-process account locks.

The client is created lazily from ``Settings.redis_url`` the first time a
RedisAccountLocks needs it, so processes running with ``lock_backend=local``
never open a connection.

Usage:
    from paypledge.infrastructure.redis_client import get_redis, ping_redis

    redis = get_redis(settings)
    await ping_redis()
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import redis.asyncio as aioredis

from paypledge.config import get_settings
from paypledge.logging_config import get_logger

if TYPE_CHECKING:
    from paypledge.config import Settings

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None


def get_redis(settings: Settings | None = None) -> aioredis.Redis:
    """Return the process-wide client, creating it on first use."""
    global _redis_client
    if _redis_client is None:
        settings = settings or get_settings()
        # Lock tokens are compared as strings
        _redis_client = aioredis.from_url(settings.redis_url, decode_responses=True)
        logger.info("redis.client_created", url=settings.redis_url)
    return _redis_client


async def ping_redis() -> bool:
    """Check connectivity; raises redis.ConnectionError when unreachable."""
    return bool(await get_redis().ping())


async def close_redis() -> None:
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        logger.info("redis.disconnected")
        _redis_client = None
