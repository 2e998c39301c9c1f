from collections.abc import AsyncGenerator

import redis.asyncio as aioredis

from yrdly_escrow.config import settings

# Shared by request handlers, the rate limiter and the item-sold consumer
redis_pool = aioredis.ConnectionPool.from_url(
    settings.redis_url,
    socket_timeout=settings.redis_socket_timeout_seconds,
)


async def get_redis() -> AsyncGenerator[aioredis.Redis, None]:
    client = aioredis.Redis(connection_pool=redis_pool)
    try:
        yield client
    finally:
        await client.aclose()
