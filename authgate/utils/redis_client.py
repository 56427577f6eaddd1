from functools import lru_cache

from redis.asyncio import Redis

from authgate.core.settings import settings

# Readiness probes must answer quickly even when Redis is unreachable.
HEALTH_TIMEOUT_SECONDS = 2.0


@lru_cache(maxsize=1)
def get_redis_client() -> Redis:
    return Redis.from_url(
        settings.redis_url,
        decode_responses=True,
        socket_connect_timeout=HEALTH_TIMEOUT_SECONDS,
        socket_timeout=HEALTH_TIMEOUT_SECONDS,
    )


async def close_redis_client() -> None:
    if get_redis_client.cache_info().currsize == 0:
        return
    await get_redis_client().aclose()
    get_redis_client.cache_clear()
