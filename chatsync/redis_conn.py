from redis.asyncio import Redis, from_url

from .config import Settings, settings


def create_redis(conf: Settings = settings) -> Redis:
    return from_url(
        str(conf.REDIS_URL),
        decode_responses=True,
        health_check_interval=30,
    )
