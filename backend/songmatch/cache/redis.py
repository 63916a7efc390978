from __future__ import annotations

from redis.asyncio import Redis

from ..core.config import Settings, get_settings

LOCK_PREFIX = "songmatch:lock:"


def create_redis(settings: Settings | None = None) -> Redis:
    settings = settings or get_settings()
    return Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)


async def acquire_lock(redis: Redis, key: str, *, ttl: int = 60) -> bool:
    return bool(await redis.set(name=LOCK_PREFIX + key, value="1", nx=True, ex=ttl))


async def release_lock(redis: Redis, key: str) -> None:
    await redis.delete(LOCK_PREFIX + key)
