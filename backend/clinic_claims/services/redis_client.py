from functools import lru_cache

import redis

from clinic_claims.core.settings import get_settings


@lru_cache
def get_redis() -> redis.Redis:
    settings = get_settings()
    return redis.Redis.from_url(settings.redis_url)
