from __future__ import annotations

import os
from functools import lru_cache

from redis import Redis

REDIS_URL = os.getenv("REDIS_URL", "redis://redis:6379/0")


@lru_cache(maxsize=1)
def get_redis() -> Redis:
    return Redis.from_url(REDIS_URL, decode_responses=True)


def hourly_window_key(tenant_id: str, counter: str, window_key: str) -> str:
    return f"usage:{tenant_id}:{counter}:{window_key}"


def incr_window(key: str, ttl_seconds: int) -> int:
    client = get_redis()
    value = int(client.incr(key))
    if value == 1:
        client.expire(key, ttl_seconds)
    return value


def decr_window(key: str) -> int:
    return int(get_redis().decr(key))


def read_window(key: str) -> int:
    raw = get_redis().get(key)
    if raw is None:
        return 0
    return int(raw)


def check_redis_ready() -> bool:
    try:
        return bool(get_redis().ping())
    except Exception:
        return False
