from __future__ import annotations

from functools import lru_cache
from typing import Any


def _import_redis_asyncio() -> Any:
    try:
        import redis.asyncio as redis_asyncio  # type: ignore
    except ImportError as exc:
        raise RuntimeError("redis is required for redis-backed advice components; install redis>=5") from exc
    return redis_asyncio


@lru_cache(maxsize=4)
def create_redis_client(dsn: str) -> Any:
    """Shared asyncio client per DSN; queue, cache and relay reuse one pool."""
    if not dsn.strip():
        raise ValueError("REDIS_DSN must be provided for redis backends")
    redis_asyncio = _import_redis_asyncio()
    return redis_asyncio.Redis.from_url(dsn.strip(), decode_responses=True)
