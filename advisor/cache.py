"""Expiring key/value cache for tool and retrieval results.

Keys are deterministic hashes of normalized request parameters, so two jobs
asking the same question share entries without coordinating.  Any backend
failure is logged and reported as a miss; callers never see an exception.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Callable

from advisor.errors import CacheError
from advisor.redis_client import create_redis_client
from advisor.settings import AdvisorSettings

logger = logging.getLogger(__name__)


def normalize_params(params: Mapping[str, Any]) -> dict[str, Any]:
    normalized: dict[str, Any] = {}
    for key in sorted(params):
        value = params[key]
        if isinstance(value, str):
            value = " ".join(value.split()).lower()
        elif isinstance(value, Mapping):
            value = normalize_params(value)
        normalized[str(key)] = value
    return normalized


def hash_params(params: Mapping[str, Any]) -> str:
    raw = json.dumps(normalize_params(params), sort_keys=True, ensure_ascii=False, separators=(",", ":"))
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def cache_key(namespace: str, params: Mapping[str, Any]) -> str:
    return f"{namespace}:{hash_params(params)}"


@dataclass
class CacheEntry:
    key: str
    value: Any
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return self.expires_at <= now


class InMemoryCacheBackend:
    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}

    async def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            self._entries.pop(key, None)
            return None
        return json.loads(entry.value)

    async def set(self, key: str, value: Any, *, ttl_s: int) -> None:
        try:
            encoded = json.dumps(value, ensure_ascii=False)
        except (TypeError, ValueError) as exc:
            raise CacheError(f"value for {key} is not JSON serializable") from exc
        self._entries[key] = CacheEntry(key=key, value=encoded, expires_at=self._clock() + max(1, ttl_s))

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [k for k, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            self._entries.pop(key, None)
        return len(expired)


class RedisCacheBackend:
    def __init__(self, *, client: Any, namespace: str = "advice") -> None:
        self._client = client
        self._namespace = namespace.strip() or "advice"

    def _key(self, key: str) -> str:
        return f"{self._namespace}:cache:{key}"

    async def get(self, key: str) -> Any | None:
        try:
            raw = await self._client.get(self._key(key))
        except Exception as exc:
            raise CacheError(f"redis get failed for {key}") from exc
        if not isinstance(raw, str) or not raw:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise CacheError(f"corrupt cache entry {key}") from exc

    async def set(self, key: str, value: Any, *, ttl_s: int) -> None:
        try:
            encoded = json.dumps(value, ensure_ascii=False)
        except (TypeError, ValueError) as exc:
            raise CacheError(f"value for {key} is not JSON serializable") from exc
        try:
            await self._client.set(self._key(key), encoded, ex=max(1, int(ttl_s)))
        except Exception as exc:
            raise CacheError(f"redis set failed for {key}") from exc


class RetrievalCache:
    """Error-absorbing facade over a cache backend."""

    def __init__(self, backend: Any, *, default_ttl_s: int = 3600) -> None:
        self.backend = backend
        self.default_ttl_s = max(1, int(default_ttl_s))
        self.hits = 0
        self.misses = 0

    async def get(self, key: str) -> Any | None:
        try:
            value = await self.backend.get(key)
        except CacheError as exc:
            logger.warning("cache read failed key=%s: %s", key, exc)
            value = None
        if value is None:
            self.misses += 1
        else:
            self.hits += 1
        return value

    async def set(self, key: str, value: Any, *, ttl_s: int | None = None) -> None:
        try:
            await self.backend.set(key, value, ttl_s=ttl_s or self.default_ttl_s)
        except CacheError as exc:
            logger.warning("cache write failed key=%s: %s", key, exc)

    async def get_or_compute(
        self,
        key: str,
        compute: Callable[[], Any],
        *,
        ttl_s: int | None = None,
    ) -> tuple[Any, bool]:
        """Return ``(value, cache_hit)``; ``compute`` is an async callable."""
        cached = await self.get(key)
        if cached is not None:
            return cached, True
        value = await compute()
        await self.set(key, value, ttl_s=ttl_s)
        return value, False


def create_cache_from_settings(settings: AdvisorSettings) -> RetrievalCache:
    backend_name = settings.cache_backend
    if backend_name == "memory":
        return RetrievalCache(InMemoryCacheBackend(), default_ttl_s=settings.cache_ttl_s)
    if backend_name == "redis":
        if not settings.redis_dsn:
            raise ValueError("REDIS_DSN must be set when ADVICE_CACHE_BACKEND=redis")
        backend = RedisCacheBackend(client=create_redis_client(settings.redis_dsn), namespace=settings.key_prefix)
        return RetrievalCache(backend, default_ttl_s=settings.cache_ttl_s)
    raise RuntimeError(f"unsupported cache backend: {backend_name}")
