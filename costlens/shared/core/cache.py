"""
Cost Data Cache

Read-through cache for normalized provider responses, keyed by provider id
plus the sorted query parameters:
- MemoryCache: in-process dict with lazy TTL eviction
- RedisCache: Upstash Redis (shared between processes)
- NoOpCacheManager: satisfies the manager interface but never stores anything

The manager is built once from settings and injected into providers and the
analytics service.
"""

import asyncio
import json
import time
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Optional

import structlog
from upstash_redis.asyncio import Redis as AsyncRedis

from costlens.shared.core.config import Settings
from costlens.shared.core.exceptions import CacheError

logger = structlog.get_logger()

DEFAULT_TTL_SECONDS = 3600
DEFAULT_KEY_PREFIX = "costlens"


@dataclass(slots=True)
class CacheEntry:
    key: str
    value: Any
    expires_at: float


class CacheBackend(ABC):
    """Storage contract. Every operation raises CacheError on failure."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        raise NotImplementedError()

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        raise NotImplementedError()

    @abstractmethod
    async def delete(self, key: str) -> None:
        raise NotImplementedError()

    @abstractmethod
    async def clear(self, prefix: str = "") -> int:
        """Delete every key starting with `prefix`. Returns the number removed."""
        raise NotImplementedError()

    @abstractmethod
    async def has(self, key: str) -> bool:
        raise NotImplementedError()

    @abstractmethod
    async def keys(self, prefix: str = "") -> list[str]:
        raise NotImplementedError()


class MemoryCache(CacheBackend):
    """In-process TTL cache. Mutations are serialized by an asyncio.Lock."""

    def __init__(self, default_ttl: int = DEFAULT_TTL_SECONDS, clock: Any = time.monotonic) -> None:
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = asyncio.Lock()

    def _live_entry(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            del self._entries[key]
            return None
        return entry

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            try:
                entry = self._live_entry(key)
            except Exception as exc:
                raise CacheError(f"Failed to get cache key: {key}", {"error": str(exc)}) from exc
        if entry is None:
            return None
        # Callers get their own copy; cached payloads are JSON-compatible
        return json.loads(json.dumps(entry.value))

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        try:
            payload = json.loads(json.dumps(value, default=str))
        except (TypeError, ValueError) as exc:
            raise CacheError(f"Failed to set cache key: {key}", {"error": str(exc)}) from exc
        async with self._lock:
            self._entries[key] = CacheEntry(
                key=key,
                value=payload,
                expires_at=self._clock() + (ttl or self.default_ttl),
            )

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._entries.pop(key, None)

    async def clear(self, prefix: str = "") -> int:
        async with self._lock:
            doomed = [k for k in self._entries if k.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
        return len(doomed)

    async def has(self, key: str) -> bool:
        async with self._lock:
            return self._live_entry(key) is not None

    async def keys(self, prefix: str = "") -> list[str]:
        async with self._lock:
            live = [k for k in list(self._entries) if self._live_entry(k) is not None]
        return [k for k in live if k.startswith(prefix)]


class RedisCache(CacheBackend):
    """Upstash Redis backend storing JSON payloads with native expiry."""

    def __init__(self, client: AsyncRedis, default_ttl: int = DEFAULT_TTL_SECONDS) -> None:
        self.client = client
        self.default_ttl = default_ttl

    async def get(self, key: str) -> Optional[Any]:
        try:
            data = await self.client.get(key)
        except Exception as exc:
            raise CacheError(f"Failed to get cache key: {key}", {"error": str(exc)}) from exc
        if data is None:
            return None
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        try:
            return json.loads(data)
        except (TypeError, ValueError) as exc:
            raise CacheError(f"Invalid cache payload for key: {key}", {"error": str(exc)}) from exc

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        try:
            await self.client.set(
                key, json.dumps(value, default=str), ex=int(ttl or self.default_ttl)
            )
        except Exception as exc:
            raise CacheError(f"Failed to set cache key: {key}", {"error": str(exc)}) from exc

    async def delete(self, key: str) -> None:
        try:
            await self.client.delete(key)
        except Exception as exc:
            raise CacheError(f"Failed to delete cache key: {key}", {"error": str(exc)}) from exc

    async def clear(self, prefix: str = "") -> int:
        # The database may be shared, so only scanned keys are removed
        keys = await self.keys(prefix)
        if not keys:
            return 0
        try:
            await self.client.delete(*keys)
        except Exception as exc:
            raise CacheError("Failed to clear cache", {"prefix": prefix, "error": str(exc)}) from exc
        return len(keys)

    async def has(self, key: str) -> bool:
        try:
            return bool(await self.client.exists(key))
        except Exception as exc:
            raise CacheError(f"Failed to check cache key: {key}", {"error": str(exc)}) from exc

    async def keys(self, prefix: str = "") -> list[str]:
        found: list[str] = []
        try:
            cursor = 0
            while True:
                cursor, batch = await self.client.scan(cursor, match=f"{prefix}*", count=100)
                found.extend(k.decode("utf-8") if isinstance(k, bytes) else k for k in batch)
                cursor = int(cursor)
                if cursor == 0:
                    break
        except Exception as exc:
            raise CacheError("Failed to scan cache keys", {"prefix": prefix, "error": str(exc)}) from exc
        return found


def build_cache_key(prefix: str, provider: str, params: Mapping[str, Any]) -> str:
    """
    Deterministic key: parameters sorted by name and joined as `name:value`,
    so insertion order never changes the key.
    """
    parts = []
    for name in sorted(params):
        value = params[name]
        if isinstance(value, (list, tuple)):
            value = ",".join(str(v) for v in value)
        parts.append(f"{name}:{value}")
    return f"{prefix}:{provider}:{':'.join(parts)}"


class CostCacheManager:
    """Provider-scoped facade over a CacheBackend."""

    def __init__(
        self,
        backend: CacheBackend,
        ttl: int = DEFAULT_TTL_SECONDS,
        key_prefix: str = DEFAULT_KEY_PREFIX,
    ) -> None:
        self.backend = backend
        self.ttl = ttl
        self.key_prefix = key_prefix

    def build_key(self, provider: str, params: Mapping[str, Any]) -> str:
        return build_cache_key(self.key_prefix, provider, params)

    async def get_cost_data(self, provider: str, params: Mapping[str, Any]) -> Optional[Any]:
        key = self.build_key(provider, params)
        value = await self.backend.get(key)
        logger.debug("cache_hit" if value is not None else "cache_miss", key=key)
        return value

    async def set_cost_data(
        self,
        provider: str,
        params: Mapping[str, Any],
        data: Any,
        ttl: Optional[int] = None,
    ) -> None:
        key = self.build_key(provider, params)
        await self.backend.set(key, data, ttl or self.ttl)
        logger.debug("cache_set", key=key, ttl_seconds=ttl or self.ttl)

    async def has_cost_data(self, provider: str, params: Mapping[str, Any]) -> bool:
        return await self.backend.has(self.build_key(provider, params))

    async def delete_cost_data(self, provider: str, params: Mapping[str, Any]) -> None:
        key = self.build_key(provider, params)
        await self.backend.delete(key)
        logger.debug("cache_delete", key=key)

    async def invalidate_provider(self, provider: str) -> int:
        """Delete every entry stored for `provider`. Returns the number removed."""
        prefix = f"{self.key_prefix}:{provider}:"
        keys = await self.backend.keys(prefix)
        for key in keys:
            await self.backend.delete(key)
        logger.info("cache_provider_invalidated", provider=provider, count=len(keys))
        return len(keys)

    async def clear_all(self) -> int:
        """Delete every entry under this manager's key prefix."""
        removed = await self.backend.clear(f"{self.key_prefix}:")
        logger.info("cache_cleared", prefix=self.key_prefix, count=removed)
        return removed


class NoOpCacheManager(CostCacheManager):
    """Caching disabled: every lookup misses and writes vanish."""

    def __init__(self) -> None:
        self.backend = None  # type: ignore[assignment]
        self.ttl = 0
        self.key_prefix = DEFAULT_KEY_PREFIX

    async def get_cost_data(self, provider: str, params: Mapping[str, Any]) -> Optional[Any]:
        return None

    async def set_cost_data(
        self,
        provider: str,
        params: Mapping[str, Any],
        data: Any,
        ttl: Optional[int] = None,
    ) -> None:
        return None

    async def has_cost_data(self, provider: str, params: Mapping[str, Any]) -> bool:
        return False

    async def delete_cost_data(self, provider: str, params: Mapping[str, Any]) -> None:
        return None

    async def invalidate_provider(self, provider: str) -> int:
        return 0

    async def clear_all(self) -> int:
        return 0


def build_cache_manager(settings: Settings) -> CostCacheManager:
    """Construct the cache manager once at startup from configuration."""
    if settings.CACHE_TYPE is None:
        logger.info("cache_disabled")
        return NoOpCacheManager()

    if settings.CACHE_TYPE == "redis":
        token = settings.UPSTASH_REDIS_TOKEN.get_secret_value() if settings.UPSTASH_REDIS_TOKEN else ""
        client = AsyncRedis(url=settings.UPSTASH_REDIS_URL, token=token)
        backend: CacheBackend = RedisCache(client, default_ttl=settings.CACHE_TTL_SECONDS)
    else:
        backend = MemoryCache(default_ttl=settings.CACHE_TTL_SECONDS)

    logger.info("cache_enabled", backend=settings.CACHE_TYPE, ttl_seconds=settings.CACHE_TTL_SECONDS)
    return CostCacheManager(
        backend, ttl=settings.CACHE_TTL_SECONDS, key_prefix=settings.CACHE_KEY_PREFIX
    )
