"""
Shared cache for schema snapshots and read results.

Pattern: cache-aside with "clear everything" invalidation on any write. The
cache is an optimization only: every Redis error is logged and treated as a
miss, never raised to the caller.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any, Optional

import redis.asyncio as aioredis

if TYPE_CHECKING:
    from ..core.defs import SchemaOverview

logger = logging.getLogger(__name__)


class CacheManager:
    """
    Namespaced get/set/clear over Redis.

    Usage:
        cache = CacheManager.from_url("redis://localhost:6379", namespace="itemgraph")

        await cache.set("items:abc", [{"id": 1}], ttl=300)
        data = await cache.get("items:abc")

        # Drop every key under the namespace
        await cache.clear()
    """

    def __init__(self, client: aioredis.Redis, namespace: str = "itemgraph", ttl: int = 300):
        """
        Initialize cache manager.

        Args:
            client: Connected redis.asyncio client
            namespace: Key prefix shared by every key this manager writes
            ttl: Default time to live in seconds
        """
        self.client = client
        self.namespace = namespace
        self.ttl = ttl

    @classmethod
    def from_url(cls, redis_url: str, namespace: str = "itemgraph", ttl: int = 300) -> "CacheManager":
        client = aioredis.from_url(redis_url, encoding="utf-8", decode_responses=True)
        return cls(client, namespace=namespace, ttl=ttl)

    def _make_key(self, key: str) -> str:
        """Build full cache key with namespace"""
        return f"{self.namespace}:{key}"

    async def get(self, key: str) -> Optional[Any]:
        """Get value from cache, None on miss or error"""
        full_key = self._make_key(key)
        try:
            data = await self.client.get(full_key)
            if data:
                logger.debug(f"Cache HIT: {full_key}")
                return json.loads(data)
        except Exception as e:
            logger.warning(f"Cache get error for {full_key}: {e}")
        return None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """Set value in cache"""
        full_key = self._make_key(key)
        try:
            payload = json.dumps(value, ensure_ascii=False, default=str)
            await self.client.set(full_key, payload, ex=ttl or self.ttl)
            logger.debug(f"Cached {full_key} (TTL: {ttl or self.ttl}s)")
            return True
        except Exception as e:
            logger.warning(f"Cache set error for {full_key}: {e}")
            return False

    async def delete(self, key: str) -> bool:
        """Delete one cache key"""
        full_key = self._make_key(key)
        try:
            return bool(await self.client.delete(full_key))
        except Exception as e:
            logger.warning(f"Cache delete error for {full_key}: {e}")
            return False

    async def clear(self) -> int:
        """
        Delete every key under the namespace.

        Returns:
            Number of keys removed
        """
        pattern = self._make_key("*")
        try:
            count = 0
            async for key in self.client.scan_iter(match=pattern):
                await self.client.delete(key)
                count += 1
            logger.info(f"Cleared {count} cache keys matching {pattern}")
            return count
        except Exception as e:
            logger.warning(f"Cache clear error for {pattern}: {e}")
            return 0

    async def close(self):
        await self.client.aclose()


class SchemaCache:
    """
    Version-keyed holder for the schema overview snapshot.

    The snapshot is kept in process and, when a CacheManager is given, shared
    through it under the key ``"schema"``. ``invalidate()`` is the explicit
    invalidation message sent by the metadata services.

    Usage:
        schema_cache = SchemaCache(store=cache)
        schema = await get_schema(engine, schema_cache=schema_cache)
        await schema_cache.invalidate()
    """

    KEY = "schema"

    def __init__(self, store: Optional[CacheManager] = None, enabled: bool = True):
        self.store = store
        self.enabled = enabled
        self.version = 0
        self._local: Optional[tuple[int, SchemaOverview]] = None

    async def get(self) -> Optional["SchemaOverview"]:
        """Return the cached snapshot for the current version, if any."""
        from ..core.defs import SchemaOverview

        if not self.enabled:
            return None

        if self._local is not None and self._local[0] == self.version:
            return self._local[1]

        if self.store is not None:
            data = await self.store.get(self.KEY)
            if data:
                try:
                    schema = SchemaOverview.from_dict(data)
                except (TypeError, KeyError) as e:
                    logger.warning(f"Discarding unreadable cached schema: {e}")
                    return None
                self._local = (self.version, schema)
                return schema

        return None

    async def set(self, schema: "SchemaOverview") -> None:
        if not self.enabled:
            return
        self._local = (self.version, schema)
        if self.store is not None:
            await self.store.set(self.KEY, schema.to_dict())

    async def invalidate(self) -> None:
        """Drop the snapshot everywhere; the next read rebuilds it."""
        self.version += 1
        self._local = None
        if self.store is not None:
            await self.store.delete(self.KEY)
        logger.debug(f"Schema cache invalidated (version {self.version})")


# Process-wide default, used when a caller doesn't pass its own
schema_cache = SchemaCache()
