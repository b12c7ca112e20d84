"""
Read-through cache over the shared store

Entries are JSON-encoded under `{key_prefix}:{key}` with a finite TTL, where
`key` is `{namespace}:{tenant_id}[:{param_hash}]`. The cache is an
optimization only: when the store is unreachable reads fall through to the
compute function and writes are skipped.
"""

import hashlib
import inspect
import json
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from ..core.config import CacheConfig
from ..core.errors import CacheInfrastructureError, StoreError
from ..persistence.base import StoreAdapter

logger = logging.getLogger(__name__)

_MISSING = object()
_FAILED = object()


class CacheNamespace(str, Enum):
    """Kinds of cached data, each with its own default TTL"""
    NOW_PLAYING = "now-playing"
    QUEUE = "queue"
    DEVICES = "devices"
    SEARCH = "search"
    RECOMMENDATIONS = "recommendations"
    PLAYLISTS = "playlists"
    ARTIST_INFO = "artist-info"
    ALBUM_INFO = "album-info"
    TRACK_INFO = "track-info"


def _namespace_value(namespace: Union[CacheNamespace, str]) -> str:
    return namespace.value if isinstance(namespace, CacheNamespace) else namespace


class CacheLayer:
    """Namespaced, TTL-bound read-through cache"""

    def __init__(self, store: StoreAdapter, config: Optional[CacheConfig] = None):
        self.store = store
        self.config = config or CacheConfig()
        self.last_error: Optional[CacheInfrastructureError] = None
        self.stats = {
            "hits": 0,
            "misses": 0,
            "writes": 0,
            "errors": 0,
            "invalidations": 0,
        }

    # Keys

    @staticmethod
    def make_key(
        namespace: Union[CacheNamespace, str],
        tenant_id: str,
        params: Optional[Dict[str, Any]] = None
    ) -> str:
        """
        Build a cache key

        Params are hashed over their sorted JSON form, so the same params in
        any order give the same key.
        """
        key = f"{_namespace_value(namespace)}:{tenant_id}"
        if params:
            canonical = json.dumps(params, sort_keys=True, separators=(",", ":"), default=str)
            key += ":" + hashlib.sha1(canonical.encode("utf-8")).hexdigest()[:16]
        return key

    def ttl_for(self, key: str) -> int:
        """Default TTL for a key, looked up by its namespace"""
        namespace = key.split(":", 1)[0]
        return self.config.namespace_ttls.get(namespace, self.config.default_ttl_seconds)

    def _store_key(self, key: str) -> str:
        return f"{self.config.key_prefix}:{key}"

    def _record_failure(self, what: str, error: StoreError) -> None:
        """Log a store failure the cache absorbs"""
        self.stats["errors"] += 1
        self.last_error = CacheInfrastructureError(f"Cache {what}: {error.message}", data=error.data, cause=error)
        logger.warning(str(self.last_error))

    # Read-through

    async def get_or_compute(
        self,
        key: str,
        compute_fn: Callable[[], Union[Any, Awaitable[Any]]],
        ttl: Optional[int] = None
    ) -> Any:
        """
        Return the cached value for `key`, computing and storing it on a miss

        A cached None is a hit. Store failures never surface: on a failed
        read the value is computed directly and not written back (the store
        just failed), on a failed write it is returned
        uncached. Errors from `compute_fn` propagate and nothing is cached.
        """
        if ttl is not None and ttl <= 0:
            raise ValueError(f"Cache TTL must be positive, got {ttl}")

        cached = await self._read(key)
        if cached is _FAILED:
            return await self._compute(compute_fn)
        if cached is not _MISSING:
            self.stats["hits"] += 1
            logger.debug(f"Cache hit: {key}")
            return cached

        self.stats["misses"] += 1
        logger.debug(f"Cache miss: {key}")
        value = await self._compute(compute_fn)

        await self._write(key, value, ttl if ttl is not None else self.ttl_for(key))
        return value

    @staticmethod
    async def _compute(compute_fn: Callable[[], Union[Any, Awaitable[Any]]]) -> Any:
        value = compute_fn()
        if inspect.isawaitable(value):
            value = await value
        return value

    async def _read(self, key: str) -> Any:
        try:
            raw = await self.store.get(self._store_key(key))
        except StoreError as e:
            self._record_failure(f"read of {key} failed, computing directly", e)
            return _FAILED

        if raw is None:
            return _MISSING
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning(f"Discarding undecodable cache entry {key}")
            await self._delete(self._store_key(key))
            return _MISSING

    async def _write(self, key: str, value: Any, ttl: int) -> None:
        try:
            encoded = json.dumps(value)
        except TypeError as e:
            logger.warning(f"Value for {key} is not JSON serializable, not caching: {e}")
            return
        try:
            await self.store.set(self._store_key(key), encoded, ttl)
            self.stats["writes"] += 1
        except StoreError as e:
            self._record_failure(f"write of {key} failed, returning uncached value", e)

    # Invalidation

    async def _delete(self, *store_keys: str) -> int:
        if not store_keys:
            return 0
        try:
            removed = await self.store.delete(*store_keys)
        except StoreError as e:
            self._record_failure("invalidation failed, entries expire by TTL", e)
            return 0
        self.stats["invalidations"] += removed
        return removed

    async def invalidate(self, key: str) -> int:
        """Remove a single entry"""
        return await self._delete(self._store_key(key))

    async def invalidate_by_prefix(self, prefix: str) -> int:
        """Remove exactly the entries whose key starts with `prefix`"""
        try:
            store_keys = await self.store.scan_keys(self._store_key(prefix))
        except StoreError as e:
            self._record_failure(f"scan for prefix {prefix} failed", e)
            return 0
        removed = await self._delete(*store_keys)
        logger.debug(f"Invalidated {removed} cache entries with prefix {prefix}")
        return removed

    async def invalidate_namespace(self, namespace: Union[CacheNamespace, str], tenant_id: str) -> int:
        """Remove every entry of one namespace for a tenant, with or without params"""
        base = self.make_key(namespace, tenant_id)
        removed = await self.invalidate(base)
        removed += await self.invalidate_by_prefix(f"{base}:")
        return removed

    async def invalidate_tenant(self, tenant_id: str) -> int:
        """Remove every entry of a tenant across all namespaces"""
        namespaces = {namespace.value for namespace in CacheNamespace} | set(self.config.namespace_ttls)
        removed = 0
        for namespace in sorted(namespaces):
            removed += await self.invalidate_namespace(namespace, tenant_id)
        logger.info(f"Invalidated {removed} cache entries for tenant {tenant_id}")
        return removed

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics"""
        lookups = self.stats["hits"] + self.stats["misses"]
        return {
            **self.stats,
            "hit_rate": self.stats["hits"] / lookups if lookups else 0.0,
            "last_error": self.last_error.to_dict() if self.last_error else None,
        }
