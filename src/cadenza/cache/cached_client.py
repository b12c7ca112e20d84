"""
Tenant-scoped caching wrapper around a pooled API client
"""

import inspect
import logging
from typing import Any, Callable, Dict, Iterable, Optional, Union

from .layer import CacheLayer, CacheNamespace

logger = logging.getLogger(__name__)


class CachedClient:
    """
    Routes reads through the cache and invalidates after writes

    `call` may be a method name on the wrapped client or any callable.
    Attributes not defined here are forwarded to the wrapped client.
    """

    def __init__(self, client: Any, cache: CacheLayer, tenant_id: str):
        self.client = client
        self.cache = cache
        self.tenant_id = tenant_id

    def _resolve(self, call: Union[str, Callable[..., Any]]) -> Callable[..., Any]:
        return getattr(self.client, call) if isinstance(call, str) else call

    async def read(
        self,
        namespace: Union[CacheNamespace, str],
        call: Union[str, Callable[..., Any]],
        *args,
        params: Optional[Dict[str, Any]] = None,
        ttl: Optional[int] = None,
        **kwargs
    ) -> Any:
        """Cached read; `params` distinguish entries within a namespace"""
        fn = self._resolve(call)
        key = self.cache.make_key(namespace, self.tenant_id, params)
        return await self.cache.get_or_compute(key, lambda: fn(*args, **kwargs), ttl=ttl)

    async def mutate(
        self,
        call: Union[str, Callable[..., Any]],
        *args,
        invalidates: Iterable[Union[CacheNamespace, str]] = (),
        **kwargs
    ) -> Any:
        """Run a write, then drop the tenant's entries in the affected namespaces"""
        result = self._resolve(call)(*args, **kwargs)
        if inspect.isawaitable(result):
            result = await result
        for namespace in invalidates:
            await self.cache.invalidate_namespace(namespace, self.tenant_id)
            logger.debug(f"Invalidated {namespace} for tenant {self.tenant_id} after write")
        return result

    def __getattr__(self, name: str) -> Any:
        return getattr(self.client, name)
