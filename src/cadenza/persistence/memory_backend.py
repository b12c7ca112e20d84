"""
In-memory store adapter for testing and single-process deployments
"""

import logging
import math
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from .base import StoreAdapter

logger = logging.getLogger(__name__)


class InMemoryStoreAdapter(StoreAdapter):
    """
    Dict-backed store with Redis-like expiry semantics

    Expired keys are dropped lazily on access. Each method runs without
    awaiting, so on a single event loop every call is atomic.
    """

    def __init__(self, clock: Optional[Callable[[], float]] = None):
        self._clock = clock or time.monotonic
        self._data: Dict[str, Any] = {}
        self._expiry: Dict[str, float] = {}

    async def initialize(self) -> None:
        """No-op for in-memory adapter"""
        logger.info("In-memory store initialized")

    async def shutdown(self) -> None:
        """Clear all data"""
        self._data.clear()
        self._expiry.clear()
        logger.info("In-memory store shut down")

    async def ping(self) -> bool:
        return True

    def _alive(self, key: str) -> bool:
        expiry = self._expiry.get(key)
        if expiry is not None and expiry <= self._clock():
            self._data.pop(key, None)
            self._expiry.pop(key, None)
        return key in self._data

    def _lookup(self, key: str, kind: type) -> Any:
        if not self._alive(key):
            return None
        value = self._data[key]
        if not isinstance(value, kind):
            raise TypeError(f"Key {key} holds {type(value).__name__}, expected {kind.__name__}")
        return value

    async def get(self, key: str) -> Optional[str]:
        return self._lookup(key, str)

    async def set(self, key: str, value: str, ttl: int) -> None:
        self._data[key] = value
        self._expiry[key] = self._clock() + ttl

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._alive(key):
                removed += 1
            self._data.pop(key, None)
            self._expiry.pop(key, None)
        return removed

    async def exists(self, key: str) -> bool:
        return self._alive(key)

    async def ttl(self, key: str) -> int:
        if not self._alive(key) or key not in self._expiry:
            return 0
        return math.ceil(self._expiry[key] - self._clock())

    async def expire(self, key: str, ttl: int) -> bool:
        if not self._alive(key):
            return False
        self._expiry[key] = self._clock() + ttl
        return True

    async def scan_keys(self, prefix: str) -> List[str]:
        return [key for key in list(self._data) if key.startswith(prefix) and self._alive(key)]

    async def hset(self, key: str, mapping: Dict[str, str], ttl: Optional[int] = None) -> None:
        record = self._lookup(key, dict)
        if record is None:
            record = self._data[key] = {}
        record.update(mapping)
        if ttl is not None:
            self._expiry[key] = self._clock() + ttl

    async def hgetall(self, key: str) -> Dict[str, str]:
        record = self._lookup(key, dict)
        return dict(record) if record else {}

    def _zset(self, key: str, create: bool = False) -> Optional[Dict[str, float]]:
        zset = self._lookup(key, dict)
        if zset is None and create:
            zset = self._data[key] = {}
        return zset

    async def zadd(self, key: str, member: str, score: float) -> None:
        self._zset(key, create=True)[member] = float(score)

    async def zpopmin(self, key: str) -> Optional[Tuple[str, float]]:
        zset = self._zset(key)
        if not zset:
            return None
        member = min(zset, key=lambda m: (zset[m], m))
        score = zset.pop(member)
        if not zset:
            del self._data[key]
        return member, score

    async def zcard(self, key: str) -> int:
        zset = self._zset(key)
        return len(zset) if zset else 0

    async def zrange(self, key: str, start: int = 0, end: int = -1) -> List[str]:
        zset = self._zset(key)
        if not zset:
            return []
        ordered = sorted(zset, key=lambda m: (zset[m], m))
        stop = None if end == -1 else end + 1
        return ordered[start:stop]

    async def zrem(self, key: str, member: str) -> bool:
        zset = self._zset(key)
        if not zset or member not in zset:
            return False
        del zset[member]
        if not zset:
            del self._data[key]
        return True
