"""
Redis store adapter
"""

import logging
import re
from contextlib import asynccontextmanager
from typing import Dict, List, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError, RedisError, TimeoutError as RedisTimeoutError

from .base import StoreAdapter
from ..core.errors import StoreError, ErrorCode

logger = logging.getLogger(__name__)

_GLOB_SPECIAL = re.compile(r'([\\*?\[\]])')


def _escape_glob(prefix: str) -> str:
    """Escape glob characters so a prefix matches literally in SCAN MATCH"""
    return _GLOB_SPECIAL.sub(r'\\\1', prefix)


class RedisStoreAdapter(StoreAdapter):
    """Redis-based store using redis.asyncio"""

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        db: int = 0,
        max_connections: int = 20,
        client: Optional[redis.Redis] = None
    ):
        self.redis_url = redis_url
        self.db = db
        self.max_connections = max_connections
        self.redis: Optional[redis.Redis] = client
        self._initialized = client is not None

    async def initialize(self) -> None:
        """Initialize Redis connection"""
        if self._initialized:
            return

        self.redis = redis.from_url(
            self.redis_url,
            db=self.db,
            max_connections=self.max_connections,
            decode_responses=True
        )
        async with self._errors("connect"):
            await self.redis.ping()
        self._initialized = True
        logger.info(f"Redis store initialized: {self.redis_url}")

    async def shutdown(self) -> None:
        """Close Redis connection"""
        if self.redis:
            await self.redis.aclose()
            self.redis = None
            self._initialized = False
            logger.info("Redis store shut down")

    @asynccontextmanager
    async def _errors(self, operation: str, key: Optional[str] = None):
        """Translate redis exceptions into StoreError"""
        if self.redis is None:
            raise StoreError("Redis store not initialized", code=ErrorCode.STORE_UNAVAILABLE)
        try:
            yield
        except RedisError as e:
            logger.error(f"Redis {operation} failed for {key or '-'}: {e}")
            raise StoreError(
                f"Redis {operation} failed: {e}",
                code=ErrorCode.STORE_UNAVAILABLE if isinstance(e, (RedisConnectionError, RedisTimeoutError))
                else ErrorCode.STORE_COMMAND_FAILED,
                data={"operation": operation, "key": key},
                cause=e
            )

    async def ping(self) -> bool:
        async with self._errors("ping"):
            return bool(await self.redis.ping())

    async def get(self, key: str) -> Optional[str]:
        async with self._errors("get", key):
            return await self.redis.get(key)

    async def set(self, key: str, value: str, ttl: int) -> None:
        async with self._errors("set", key):
            await self.redis.set(key, value, ex=ttl)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        async with self._errors("delete", keys[0]):
            return await self.redis.delete(*keys)

    async def exists(self, key: str) -> bool:
        async with self._errors("exists", key):
            return bool(await self.redis.exists(key))

    async def ttl(self, key: str) -> int:
        async with self._errors("ttl", key):
            remaining = await self.redis.ttl(key)
        if remaining == 0:
            # Under half a second left
            return 1
        return remaining if remaining > 0 else 0

    async def expire(self, key: str, ttl: int) -> bool:
        async with self._errors("expire", key):
            return bool(await self.redis.expire(key, ttl))

    async def scan_keys(self, prefix: str) -> List[str]:
        async with self._errors("scan", prefix):
            return [key async for key in self.redis.scan_iter(match=f"{_escape_glob(prefix)}*", count=500)]

    async def hset(self, key: str, mapping: Dict[str, str], ttl: Optional[int] = None) -> None:
        async with self._errors("hset", key):
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.hset(key, mapping=mapping)
                if ttl is not None:
                    pipe.expire(key, ttl)
                await pipe.execute()

    async def hgetall(self, key: str) -> Dict[str, str]:
        async with self._errors("hgetall", key):
            return await self.redis.hgetall(key) or {}

    async def zadd(self, key: str, member: str, score: float) -> None:
        async with self._errors("zadd", key):
            await self.redis.zadd(key, {member: score})

    async def zpopmin(self, key: str) -> Optional[Tuple[str, float]]:
        async with self._errors("zpopmin", key):
            popped = await self.redis.zpopmin(key, 1)
        if not popped:
            return None
        member, score = popped[0]
        return member, float(score)

    async def zcard(self, key: str) -> int:
        async with self._errors("zcard", key):
            return await self.redis.zcard(key)

    async def zrange(self, key: str, start: int = 0, end: int = -1) -> List[str]:
        async with self._errors("zrange", key):
            return await self.redis.zrange(key, start, end)

    async def zrem(self, key: str, member: str) -> bool:
        async with self._errors("zrem", key):
            return bool(await self.redis.zrem(key, member))
