"""
Store adapters for Cadenza state

Credentials, cache entries and job records all live in one key/value store.
The adapter exposes the small set of Redis-shaped primitives the core needs;
every call that creates a key takes a TTL so nothing is stored forever.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple


class StoreAdapter(ABC):
    """Abstract interface for store backends"""

    @abstractmethod
    async def initialize(self) -> None:
        """Initialize the backend"""
        pass

    @abstractmethod
    async def shutdown(self) -> None:
        """Cleanup and close connections"""
        pass

    @abstractmethod
    async def ping(self) -> bool:
        """Check connectivity"""
        pass

    # Plain values

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Get a string value, None if missing"""
        pass

    @abstractmethod
    async def set(self, key: str, value: str, ttl: int) -> None:
        """Set a string value with an expiry in seconds"""
        pass

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        """Delete keys, returning how many existed"""
        pass

    @abstractmethod
    async def exists(self, key: str) -> bool:
        pass

    @abstractmethod
    async def ttl(self, key: str) -> int:
        """Remaining lifetime in seconds rounded up, 0 if missing or without expiry"""
        pass

    @abstractmethod
    async def expire(self, key: str, ttl: int) -> bool:
        pass

    @abstractmethod
    async def scan_keys(self, prefix: str) -> List[str]:
        """List all keys starting with prefix"""
        pass

    # Hashes

    @abstractmethod
    async def hset(self, key: str, mapping: Dict[str, str], ttl: Optional[int] = None) -> None:
        """Merge fields into a hash; ttl (if given) is applied to the key"""
        pass

    @abstractmethod
    async def hgetall(self, key: str) -> Dict[str, str]:
        """Return all fields of a hash, empty dict if missing"""
        pass

    # Sorted sets

    @abstractmethod
    async def zadd(self, key: str, member: str, score: float) -> None:
        pass

    @abstractmethod
    async def zpopmin(self, key: str) -> Optional[Tuple[str, float]]:
        """Atomically remove and return the member with the lowest score"""
        pass

    @abstractmethod
    async def zcard(self, key: str) -> int:
        pass

    @abstractmethod
    async def zrange(self, key: str, start: int = 0, end: int = -1) -> List[str]:
        pass

    @abstractmethod
    async def zrem(self, key: str, member: str) -> bool:
        pass
