"""
Store backends for Cadenza state
"""

from .base import StoreAdapter
from .memory_backend import InMemoryStoreAdapter
from .redis_backend import RedisStoreAdapter

__all__ = ['StoreAdapter', 'InMemoryStoreAdapter', 'RedisStoreAdapter']
