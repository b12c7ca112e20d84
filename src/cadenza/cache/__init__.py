"""
Read-through caching
"""

from .layer import CacheLayer, CacheNamespace
from .cached_client import CachedClient

__all__ = ['CacheLayer', 'CacheNamespace', 'CachedClient']
