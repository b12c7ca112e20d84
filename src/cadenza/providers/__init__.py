"""
External streaming API seams and their httpx implementations
"""

from .base import TokenGrant, TokenRefresher, ClientFactory
from .http_client import HTTPTokenRefresher, StreamingAPIClient, http_client_factory

__all__ = [
    'TokenGrant', 'TokenRefresher', 'ClientFactory',
    'HTTPTokenRefresher', 'StreamingAPIClient', 'http_client_factory',
]
