"""
Per-tenant client pooling and credential storage
"""

from .credentials import CredentialStore
from .pool import TenantResourcePool, TenantClient

__all__ = ['CredentialStore', 'TenantResourcePool', 'TenantClient']
