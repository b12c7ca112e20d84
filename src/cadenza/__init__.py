"""
Cadenza - tenant client pooling, read-through caching and durable job
queues for a streaming-music assistant backend
"""

__version__ = "0.1.0"

from .core import (
    CadenzaConfig, load_config, setup_logging,
    Credential, Job, JobState,
    CadenzaError, AuthenticationExpiredError, AuthenticationRequiredError,
    TransientExternalError, JobValidationError, JobTimeoutError, ResourceExhaustedError,
    StoreError, CacheInfrastructureError
)
from .persistence import StoreAdapter, InMemoryStoreAdapter, RedisStoreAdapter
from .pooling import CredentialStore, TenantResourcePool
from .cache import CacheLayer, CacheNamespace, CachedClient
from .task_queue import JobQueue, Worker

__all__ = [
    '__version__',
    'CadenzaConfig', 'load_config', 'setup_logging',
    'Credential', 'Job', 'JobState',
    'CadenzaError', 'AuthenticationExpiredError', 'AuthenticationRequiredError',
    'TransientExternalError', 'JobValidationError', 'JobTimeoutError', 'ResourceExhaustedError',
    'StoreError', 'CacheInfrastructureError',
    'StoreAdapter', 'InMemoryStoreAdapter', 'RedisStoreAdapter',
    'CredentialStore', 'TenantResourcePool',
    'CacheLayer', 'CacheNamespace', 'CachedClient',
    'JobQueue', 'Worker',
]
