"""
Core definitions for Cadenza: records, configuration and errors
"""

from .models import Credential, Job, JobState
from .config import (
    CadenzaConfig, PoolConfig, CacheConfig, QueueConfig, WorkerConfig, ProviderConfig,
    load_config, setup_logging
)
from .errors import (
    ErrorCode, ErrorCategory, CadenzaError,
    AuthenticationExpiredError, AuthenticationRequiredError, TransientExternalError,
    JobValidationError, JobTimeoutError, JobNotFoundError, InvalidStateTransitionError,
    ResourceExhaustedError, StoreError, CacheInfrastructureError, ConfigurationError,
    is_retryable_error
)

__all__ = [
    'Credential', 'Job', 'JobState',
    'CadenzaConfig', 'PoolConfig', 'CacheConfig', 'QueueConfig', 'WorkerConfig', 'ProviderConfig',
    'load_config', 'setup_logging',
    'ErrorCode', 'ErrorCategory', 'CadenzaError',
    'AuthenticationExpiredError', 'AuthenticationRequiredError', 'TransientExternalError',
    'JobValidationError', 'JobTimeoutError', 'JobNotFoundError', 'InvalidStateTransitionError',
    'ResourceExhaustedError', 'StoreError', 'CacheInfrastructureError', 'ConfigurationError',
    'is_retryable_error',
]
