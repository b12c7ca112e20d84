"""
Error definitions for Cadenza

Structured exceptions with error codes and categories. The category of an
error decides whether the worker retries it, whether the pool purges a
tenant, and whether the cache fails open.
"""

from enum import Enum
from typing import Dict, Any, Optional
from datetime import datetime


class ErrorCategory(Enum):
    """Error categorization for retry decisions"""
    TRANSIENT = "transient"              # Temporary issues, retry
    PERMANENT = "permanent"              # Won't be fixed by retry
    AUTHENTICATION = "auth"              # Tenant must re-authenticate
    VALIDATION = "validation"            # Malformed input
    RESOURCE = "resource"                # Capacity exhausted
    INFRASTRUCTURE = "infrastructure"    # Backing store problems


class ErrorCode(Enum):
    """Error codes for Cadenza"""

    # Infrastructure Errors (1000-1999)
    STORE_UNAVAILABLE = "CZ1001"
    STORE_COMMAND_FAILED = "CZ1002"
    CACHE_UNAVAILABLE = "CZ1010"

    # Authentication Errors (2000-2999)
    AUTH_TOKEN_EXPIRED = "CZ2001"
    AUTH_REQUIRED = "CZ2002"

    # External API Errors (3000-3999)
    EXTERNAL_SERVICE_UNAVAILABLE = "CZ3001"
    EXTERNAL_SERVICE_TIMEOUT = "CZ3002"
    EXTERNAL_SERVICE_RATE_LIMITED = "CZ3003"

    # Job Errors (4000-4999)
    JOB_VALIDATION_FAILED = "CZ4001"
    JOB_TIMEOUT = "CZ4002"
    JOB_NOT_FOUND = "CZ4003"
    JOB_INVALID_TRANSITION = "CZ4004"
    JOB_ABANDONED = "CZ4005"
    JOB_EXECUTION_FAILED = "CZ4006"

    # Resource Errors (5000-5999)
    QUEUE_FULL = "CZ5001"
    POOL_EXHAUSTED = "CZ5002"

    # Configuration Errors (6000-6999)
    CONFIG_VALIDATION_FAILED = "CZ6001"


class CadenzaError(Exception):
    """Base exception for Cadenza with structured error information"""

    category = ErrorCategory.PERMANENT
    default_code = ErrorCode.JOB_EXECUTION_FAILED

    def __init__(
        self,
        message: str,
        code: Optional[ErrorCode] = None,
        data: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.data = data or {}
        self.cause = cause
        self.timestamp = datetime.utcnow()

    @property
    def should_retry(self) -> bool:
        """Check if this error should be retried"""
        return self.category == ErrorCategory.TRANSIENT

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for serialization"""
        return {
            "error_code": self.code.value,
            "error_type": self.__class__.__name__,
            "category": self.category.value,
            "message": self.message,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
            "cause": str(self.cause) if self.cause else None
        }

    def __str__(self) -> str:
        return f"[{self.code.value}] {self.message}"


class AuthenticationExpiredError(CadenzaError):
    """The refresh credential was rejected; the tenant has to log in again"""
    category = ErrorCategory.AUTHENTICATION
    default_code = ErrorCode.AUTH_TOKEN_EXPIRED


class AuthenticationRequiredError(CadenzaError):
    """No credential is stored for the tenant"""
    category = ErrorCategory.AUTHENTICATION
    default_code = ErrorCode.AUTH_REQUIRED


class TransientExternalError(CadenzaError):
    """Network or timeout problem talking to the external API"""
    category = ErrorCategory.TRANSIENT
    default_code = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE


class JobValidationError(CadenzaError):
    """Malformed job payload"""
    category = ErrorCategory.VALIDATION
    default_code = ErrorCode.JOB_VALIDATION_FAILED


class JobTimeoutError(CadenzaError):
    """Job handler did not finish within the job timeout"""
    category = ErrorCategory.TRANSIENT
    default_code = ErrorCode.JOB_TIMEOUT


class JobNotFoundError(CadenzaError):
    """Job record does not exist (never created or expired)"""
    default_code = ErrorCode.JOB_NOT_FOUND


class InvalidStateTransitionError(CadenzaError):
    """Job state change that would move a finished job backwards"""
    default_code = ErrorCode.JOB_INVALID_TRANSITION


class ResourceExhaustedError(CadenzaError):
    """Queue or pool is at its configured capacity"""
    category = ErrorCategory.RESOURCE
    default_code = ErrorCode.QUEUE_FULL


class StoreError(CadenzaError):
    """Backing store unreachable or command failed"""
    category = ErrorCategory.INFRASTRUCTURE
    default_code = ErrorCode.STORE_COMMAND_FAILED


class CacheInfrastructureError(StoreError):
    """Store failure observed by the cache layer"""
    default_code = ErrorCode.CACHE_UNAVAILABLE


class ConfigurationError(CadenzaError):
    """Invalid configuration value"""
    category = ErrorCategory.VALIDATION
    default_code = ErrorCode.CONFIG_VALIDATION_FAILED


# Errors that must never be retried automatically, whatever the job budget
NON_RETRYABLE_CATEGORIES = {
    ErrorCategory.AUTHENTICATION,
    ErrorCategory.VALIDATION,
}


def is_retryable_error(error: Exception) -> bool:
    """Check whether a failed job may be requeued for this error"""
    if isinstance(error, CadenzaError):
        return error.category not in NON_RETRYABLE_CATEGORIES
    # Unknown handler exceptions are treated as transient
    return True
