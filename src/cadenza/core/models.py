"""
Core record definitions for Cadenza

Credentials and jobs are pydantic models. Both are persisted as flat
string->string records (one hash per record) so that a job field can be
updated on its own without rewriting the whole record.
"""

import json
import time
import uuid
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, ValidationError

from .errors import StoreError, ErrorCode


class JobState(str, Enum):
    """Job execution state"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_finished(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)


# Allowed forward moves; finished states are terminal
JOB_TRANSITIONS = {
    JobState.PENDING: {JobState.PENDING, JobState.PROCESSING, JobState.FAILED},
    JobState.PROCESSING: {JobState.PROCESSING, JobState.COMPLETED, JobState.FAILED},
    JobState.COMPLETED: set(),
    JobState.FAILED: set(),
}


def can_transition(current: JobState, target: JobState) -> bool:
    """Check that a state change keeps job state monotonic"""
    return target in JOB_TRANSITIONS[current]


class Credential(BaseModel):
    """Access/refresh token pair for one tenant"""

    tenant_id: str
    access_token: str
    refresh_token: str
    expires_at: float  # epoch seconds

    def is_expired(self, now: Optional[float] = None, skew: float = 0.0) -> bool:
        """Check whether the access token is expired, or will be within `skew` seconds"""
        now = time.time() if now is None else now
        return self.expires_at <= now + skew

    def to_record(self) -> Dict[str, str]:
        return {
            "tenant_id": self.tenant_id,
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": repr(self.expires_at),
        }

    @classmethod
    def from_record(cls, record: Dict[str, str]) -> "Credential":
        try:
            return cls.model_validate(record)
        except ValidationError as e:
            raise StoreError(
                "Corrupt credential record",
                code=ErrorCode.STORE_COMMAND_FAILED,
                data={"fields": sorted(record.keys())},
                cause=e
            )


# Fields stored JSON-encoded in the flat record
_JSON_FIELDS = {"payload", "result"}
_BOOL_FIELDS = {"retried"}


class Job(BaseModel):
    """Unit of deferred work"""

    # Identity
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    queue_name: str
    payload: Dict[str, Any] = Field(default_factory=dict)

    # Execution control
    priority: int = 10
    state: JobState = JobState.PENDING
    timeout_ms: Optional[int] = None
    retries_allowed: int = 0
    retries_left: int = 0
    attempt: int = 1
    parent_id: Optional[str] = None
    retried: bool = False
    retry_job_id: Optional[str] = None

    # Outcome
    result: Optional[Any] = None
    error: Optional[str] = None
    error_type: Optional[str] = None

    # Timestamps (epoch seconds)
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)

    def to_record(self) -> Dict[str, str]:
        """Convert to a flat record for the store"""
        return encode_fields(self.model_dump(mode="json"))

    @classmethod
    def from_record(cls, record: Dict[str, str]) -> "Job":
        """Create job from a flat store record"""
        data: Dict[str, Any] = {}
        try:
            for key, value in record.items():
                if key in _JSON_FIELDS:
                    data[key] = json.loads(value)
                elif key in _BOOL_FIELDS:
                    data[key] = value == "1"
                else:
                    data[key] = value
            return cls.model_validate(data)
        except (ValueError, ValidationError) as e:
            raise StoreError(
                f"Corrupt job record {record.get('id', '?')}",
                code=ErrorCode.STORE_COMMAND_FAILED,
                data={"fields": sorted(record.keys())},
                cause=e
            )


def encode_fields(fields: Dict[str, Any]) -> Dict[str, str]:
    """Encode job fields as strings; None values are left out of the record"""
    record: Dict[str, str] = {}
    for key, value in fields.items():
        if key in _JSON_FIELDS:
            if value is not None or key == "payload":
                record[key] = json.dumps(value)
        elif value is None:
            continue
        elif key in _BOOL_FIELDS:
            record[key] = "1" if value else "0"
        elif isinstance(value, Enum):
            record[key] = value.value
        elif isinstance(value, float):
            record[key] = repr(value)
        else:
            record[key] = str(value)
    return record
