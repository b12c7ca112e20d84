"""
Job Queue for Cadenza

Durable priority queues over the shared store. Each job is a flat hash
`jobs:{id}`; each queue is a sorted set `queue:{name}` of job ids scored by
priority, lowest first. Popping removes the id from the queue but leaves the
record, which carries the job's state until its TTL runs out.
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from ..core.config import QueueConfig
from ..core.errors import (
    JobValidationError, JobNotFoundError, InvalidStateTransitionError,
    ResourceExhaustedError, StoreError, ErrorCode
)
from ..core.models import Job, JobState, can_transition, encode_fields
from ..persistence.base import StoreAdapter

logger = logging.getLogger(__name__)

# Queues served by the assistant backend
DEFAULT_QUEUES = ["recommendations", "analysis", "history", "playlist"]

JOB_KEY_PREFIX = "jobs:"
QUEUE_KEY_PREFIX = "queue:"


def job_key(job_id: str) -> str:
    return f"{JOB_KEY_PREFIX}{job_id}"


def queue_key(queue_name: str) -> str:
    return f"{QUEUE_KEY_PREFIX}{queue_name}"


class JobQueue:
    """
    Priority job queue backed by a StoreAdapter

    The capacity check in `add_job` and the write that follows are separate
    store calls, so concurrent producers in different processes can overshoot
    `max_jobs_per_queue` by a few entries.
    """

    def __init__(
        self,
        store: StoreAdapter,
        config: Optional[QueueConfig] = None,
        clock: Callable[[], float] = time.time
    ):
        self.store = store
        self.config = config or QueueConfig()
        self._clock = clock
        self._started_at = clock()
        self._last_reconcile: Optional[float] = None

        self.stats = {
            "jobs_added": 0,
            "jobs_completed": 0,
            "jobs_failed": 0,
            "jobs_retried": 0,
            "jobs_repaired": 0,
        }

    async def add_job(
        self,
        queue_name: str,
        payload: Dict[str, Any],
        priority: Optional[int] = None,
        timeout_ms: Optional[int] = None,
        retries_allowed: int = 0,
        *,
        retries_left: Optional[int] = None,
        attempt: int = 1,
        parent_id: Optional[str] = None
    ) -> str:
        """
        Enqueue a job and return its id

        Raises:
            ResourceExhaustedError: the queue is full; nothing is written
            JobValidationError: the payload or options are malformed
        """
        if not queue_name:
            raise JobValidationError("Queue name must not be empty")
        if retries_allowed < 0:
            raise JobValidationError(
                "retries_allowed must not be negative", data={"retries_allowed": retries_allowed}
            )
        if timeout_ms is not None and timeout_ms <= 0:
            raise JobValidationError("timeout_ms must be positive", data={"timeout_ms": timeout_ms})

        depth = await self.store.zcard(queue_key(queue_name))
        if depth >= self.config.max_jobs_per_queue:
            raise ResourceExhaustedError(
                f"Queue {queue_name} is full ({self.config.max_jobs_per_queue} jobs)",
                code=ErrorCode.QUEUE_FULL,
                data={"queue_name": queue_name, "depth": depth}
            )

        now = self._clock()
        try:
            job = Job(
                queue_name=queue_name,
                payload=payload,
                priority=self.config.default_priority if priority is None else priority,
                timeout_ms=timeout_ms,
                retries_allowed=retries_allowed,
                retries_left=retries_allowed if retries_left is None else retries_left,
                attempt=attempt,
                parent_id=parent_id,
                created_at=now,
                updated_at=now
            )
        except ValidationError as e:
            raise JobValidationError(f"Invalid job for queue {queue_name}: {e}", cause=e)

        await self.store.hset(job_key(job.id), job.to_record(), ttl=self.config.pending_job_ttl_seconds)
        await self.store.zadd(queue_key(queue_name), job.id, job.priority)

        self.stats["jobs_added"] += 1
        logger.info(f"Added job {job.id} to queue {queue_name} (priority {job.priority})")
        return job.id

    async def get_next_job(self, queue_name: str) -> Optional[Job]:
        """
        Pop the highest-priority job id and return its record

        The record's state is left untouched. Ids whose record has expired or
        is unreadable are dropped and None is returned.
        """
        popped = await self.store.zpopmin(queue_key(queue_name))
        if popped is None:
            return None

        job_id, _ = popped
        record = await self.store.hgetall(job_key(job_id))
        if not record:
            logger.warning(f"Dropped job {job_id} from queue {queue_name}: record missing")
            return None
        try:
            return Job.from_record(record)
        except StoreError as e:
            logger.error(f"Dropped job {job_id} from queue {queue_name}: {e}")
            await self.store.delete(job_key(job_id))
            return None

    async def queue_depth(self, queue_name: str) -> int:
        return await self.store.zcard(queue_key(queue_name))

    async def get_job_status(self, job_id: str) -> Optional[Job]:
        """Get a job's current record, None if it does not exist, expired or is corrupt"""
        record = await self.store.hgetall(job_key(job_id))
        if not record:
            return None
        try:
            return Job.from_record(record)
        except StoreError as e:
            logger.error(f"Unreadable job record {job_id}: {e}")
            return None

    async def update_job_status(self, job_id: str, state: JobState, **updates: Any) -> Job:
        """
        Move a job to `state` and merge `updates` into its record

        Only the given fields are written, so concurrent updates of different
        fields do not overwrite each other.

        Raises:
            JobNotFoundError: no record for the job
            InvalidStateTransitionError: the move would go backwards
        """
        key = job_key(job_id)
        record = await self.store.hgetall(key)
        if not record:
            raise JobNotFoundError(f"Job {job_id} not found", data={"job_id": job_id})

        job = Job.from_record(record)
        state = JobState(state)
        if not can_transition(job.state, state):
            raise InvalidStateTransitionError(
                f"Job {job_id} cannot move from {job.state.value} to {state.value}",
                data={"job_id": job_id, "from": job.state.value, "to": state.value}
            )

        unknown = set(updates) - set(Job.model_fields)
        if unknown:
            raise JobValidationError(
                f"Unknown job fields: {', '.join(sorted(unknown))}", data={"job_id": job_id}
            )
        updates.pop("id", None)

        changes = {**updates, "state": state, "updated_at": self._clock()}
        if state.is_finished:
            ttl = self.config.finished_job_ttl_seconds
        else:
            # Keep the remaining lifetime; 0 only when the record has no expiry
            ttl = await self.store.ttl(key) or self.config.pending_job_ttl_seconds
        await self.store.hset(key, encode_fields(changes), ttl=ttl)

        if state != job.state:
            if state == JobState.COMPLETED:
                self.stats["jobs_completed"] += 1
            elif state == JobState.FAILED:
                self.stats["jobs_failed"] += 1
            if updates.get("retried"):
                self.stats["jobs_retried"] += 1

        logger.info(f"Job {job_id} -> {state.value}")
        return job.model_copy(update=changes)

    async def reconcile(self, queue_names: Optional[List[str]] = None) -> int:
        """
        Repair queue state left behind by crashed workers

        Deletes corrupt job records, fails PENDING/PROCESSING jobs whose
        remaining TTL fell below the abandonment threshold, and removes queue
        ids with no record. Returns the number of entries repaired.
        """
        queue_names = queue_names or DEFAULT_QUEUES
        repaired = 0

        for key in await self.store.scan_keys(JOB_KEY_PREFIX):
            record = await self.store.hgetall(key)
            if not record:
                continue
            try:
                job = Job.from_record(record)
            except StoreError as e:
                logger.warning(f"Deleting corrupt job record {key}: {e}")
                await self.store.delete(key)
                repaired += 1
                continue

            if job.state.is_finished:
                continue
            remaining = await self.store.ttl(key)
            if remaining >= self.config.abandon_threshold_seconds:
                continue

            try:
                await self.update_job_status(
                    job.id,
                    JobState.FAILED,
                    error=f"[{ErrorCode.JOB_ABANDONED.value}] Job abandoned: exceeded its lifetime without finishing",
                    error_type="JobAbandonedError"
                )
            except (JobNotFoundError, InvalidStateTransitionError) as e:
                # Expired or finished by a worker since the scan
                logger.debug(f"Skipped abandoned job {job.id}: {e}")
                continue
            await self.store.zrem(queue_key(job.queue_name), job.id)
            logger.warning(f"Marked abandoned job {job.id} in queue {job.queue_name} as failed")
            repaired += 1

        for queue_name in queue_names:
            for job_id in await self.store.zrange(queue_key(queue_name)):
                if not await self.store.exists(job_key(job_id)):
                    await self.store.zrem(queue_key(queue_name), job_id)
                    repaired += 1

        self._last_reconcile = self._clock()
        self.stats["jobs_repaired"] += repaired
        logger.info(f"Reconciliation finished: {repaired} entries removed or repaired")
        return repaired

    async def get_queue_stats(self, queue_names: Optional[List[str]] = None) -> Dict[str, Any]:
        """Get counters, queue depths and per-state job counts"""
        queue_names = queue_names or DEFAULT_QUEUES
        depths = {name: await self.store.zcard(queue_key(name)) for name in queue_names}

        state_counts = {state.value: 0 for state in JobState}
        job_keys = await self.store.scan_keys(JOB_KEY_PREFIX)
        for key in job_keys:
            record = await self.store.hgetall(key)
            state = record.get("state")
            if state in state_counts:
                state_counts[state] += 1

        return {
            **self.stats,
            "uptime_seconds": self._clock() - self._started_at,
            "last_reconcile": self._last_reconcile,
            "total_jobs": len(job_keys),
            "queue_depths": depths,
            "state_counts": state_counts,
        }
