"""
Queue Worker for Cadenza

Polls job queues and runs registered handlers with bounded concurrency, a
per-job timeout and a retry policy driven by error categories.

Timeouts are cooperative: when a handler overruns, its task is cancelled and
the job is failed at once, but a handler that ignores cancellation (or runs
in a thread) keeps going in the background, still holding any tenant
client it leased. Its eventual result is discarded.
"""

import asyncio
import inspect
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set

from .queue_manager import JobQueue
from ..cache.cached_client import CachedClient
from ..cache.layer import CacheLayer
from ..core.config import WorkerConfig
from ..core.errors import (
    CadenzaError, JobValidationError, JobTimeoutError, JobNotFoundError,
    InvalidStateTransitionError, ResourceExhaustedError, ConfigurationError, is_retryable_error
)
from ..core.models import Job, JobState
from ..pooling.pool import TenantResourcePool

logger = logging.getLogger(__name__)

# handler(queue_name, payload) or handler(queue_name, payload, client)
Handler = Callable[..., Any]


@dataclass
class HandlerRegistration:
    """Handler bound to a queue"""
    queue_name: str
    handler: Handler
    tenant_key: Optional[str] = None  # payload field holding the tenant id


def _discard_late_result(task: asyncio.Task) -> None:
    """Consume the outcome of a timed-out handler so it is not reported as unretrieved"""
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.debug(f"Timed-out handler finished late with {type(error).__name__}: {error}")
    else:
        logger.debug("Timed-out handler finished late; result discarded")


class Worker:
    """
    Job worker

    One polling task per registered queue keeps at most `concurrency` jobs of
    that queue in flight; a separate task reconciles queue state periodically.
    """

    def __init__(
        self,
        queue: JobQueue,
        pool: Optional[TenantResourcePool] = None,
        cache: Optional[CacheLayer] = None,
        config: Optional[WorkerConfig] = None,
        worker_id: Optional[str] = None
    ):
        self.queue = queue
        self.pool = pool
        self.cache = cache
        self.config = config or WorkerConfig()
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"

        self.handlers: Dict[str, HandlerRegistration] = {}
        self.running = False
        self._pollers: List[asyncio.Task] = []
        self._reconcile_task: Optional[asyncio.Task] = None
        self._in_flight: Dict[str, Set[asyncio.Task]] = {}

        self.stats = {
            "jobs_processed": 0,
            "jobs_completed": 0,
            "jobs_failed": 0,
            "jobs_retried": 0,
            "jobs_timed_out": 0,
            "jobs_skipped": 0,
        }

    def register(self, queue_name: str, handler: Handler, tenant_key: Optional[str] = None) -> None:
        """
        Register the handler for a queue

        With `tenant_key`, the handler receives a third argument: the pooled
        client of the tenant named by `payload[tenant_key]`, wrapped in a
        CachedClient when the worker has a cache.
        """
        if tenant_key and self.pool is None:
            raise ConfigurationError(
                f"Handler for {queue_name} needs tenant clients but the worker has no pool"
            )
        if queue_name in self.handlers:
            logger.warning(f"Replacing handler for queue {queue_name}")
        self.handlers[queue_name] = HandlerRegistration(queue_name, handler, tenant_key)
        self._in_flight.setdefault(queue_name, set())
        logger.info(f"Registered handler {getattr(handler, '__name__', handler)} for queue {queue_name}")

    # Lifecycle

    async def start(self) -> None:
        """Start polling every registered queue"""
        if self.running:
            return
        if not self.handlers:
            raise ConfigurationError("No handlers registered")
        self.config.validate()

        self.running = True
        for queue_name in self.handlers:
            self._pollers.append(asyncio.create_task(self._poll_loop(queue_name)))
        self._reconcile_task = asyncio.create_task(self._reconcile_loop())
        logger.info(
            f"Worker {self.worker_id} started on {', '.join(self.handlers)} "
            f"(concurrency {self.config.concurrency})"
        )

    async def stop(self) -> None:
        """Stop polling and wait up to the grace period for running jobs"""
        if not self.running:
            return
        self.running = False

        background = self._pollers + ([self._reconcile_task] if self._reconcile_task else [])
        for task in background:
            task.cancel()
        await asyncio.gather(*background, return_exceptions=True)
        self._pollers = []
        self._reconcile_task = None

        in_flight = [task for tasks in self._in_flight.values() for task in tasks]
        if in_flight:
            logger.info(f"Waiting for {len(in_flight)} running jobs to finish")
            _, pending = await asyncio.wait(in_flight, timeout=self.config.shutdown_grace_seconds)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        logger.info(f"Worker {self.worker_id} stopped")

    async def __aenter__(self) -> "Worker":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    # Polling

    async def _poll_loop(self, queue_name: str) -> None:
        slots = asyncio.Semaphore(self.config.concurrency)
        while self.running:
            await slots.acquire()
            try:
                job = await self.queue.get_next_job(queue_name)
            except Exception as e:
                slots.release()
                logger.error(f"Error polling queue {queue_name}: {e}")
                await asyncio.sleep(self.config.poll_interval_seconds)
                continue

            if job is None:
                slots.release()
                await asyncio.sleep(self.config.poll_interval_seconds)
                continue

            task = asyncio.create_task(self._run_in_slot(job, slots))
            self._in_flight[queue_name].add(task)
            task.add_done_callback(self._in_flight[queue_name].discard)

    async def _run_in_slot(self, job: Job, slots: asyncio.Semaphore) -> None:
        try:
            await self.process_job(job)
        except Exception as e:
            logger.error(f"Error processing job {job.id}: {e}")
        finally:
            slots.release()

    async def _reconcile_loop(self) -> None:
        while self.running:
            try:
                await asyncio.sleep(self.config.reconcile_interval_seconds)
                await self.queue.reconcile(list(self.handlers))
            except Exception as e:
                logger.error(f"Reconciliation error: {e}")

    async def run_once(self, queue_name: str) -> int:
        """
        Drain a queue without the polling loop

        Jobs are taken in batches of `concurrency`. Retries enqueued while
        draining are processed too. Returns the number of jobs taken.
        """
        taken = 0
        while True:
            batch: List[Job] = []
            while len(batch) < self.config.concurrency:
                job = await self.queue.get_next_job(queue_name)
                if job is None:
                    if await self.queue.queue_depth(queue_name) == 0:
                        break
                    continue
                batch.append(job)
            if not batch:
                return taken
            taken += len(batch)
            await asyncio.gather(*(self.process_job(job) for job in batch))

    # Execution

    async def process_job(self, job: Job) -> Optional[Job]:
        """Run one popped job to a finished state; returns the final record"""
        if job.state != JobState.PENDING:
            self.stats["jobs_skipped"] += 1
            logger.warning(f"Skipping job {job.id} in state {job.state.value}")
            return None

        registration = self.handlers.get(job.queue_name)
        if registration is None:
            return await self._fail(job, JobValidationError(f"No handler registered for queue {job.queue_name}"))

        try:
            job = await self.queue.update_job_status(job.id, JobState.PROCESSING)
        except (JobNotFoundError, InvalidStateTransitionError) as e:
            return self._lost(job, e)

        self.stats["jobs_processed"] += 1
        timeout_ms = job.timeout_ms or self.config.default_timeout_ms
        logger.info(f"Processing job {job.id} from {job.queue_name} (attempt {job.attempt})")

        try:
            result = await self._execute(registration, job, timeout_ms)
        except asyncio.CancelledError:
            await self._fail(job, CadenzaError("Worker stopped before the job finished"))
            raise
        except Exception as e:
            return await self._handle_failure(job, e)

        try:
            finished = await self.queue.update_job_status(job.id, JobState.COMPLETED, result=result)
        except TypeError as e:
            return await self._fail(job, JobValidationError(f"Handler result is not JSON serializable: {e}"))
        except (JobNotFoundError, InvalidStateTransitionError) as e:
            return self._lost(job, e)
        self.stats["jobs_completed"] += 1
        logger.info(f"Job {job.id} completed")
        return finished

    async def _execute(self, registration: HandlerRegistration, job: Job, timeout_ms: int) -> Any:
        task = asyncio.create_task(self._invoke(registration, job))
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout_ms / 1000)
        except asyncio.CancelledError:
            task.cancel()
            raise

        if task in done:
            return task.result()

        task.cancel()
        task.add_done_callback(_discard_late_result)
        self.stats["jobs_timed_out"] += 1
        raise JobTimeoutError(
            f"Job {job.id} timed out after {timeout_ms}ms",
            data={"job_id": job.id, "timeout_ms": timeout_ms}
        )

    async def _invoke(self, registration: HandlerRegistration, job: Job) -> Any:
        if not registration.tenant_key:
            return await self._call(registration.handler, job.queue_name, job.payload)

        tenant_id = job.payload.get(registration.tenant_key)
        if not tenant_id:
            raise JobValidationError(
                f"Job payload is missing '{registration.tenant_key}'",
                data={"job_id": job.id}
            )
        async with self.pool.lease(str(tenant_id)) as client:
            if self.cache is not None:
                client = CachedClient(client, self.cache, str(tenant_id))
            work = asyncio.ensure_future(
                self._call(registration.handler, job.queue_name, job.payload, client)
            )
            try:
                return await asyncio.shield(work)
            except asyncio.CancelledError:
                # Hold the lease until the handler lets go of the client
                if inspect.iscoroutinefunction(registration.handler):
                    work.cancel()
                await asyncio.wait({work})
                _discard_late_result(work)
                raise

    async def _call(self, handler: Handler, *args: Any) -> Any:
        if inspect.iscoroutinefunction(handler):
            return await handler(*args)
        result = await asyncio.to_thread(handler, *args)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _handle_failure(self, job: Job, error: Exception) -> Optional[Job]:
        retryable = is_retryable_error(error)
        if retryable and job.retries_left > 0:
            try:
                retry_id = await self.queue.add_job(
                    job.queue_name,
                    job.payload,
                    priority=job.priority - 1,
                    timeout_ms=job.timeout_ms,
                    retries_allowed=job.retries_allowed,
                    retries_left=job.retries_left - 1,
                    attempt=job.attempt + 1,
                    parent_id=job.id
                )
            except ResourceExhaustedError as e:
                logger.error(f"Could not enqueue retry of job {job.id}: {e}")
            else:
                self.stats["jobs_retried"] += 1
                logger.warning(
                    f"Job {job.id} failed ({type(error).__name__}), retrying as {retry_id} "
                    f"({job.retries_left - 1} retries left)"
                )
                return await self._fail(job, error, retried=True, retry_job_id=retry_id)

        if not retryable:
            logger.error(f"Job {job.id} failed permanently: {error}")
        else:
            logger.error(f"Job {job.id} failed after {job.attempt} attempts: {error}")
        return await self._fail(job, error)

    async def _fail(self, job: Job, error: Exception, **updates: Any) -> Optional[Job]:
        try:
            failed = await self.queue.update_job_status(
                job.id,
                JobState.FAILED,
                error=str(error),
                error_type=type(error).__name__,
                **updates
            )
        except (JobNotFoundError, InvalidStateTransitionError) as e:
            return self._lost(job, e)
        self.stats["jobs_failed"] += 1
        return failed

    def _lost(self, job: Job, error: CadenzaError) -> None:
        """Count a job whose record expired or was finished elsewhere"""
        self.stats["jobs_skipped"] += 1
        logger.warning(f"Skipping job {job.id}: {error}")
        return None

    def get_status(self) -> Dict[str, Any]:
        """Get worker status"""
        return {
            "worker_id": self.worker_id,
            "running": self.running,
            "concurrency": self.config.concurrency,
            "queues": {
                name: {
                    "active_jobs": len(self._in_flight.get(name, ())),
                    "tenant_key": registration.tenant_key,
                }
                for name, registration in self.handlers.items()
            },
            **self.stats
        }
