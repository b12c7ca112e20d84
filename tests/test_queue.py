"""
Tests for the job queue
"""

import pytest

from cadenza.core.config import QueueConfig
from cadenza.core.errors import (
    JobNotFoundError, InvalidStateTransitionError, JobValidationError, ResourceExhaustedError
)
from cadenza.core.models import JobState
from cadenza.task_queue import JobQueue


@pytest.fixture
def queue(store, queue_config, clock):
    return JobQueue(store, queue_config, clock=clock)


class TestAddAndPop:

    @pytest.mark.asyncio
    async def test_add_then_next_returns_same_payload(self, queue):
        payload = {"user_id": "alice", "seeds": ["a", "b"], "options": {"limit": 20, "explicit": False}}

        job_id = await queue.add_job("recommendations", payload)
        job = await queue.get_next_job("recommendations")

        assert job.id == job_id
        assert job.payload == payload
        assert job.state == JobState.PENDING
        assert job.priority == 10

    @pytest.mark.asyncio
    async def test_lower_priority_value_runs_first(self, queue):
        low = await queue.add_job("analysis", {"n": 1}, priority=20)
        high = await queue.add_job("analysis", {"n": 2}, priority=1)

        assert (await queue.get_next_job("analysis")).id == high
        assert (await queue.get_next_job("analysis")).id == low
        assert await queue.get_next_job("analysis") is None

    @pytest.mark.asyncio
    async def test_pop_does_not_change_state(self, queue):
        job_id = await queue.add_job("history", {})
        await queue.get_next_job("history")

        job = await queue.get_job_status(job_id)
        assert job.state == JobState.PENDING
        assert await queue.queue_depth("history") == 0

    @pytest.mark.asyncio
    async def test_pending_record_has_pending_ttl(self, queue, store):
        job_id = await queue.add_job("history", {})

        assert await store.ttl(f"jobs:{job_id}") == 7 * 24 * 60 * 60

    @pytest.mark.asyncio
    async def test_full_queue_rejects_without_writing(self, store, clock):
        queue = JobQueue(store, QueueConfig(max_jobs_per_queue=2), clock=clock)
        await queue.add_job("playlist", {"n": 1})
        await queue.add_job("playlist", {"n": 2})

        with pytest.raises(ResourceExhaustedError):
            await queue.add_job("playlist", {"n": 3})

        assert await queue.queue_depth("playlist") == 2
        assert len(await store.scan_keys("jobs:")) == 2

    @pytest.mark.asyncio
    async def test_invalid_options_rejected(self, queue):
        with pytest.raises(JobValidationError):
            await queue.add_job("playlist", {}, timeout_ms=0)
        with pytest.raises(JobValidationError):
            await queue.add_job("playlist", {}, retries_allowed=-1)
        with pytest.raises(JobValidationError):
            await queue.add_job("playlist", "not a dict")

    @pytest.mark.asyncio
    async def test_dangling_queue_id_is_dropped(self, queue, store):
        job_id = await queue.add_job("analysis", {})
        await store.delete(f"jobs:{job_id}")

        assert await queue.get_next_job("analysis") is None
        assert await queue.queue_depth("analysis") == 0


class TestStatusUpdates:

    @pytest.mark.asyncio
    async def test_unknown_job_status_is_none(self, queue):
        assert await queue.get_job_status("missing") is None

    @pytest.mark.asyncio
    async def test_update_unknown_job_raises(self, queue):
        with pytest.raises(JobNotFoundError):
            await queue.update_job_status("missing", JobState.PROCESSING)

    @pytest.mark.asyncio
    async def test_completed_job_gets_short_ttl(self, queue, store, clock):
        job_id = await queue.add_job("analysis", {})
        await queue.update_job_status(job_id, JobState.PROCESSING)
        clock.advance(5)

        job = await queue.update_job_status(job_id, JobState.COMPLETED, result={"tracks": [1, 2]})

        assert job.state == JobState.COMPLETED
        assert job.updated_at == clock()
        assert await store.ttl(f"jobs:{job_id}") == 24 * 60 * 60
        stored = await queue.get_job_status(job_id)
        assert stored.result == {"tracks": [1, 2]}

    @pytest.mark.asyncio
    async def test_processing_keeps_remaining_ttl(self, queue, store, clock):
        job_id = await queue.add_job("analysis", {})
        clock.advance(100)

        await queue.update_job_status(job_id, JobState.PROCESSING)

        assert await store.ttl(f"jobs:{job_id}") == 7 * 24 * 60 * 60 - 100

    @pytest.mark.asyncio
    async def test_nearly_expired_job_is_not_given_a_new_lifetime(self, queue, store, clock):
        job_id = await queue.add_job("analysis", {})
        clock.advance(7 * 24 * 60 * 60 - 0.5)

        await queue.update_job_status(job_id, JobState.PROCESSING)

        assert await store.ttl(f"jobs:{job_id}") == 1

    @pytest.mark.asyncio
    async def test_corrupt_job_status_is_none(self, queue, store):
        await store.hset("jobs:broken", {"id": "broken", "state": "exploded"}, ttl=60)

        assert await queue.get_job_status("broken") is None

    @pytest.mark.asyncio
    async def test_state_never_moves_backwards(self, queue):
        job_id = await queue.add_job("analysis", {})
        await queue.update_job_status(job_id, JobState.PROCESSING)
        await queue.update_job_status(job_id, JobState.FAILED, error="boom")

        with pytest.raises(InvalidStateTransitionError):
            await queue.update_job_status(job_id, JobState.PENDING)
        with pytest.raises(InvalidStateTransitionError):
            await queue.update_job_status(job_id, JobState.COMPLETED)

    @pytest.mark.asyncio
    async def test_updates_merge_only_changed_fields(self, queue, store):
        job_id = await queue.add_job("analysis", {"x": 1}, retries_allowed=2)
        await queue.update_job_status(job_id, JobState.PROCESSING)
        # A concurrent writer touches another field
        await store.hset(f"jobs:{job_id}", {"error": "note from elsewhere"})

        await queue.update_job_status(job_id, JobState.COMPLETED, result="ok")

        job = await queue.get_job_status(job_id)
        assert job.error == "note from elsewhere"
        assert job.result == "ok"
        assert job.retries_left == 2

    @pytest.mark.asyncio
    async def test_unknown_fields_rejected(self, queue):
        job_id = await queue.add_job("analysis", {})

        with pytest.raises(JobValidationError):
            await queue.update_job_status(job_id, JobState.PROCESSING, colour="blue")


class TestReconcile:

    @pytest.mark.asyncio
    async def test_abandoned_jobs_are_failed(self, queue, clock):
        stuck = await queue.add_job("analysis", {})
        await queue.update_job_status(stuck, JobState.PROCESSING)
        waiting = await queue.add_job("analysis", {})
        clock.advance(7 * 24 * 60 * 60 - 1800)
        fresh = await queue.add_job("analysis", {})

        repaired = await queue.reconcile(["analysis"])

        assert repaired == 2
        stuck_job = await queue.get_job_status(stuck)
        assert stuck_job.state == JobState.FAILED
        assert stuck_job.error_type == "JobAbandonedError"
        assert (await queue.get_job_status(waiting)).state == JobState.FAILED
        assert (await queue.get_job_status(fresh)).state == JobState.PENDING
        assert await queue.queue_depth("analysis") == 1

    @pytest.mark.asyncio
    async def test_corrupt_records_and_dangling_ids_are_removed(self, queue, store):
        await store.hset("jobs:broken", {"id": "broken", "state": "exploded"}, ttl=60)
        gone = await queue.add_job("history", {})
        await store.delete(f"jobs:{gone}")
        kept = await queue.add_job("history", {})

        repaired = await queue.reconcile(["history"])

        assert repaired == 2
        assert not await store.exists("jobs:broken")
        assert await store.zrange("queue:history") == [kept]

    @pytest.mark.asyncio
    async def test_finished_jobs_are_left_alone(self, queue, clock):
        job_id = await queue.add_job("history", {})
        await queue.update_job_status(job_id, JobState.FAILED, error="boom")
        clock.advance(23 * 60 * 60)

        assert await queue.reconcile(["history"]) == 0
        assert (await queue.get_job_status(job_id)).error == "boom"


class TestStats:

    @pytest.mark.asyncio
    async def test_queue_stats(self, queue):
        first = await queue.add_job("analysis", {})
        await queue.add_job("analysis", {})
        await queue.add_job("history", {})
        await queue.update_job_status(first, JobState.FAILED, error="boom")

        stats = await queue.get_queue_stats(["analysis", "history"])

        assert stats["jobs_added"] == 3
        assert stats["jobs_failed"] == 1
        assert stats["queue_depths"] == {"analysis": 2, "history": 1}
        assert stats["state_counts"]["pending"] == 2
        assert stats["state_counts"]["failed"] == 1
        assert stats["total_jobs"] == 3
