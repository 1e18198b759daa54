"""
Unit tests for AnalysisTrigger (deduplicating submission)
"""

import asyncio
import pytest
from unittest.mock import AsyncMock, patch

from analysis_core.core.exceptions import QueueError
from analysis_core.schemas.analysis import JobState, JobStatus
from analysis_core.services.request_coordinator import weekly_key
from analysis_core.services.triggers import job_state_key, pending_marker_key

KEY = weekly_key("42", 6)


class TestSubmit:
    """Pending markers deduplicate overlapping triggers"""

    @pytest.mark.asyncio
    async def test_first_submit_creates_job(self, services):
        job_id, created = await services.trigger.submit(KEY, "weekly_analysis")

        assert created is True
        assert await services.trigger.pending_job_id(KEY) == job_id
        assert (await services.trigger.get_status(job_id)).state == JobState.PENDING
        assert await services.queue.is_active(job_id)

    @pytest.mark.asyncio
    async def test_overlapping_submits_share_one_job(self, services):
        results = await asyncio.gather(*(services.trigger.submit(KEY, "weekly_analysis") for _ in range(5)))

        assert len({job_id for job_id, _ in results}) == 1
        assert [created for _, created in results].count(True) == 1
        assert (await services.queue.stats())["queued"] == 1

    @pytest.mark.asyncio
    async def test_marker_without_state_is_joined(self, services, cache):
        # winner has taken the marker but not yet published PENDING
        await cache.set_if_absent(pending_marker_key(KEY), "in-flight-job", ttl=600)

        job_id, created = await services.trigger.submit(KEY, "weekly_analysis")

        assert (job_id, created) == ("in-flight-job", False)
        assert (await services.queue.stats())["queued"] == 0

    @pytest.mark.asyncio
    async def test_orphaned_marker_is_replaced(self, services, cache, clock):
        await cache.set_if_absent(pending_marker_key(KEY), "crashed-job", ttl=600)
        finished = JobStatus(
            job_id="crashed-job", key=KEY, kind="weekly_analysis",
            state=JobState.DEAD_LETTERED, attempt=5, updated_at=clock()
        )
        await cache.set_json(job_state_key("crashed-job"), finished.model_dump(mode="json"), 600)

        job_id, created = await services.trigger.submit(KEY, "weekly_analysis")

        assert created is True
        assert job_id != "crashed-job"
        assert await services.trigger.pending_job_id(KEY) == job_id

    @pytest.mark.asyncio
    async def test_failed_enqueue_releases_marker(self, services):
        with patch.object(services.queue, "enqueue", AsyncMock(side_effect=QueueError("down"))):
            with pytest.raises(QueueError):
                await services.trigger.submit(KEY, "weekly_analysis")

        assert await services.trigger.pending_job_id(KEY) is None

    @pytest.mark.asyncio
    async def test_clear_pending_only_for_owner(self, services):
        job_id, _ = await services.trigger.submit(KEY, "weekly_analysis")
        (job,) = await services.queue.receive(wait_timeout=0)
        other = job.model_copy(update={"id": "someone-else"})

        await services.trigger.clear_pending(other)
        assert await services.trigger.pending_job_id(KEY) == job_id

        await services.trigger.clear_pending(job)
        assert await services.trigger.pending_job_id(KEY) is None
