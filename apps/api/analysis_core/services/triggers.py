"""
Analysis triggers and published job state.

Every producer (request coordinator, scheduler) submits through
AnalysisTrigger. A pending marker pending:{cache_key} holding the job id is
taken with SET NX before enqueueing, so overlapping triggers for the same key
join the job already queued instead of creating a second one.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from pydantic import ValidationError

from analysis_core.core.cache_manager import CacheManager
from analysis_core.core.config import settings
from analysis_core.schemas.analysis import AnalysisKey, Job, JobState, JobStatus, utcnow
from analysis_core.services.job_queue import JobQueue

logger = logging.getLogger(__name__)

_TERMINAL_STATES = (JobState.SUCCEEDED, JobState.DEAD_LETTERED)


def pending_marker_key(key: AnalysisKey) -> str:
    return f"pending:{key.cache_key}"


def job_state_key(job_id: str) -> str:
    return f"job_state:{job_id}"


class AnalysisTrigger:
    """Deduplicating job submission plus job state publication."""

    def __init__(
        self,
        cache: CacheManager,
        queue: JobQueue,
        marker_ttl: int = settings.PENDING_MARKER_TTL_SECONDS,
        state_ttl: int = settings.JOB_STATE_TTL_SECONDS,
        now: Callable[[], datetime] = utcnow
    ):
        self.cache = cache
        self.queue = queue
        self.marker_ttl = marker_ttl
        self.state_ttl = state_ttl
        self._now = now

    async def submit(
        self,
        key: AnalysisKey,
        kind: str,
        params: Optional[Dict[str, Any]] = None
    ) -> Tuple[str, bool]:
        """
        Queue a computation for key unless one is already pending.

        @returns (job_id, created) - created is False when an existing job was joined

        @throws QueueError - the job could not be enqueued
        """
        marker = pending_marker_key(key)
        for _ in range(2):
            job = Job(key=key, kind=kind, params=params or {}, enqueued_at=self._now())
            if await self.cache.set_if_absent(marker, job.id, self.marker_ttl):
                try:
                    await self.queue.enqueue(job)
                except Exception:
                    await self.cache.delete_if_value(marker, job.id)
                    raise
                await self.publish(job, JobState.PENDING)
                logger.info(f"Triggered {kind} for {key} as job {job.id}")
                return job.id, True

            existing = await self.cache.get_value(marker)
            if existing is None:
                # marker expired between the two calls, or Redis is unreachable
                continue
            status = await self.get_status(existing)
            if status is None or status.state not in _TERMINAL_STATES:
                logger.debug(f"Joined pending job {existing} for {key}")
                return existing, False
            # marker outlived its job
            logger.warning(f"Clearing orphaned pending marker for {key} (job {existing})")
            await self.cache.delete_if_value(marker, existing)

        job = Job(key=key, kind=kind, params=params or {}, enqueued_at=self._now())
        logger.warning(f"Pending marker unavailable for {key}, enqueueing job {job.id} without deduplication")
        await self.queue.enqueue(job)
        await self.publish(job, JobState.PENDING)
        return job.id, True

    async def pending_job_id(self, key: AnalysisKey) -> Optional[str]:
        return await self.cache.get_value(pending_marker_key(key))

    async def clear_pending(self, job: Job) -> None:
        """Drop the pending marker if it still points at this job."""
        await self.cache.delete_if_value(pending_marker_key(job.key), job.id)

    async def publish(self, job: Job, state: JobState, last_error: Optional[str] = None) -> None:
        status = JobStatus(
            job_id=job.id,
            key=job.key,
            kind=job.kind,
            state=state,
            attempt=job.attempt,
            last_error=last_error,
            updated_at=self._now()
        )
        await self.cache.set_json(job_state_key(job.id), status.model_dump(mode="json"), self.state_ttl)

    async def get_status(self, job_id: str) -> Optional[JobStatus]:
        data = await self.cache.get_json(job_state_key(job_id))
        if not data:
            return None
        try:
            return JobStatus.model_validate(data)
        except ValidationError as e:
            logger.error(f"Malformed job state for {job_id}: {e}")
            return None
