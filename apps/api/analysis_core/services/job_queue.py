"""
Job Queue

At-least-once job delivery on Redis with delayed delivery, visibility timeouts
and dead-letter routing. Layout under queue:{name}:

- jobs      hash   job id -> job JSON
- ready     zset   job id scored by not_before (epoch seconds)
- inflight  zset   job id scored by visibility deadline
- dead      hash   job id -> job JSON, terminal

Delivery is best-effort FIFO by not_before. A received job that is neither
acked nor requeued before its visibility deadline is delivered again. Every
Redis round trip is bounded by operation_timeout and fails as QueueError.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List

import redis.asyncio as redis
from pydantic import ValidationError
from redis.exceptions import RedisError, WatchError

from analysis_core.core.config import settings
from analysis_core.core.exceptions import QueueError
from analysis_core.schemas.analysis import Job, utcnow

logger = logging.getLogger(__name__)


class JobQueue:
    """Redis-backed job queue shared by producers and workers."""

    def __init__(
        self,
        redis_client: redis.Redis,
        name: str = settings.QUEUE_NAME,
        poll_interval: float = settings.QUEUE_POLL_INTERVAL,
        operation_timeout: float = settings.QUEUE_OPERATION_TIMEOUT,
        now: Callable[[], datetime] = utcnow
    ):
        self.redis_client = redis_client
        self.name = name
        self.poll_interval = poll_interval
        self.operation_timeout = operation_timeout
        self._now = now
        prefix = f"queue:{name}"
        self.jobs_key = f"{prefix}:jobs"
        self.ready_key = f"{prefix}:ready"
        self.inflight_key = f"{prefix}:inflight"
        self.dead_key = f"{prefix}:dead"

    def _ts(self) -> float:
        return self._now().timestamp()

    async def _bounded(self, operation: str, awaitable: Awaitable) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.operation_timeout)
        except asyncio.TimeoutError as e:
            raise QueueError(f"{operation} on {self.name} timed out after {self.operation_timeout}s") from e
        except RedisError as e:
            raise QueueError(f"{operation} on {self.name} failed: {e}") from e

    async def enqueue(self, job: Job, delay: float = 0) -> Job:
        """Add a job, deliverable delay seconds from now."""
        job = job.model_copy(update={"not_before": self._now() + timedelta(seconds=max(delay, 0))})
        await self._bounded(f"enqueue of job {job.id}", self._schedule(job))
        logger.info(f"Enqueued job {job.id} ({job.kind} {job.key}) attempt {job.attempt}, delay {delay:.1f}s")
        return job

    async def receive(
        self,
        batch_size: int = settings.QUEUE_BATCH_SIZE,
        visibility_timeout: float = settings.QUEUE_VISIBILITY_TIMEOUT,
        wait_timeout: float = settings.QUEUE_RECEIVE_WAIT
    ) -> List[Job]:
        """
        Long-poll for up to batch_size deliverable jobs.

        Received jobs become invisible for visibility_timeout seconds. Returns
        an empty list when nothing became deliverable within wait_timeout.

        @throws QueueError - Redis unavailable
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + wait_timeout
        while True:
            await self._bounded("reclaim", self._reclaim_expired())
            jobs = await self._bounded("receive", self._claim(batch_size, visibility_timeout))
            if jobs:
                return jobs
            remaining = deadline - loop.time()
            if remaining <= 0:
                return []
            await asyncio.sleep(min(self.poll_interval, remaining))

    async def _reclaim_expired(self) -> None:
        """Move jobs whose visibility deadline passed back to ready."""
        now = self._ts()
        async with self.redis_client.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(self.inflight_key)
                    expired = await pipe.zrangebyscore(self.inflight_key, "-inf", now)
                    if not expired:
                        await pipe.unwatch()
                        return
                    pipe.multi()
                    pipe.zrem(self.inflight_key, *expired)
                    pipe.zadd(self.ready_key, {job_id: now for job_id in expired})
                    await pipe.execute()
                    logger.warning(f"Visibility timeout elapsed for {len(expired)} job(s) on {self.name}, redelivering")
                    return
                except WatchError:
                    continue

    async def _claim(self, batch_size: int, visibility_timeout: float) -> List[Job]:
        now = self._ts()
        async with self.redis_client.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(self.ready_key)
                    job_ids = await pipe.zrangebyscore(self.ready_key, "-inf", now, start=0, num=batch_size)
                    if not job_ids:
                        await pipe.unwatch()
                        return []
                    pipe.multi()
                    pipe.zrem(self.ready_key, *job_ids)
                    pipe.zadd(self.inflight_key, {job_id: now + visibility_timeout for job_id in job_ids})
                    pipe.hmget(self.jobs_key, job_ids)
                    results = await pipe.execute()
                    break
                except WatchError:
                    continue

        jobs = []
        for job_id, body in zip(job_ids, results[-1]):
            if body is None:
                # acked or dead-lettered by another worker after its deadline passed
                await self.redis_client.zrem(self.inflight_key, job_id)
                continue
            try:
                jobs.append(Job.model_validate_json(body))
            except ValidationError as e:
                logger.error(f"Unreadable job {job_id} on {self.name}, moving to dead letters: {e}")
                await self._move_to_dead(job_id, body)
        return jobs

    async def ack(self, job: Job) -> None:
        """Job finished; remove it for good."""
        await self._bounded(f"ack of job {job.id}", self._remove(job.id))
        logger.debug(f"Acked job {job.id}")

    async def nack(self, job: Job) -> None:
        """Give up on this delivery; the job is redelivered once its visibility timeout elapses."""
        await self._bounded(f"nack of job {job.id}", self.redis_client.hset(self.jobs_key, job.id, job.model_dump_json()))
        logger.info(f"Nacked job {job.id}, redelivery after visibility timeout")

    async def requeue(self, job: Job, delay: float = 0) -> Job:
        """Atomically replace an in-flight delivery with a delayed one (retry, lock contention)."""
        job = job.model_copy(update={"not_before": self._now() + timedelta(seconds=max(delay, 0))})
        await self._bounded(f"requeue of job {job.id}", self._schedule(job))
        logger.info(f"Requeued job {job.id} ({job.kind} {job.key}) attempt {job.attempt} in {delay:.1f}s")
        return job

    async def dead_letter(self, job: Job) -> None:
        """Remove a job from the active queue permanently."""
        await self._bounded(f"dead-lettering job {job.id}", self._move_to_dead(job.id, job.model_dump_json()))
        logger.error(f"Job {job.id} ({job.kind} {job.key}) moved to dead letters on {self.name}")

    async def _schedule(self, job: Job) -> None:
        """Store the job body and make it deliverable at not_before, leaving in-flight if it was."""
        async with self.redis_client.pipeline(transaction=True) as pipe:
            pipe.zrem(self.inflight_key, job.id)
            pipe.hset(self.jobs_key, job.id, job.model_dump_json())
            pipe.zadd(self.ready_key, {job.id: job.not_before.timestamp()})
            await pipe.execute()

    async def _remove(self, job_id: str) -> None:
        async with self.redis_client.pipeline(transaction=True) as pipe:
            pipe.zrem(self.inflight_key, job_id)
            pipe.zrem(self.ready_key, job_id)
            pipe.hdel(self.jobs_key, job_id)
            await pipe.execute()

    async def _move_to_dead(self, job_id: str, body: str) -> None:
        async with self.redis_client.pipeline(transaction=True) as pipe:
            pipe.zrem(self.inflight_key, job_id)
            pipe.zrem(self.ready_key, job_id)
            pipe.hdel(self.jobs_key, job_id)
            pipe.hset(self.dead_key, job_id, body)
            await pipe.execute()

    async def is_active(self, job_id: str) -> bool:
        """True while the job is waiting or in flight."""
        return bool(await self._bounded(f"lookup of job {job_id}", self.redis_client.hexists(self.jobs_key, job_id)))

    async def stats(self) -> Dict[str, Any]:
        """Queue depth snapshot for monitoring."""
        queued, deliverable, inflight, dead = await self._bounded("stats", self._depths())
        return {
            "queue": self.name,
            "queued": queued,
            "deliverable": deliverable,
            "delayed": queued - deliverable,
            "in_flight": inflight,
            "dead_lettered": dead
        }

    async def _depths(self) -> List[int]:
        async with self.redis_client.pipeline(transaction=False) as pipe:
            pipe.zcard(self.ready_key)
            pipe.zcount(self.ready_key, "-inf", self._ts())
            pipe.zcard(self.inflight_key)
            pipe.hlen(self.dead_key)
            return await pipe.execute()
