"""
Unit tests for the Redis JobQueue

Delivery is at-least-once: a received job that is not acked or requeued
before its visibility deadline is delivered again.
"""

import asyncio
import pytest
from unittest.mock import AsyncMock, MagicMock
from redis.exceptions import ConnectionError as RedisConnectionError

from analysis_core.core.exceptions import QueueError
from analysis_core.schemas.analysis import AnalysisKey, Job
from analysis_core.services.job_queue import JobQueue


def make_job(subject_id="42", **fields):
    return Job(
        key=AnalysisKey(subject_id=subject_id, subject_type="team", period_id="week-6"),
        kind="weekly_analysis",
        **fields
    )


class TestDelivery:
    """Enqueue, receive, ack"""

    @pytest.mark.asyncio
    async def test_receive_returns_enqueued_job(self, queue):
        job = await queue.enqueue(make_job())

        received = await queue.receive(batch_size=5, visibility_timeout=30, wait_timeout=0)

        assert [j.id for j in received] == [job.id]
        assert received[0].key == job.key

    @pytest.mark.asyncio
    async def test_received_job_is_invisible(self, queue):
        await queue.enqueue(make_job())
        await queue.receive(visibility_timeout=30, wait_timeout=0)

        assert await queue.receive(visibility_timeout=30, wait_timeout=0) == []

    @pytest.mark.asyncio
    async def test_ack_removes_job(self, queue, clock):
        job = await queue.enqueue(make_job())
        (received,) = await queue.receive(visibility_timeout=30, wait_timeout=0)

        await queue.ack(received)

        clock.advance(60)
        assert await queue.receive(wait_timeout=0) == []
        assert await queue.is_active(job.id) is False

    @pytest.mark.asyncio
    async def test_batch_size_and_fifo(self, queue, clock):
        ids = []
        for i in range(4):
            ids.append((await queue.enqueue(make_job(subject_id=str(i)))).id)
            clock.advance(1)

        first = await queue.receive(batch_size=3, visibility_timeout=30, wait_timeout=0)
        second = await queue.receive(batch_size=3, visibility_timeout=30, wait_timeout=0)

        assert [j.id for j in first] == ids[:3]
        assert [j.id for j in second] == ids[3:]

    @pytest.mark.asyncio
    async def test_long_poll_returns_empty_after_wait(self, queue):
        loop = asyncio.get_running_loop()
        started = loop.time()

        assert await queue.receive(wait_timeout=0.05) == []
        assert loop.time() - started >= 0.05

    @pytest.mark.asyncio
    async def test_concurrent_receivers_never_share_a_job(self, queue):
        for i in range(10):
            await queue.enqueue(make_job(subject_id=str(i)))

        batches = await asyncio.gather(*(queue.receive(batch_size=3, wait_timeout=0) for _ in range(5)))

        ids = [job.id for batch in batches for job in batch]
        assert len(ids) == 10
        assert len(set(ids)) == 10


class TestDelaysAndRedelivery:
    """not_before, visibility timeout, nack"""

    @pytest.mark.asyncio
    async def test_delayed_job_not_delivered_early(self, queue, clock):
        await queue.enqueue(make_job(), delay=30)

        assert await queue.receive(wait_timeout=0) == []
        clock.advance(30)
        assert len(await queue.receive(wait_timeout=0)) == 1

    @pytest.mark.asyncio
    async def test_visibility_timeout_redelivers(self, queue, clock):
        job = await queue.enqueue(make_job())
        await queue.receive(visibility_timeout=30, wait_timeout=0)

        clock.advance(31)
        redelivered = await queue.receive(visibility_timeout=30, wait_timeout=0)

        assert [j.id for j in redelivered] == [job.id]

    @pytest.mark.asyncio
    async def test_nack_keeps_updated_body(self, queue, clock):
        await queue.enqueue(make_job())
        (received,) = await queue.receive(visibility_timeout=30, wait_timeout=0)

        await queue.nack(received.model_copy(update={"attempt": 2}))
        clock.advance(31)

        (redelivered,) = await queue.receive(wait_timeout=0)
        assert redelivered.attempt == 2

    @pytest.mark.asyncio
    async def test_requeue_replaces_inflight_delivery(self, queue, clock):
        await queue.enqueue(make_job())
        (received,) = await queue.receive(visibility_timeout=30, wait_timeout=0)

        await queue.requeue(received.model_copy(update={"attempt": 1}), delay=10)

        assert await queue.receive(wait_timeout=0) == []
        clock.advance(10)
        (retried,) = await queue.receive(wait_timeout=0)
        assert retried.id == received.id
        assert retried.attempt == 1

        # the old visibility deadline no longer produces a second copy
        await queue.ack(retried)
        clock.advance(60)
        assert await queue.receive(wait_timeout=0) == []


class TestDeadLetter:
    """Dead-lettered jobs never re-enter the active queue"""

    @pytest.mark.asyncio
    async def test_dead_letter_is_terminal(self, queue, clock):
        job = await queue.enqueue(make_job())
        (received,) = await queue.receive(visibility_timeout=30, wait_timeout=0)

        await queue.dead_letter(received)

        clock.advance(3600)
        assert await queue.receive(wait_timeout=0) == []
        assert await queue.is_active(job.id) is False
        stats = await queue.stats()
        assert stats["dead_lettered"] == 1
        assert stats["in_flight"] == 0

    @pytest.mark.asyncio
    async def test_unreadable_job_goes_to_dead_letters(self, queue, redis_client, clock):
        await redis_client.hset(queue.jobs_key, "broken", "{not a job")
        await redis_client.zadd(queue.ready_key, {"broken": clock().timestamp()})

        assert await queue.receive(wait_timeout=0) == []
        assert (await queue.stats())["dead_lettered"] == 1


class TestStatsAndErrors:
    """Monitoring and infrastructure failures"""

    @pytest.mark.asyncio
    async def test_stats(self, queue, clock):
        await queue.enqueue(make_job(subject_id="1"))
        await queue.enqueue(make_job(subject_id="2"), delay=60)
        await queue.enqueue(make_job(subject_id="3"))
        await queue.receive(batch_size=1, wait_timeout=0)

        stats = await queue.stats()

        assert stats == {
            "queue": "test",
            "queued": 2,
            "deliverable": 1,
            "delayed": 1,
            "in_flight": 1,
            "dead_lettered": 0
        }

    @pytest.mark.asyncio
    async def test_redis_failure_raises_queue_error(self, clock):
        broken = MagicMock()
        broken.pipeline.side_effect = RedisConnectionError("down")
        queue = JobQueue(broken, name="test", now=clock)

        with pytest.raises(QueueError):
            await queue.enqueue(make_job())
        with pytest.raises(QueueError):
            await queue.receive(wait_timeout=0)

    @pytest.mark.asyncio
    async def test_stalled_redis_is_bounded(self, clock):
        async def never_answers(*args, **kwargs):
            await asyncio.sleep(60)

        stalled = MagicMock()
        pipe = stalled.pipeline.return_value.__aenter__.return_value
        pipe.execute = AsyncMock(side_effect=never_answers)
        pipe.watch = AsyncMock(side_effect=never_answers)
        stalled.hset = AsyncMock(side_effect=never_answers)
        queue = JobQueue(stalled, name="test", operation_timeout=0.1, now=clock)

        with pytest.raises(QueueError):
            await asyncio.wait_for(queue.enqueue(make_job()), timeout=2)
        with pytest.raises(QueueError):
            await asyncio.wait_for(queue.receive(wait_timeout=0), timeout=2)
        with pytest.raises(QueueError):
            await asyncio.wait_for(queue.nack(make_job()), timeout=2)
        with pytest.raises(QueueError):
            await asyncio.wait_for(queue.stats(), timeout=2)
