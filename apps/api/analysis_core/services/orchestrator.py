"""
Analysis Orchestrator

Consumes jobs from the queue and drives each through

    Pending -> Running -> Succeeded | Retrying | DeadLettered

with single-flight execution per AnalysisKey, concurrent source fan-out with
graceful degradation, and bounded retries with exponential backoff.
"""

import asyncio
import inspect
import logging
import random
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from analysis_core.core.cache_manager import CacheManager
from analysis_core.core.config import settings
from analysis_core.core.exceptions import (
    CacheError,
    LockContention,
    MissingMandatorySource,
    QueueError,
    RateLimitExceededError,
    UnknownAnalysisKind,
)
from analysis_core.schemas.analysis import AnalysisArtifact, Job, JobState, utcnow
from analysis_core.services.analyzers import Analyzer, AnalyzerRegistry, SourceSpec
from analysis_core.services.artifact_store import ArtifactStore
from analysis_core.services.job_queue import JobQueue
from analysis_core.services.provider_gateway import ProviderGateway
from analysis_core.services.triggers import AnalysisTrigger

logger = logging.getLogger(__name__)


def lock_key(cache_key: str) -> str:
    return f"lock:{cache_key}"


def backoff_delay(
    attempt: int,
    base: float = settings.RETRY_BASE_DELAY,
    cap: float = settings.RETRY_MAX_DELAY,
    jitter_ratio: float = settings.RETRY_JITTER_RATIO
) -> float:
    """
    Delay before retry number `attempt` (1-based).

    min(base * 2**attempt, cap), spread by +/- jitter_ratio.
    """
    delay = min(base * (2 ** attempt), cap)
    if jitter_ratio:
        delay += delay * random.uniform(-jitter_ratio, jitter_ratio)
    return max(delay, 0.0)


class AnalysisOrchestrator:
    """Job state machine and worker loop."""

    def __init__(
        self,
        queue: JobQueue,
        store: ArtifactStore,
        cache: CacheManager,
        gateway: ProviderGateway,
        registry: AnalyzerRegistry,
        trigger: AnalysisTrigger,
        max_attempts: int = settings.JOB_MAX_ATTEMPTS,
        lock_ttl: int = settings.LOCK_TTL_SECONDS,
        contention_delay: float = settings.LOCK_CONTENTION_DELAY_SECONDS,
        backoff: Callable[[int], float] = backoff_delay,
        now: Callable[[], datetime] = utcnow
    ):
        self.queue = queue
        self.store = store
        self.cache = cache
        self.gateway = gateway
        self.registry = registry
        self.trigger = trigger
        self.max_attempts = max_attempts
        self.lock_ttl = lock_ttl
        self.contention_delay = contention_delay
        self.backoff = backoff
        self._now = now

    async def process_job(self, job: Job) -> JobState:
        """
        Run one delivery of a job to a state transition.

        @returns The state the job was left in (PENDING after lock contention)

        @throws QueueError - the transition could not be recorded on the queue;
                the delivery becomes visible again after its timeout
        """
        await self.trigger.publish(job, JobState.RUNNING)

        try:
            analyzer = self.registry.get(job.kind)
        except UnknownAnalysisKind as e:
            logger.error(f"Job {job.id}: {e}")
            return await self._fail(job, e)

        if await self._already_computed(job):
            return await self._succeed(job, computed=False)

        token = await self.cache.try_acquire_lock(lock_key(job.key.cache_key), self.lock_ttl)
        if token is None:
            contention = LockContention(job.key.cache_key)
            logger.info(f"Job {job.id}: {contention}, requeueing in {self.contention_delay}s")
            await self.queue.requeue(job, self.contention_delay)
            await self.trigger.publish(job, JobState.PENDING)
            return JobState.PENDING

        failure: Optional[Exception] = None
        try:
            if await self._already_computed(job):
                computed = False
            else:
                await self._compute(analyzer, job)
                computed = True
        except Exception as e:
            failure = e
        finally:
            await self.cache.release_lock(lock_key(job.key.cache_key), token)

        if failure is not None:
            return await self._fail(job, failure)
        return await self._succeed(job, computed=computed)

    async def _already_computed(self, job: Job) -> bool:
        """A fresh artifact computed since the job was enqueued makes it a duplicate."""
        artifact = await self.store.get(job.key)
        if artifact is None:
            return False
        if artifact.computed_at >= job.enqueued_at:
            logger.info(f"Job {job.id}: artifact for {job.key} computed at {artifact.computed_at} is current, skipping")
            return True
        return False

    async def _compute(self, analyzer: Analyzer, job: Job) -> AnalysisArtifact:
        started_at = self._now()
        logger.info(f"Job {job.id}: computing {job.kind} for {job.key} (attempt {job.attempt + 1})")

        inputs, degraded_sources = await self.fan_out(analyzer, job)

        payload = analyzer.compute(inputs, job)
        if inspect.isawaitable(payload):
            payload = await payload

        artifact = AnalysisArtifact(
            key=job.key,
            kind=job.kind,
            payload=payload,
            computed_at=started_at,
            source_version=f"{analyzer.kind}:{analyzer.version}",
            ttl=analyzer.ttl_seconds,
            degraded=bool(degraded_sources),
            degraded_sources=degraded_sources
        )
        await self.store.put(artifact)
        return artifact

    async def fan_out(self, analyzer: Analyzer, job: Job) -> Tuple[Dict[str, Any], List[str]]:
        """
        Fetch every source concurrently.

        @returns (inputs by source name, names of failed non-essential sources)

        @throws MissingMandatorySource - a mandatory source failed
        """
        results = await asyncio.gather(
            *(self._fetch_source(source, job) for source in analyzer.sources),
            return_exceptions=True
        )

        inputs: Dict[str, Any] = {}
        degraded: List[str] = []
        for source, result in zip(analyzer.sources, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                if source.mandatory:
                    raise MissingMandatorySource(source.name, result) from result
                logger.warning(f"Job {job.id}: source {source.name} unavailable, continuing degraded: {result}")
                degraded.append(source.name)
                continue
            inputs[source.name] = result
        return inputs, degraded

    async def _fetch_source(self, source: SourceSpec, job: Job) -> Any:
        request = source.request(job)
        if source.domain:
            cached = await self.store.get_domain(source.domain, request.cache_key)
            if cached is not None:
                return cached

        data = await self.gateway.fetch(request)

        if source.domain:
            await self.store.put_domain(source.domain, request.cache_key, data)
        return data

    async def _succeed(self, job: Job, computed: bool) -> JobState:
        await self.queue.ack(job)
        await self.trigger.clear_pending(job)
        await self.trigger.publish(job, JobState.SUCCEEDED)
        if computed:
            logger.info(f"Job {job.id} succeeded for {job.key}")
        return JobState.SUCCEEDED

    async def _fail(self, job: Job, error: Exception) -> JobState:
        last_error = f"{type(error).__name__}: {error}"
        job = job.model_copy(update={
            "attempt": job.attempt + 1,
            "errors": [*job.errors, last_error]
        })

        if getattr(error, "retryable", True) and job.attempt < self.max_attempts:
            delay = self.backoff(job.attempt)
            cause = error.cause if isinstance(error, MissingMandatorySource) else error
            if isinstance(cause, RateLimitExceededError):
                delay = max(delay, cause.retry_after)
            logger.warning(
                f"Job {job.id} failed (attempt {job.attempt}/{self.max_attempts}), retrying in {delay:.1f}s: {last_error}"
            )
            await self.queue.requeue(job, delay)
            await self.trigger.publish(job, JobState.RETRYING, last_error)
            return JobState.RETRYING

        return await self._dead_letter(job, last_error)

    async def _dead_letter(self, job: Job, last_error: str) -> JobState:
        try:
            await self.store.record_dead_letter(job, last_error)
        except CacheError as e:
            # keep the job deliverable until the failure is on record
            logger.error(f"Job {job.id}: could not persist dead letter, leaving for redelivery: {e}")
            await self.queue.nack(job)
            await self.trigger.publish(job, JobState.RETRYING, last_error)
            return JobState.RETRYING

        await self.queue.dead_letter(job)
        await self.trigger.clear_pending(job)
        await self.trigger.publish(job, JobState.DEAD_LETTERED, last_error)
        return JobState.DEAD_LETTERED

    async def _process_delivery(self, job: Job) -> Optional[JobState]:
        try:
            return await self.process_job(job)
        except QueueError as e:
            logger.error(f"Job {job.id}: queue transition failed, delivery will time out and retry: {e}")
            return None
        except Exception as e:
            # left in flight; redelivered after its visibility timeout
            logger.exception(f"Job {job.id}: unexpected failure, delivery will time out and retry: {e!r}")
            return None

    async def run(
        self,
        stop_event: Optional[asyncio.Event] = None,
        batch_size: int = settings.QUEUE_BATCH_SIZE,
        visibility_timeout: float = settings.QUEUE_VISIBILITY_TIMEOUT,
        wait_timeout: float = settings.QUEUE_RECEIVE_WAIT,
        error_backoff: float = 5.0
    ) -> None:
        """Worker loop: long-poll the queue and process each batch concurrently until stopped."""
        stop_event = stop_event or asyncio.Event()
        logger.info(f"Worker loop started on queue {self.queue.name}")

        while not stop_event.is_set():
            try:
                jobs = await self.queue.receive(batch_size, visibility_timeout, wait_timeout)
            except QueueError as e:
                logger.error(f"Queue receive failed, backing off {error_backoff}s: {e}")
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=error_backoff)
                except asyncio.TimeoutError:
                    pass
                continue

            if jobs:
                await asyncio.gather(*(self._process_delivery(job) for job in jobs))

        logger.info(f"Worker loop stopped on queue {self.queue.name}")
