"""
Request Coordinator

Synchronous-facing entry point for analyses. Serves fresh artifacts straight
from the cache; otherwise joins or triggers the computation and waits a
bounded time for it. A caller never blocks past its wait bound and never
causes a second concurrent computation of the same key.
"""

import asyncio
import hashlib
import json
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Union

from analysis_core.core.config import settings
from analysis_core.core.exceptions import CacheError, QueueError
from analysis_core.schemas.analysis import (
    AnalysisArtifact,
    AnalysisKey,
    JobKind,
    JobState,
    JobStatus,
    PendingHandle,
    ProviderRequest,
    TradeProposal,
    utcnow,
)
from analysis_core.services.artifact_store import ArtifactStore
from analysis_core.services.periods import current_week, week_period
from analysis_core.services.provider_gateway import ProviderGateway
from analysis_core.services.triggers import AnalysisTrigger

logger = logging.getLogger(__name__)

AnalysisResult = Union[AnalysisArtifact, PendingHandle]


def weekly_key(team_id: str, week: int) -> AnalysisKey:
    return AnalysisKey(subject_id=str(team_id), subject_type="team", period_id=week_period(week))


def waivers_key(team_id: str, week: int) -> AnalysisKey:
    return AnalysisKey(subject_id=str(team_id), subject_type="waivers", period_id=week_period(week))


def trade_key(proposal: TradeProposal) -> AnalysisKey:
    """Same trade, same key: player lists are order-insensitive."""
    canonical = {
        "league_id": proposal.league_id,
        "team_a_id": proposal.team_a_id,
        "team_b_id": proposal.team_b_id,
        "team_a_gives": sorted(proposal.team_a_gives),
        "team_b_gives": sorted(proposal.team_b_gives)
    }
    digest = hashlib.sha256(json.dumps(canonical, sort_keys=True).encode()).hexdigest()[:16]
    return AnalysisKey(subject_id=digest, subject_type="trade", period_id=proposal.period_id)


class RequestCoordinator:
    """Bounded-wait access to analyses for API callers."""

    def __init__(
        self,
        store: ArtifactStore,
        trigger: AnalysisTrigger,
        gateway: ProviderGateway,
        wait_timeout: float = settings.REQUEST_WAIT_TIMEOUT,
        poll_interval: float = settings.REQUEST_POLL_INTERVAL,
        now: Callable[[], datetime] = utcnow
    ):
        self.store = store
        self.trigger = trigger
        self.gateway = gateway
        self.wait_timeout = wait_timeout
        self.poll_interval = poll_interval
        self._now = now

    async def get_analysis(
        self,
        key: AnalysisKey,
        kind: str,
        max_age: Optional[float] = None,
        params: Optional[Dict[str, Any]] = None,
        wait_timeout: Optional[float] = None
    ) -> AnalysisResult:
        """
        Return the artifact for key, computing it if needed.

        @param max_age - accept cached artifacts at most this many seconds old
        @param wait_timeout - bound on waiting for a computation, defaults to REQUEST_WAIT_TIMEOUT

        @returns A fresh artifact, the previous artifact flagged stale when the
                 computation did not finish in time, or a PendingHandle when
                 nothing can be served

        @throws QueueError - nothing cached and the computation could not be queued
        """
        current = await self.store.get_with_freshness(key, max_age)
        if current is not None and not current.stale:
            return current

        try:
            job_id, created = await self.trigger.submit(key, kind, params)
        except QueueError as e:
            if current is not None:
                logger.warning(f"Could not queue {kind} for {key}, serving stale artifact: {e}")
                return current
            raise
        if not created:
            logger.info(f"Joining in-flight job {job_id} for {key}")

        wait = self.wait_timeout if wait_timeout is None else wait_timeout
        baseline = current.computed_at if current is not None else None
        outcome = await self._wait_for_artifact(key, job_id, baseline, wait)
        if isinstance(outcome, AnalysisArtifact):
            return outcome

        if current is not None:
            logger.info(f"Job {job_id} for {key} still {outcome.value}, serving stale artifact")
            return current
        return PendingHandle(
            job_id=job_id,
            key=key,
            status=outcome,
            retry_after_seconds=max(self.poll_interval, 1.0)
        )

    async def _wait_for_artifact(
        self,
        key: AnalysisKey,
        job_id: str,
        baseline: Optional[datetime],
        wait: float
    ) -> Union[AnalysisArtifact, JobState]:
        """Poll for an artifact newer than baseline until it appears, the job dies, or wait elapses."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(wait, 0)
        while True:
            artifact = await self.store.get(key)
            if artifact is not None and (baseline is None or artifact.computed_at > baseline):
                return artifact

            status = await self.trigger.get_status(job_id)
            if status is not None and status.state == JobState.DEAD_LETTERED:
                logger.warning(f"Job {job_id} for {key} was dead-lettered: {status.last_error}")
                return JobState.DEAD_LETTERED

            remaining = deadline - loop.time()
            if remaining <= 0:
                return status.state if status is not None else JobState.PENDING
            await asyncio.sleep(min(self.poll_interval, remaining))

    async def analyze_weekly(
        self,
        team_id: str,
        week: Optional[int] = None,
        max_age: Optional[float] = None,
        wait_timeout: Optional[float] = None
    ) -> AnalysisResult:
        week = week or current_week(self._now())
        return await self.get_analysis(
            weekly_key(team_id, week),
            JobKind.WEEKLY_ANALYSIS.value,
            max_age=max_age,
            params={"league_id": settings.LEAGUE_ID},
            wait_timeout=wait_timeout
        )

    async def evaluate_trade(
        self,
        proposal: TradeProposal,
        max_age: Optional[float] = None,
        wait_timeout: Optional[float] = None
    ) -> AnalysisResult:
        return await self.get_analysis(
            trade_key(proposal),
            JobKind.TRADE_EVALUATION.value,
            max_age=max_age,
            params={"league_id": proposal.league_id, "proposal": proposal.model_dump()},
            wait_timeout=wait_timeout
        )

    async def recommend_waivers(
        self,
        team_id: str,
        week: Optional[int] = None,
        max_age: Optional[float] = None,
        wait_timeout: Optional[float] = None
    ) -> AnalysisResult:
        week = week or current_week(self._now())
        return await self.get_analysis(
            waivers_key(team_id, week),
            JobKind.WAIVER_RECOMMENDATIONS.value,
            max_age=max_age,
            params={"league_id": settings.LEAGUE_ID},
            wait_timeout=wait_timeout
        )

    async def get_job_status(self, job_id: str) -> Optional[JobStatus]:
        """Published job state, falling back to the dead-letter record once state has expired."""
        status = await self.trigger.get_status(job_id)
        if status is not None:
            return status

        try:
            record = await self.store.get_dead_letter(job_id)
        except CacheError as e:
            logger.error(f"Dead-letter lookup for {job_id} failed: {e}")
            return None
        if record is None:
            return None
        return JobStatus(
            job_id=job_id,
            key=AnalysisKey.from_cache_key(record["cache_key"]),
            kind=record["kind"],
            state=JobState.DEAD_LETTERED,
            attempt=record["attempt"],
            last_error=record["last_error"],
            updated_at=datetime.fromisoformat(record["dead_lettered_at"])
        )

    async def get_roster(self, team_id: str) -> Any:
        """
        Raw roster passthrough, served from the roster cache domain when possible.

        @throws ProviderError - roster not cached and the platform call failed
        """
        request = ProviderRequest(provider="fantasy_platform", endpoint=f"teams/{team_id}/roster")
        cached = await self.store.get_domain("roster", request.cache_key)
        if cached is not None:
            return cached

        roster = await self.gateway.fetch(request)
        await self.store.put_domain("roster", request.cache_key, roster)
        return roster
