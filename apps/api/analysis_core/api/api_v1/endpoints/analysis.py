from typing import Optional, Union
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from analysis_core.api.deps import get_coordinator
from analysis_core.core.exceptions import QueueError
from analysis_core.schemas.analysis import AnalysisArtifact, JobState, PendingHandle, TradeProposal
from analysis_core.services.request_coordinator import AnalysisResult, RequestCoordinator

router = APIRouter()
logger = logging.getLogger(__name__)

AnalysisResponse = Union[AnalysisArtifact, PendingHandle]


def _to_response(result: AnalysisResult, response: Response) -> AnalysisResponse:
    """200 with the artifact, 202 with a pending handle, 503 once the job failed terminally."""
    if isinstance(result, AnalysisArtifact):
        return result

    if result.status == JobState.DEAD_LETTERED:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"message": "analysis unavailable", "job_id": result.job_id, "key": str(result.key)}
        )

    response.status_code = status.HTTP_202_ACCEPTED
    response.headers["Retry-After"] = str(max(int(result.retry_after_seconds), 1))
    return result


def _unavailable(e: QueueError) -> HTTPException:
    logger.error(f"Analysis could not be queued: {e}")
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={"message": "analysis unavailable"}
    )


@router.post(
    "/weekly/{team_id}",
    response_model=AnalysisResponse,
    summary="Weekly team analysis",
    description="Cached weekly analysis for a team, computed on demand when missing or too old"
)
async def analyze_weekly(
    team_id: str,
    response: Response,
    week: Optional[int] = Query(None, ge=1, description="Defaults to the current week"),
    max_age: Optional[float] = Query(None, ge=0, description="Maximum acceptable artifact age in seconds"),
    wait: Optional[float] = Query(None, ge=0, le=60, description="Seconds to wait for a computation"),
    coordinator: RequestCoordinator = Depends(get_coordinator)
) -> AnalysisResponse:
    try:
        result = await coordinator.analyze_weekly(team_id, week=week, max_age=max_age, wait_timeout=wait)
    except QueueError as e:
        raise _unavailable(e)
    return _to_response(result, response)


@router.post(
    "/trade",
    response_model=AnalysisResponse,
    summary="Trade evaluation"
)
async def evaluate_trade(
    proposal: TradeProposal,
    response: Response,
    max_age: Optional[float] = Query(None, ge=0),
    wait: Optional[float] = Query(None, ge=0, le=60),
    coordinator: RequestCoordinator = Depends(get_coordinator)
) -> AnalysisResponse:
    """
    Evaluate a trade between two teams.

    The same proposal (in any player order) maps to the same cached
    evaluation for the period.
    """
    try:
        result = await coordinator.evaluate_trade(proposal, max_age=max_age, wait_timeout=wait)
    except QueueError as e:
        raise _unavailable(e)
    return _to_response(result, response)


@router.post(
    "/waivers/{team_id}",
    response_model=AnalysisResponse,
    summary="Waiver recommendations"
)
async def recommend_waivers(
    team_id: str,
    response: Response,
    week: Optional[int] = Query(None, ge=1),
    max_age: Optional[float] = Query(None, ge=0),
    wait: Optional[float] = Query(None, ge=0, le=60),
    coordinator: RequestCoordinator = Depends(get_coordinator)
) -> AnalysisResponse:
    try:
        result = await coordinator.recommend_waivers(team_id, week=week, max_age=max_age, wait_timeout=wait)
    except QueueError as e:
        raise _unavailable(e)
    return _to_response(result, response)
