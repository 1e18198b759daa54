from typing import Any, Dict, List
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status

from analysis_core.api.deps import get_coordinator, get_services
from analysis_core.core.exceptions import CacheError
from analysis_core.schemas.analysis import JobStatus
from analysis_core.services.container import AnalysisServices
from analysis_core.services.request_coordinator import RequestCoordinator

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/dead-letters", summary="Recent dead-lettered jobs")
async def list_dead_letters(
    limit: int = Query(50, ge=1, le=500),
    services: AnalysisServices = Depends(get_services)
) -> List[Dict[str, Any]]:
    try:
        return await services.store.list_dead_letters(limit)
    except CacheError as e:
        logger.error(f"Dead-letter listing failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Dead-letter store unavailable"
        )


@router.get("/{job_id}", response_model=JobStatus, summary="Job state")
async def get_job_status(
    job_id: str,
    coordinator: RequestCoordinator = Depends(get_coordinator)
) -> JobStatus:
    job_status = await coordinator.get_job_status(job_id)
    if job_status is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Job {job_id} not found")
    return job_status
