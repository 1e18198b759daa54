from typing import Dict, Any, Literal
from fastapi import APIRouter, status, Depends
from pydantic import BaseModel, Field
from datetime import datetime
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
import time
import logging
import asyncio

from analysis_core.api.deps import get_services
from analysis_core.core.config import settings
from analysis_core.core.exceptions import QueueError
from analysis_core.core.scheduler import get_scheduled_jobs
from analysis_core.schemas.analysis import utcnow
from analysis_core.services.container import AnalysisServices

router = APIRouter()
logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    """Basic health check response model"""
    status: Literal["healthy", "degraded", "unhealthy"] = Field(
        description="Current health status of the service"
    )
    service: str = Field(description="Name of the service")
    version: str = Field(description="Current API version")


class DetailedHealthResponse(BaseModel):
    """Detailed health check response with component status"""
    status: Literal["healthy", "degraded", "unhealthy"] = Field(
        description="Overall health status"
    )
    service: str = Field(description="Service name")
    version: str = Field(description="API version")
    timestamp: datetime = Field(description="Health check timestamp")
    checks: Dict[str, Any] = Field(
        description="Individual component health checks"
    )


async def _ping_database(services: AnalysisServices) -> None:
    async with services.session_factory() as session:
        await session.execute(text("SELECT 1"))


@router.get(
    "/",
    response_model=HealthResponse,
    summary="Basic health check",
    status_code=status.HTTP_200_OK
)
async def health_check() -> HealthResponse:
    """Liveness only; does not touch Redis or the database."""
    return HealthResponse(
        status="healthy",
        service=settings.PROJECT_NAME,
        version=settings.VERSION
    )


@router.get(
    "/detailed",
    response_model=DetailedHealthResponse,
    summary="Detailed health check",
    description="Redis, durable tier, queue depth, provider circuits and scheduled triggers",
    status_code=status.HTTP_200_OK
)
async def detailed_health_check(services: AnalysisServices = Depends(get_services)) -> DetailedHealthResponse:
    """
    Detailed health check endpoint.

    Redis failure makes the service unhealthy (queue, locks and provider
    state live there). A durable tier failure or an open provider circuit
    only degrades it.
    """
    checks: Dict[str, Any] = {}
    overall_status = "healthy"

    checks["redis"] = await services.cache.health_check()
    if checks["redis"]["status"] != "healthy":
        overall_status = "unhealthy"

    try:
        start_time = time.time()
        await asyncio.wait_for(_ping_database(services), timeout=settings.DURABLE_OPERATION_TIMEOUT)
        checks["database"] = {
            "status": "healthy",
            "response_time_ms": int((time.time() - start_time) * 1000)
        }
    except (SQLAlchemyError, OSError, asyncio.TimeoutError) as e:
        logger.error(f"Database health check failed: {e!r}")
        checks["database"] = {"status": "unhealthy", "error": repr(e)}
        if overall_status == "healthy":
            overall_status = "degraded"

    try:
        checks["queue"] = await services.queue.stats()
    except QueueError as e:
        checks["queue"] = {"status": "unhealthy", "error": str(e)}
        overall_status = "unhealthy"

    checks["providers"] = await services.gateway.get_status()
    if any(p["circuit"]["state"] != "closed" for p in checks["providers"].values()):
        if overall_status == "healthy":
            overall_status = "degraded"

    checks["cache_metrics"] = await services.cache.get_metrics()
    checks["scheduled_triggers"] = get_scheduled_jobs()

    return DetailedHealthResponse(
        status=overall_status,
        service=settings.PROJECT_NAME,
        version=settings.VERSION,
        timestamp=utcnow(),
        checks=checks
    )
