from typing import Any
import logging

from fastapi import APIRouter, Depends, HTTPException, status

from analysis_core.api.deps import get_coordinator
from analysis_core.core.exceptions import (
    CircuitOpenError,
    ProviderTimeoutError,
    RateLimitExceededError,
    UpstreamError,
)
from analysis_core.services.request_coordinator import RequestCoordinator

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/{team_id}", summary="Team roster passthrough")
async def get_roster(
    team_id: str,
    coordinator: RequestCoordinator = Depends(get_coordinator)
) -> Any:
    """Raw roster from the fantasy platform, cached briefly."""
    try:
        return await coordinator.get_roster(team_id)
    except RateLimitExceededError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Roster provider rate limit reached",
            headers={"Retry-After": str(max(int(e.retry_after), 1))}
        )
    except CircuitOpenError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Roster provider temporarily unavailable"
        )
    except ProviderTimeoutError:
        raise HTTPException(status_code=status.HTTP_504_GATEWAY_TIMEOUT, detail="Roster provider timed out")
    except UpstreamError as e:
        if e.status_code == status.HTTP_404_NOT_FOUND:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Team {team_id} not found")
        logger.error(f"Roster fetch for team {team_id} failed: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Roster provider error")
