from fastapi import Depends, HTTPException, Request, status

from analysis_core.services.container import AnalysisServices
from analysis_core.services.request_coordinator import RequestCoordinator


def get_services(request: Request) -> AnalysisServices:
    """Services container created by the application lifespan."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Analysis services not initialized"
        )
    return services


def get_coordinator(services: AnalysisServices = Depends(get_services)) -> RequestCoordinator:
    return services.coordinator
