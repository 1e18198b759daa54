from fastapi import APIRouter

from analysis_core.api.api_v1.endpoints import analysis, health, jobs, rosters

api_router = APIRouter()
api_router.include_router(health.router, prefix="/health", tags=["health"])
api_router.include_router(analysis.router, prefix="/analysis", tags=["analysis"])
api_router.include_router(rosters.router, prefix="/rosters", tags=["rosters"])
api_router.include_router(jobs.router, prefix="/jobs", tags=["jobs"])
