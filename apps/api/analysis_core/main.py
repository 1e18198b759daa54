from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.responses import Response

from analysis_core.api.api_v1.api import api_router
from analysis_core.core.config import settings
from analysis_core.core.scheduler import shutdown_scheduler, start_scheduler
from analysis_core.db.database import dispose_engine
from analysis_core.services.container import build_services

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build shared services on startup, start scheduled triggers, tear down on shutdown."""
    logging.basicConfig(level=settings.LOG_LEVEL, format=LOG_FORMAT)

    # a container set before startup (tests, embedding) is used as is
    owns_services = getattr(app.state, "services", None) is None
    if owns_services:
        logger.info("=" * 60)
        logger.info(f"Starting {settings.PROJECT_NAME} {settings.VERSION} ({settings.ENVIRONMENT})")
        logger.info(f"   Redis: {'configured' if settings.REDIS_URL else 'not set'}")
        logger.info(f"   Database: {'configured' if settings.SQLALCHEMY_DATABASE_URI else 'not set'}")
        logger.info(f"   Active teams: {len(settings.ACTIVE_TEAM_IDS)}")
        logger.info("=" * 60)
        app.state.services = await build_services(create_tables=settings.ENVIRONMENT == "development")

        if settings.SCHEDULER_ENABLED:
            try:
                start_scheduler(app.state.services.trigger)
            except Exception as e:
                logger.error(f"Failed to start scheduler: {e}")
                logger.warning("Continuing without scheduled triggers; on-demand analysis still works")

    yield

    if owns_services:
        shutdown_scheduler()
        await app.state.services.close()
        await dispose_engine()
        app.state.services = None
        logger.info("Analysis services stopped")


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    description="""
# Fantasy Analysis Core

Cached, single-flight fantasy football analyses.

- **Weekly analysis**, **trade evaluation** and **waiver recommendations**
  are served from cache when fresh and computed on demand otherwise.
- A request that cannot be answered within its wait bound gets `202` with a
  job handle (or the previous analysis flagged `stale`).
- `503` means the analysis failed permanently for now.
    """,
    openapi_url=f"{settings.API_V1_STR}/openapi.json",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
    openapi_tags=[
        {"name": "analysis", "description": "Weekly, trade and waiver analyses"},
        {"name": "rosters", "description": "Raw roster passthrough"},
        {"name": "jobs", "description": "Analysis job state and dead letters"},
        {"name": "health", "description": "Service health checks"}
    ]
)

app.include_router(api_router, prefix=settings.API_V1_STR)


@app.get("/")
async def root():
    return {"message": settings.PROJECT_NAME, "version": settings.VERSION}


@app.get("/health", include_in_schema=False)
async def health_check():
    return {"status": "healthy", "service": "api"}


@app.head("/health", include_in_schema=False)
async def health_check_head():
    """HEAD handler for load balancer healthchecks"""
    return Response(status_code=200)
