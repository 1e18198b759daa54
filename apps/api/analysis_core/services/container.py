"""Wiring of the shared components used by the API process and the workers."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

import redis.asyncio as redis
from sqlalchemy.ext.asyncio import async_sessionmaker

from analysis_core.core.cache_manager import CacheManager
from analysis_core.core.config import settings
from analysis_core.db.database import get_engine, get_session_factory, init_db
from analysis_core.schemas.analysis import utcnow
from analysis_core.services.analyzers import AnalyzerRegistry, build_default_registry
from analysis_core.services.artifact_store import ArtifactStore
from analysis_core.services.job_queue import JobQueue
from analysis_core.services.orchestrator import AnalysisOrchestrator
from analysis_core.services.provider_gateway import ProviderGateway, build_default_gateway
from analysis_core.services.request_coordinator import RequestCoordinator
from analysis_core.services.triggers import AnalysisTrigger

logger = logging.getLogger(__name__)


@dataclass
class AnalysisServices:
    cache: CacheManager
    store: ArtifactStore
    queue: JobQueue
    gateway: ProviderGateway
    registry: AnalyzerRegistry
    trigger: AnalysisTrigger
    coordinator: RequestCoordinator
    orchestrator: AnalysisOrchestrator
    session_factory: async_sessionmaker

    async def close(self) -> None:
        await self.gateway.close()
        await self.cache.close()


def assemble_services(
    redis_client: redis.Redis,
    session_factory: async_sessionmaker,
    gateway: Optional[ProviderGateway] = None,
    registry: Optional[AnalyzerRegistry] = None,
    cache: Optional[CacheManager] = None,
    now: Callable[[], datetime] = utcnow
) -> AnalysisServices:
    """Build every component on top of one Redis client and one session factory."""
    cache = cache or CacheManager(redis_client)
    store = ArtifactStore(cache, session_factory, now=now)
    queue = JobQueue(redis_client, now=now)
    gateway = gateway or build_default_gateway(redis_client)
    registry = registry or build_default_registry()
    trigger = AnalysisTrigger(cache, queue, now=now)
    return AnalysisServices(
        cache=cache,
        store=store,
        queue=queue,
        gateway=gateway,
        registry=registry,
        trigger=trigger,
        coordinator=RequestCoordinator(store, trigger, gateway, now=now),
        orchestrator=AnalysisOrchestrator(queue, store, cache, gateway, registry, trigger, now=now),
        session_factory=session_factory
    )


async def build_services(
    redis_url: Optional[str] = None,
    database_url: Optional[str] = None,
    create_tables: bool = False
) -> AnalysisServices:
    """Connect to Redis and the database from settings and assemble the components."""
    cache = CacheManager()
    await cache.initialize(redis_url or settings.REDIS_URL)

    engine = get_engine(database_url)
    if create_tables:
        await init_db(engine)

    services = assemble_services(cache.redis_client, get_session_factory(), cache=cache)
    logger.info(f"Analysis services ready (queue {services.queue.name}, analyzers {services.registry.kinds()})")
    return services
