"""
Shared fixtures: an in-process Redis (fakeredis), a throwaway SQLite durable
tier, a controllable clock and stub providers behind a real gateway.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import fakeredis
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from analysis_core.core.cache_manager import CacheManager
from analysis_core.db.database import init_db
from analysis_core.schemas.analysis import AnalysisArtifact, AnalysisKey
from analysis_core.services.artifact_store import ArtifactStore
from analysis_core.services.container import assemble_services
from analysis_core.services.job_queue import JobQueue
from analysis_core.services.provider_gateway import Provider, ProviderGateway


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.current = start or datetime(2026, 10, 13, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


class StubProvider(Provider):
    """Provider double recording every network call."""

    def __init__(self, name: str, responses: Optional[Dict[str, Any]] = None):
        self.name = name
        self.responses = responses or {}
        self.calls = []
        self.error: Optional[Exception] = None
        self.delay = 0.0

    async def call(self, endpoint: str, params: Dict[str, Any]) -> Any:
        self.calls.append((endpoint, params))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.responses.get(endpoint, {"endpoint": endpoint, "items": [1, 2, 3]})


class RefusingSession:
    """Session double for an unreachable database; asyncpg raises the raw OSError."""

    async def __aenter__(self):
        raise ConnectionRefusedError(111, "Connect call failed ('127.0.0.1', 1)")

    async def __aexit__(self, *exc_info):
        return False


class StalledSession:
    """Session double for a database that accepts the connection and never answers."""

    async def __aenter__(self):
        await asyncio.sleep(60)

    async def __aexit__(self, *exc_info):
        return False


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture
async def redis_client():
    client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    yield client
    await client.flushall()


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'analysis.db'}")
    await init_db(engine)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def cache(redis_client):
    return CacheManager(redis_client)


@pytest.fixture
def store(cache, session_factory, clock):
    return ArtifactStore(cache, session_factory, now=clock)


@pytest.fixture
def queue(redis_client, clock):
    return JobQueue(redis_client, name="test", poll_interval=0.01, now=clock)


@pytest.fixture
def providers():
    return {
        "fantasy_platform": StubProvider("fantasy_platform", {
            "teams/42/roster": {"players": ["qb1", "rb1", "wr1"]},
            "teams/7/roster": {"players": ["te1", "k1"]},
        }),
        "projections": StubProvider("projections"),
        "news_feed": StubProvider("news_feed", {"news": {"articles": [{"id": 1}]}}),
    }


@pytest.fixture
def gateway(redis_client, clock, providers):
    gateway = ProviderGateway(redis_client, default_timeout=1.0, now=clock)
    for provider in providers.values():
        gateway.register(provider, rate_limit=1000, failure_threshold=5, recovery_timeout=60)
    return gateway


@pytest.fixture
def services(redis_client, session_factory, gateway, clock):
    """Fully wired components with test-sized waits."""
    services = assemble_services(redis_client, session_factory, gateway=gateway, now=clock)
    services.queue.poll_interval = 0.01
    services.coordinator.poll_interval = 0.01
    services.coordinator.wait_timeout = 1.0
    services.orchestrator.backoff = lambda attempt: 10.0 * attempt
    return services


@pytest.fixture
def make_artifact(clock):
    def _make(subject_id: str = "42", period_id: str = "week-6", ttl: int = 3600, **overrides) -> AnalysisArtifact:
        fields = {
            "key": AnalysisKey(subject_id=subject_id, subject_type="team", period_id=period_id),
            "kind": "weekly_analysis",
            "payload": {"score": 1},
            "computed_at": clock(),
            "source_version": "weekly_analysis:1",
            "ttl": ttl,
        }
        fields.update(overrides)
        return AnalysisArtifact(**fields)
    return _make
