"""
Unit tests for the two-tier ArtifactStore
"""

import asyncio

import pytest
from unittest.mock import AsyncMock, patch
from sqlalchemy.exc import OperationalError

from analysis_core.core.exceptions import CacheError
from analysis_core.schemas.analysis import AnalysisKey, Job
from analysis_core.services.artifact_store import ArtifactStore
from conftest import RefusingSession, StalledSession


class TestGetPut:
    """Freshness and tiering"""

    @pytest.mark.asyncio
    async def test_put_then_get_before_ttl(self, store, make_artifact, clock):
        artifact = make_artifact(ttl=600)
        assert await store.put(artifact) is True

        clock.advance(599)
        assert await store.get(artifact.key) == artifact

    @pytest.mark.asyncio
    async def test_expired_artifact_is_served_only_as_stale(self, store, make_artifact, clock):
        artifact = make_artifact(ttl=600)
        await store.put(artifact)

        clock.advance(601)

        assert await store.get(artifact.key) is None
        stale = await store.get_with_freshness(artifact.key)
        assert stale.stale is True
        assert stale.payload == artifact.payload

    @pytest.mark.asyncio
    async def test_max_age_marks_fresh_artifact_stale(self, store, make_artifact, clock):
        artifact = make_artifact(ttl=3600)
        await store.put(artifact)
        clock.advance(120)

        assert (await store.get_with_freshness(artifact.key, max_age=300)).stale is False
        assert (await store.get_with_freshness(artifact.key, max_age=60)).stale is True

    @pytest.mark.asyncio
    async def test_miss(self, store):
        key = AnalysisKey(subject_id="404", subject_type="team", period_id="week-1")
        assert await store.get(key) is None
        assert await store.get_with_freshness(key) is None

    @pytest.mark.asyncio
    async def test_durable_tier_repopulates_fast_tier(self, store, make_artifact, redis_client):
        artifact = make_artifact()
        await store.put(artifact)
        await redis_client.delete(f"artifact:{artifact.key.cache_key}")

        assert await store.get(artifact.key) == artifact
        assert await redis_client.exists(f"artifact:{artifact.key.cache_key}") == 1

    @pytest.mark.asyncio
    async def test_degraded_flags_survive_durable_tier(self, store, make_artifact, redis_client):
        artifact = make_artifact(degraded=True, degraded_sources=["news"])
        await store.put(artifact)
        await redis_client.flushall()

        restored = await store.get(artifact.key)
        assert restored.degraded is True
        assert restored.degraded_sources == ["news"]

    @pytest.mark.asyncio
    async def test_delete(self, store, make_artifact):
        artifact = make_artifact()
        await store.put(artifact)

        await store.delete(artifact.key)

        assert await store.get_with_freshness(artifact.key) is None


class TestLastWriterWins:
    """Conflicting writes resolve by computed_at"""

    @pytest.mark.asyncio
    async def test_older_write_is_discarded(self, store, make_artifact, clock):
        older = make_artifact(payload={"v": "old"})
        clock.advance(10)
        newer = make_artifact(payload={"v": "new"})

        assert await store.put(newer) is True
        assert await store.put(older) is False

        assert (await store.get(newer.key)).payload == {"v": "new"}

    @pytest.mark.asyncio
    async def test_newer_write_replaces(self, store, make_artifact, clock, redis_client):
        await store.put(make_artifact(payload={"v": 1}))
        clock.advance(10)
        await store.put(make_artifact(payload={"v": 2}))

        assert (await store.get(make_artifact().key)).payload == {"v": 2}
        await redis_client.flushall()
        assert (await store.get(make_artifact().key)).payload == {"v": 2}


class TestFailureModes:
    """Durable failures surface on write, degrade on read"""

    @pytest.mark.asyncio
    async def test_durable_write_failure_raises_cache_error(self, store, make_artifact):
        with patch.object(store, "_upsert_artifact", AsyncMock(side_effect=OperationalError("x", {}, Exception("db down")))):
            with pytest.raises(CacheError):
                await store.put(make_artifact())

    @pytest.mark.asyncio
    async def test_durable_read_failure_is_a_miss(self, store, make_artifact):
        key = make_artifact().key
        with patch.object(store, "_select_artifact", AsyncMock(side_effect=OperationalError("x", {}, Exception("db down")))):
            assert await store.get(key) is None


class TestDomainCache:
    """Raw provider data with per-domain TTLs"""

    @pytest.mark.asyncio
    async def test_domain_round_trip(self, store, redis_client):
        assert await store.put_domain("roster", "fantasy_platform:teams/42/roster", {"players": ["qb1"]})

        assert await store.get_domain("roster", "fantasy_platform:teams/42/roster") == {"players": ["qb1"]}
        assert 0 < await redis_client.ttl("roster:fantasy_platform:teams/42/roster") <= 60

    @pytest.mark.asyncio
    async def test_unknown_domain_not_cached(self, cache, session_factory, clock):
        store = ArtifactStore(cache, session_factory, domain_ttls={"news": 300}, now=clock)
        assert await store.put_domain("weather", "k", {}) is False


class TestDeadLetters:
    """Durable dead-letter records"""

    @pytest.mark.asyncio
    async def test_record_and_read(self, store):
        job = Job(
            key=AnalysisKey(subject_id="42", subject_type="team", period_id="week-6"),
            kind="weekly_analysis",
            attempt=5,
            errors=["UpstreamError: 503"] * 5
        )

        await store.record_dead_letter(job, "UpstreamError: 503")

        record = await store.get_dead_letter(job.id)
        assert record["attempt"] == 5
        assert record["cache_key"] == "team:42:week-6"
        assert len(record["error_history"]) == 5
        assert [r["job_id"] for r in await store.list_dead_letters()] == [job.id]


class TestDurableOutage:
    """Unreachable or stalled database behind the durable tier"""

    @pytest.fixture
    def refused_store(self, cache, clock):
        return ArtifactStore(cache, lambda: RefusingSession(), durable_timeout=0.2, now=clock)

    @pytest.fixture
    def stalled_store(self, cache, clock):
        return ArtifactStore(cache, lambda: StalledSession(), durable_timeout=0.2, now=clock)

    @pytest.mark.asyncio
    async def test_refused_connection_read_is_a_miss(self, refused_store, make_artifact):
        key = make_artifact().key

        assert await refused_store.get(key) is None
        assert await refused_store.get_with_freshness(key) is None

    @pytest.mark.asyncio
    async def test_refused_connection_write_raises_cache_error(self, refused_store, make_artifact):
        with pytest.raises(CacheError):
            await refused_store.put(make_artifact())

    @pytest.mark.asyncio
    async def test_refused_connection_dead_letter_calls_raise_cache_error(self, refused_store):
        job = Job(key=AnalysisKey(subject_id="42", subject_type="team", period_id="week-6"), kind="weekly_analysis")

        with pytest.raises(CacheError):
            await refused_store.record_dead_letter(job, "boom")
        with pytest.raises(CacheError):
            await refused_store.get_dead_letter(job.id)
        with pytest.raises(CacheError):
            await refused_store.list_dead_letters()

    @pytest.mark.asyncio
    async def test_fast_tier_still_served_while_database_down(self, store, refused_store, make_artifact):
        artifact = make_artifact()
        await store.put(artifact)

        assert (await refused_store.get(artifact.key)).payload == artifact.payload

    @pytest.mark.asyncio
    async def test_stalled_database_is_bounded(self, stalled_store, make_artifact):
        job = Job(key=make_artifact().key, kind="weekly_analysis")

        with pytest.raises(CacheError):
            await asyncio.wait_for(stalled_store.record_dead_letter(job, "boom"), timeout=2)
        with pytest.raises(CacheError):
            await asyncio.wait_for(stalled_store.delete(job.key), timeout=2)
        assert await asyncio.wait_for(stalled_store.get(job.key), timeout=2) is None
