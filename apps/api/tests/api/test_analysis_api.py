"""
API tests for the analysis, roster and job endpoints
"""

from datetime import datetime, timezone

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from unittest.mock import AsyncMock, MagicMock

from analysis_core.core.exceptions import (
    CacheError,
    CircuitOpenError,
    ProviderTimeoutError,
    QueueError,
    RateLimitExceededError,
    UpstreamError,
)
from analysis_core.main import app
from analysis_core.schemas.analysis import AnalysisArtifact, AnalysisKey, JobState, PendingHandle

KEY = AnalysisKey(subject_id="42", subject_type="team", period_id="week-6")


def _artifact(**overrides) -> AnalysisArtifact:
    fields = {
        "key": KEY,
        "kind": "weekly_analysis",
        "payload": {"team_id": "42"},
        "computed_at": datetime(2026, 10, 13, 12, 0, tzinfo=timezone.utc),
        "source_version": "weekly_analysis:1",
        "ttl": 3600,
    }
    fields.update(overrides)
    return AnalysisArtifact(**fields)


@pytest.fixture
def mock_services():
    services = MagicMock()
    services.coordinator = AsyncMock()
    return services


@pytest_asyncio.fixture
async def client(mock_services):
    app.state.services = mock_services
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.state.services = None


class TestAnalysisEndpoints:
    """Outcome to status code mapping"""

    @pytest.mark.asyncio
    async def test_fresh_artifact_returns_200(self, client, mock_services):
        mock_services.coordinator.analyze_weekly.return_value = _artifact()

        response = await client.post("/api/v1/analysis/weekly/42?week=6&max_age=600")

        assert response.status_code == 200
        assert response.json()["payload"] == {"team_id": "42"}
        mock_services.coordinator.analyze_weekly.assert_awaited_once_with(
            "42", week=6, max_age=600.0, wait_timeout=None
        )

    @pytest.mark.asyncio
    async def test_stale_artifact_is_flagged(self, client, mock_services):
        mock_services.coordinator.analyze_weekly.return_value = _artifact(stale=True)

        response = await client.post("/api/v1/analysis/weekly/42")

        assert response.status_code == 200
        assert response.json()["stale"] is True

    @pytest.mark.asyncio
    async def test_pending_returns_202_with_retry_after(self, client, mock_services):
        mock_services.coordinator.analyze_weekly.return_value = PendingHandle(
            job_id="abc", key=KEY, status=JobState.RUNNING, retry_after_seconds=2.0
        )

        response = await client.post("/api/v1/analysis/weekly/42?wait=0")

        assert response.status_code == 202
        assert response.headers["Retry-After"] == "2"
        assert response.json()["job_id"] == "abc"

    @pytest.mark.asyncio
    async def test_dead_lettered_returns_503(self, client, mock_services):
        mock_services.coordinator.analyze_weekly.return_value = PendingHandle(
            job_id="abc", key=KEY, status=JobState.DEAD_LETTERED
        )

        response = await client.post("/api/v1/analysis/weekly/42")

        assert response.status_code == 503

    @pytest.mark.asyncio
    async def test_queue_failure_returns_503(self, client, mock_services):
        mock_services.coordinator.analyze_weekly.side_effect = QueueError("redis down")

        response = await client.post("/api/v1/analysis/weekly/42")

        assert response.status_code == 503

    @pytest.mark.asyncio
    async def test_wait_is_bounded(self, client):
        response = await client.post("/api/v1/analysis/weekly/42?wait=600")

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_trade_evaluation(self, client, mock_services):
        mock_services.coordinator.evaluate_trade.return_value = _artifact(kind="trade_evaluation")
        body = {
            "league_id": "lg1",
            "period_id": "week-6",
            "team_a_id": "42",
            "team_b_id": "7",
            "team_a_gives": ["rb1"],
            "team_b_gives": ["te1"],
        }

        response = await client.post("/api/v1/analysis/trade", json=body)

        assert response.status_code == 200
        proposal = mock_services.coordinator.evaluate_trade.await_args.args[0]
        assert proposal.team_b_id == "7"

    @pytest.mark.asyncio
    async def test_trade_requires_teams(self, client):
        response = await client.post("/api/v1/analysis/trade", json={"league_id": "lg1"})

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_waiver_recommendations(self, client, mock_services):
        mock_services.coordinator.recommend_waivers.return_value = _artifact(kind="waiver_recommendations")

        response = await client.post("/api/v1/analysis/waivers/42?week=6")

        assert response.status_code == 200
        assert response.json()["kind"] == "waiver_recommendations"


class TestRosterEndpoint:
    """Provider failures map onto gateway status codes"""

    @pytest.mark.asyncio
    async def test_roster_passthrough(self, client, mock_services):
        mock_services.coordinator.get_roster.return_value = {"players": ["qb1"]}

        response = await client.get("/api/v1/rosters/42")

        assert response.status_code == 200
        assert response.json() == {"players": ["qb1"]}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error, expected", [
        (RateLimitExceededError("fantasy_platform", retry_after=12.5), 503),
        (CircuitOpenError("fantasy_platform"), 503),
        (ProviderTimeoutError("fantasy_platform", 10.0), 504),
        (UpstreamError("fantasy_platform", 404), 404),
        (UpstreamError("fantasy_platform", 500), 502),
    ])
    async def test_provider_errors(self, client, mock_services, error, expected):
        mock_services.coordinator.get_roster.side_effect = error

        response = await client.get("/api/v1/rosters/42")

        assert response.status_code == expected

    @pytest.mark.asyncio
    async def test_rate_limit_sets_retry_after(self, client, mock_services):
        mock_services.coordinator.get_roster.side_effect = RateLimitExceededError("fantasy_platform", 12.5)

        response = await client.get("/api/v1/rosters/42")

        assert response.headers["Retry-After"] == "12"


class TestJobEndpoints:

    @pytest.mark.asyncio
    async def test_unknown_job_returns_404(self, client, mock_services):
        mock_services.coordinator.get_job_status.return_value = None

        response = await client.get("/api/v1/jobs/nope")

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_dead_letters_listing(self, client, mock_services):
        mock_services.store.list_dead_letters = AsyncMock(return_value=[{"job_id": "abc"}])

        response = await client.get("/api/v1/jobs/dead-letters?limit=10")

        assert response.status_code == 200
        assert response.json() == [{"job_id": "abc"}]
        mock_services.store.list_dead_letters.assert_awaited_once_with(10)

    @pytest.mark.asyncio
    async def test_dead_letters_store_down_returns_503(self, client, mock_services):
        mock_services.store.list_dead_letters = AsyncMock(side_effect=CacheError("durable dead-letter listing failed"))

        response = await client.get("/api/v1/jobs/dead-letters")

        assert response.status_code == 503
        assert response.json()["detail"] == "Dead-letter store unavailable"


class TestServicesMissing:

    @pytest.mark.asyncio
    async def test_503_before_startup(self):
        app.state.services = None
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            response = await ac.post("/api/v1/analysis/weekly/42")

        assert response.status_code == 503
