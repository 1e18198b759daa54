"""
Analyzer Registry

An analyzer declares which provider sources an analysis kind needs and how to
turn the gathered inputs into a payload. The scoring models themselves live
outside the core; the defaults registered here summarise their inputs so the
pipeline runs end to end, and real models replace them through register().
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from analysis_core.core.exceptions import UnknownAnalysisKind
from analysis_core.schemas.analysis import Job, JobKind, ProviderRequest

logger = logging.getLogger(__name__)

ComputeFn = Callable[[Dict[str, Any], Job], Union[Dict[str, Any], Awaitable[Dict[str, Any]]]]


@dataclass
class SourceSpec:
    """One provider input for an analysis."""
    name: str
    provider: str
    endpoint: Callable[[Job], str]
    params: Callable[[Job], Dict[str, Any]] = lambda job: {}
    mandatory: bool = False
    domain: Optional[str] = None  # fast-tier domain used to cache the raw response

    def request(self, job: Job) -> ProviderRequest:
        return ProviderRequest(provider=self.provider, endpoint=self.endpoint(job), params=self.params(job))


@dataclass
class Analyzer:
    """Input/output contract of one analysis kind."""
    kind: str
    compute: ComputeFn
    sources: List[SourceSpec] = field(default_factory=list)
    ttl_seconds: int = 6 * 60 * 60
    version: str = "1"


class AnalyzerRegistry:
    """Maps job kinds to analyzers."""

    def __init__(self):
        self._analyzers: Dict[str, Analyzer] = {}

    def register(self, analyzer: Analyzer) -> Analyzer:
        self._analyzers[analyzer.kind] = analyzer
        logger.info(f"Registered analyzer {analyzer.kind} v{analyzer.version} ({len(analyzer.sources)} sources)")
        return analyzer

    def get(self, kind: str) -> Analyzer:
        analyzer = self._analyzers.get(kind)
        if analyzer is None:
            raise UnknownAnalysisKind(kind)
        return analyzer

    def kinds(self) -> List[str]:
        return sorted(self._analyzers)


def _count(value: Any) -> int:
    if isinstance(value, (list, tuple)):
        return len(value)
    if isinstance(value, dict):
        for key in ("players", "items", "articles"):
            if isinstance(value.get(key), list):
                return len(value[key])
        return len(value)
    return 0 if value is None else 1


def summarize_team_week(inputs: Dict[str, Any], job: Job) -> Dict[str, Any]:
    roster = inputs.get("roster") or {}
    return {
        "team_id": job.key.subject_id,
        "week": job.key.period_id,
        "roster_size": _count(roster),
        "projections_available": "projections" in inputs,
        "news_items": _count(inputs.get("news")),
        "inputs": sorted(inputs)
    }


def summarize_trade(inputs: Dict[str, Any], job: Job) -> Dict[str, Any]:
    proposal = job.params.get("proposal", {})
    return {
        "trade_id": job.key.subject_id,
        "period": job.key.period_id,
        "team_a_gives": proposal.get("team_a_gives", []),
        "team_b_gives": proposal.get("team_b_gives", []),
        "team_a_roster_size": _count(inputs.get("team_a_roster")),
        "team_b_roster_size": _count(inputs.get("team_b_roster")),
        "projections_available": "projections" in inputs,
        "inputs": sorted(inputs)
    }


def summarize_waivers(inputs: Dict[str, Any], job: Job) -> Dict[str, Any]:
    return {
        "team_id": job.key.subject_id,
        "week": job.key.period_id,
        "available_players": _count(inputs.get("free_agents")),
        "news_items": _count(inputs.get("news")),
        "inputs": sorted(inputs)
    }


def summarize_feed(inputs: Dict[str, Any], job: Job) -> Dict[str, Any]:
    return {
        "subject": job.key.subject_id,
        "period": job.key.period_id,
        "counts": {name: _count(value) for name, value in inputs.items()}
    }


def _league(job: Job) -> str:
    return job.params.get("league_id", job.key.subject_id)


def _proposal(job: Job) -> Dict[str, Any]:
    return job.params.get("proposal", {})


def build_default_registry() -> AnalyzerRegistry:
    """Registry with the built-in analysis kinds."""
    registry = AnalyzerRegistry()

    registry.register(Analyzer(
        kind=JobKind.WEEKLY_ANALYSIS.value,
        compute=summarize_team_week,
        ttl_seconds=24 * 60 * 60,
        sources=[
            SourceSpec("roster", "fantasy_platform", lambda job: f"teams/{job.key.subject_id}/roster",
                       mandatory=True, domain="roster"),
            SourceSpec("projections", "projections", lambda job: f"weeks/{job.key.period_id}",
                       domain="projections"),
            SourceSpec("news", "news_feed", lambda job: "news",
                       params=lambda job: {"team": job.key.subject_id}, domain="news"),
        ]
    ))

    registry.register(Analyzer(
        kind=JobKind.TRADE_EVALUATION.value,
        compute=summarize_trade,
        ttl_seconds=6 * 60 * 60,
        sources=[
            SourceSpec("team_a_roster", "fantasy_platform", lambda job: f"teams/{_proposal(job).get('team_a_id')}/roster",
                       mandatory=True, domain="roster"),
            SourceSpec("team_b_roster", "fantasy_platform", lambda job: f"teams/{_proposal(job).get('team_b_id')}/roster",
                       mandatory=True, domain="roster"),
            SourceSpec("projections", "projections", lambda job: f"weeks/{job.key.period_id}",
                       domain="projections"),
        ]
    ))

    registry.register(Analyzer(
        kind=JobKind.WAIVER_RECOMMENDATIONS.value,
        compute=summarize_waivers,
        ttl_seconds=6 * 60 * 60,
        sources=[
            SourceSpec("free_agents", "fantasy_platform", lambda job: f"leagues/{_league(job)}/free-agents",
                       mandatory=True),
            SourceSpec("projections", "projections", lambda job: f"weeks/{job.key.period_id}",
                       domain="projections"),
            SourceSpec("news", "news_feed", lambda job: "news", domain="news"),
        ]
    ))

    registry.register(Analyzer(
        kind=JobKind.PLAYER_SYNC.value,
        compute=summarize_feed,
        ttl_seconds=24 * 60 * 60,
        sources=[
            SourceSpec("players", "fantasy_platform", lambda job: "players", mandatory=True),
        ]
    ))

    registry.register(Analyzer(
        kind=JobKind.NEWS_REFRESH.value,
        compute=summarize_feed,
        ttl_seconds=60 * 60,
        sources=[
            SourceSpec("news", "news_feed", lambda job: "news",
                       params=lambda job: {"league": _league(job)}, mandatory=True, domain="news"),
        ]
    ))

    return registry
