"""
Analysis Schemas

Pydantic models shared by the queue, the cache tiers, the orchestrator and
the HTTP layer.
"""

import json
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes read back from storage."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class JobKind(str, Enum):
    """Built-in analysis kinds."""
    WEEKLY_ANALYSIS = "weekly_analysis"
    TRADE_EVALUATION = "trade_evaluation"
    WAIVER_RECOMMENDATIONS = "waiver_recommendations"
    PLAYER_SYNC = "player_sync"
    NEWS_REFRESH = "news_refresh"


class JobState(str, Enum):
    """Job lifecycle states."""
    PENDING = "pending"
    RUNNING = "running"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    DEAD_LETTERED = "dead_lettered"


class AnalysisKey(BaseModel):
    """Identifies one computable artifact (subject + period)."""
    model_config = ConfigDict(frozen=True)

    subject_id: str
    subject_type: str
    period_id: str

    @property
    def cache_key(self) -> str:
        return f"{self.subject_type}:{self.subject_id}:{self.period_id}"

    @classmethod
    def from_cache_key(cls, cache_key: str) -> "AnalysisKey":
        subject_type, subject_id, period_id = cache_key.split(":", 2)
        return cls(subject_id=subject_id, subject_type=subject_type, period_id=period_id)

    def __str__(self) -> str:
        return self.cache_key


class AnalysisArtifact(BaseModel):
    """Immutable computed result for one AnalysisKey."""
    model_config = ConfigDict(frozen=True)

    key: AnalysisKey
    kind: str
    payload: Dict[str, Any]
    computed_at: datetime
    source_version: str
    ttl: int = Field(description="Seconds after computed_at during which the artifact is fresh")
    degraded: bool = False
    degraded_sources: List[str] = Field(default_factory=list)
    stale: bool = False

    @property
    def expires_at(self) -> datetime:
        return ensure_utc(self.computed_at) + timedelta(seconds=self.ttl)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        return ((now or utcnow()) - ensure_utc(self.computed_at)).total_seconds()

    def remaining_ttl(self, now: Optional[datetime] = None) -> int:
        return int((self.expires_at - (now or utcnow())).total_seconds())

    def as_stale(self) -> "AnalysisArtifact":
        return self.model_copy(update={"stale": True})


class Job(BaseModel):
    """Unit of work delivered through the job queue."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    key: AnalysisKey
    kind: str
    enqueued_at: datetime = Field(default_factory=utcnow)
    attempt: int = 0
    not_before: datetime = Field(default_factory=utcnow)
    params: Dict[str, Any] = Field(default_factory=dict)
    errors: List[str] = Field(default_factory=list)


class JobStatus(BaseModel):
    """Published state of a job, readable by any process."""
    job_id: str
    key: AnalysisKey
    kind: str
    state: JobState
    attempt: int = 0
    last_error: Optional[str] = None
    updated_at: datetime = Field(default_factory=utcnow)


class ProviderRequest(BaseModel):
    """Transient request routed through the provider gateway."""
    provider: str
    endpoint: str
    params: Dict[str, Any] = Field(default_factory=dict)

    @property
    def cache_key(self) -> str:
        """Key for the raw response in a fast-tier cache domain."""
        key = f"{self.provider}:{self.endpoint}"
        if self.params:
            key += ":" + json.dumps(self.params, sort_keys=True, separators=(",", ":"))
        return key


class PendingHandle(BaseModel):
    """Returned to synchronous callers when no artifact is ready in time."""
    job_id: Optional[str]
    key: AnalysisKey
    status: JobState
    retry_after_seconds: float = 1.0


class TradeProposal(BaseModel):
    """Inbound trade to evaluate."""
    league_id: str
    period_id: str
    team_a_id: str
    team_b_id: str
    team_a_gives: List[str] = Field(default_factory=list)
    team_b_gives: List[str] = Field(default_factory=list)
