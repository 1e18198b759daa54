from typing import Any, Dict, List, Optional, Union
import json
import logging
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    PROJECT_NAME: str = "Fantasy Analysis Core"
    VERSION: str = "0.1.0"
    API_V1_STR: str = "/api/v1"

    # Database (durable cache tier)
    POSTGRES_SERVER: str = "localhost"
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = ""
    POSTGRES_DB: str = "analysis_core"
    POSTGRES_PORT: str = "5432"
    SQLALCHEMY_DATABASE_URI: Optional[str] = Field(default=None, validate_default=True)

    @field_validator("SQLALCHEMY_DATABASE_URI", mode="before")
    @classmethod
    def assemble_db_connection(cls, v: Optional[str], info) -> Any:
        if isinstance(v, str) and v:
            # PaaS providers hand out postgresql:// but the async engine needs asyncpg
            if v.startswith("postgresql://"):
                return v.replace("postgresql://", "postgresql+asyncpg://", 1)
            return v
        values = info.data
        return f"postgresql+asyncpg://{values.get('POSTGRES_USER')}:{values.get('POSTGRES_PASSWORD')}@{values.get('POSTGRES_SERVER')}:{values.get('POSTGRES_PORT')}/{values.get('POSTGRES_DB')}"

    # Redis (fast tier, locks, queue, provider state)
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_SOCKET_TIMEOUT: float = 5.0  # seconds, per command
    REDIS_CONNECT_TIMEOUT: float = 5.0

    # Cache store
    CACHE_OPERATION_TIMEOUT: float = 0.5  # seconds, fast tier
    DURABLE_OPERATION_TIMEOUT: float = 2.0  # seconds, durable tier
    CACHE_DOMAIN_TTLS: Dict[str, int] = {
        "projections": 15 * 60,
        "news": 5 * 60,
        "roster": 60,
    }

    # Single-flight coordination
    LOCK_TTL_SECONDS: int = 300
    LOCK_CONTENTION_DELAY_SECONDS: float = 5.0
    PENDING_MARKER_TTL_SECONDS: int = 900
    JOB_STATE_TTL_SECONDS: int = 24 * 60 * 60

    # Job queue
    QUEUE_NAME: str = "analysis"
    QUEUE_BATCH_SIZE: int = 5
    QUEUE_VISIBILITY_TIMEOUT: int = 300  # seconds
    QUEUE_RECEIVE_WAIT: float = 10.0  # long-poll bound, seconds
    QUEUE_POLL_INTERVAL: float = 0.5
    QUEUE_OPERATION_TIMEOUT: float = 2.0  # seconds, per queue transition

    # Retry / backoff
    JOB_MAX_ATTEMPTS: int = 5
    RETRY_BASE_DELAY: float = 2.0
    RETRY_MAX_DELAY: float = 300.0
    RETRY_JITTER_RATIO: float = 0.2

    # Provider gateway
    PROVIDER_TIMEOUT: float = 10.0
    PROVIDER_RATE_LIMIT_CALLS: int = 60
    PROVIDER_RATE_LIMIT_WINDOW: int = 60  # seconds
    PROVIDER_RATE_LIMIT_MAX_WAIT: float = 0.0  # 0 = fail fast
    PROVIDER_RATE_LIMITS: Dict[str, int] = {}  # per-provider overrides of PROVIDER_RATE_LIMIT_CALLS
    CIRCUIT_FAILURE_THRESHOLD: int = 5
    CIRCUIT_RECOVERY_TIMEOUT: int = 60  # seconds
    CIRCUIT_ERROR_RATE_THRESHOLD: float = 0.5
    CIRCUIT_MIN_CALLS: int = 20
    CIRCUIT_WINDOW_SECONDS: int = 60
    PROVIDER_USER_AGENT: str = "FantasyAnalysisCore/0.1"

    FANTASY_PLATFORM_BASE_URL: str = "https://api.sleeper.app/v1"
    PROJECTIONS_BASE_URL: str = "https://api.sleeper.app/projections"
    NEWS_FEED_BASE_URL: str = "https://news.example.com/api"

    # Request coordinator
    REQUEST_WAIT_TIMEOUT: float = 5.0
    REQUEST_POLL_INTERVAL: float = 0.25

    # Scheduler
    SCHEDULER_ENABLED: bool = True
    LEAGUE_ID: str = "default"
    ACTIVE_TEAM_IDS: Union[str, List[str]] = []
    SEASON_START_DATE: str = "2026-09-08"
    WEEKLY_ANALYSIS_DAY_OF_WEEK: str = "tue"
    WEEKLY_ANALYSIS_HOUR: int = 8
    PLAYER_SYNC_INTERVAL_HOURS: int = 24
    NEWS_REFRESH_INTERVAL_MINUTES: int = 60

    @field_validator("ACTIVE_TEAM_IDS", mode="before")
    @classmethod
    def assemble_team_ids(cls, v: Union[str, List[str], None]) -> List[str]:
        if v is None or v == "":
            return []
        if isinstance(v, str):
            v = v.strip().strip('"').strip("'")
            if v.startswith("[") and v.endswith("]"):
                try:
                    return [str(i) for i in json.loads(v)]
                except (json.JSONDecodeError, ValueError) as e:
                    logger.warning(f"Failed to parse ACTIVE_TEAM_IDS as JSON: {e}. Using comma-split fallback.")
                    v = v.strip("[]")
            return [i.strip().strip('"') for i in v.split(",") if i.strip()]
        return [str(i) for i in v]

    # Worker
    WORKER_CONCURRENCY: int = 4

    # Logging
    LOG_LEVEL: str = "INFO"

    # Environment
    ENVIRONMENT: str = "development"

    model_config = SettingsConfigDict(
        case_sensitive=True,
        env_file=".env",
        extra="ignore",
        env_parse_none_str="null"
    )


try:
    settings = Settings()
except Exception as e:
    logger.error("=" * 70)
    logger.error("FATAL: Failed to load Settings configuration")
    logger.error(f"Error: {type(e).__name__}: {e}")
    logger.error("=" * 70)
    raise
