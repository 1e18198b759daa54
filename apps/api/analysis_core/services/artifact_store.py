"""
Artifact Store

Two-tier cache for computed analysis artifacts and raw provider data.

- Fast tier: Redis through CacheManager. Best effort; entries expire with
  their TTL (artifacts) or their domain TTL (projections, news, roster).
- Durable tier: SQL table keyed by {subject_type}:{subject_id}:{period_id}.
  Keeps the latest artifact past its TTL so it can be served flagged stale.

Reads go fast tier, then durable tier (repopulating the fast tier when the
durable artifact is still fresh), then miss. Writes are last-writer-wins by
computed_at in both tiers. Every durable call is bounded by durable_timeout;
reads never raise, timeouts and backend errors (including connection failures
the driver raises as OSError) degrade to a miss.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from analysis_core.core.cache_manager import CacheManager
from analysis_core.core.config import settings
from analysis_core.core.exceptions import CacheError
from analysis_core.db.models import AnalysisArtifactRecord, DeadLetterRecord
from analysis_core.schemas.analysis import AnalysisArtifact, AnalysisKey, Job, ensure_utc, utcnow

logger = logging.getLogger(__name__)

_VERSION_FIELD = "_version"

# asyncpg surfaces refused or dropped connections as OSError, unwrapped by SQLAlchemy
_DURABLE_ERRORS = (SQLAlchemyError, OSError)


class ArtifactStore:
    """Fast + durable cache for AnalysisArtifacts."""

    def __init__(
        self,
        cache: CacheManager,
        session_factory: async_sessionmaker,
        domain_ttls: Optional[Dict[str, int]] = None,
        durable_timeout: float = settings.DURABLE_OPERATION_TIMEOUT,
        now: Callable[[], datetime] = utcnow
    ):
        self.cache = cache
        self.session_factory = session_factory
        self.domain_ttls = dict(domain_ttls or settings.CACHE_DOMAIN_TTLS)
        self.durable_timeout = durable_timeout
        self._now = now

    async def _durable(self, operation: str, awaitable: Awaitable) -> Any:
        """
        Run a durable tier call under durable_timeout.

        @throws CacheError - timed out, or the database was unreachable or failed
        """
        try:
            return await asyncio.wait_for(awaitable, timeout=self.durable_timeout)
        except asyncio.TimeoutError as e:
            raise CacheError(f"durable {operation} timed out after {self.durable_timeout}s") from e
        except _DURABLE_ERRORS as e:
            raise CacheError(f"durable {operation} failed: {e!r}") from e

    @staticmethod
    def _fast_key(key: AnalysisKey) -> str:
        return f"artifact:{key.cache_key}"

    # Read path
    async def get(self, key: AnalysisKey) -> Optional[AnalysisArtifact]:
        """Fresh artifact for key, or None (miss or expired)."""
        artifact = await self._read(key)
        if artifact is None or artifact.is_expired(self._now()):
            return None
        return artifact

    async def get_with_freshness(self, key: AnalysisKey, max_age: Optional[float] = None) -> Optional[AnalysisArtifact]:
        """
        Latest artifact for key regardless of TTL.

        The artifact is flagged stale when its TTL has elapsed or it is older
        than max_age seconds.
        """
        artifact = await self._read(key)
        if artifact is None:
            return None
        now = self._now()
        if artifact.is_expired(now) or (max_age is not None and artifact.age_seconds(now) > max_age):
            return artifact.as_stale()
        return artifact

    async def _read(self, key: AnalysisKey) -> Optional[AnalysisArtifact]:
        artifact = await self._read_fast(key)
        if artifact is not None:
            return artifact

        artifact = await self._read_durable(key)
        if artifact is not None and not artifact.is_expired(self._now()):
            await self._write_fast(artifact)
        return artifact

    async def _read_fast(self, key: AnalysisKey) -> Optional[AnalysisArtifact]:
        data = await self.cache.get_json(self._fast_key(key))
        if not data:
            return None
        data.pop(_VERSION_FIELD, None)
        try:
            return AnalysisArtifact.model_validate(data)
        except ValidationError as e:
            logger.error(f"Discarding malformed fast-tier artifact {key}: {e}")
            return None

    async def _read_durable(self, key: AnalysisKey) -> Optional[AnalysisArtifact]:
        try:
            return await self._durable(f"read for {key}", self._select_artifact(key))
        except CacheError as e:
            logger.error(f"{e}, treating as miss")
            return None

    async def _select_artifact(self, key: AnalysisKey) -> Optional[AnalysisArtifact]:
        async with self.session_factory() as session:
            record = await session.get(AnalysisArtifactRecord, key.cache_key)
            if record is None:
                return None
            return AnalysisArtifact(
                key=key,
                kind=record.kind,
                payload=record.payload,
                computed_at=ensure_utc(record.computed_at),
                source_version=record.source_version,
                ttl=record.ttl_seconds,
                degraded=record.degraded,
                degraded_sources=list(record.degraded_sources or [])
            )

    # Write path
    async def put(self, artifact: AnalysisArtifact) -> bool:
        """
        Store artifact in both tiers.

        @returns False when a newer artifact for the key already exists

        @throws CacheError - durable tier unavailable; the artifact was not stored
        """
        accepted = await self._durable(f"write for {artifact.key}", self._upsert_artifact(artifact))

        if not accepted:
            logger.info(f"Kept newer artifact for {artifact.key}, discarded write computed at {artifact.computed_at}")
            return False

        await self._write_fast(artifact)
        logger.info(f"Stored artifact {artifact.key} (ttl {artifact.ttl}s, degraded={artifact.degraded})")
        return True

    async def _upsert_artifact(self, artifact: AnalysisArtifact) -> bool:
        computed_at = ensure_utc(artifact.computed_at)
        for attempt in range(2):
            try:
                async with self.session_factory() as session:
                    async with session.begin():
                        record = await session.get(AnalysisArtifactRecord, artifact.key.cache_key)
                        if record is not None and ensure_utc(record.computed_at) > computed_at:
                            return False
                        if record is None:
                            record = AnalysisArtifactRecord(
                                cache_key=artifact.key.cache_key,
                                subject_type=artifact.key.subject_type,
                                subject_id=artifact.key.subject_id,
                                period_id=artifact.key.period_id
                            )
                            session.add(record)
                        record.kind = artifact.kind
                        record.payload = artifact.payload
                        record.computed_at = computed_at
                        record.expires_at = artifact.expires_at
                        record.ttl_seconds = artifact.ttl
                        record.source_version = artifact.source_version
                        record.degraded = artifact.degraded
                        record.degraded_sources = list(artifact.degraded_sources)
                return True
            except IntegrityError:
                # concurrent first insert for the key; re-read and compare
                if attempt:
                    raise
        return False

    async def _write_fast(self, artifact: AnalysisArtifact) -> None:
        ttl = artifact.remaining_ttl(self._now())
        if ttl <= 0:
            return
        data = artifact.model_dump(mode="json", exclude={"stale"})
        data[_VERSION_FIELD] = ensure_utc(artifact.computed_at).timestamp()
        await self.cache.set_json_if_newer(self._fast_key(artifact.key), data, ttl, _VERSION_FIELD)

    async def delete(self, key: AnalysisKey) -> None:
        """Drop an artifact from both tiers."""
        await self.cache.delete(self._fast_key(key))
        await self._durable(f"delete for {key}", self._delete_artifact(key))

    async def _delete_artifact(self, key: AnalysisKey) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                record = await session.get(AnalysisArtifactRecord, key.cache_key)
                if record is not None:
                    await session.delete(record)

    # Raw provider data (fast tier only)
    async def get_domain(self, domain: str, key: str) -> Optional[Any]:
        return await self.cache.get_json(f"{domain}:{key}")

    async def put_domain(self, domain: str, key: str, data: Any) -> bool:
        ttl = self.domain_ttls.get(domain)
        if not ttl:
            logger.warning(f"No TTL configured for cache domain '{domain}', not caching")
            return False
        return await self.cache.set_json(f"{domain}:{key}", data, ttl)

    # Dead letters
    async def record_dead_letter(self, job: Job, last_error: Optional[str]) -> None:
        """
        Persist a terminal job failure.

        @throws CacheError - the record could not be written
        """
        await self._durable(f"dead-letter write for job {job.id}", self._merge_dead_letter(job, last_error))
        logger.error(f"Dead-lettered job {job.id} ({job.kind} {job.key}) after {job.attempt} attempts: {last_error}")

    async def _merge_dead_letter(self, job: Job, last_error: Optional[str]) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                await session.merge(DeadLetterRecord(
                    job_id=job.id,
                    cache_key=job.key.cache_key,
                    kind=job.kind,
                    attempt=job.attempt,
                    last_error=last_error,
                    error_history=list(job.errors),
                    job_payload=job.model_dump(mode="json"),
                    enqueued_at=ensure_utc(job.enqueued_at),
                    dead_lettered_at=self._now()
                ))

    async def get_dead_letter(self, job_id: str) -> Optional[Dict[str, Any]]:
        """@throws CacheError - durable tier unavailable"""
        return await self._durable(f"dead-letter read for job {job_id}", self._select_dead_letter(job_id))

    async def _select_dead_letter(self, job_id: str) -> Optional[Dict[str, Any]]:
        async with self.session_factory() as session:
            record = await session.get(DeadLetterRecord, job_id)
            return _dead_letter_dict(record) if record is not None else None

    async def list_dead_letters(self, limit: int = 50) -> list:
        """Most recent dead letters first. @throws CacheError - durable tier unavailable"""
        return await self._durable("dead-letter listing", self._select_dead_letters(limit))

    async def _select_dead_letters(self, limit: int) -> list:
        async with self.session_factory() as session:
            result = await session.execute(
                select(DeadLetterRecord).order_by(DeadLetterRecord.dead_lettered_at.desc()).limit(limit)
            )
            return [_dead_letter_dict(record) for record in result.scalars()]


def _dead_letter_dict(record: DeadLetterRecord) -> Dict[str, Any]:
    return {
        "job_id": record.job_id,
        "cache_key": record.cache_key,
        "kind": record.kind,
        "attempt": record.attempt,
        "last_error": record.last_error,
        "error_history": list(record.error_history or []),
        "dead_lettered_at": ensure_utc(record.dead_lettered_at).isoformat()
    }
