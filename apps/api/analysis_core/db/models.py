from datetime import datetime
from typing import Optional
from sqlalchemy import Boolean, DateTime, Integer, JSON, String, Text, Index
from sqlalchemy.orm import Mapped, mapped_column
from analysis_core.db.database import Base


class AnalysisArtifactRecord(Base):
    """Durable cache tier: latest artifact per AnalysisKey, kept past its TTL for stale serving."""
    __tablename__ = "analysis_artifacts"

    cache_key: Mapped[str] = mapped_column(String(255), primary_key=True)  # {subject_type}:{subject_id}:{period_id}
    subject_type: Mapped[str] = mapped_column(String(50), nullable=False)
    subject_id: Mapped[str] = mapped_column(String(100), nullable=False)
    period_id: Mapped[str] = mapped_column(String(50), nullable=False)
    kind: Mapped[str] = mapped_column(String(50), nullable=False)

    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    computed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ttl_seconds: Mapped[int] = mapped_column(Integer, nullable=False)
    source_version: Mapped[str] = mapped_column(String(50), nullable=False)
    degraded: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    degraded_sources: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

    __table_args__ = (
        Index("idx_artifacts_subject", "subject_type", "subject_id"),
    )


class DeadLetterRecord(Base):
    """Terminal job failures kept for operator inspection."""
    __tablename__ = "dead_letters"

    job_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    cache_key: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(50), nullable=False)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_history: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    job_payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    enqueued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    dead_lettered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
