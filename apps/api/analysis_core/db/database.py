from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from analysis_core.core.config import settings


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker] = None


def get_engine(database_url: Optional[str] = None) -> AsyncEngine:
    """Create the async engine on first use."""
    global _engine

    if _engine is None:
        _engine = create_async_engine(
            database_url or str(settings.SQLALCHEMY_DATABASE_URI),
            echo=False,  # Set to True for SQL debugging
            pool_size=5,
            max_overflow=10,
            pool_pre_ping=True,  # Auto-reconnect on failure
            pool_recycle=3600,  # Recycle connections hourly
        )
    return _engine


def get_session_factory() -> async_sessionmaker:
    """Async session factory bound to the shared engine."""
    global _session_factory

    if _session_factory is None:
        _session_factory = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False
        )
    return _session_factory


async def init_db(engine: Optional[AsyncEngine] = None):
    """Create the durable cache tables (development and tests)."""
    from analysis_core.db import models  # noqa: F401 - registers tables

    async with (engine or get_engine()).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine():
    """Close pooled connections on shutdown."""
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
