# stocksync/database.py

import os

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from stocksync.core.config import get_settings

Base = declarative_base()

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker | None = None


def resolve_database_url(url: str | None = None) -> str:
    """Pick the configured URL and switch postgres URLs to the asyncpg driver."""
    database_url = url or get_settings().DATABASE_URL or os.environ.get('DATABASE_URL', '')
    if not database_url:
        raise ValueError("DATABASE_URL is not set in environment variables")

    # Convert postgresql:// to postgresql+asyncpg:// for async support
    if database_url.startswith('postgresql://'):
        database_url = database_url.replace('postgresql://', 'postgresql+asyncpg://', 1)
    return database_url


def create_engine_for(url: str) -> AsyncEngine:
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=False, future=True)
    return create_async_engine(
        url,
        echo=False,
        future=True,
        pool_size=10,
        max_overflow=20,
        pool_timeout=30,
        pool_recycle=1800
    )


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        _engine = create_engine_for(resolve_database_url())
    return _engine


def get_session_factory() -> async_sessionmaker:
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False
        )
    return _session_factory


async def create_tables(engine: AsyncEngine | None = None) -> None:
    """Create all tables known to the metadata (used by the CLI and tests)."""
    # Import models so they register on Base.metadata
    from stocksync import models  # noqa: F401

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
