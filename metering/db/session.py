"""
Database Session Management - Async SQLAlchemy engines and sessions.

Decisions, quota updates and billing events write through the primary.
Summaries, histories and health checks read through the replica when
READ_DATABASE_URL points elsewhere; otherwise both roles share one pool.
"""

from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager
from enum import Enum

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from metering.config import settings
from metering.observability.logging import get_logger
from metering.observability.tracing import instrument_sqlalchemy

logger = get_logger(__name__)


class DatabaseRole(str, Enum):
    WRITE = "write"
    READ = "read"


# Engines keyed by URL so a missing replica reuses the primary's pool
_engines: dict[str, AsyncEngine] = {}
_session_factories: dict[DatabaseRole, async_sessionmaker[AsyncSession]] = {}


def _url_for(role: DatabaseRole) -> str:
    return settings.database_url if role == DatabaseRole.WRITE else settings.read_database_url


def get_engine(role: DatabaseRole) -> AsyncEngine:
    """Get or create the engine serving `role`."""
    url = _url_for(role)
    engine = _engines.get(url)
    if engine is None:
        engine = create_async_engine(
            url,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_timeout=settings.database_pool_timeout,
            pool_recycle=settings.database_pool_recycle,
            pool_pre_ping=True,
            echo=settings.log_level.upper() == "DEBUG",
        )
        instrument_sqlalchemy(engine)
        _engines[url] = engine
        logger.info("database_engine_created", role=role.value, pool_size=settings.database_pool_size)
    return engine


def get_session_factory(role: DatabaseRole) -> async_sessionmaker[AsyncSession]:
    factory = _session_factories.get(role)
    if factory is None:
        # Objects stay readable after commit; decisions map them to domain models
        factory = async_sessionmaker(get_engine(role), class_=AsyncSession, expire_on_commit=False)
        _session_factories[role] = factory
    return factory


def get_write_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory on the primary; the usage journal opens its own sessions from it."""
    return get_session_factory(DatabaseRole.WRITE)


@asynccontextmanager
async def get_write_session() -> AsyncIterator[AsyncSession]:
    """
    Session on the primary outside of a request.

    Usage:
        async with get_write_session() as session:
            await session.execute(...)
            await session.commit()
    """
    async with get_write_session_factory()() as session:
        yield session


async def get_write_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: one primary session per request."""
    async with get_write_session_factory()() as session:
        yield session


async def get_read_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: one replica session per request."""
    async with get_session_factory(DatabaseRole.READ)() as session:
        yield session


async def close_engines() -> None:
    """Dispose every pool (graceful shutdown)."""
    _session_factories.clear()
    while _engines:
        _, engine = _engines.popitem()
        await engine.dispose()
