# =============================================================================
# Database Engine & Session Management
# =============================================================================
#
# One async engine serves every caller: FastAPI request handlers, the
# ingestion worker, and the direct metadata/delete paths. All run on the same
# event loop, so there is no separate sync engine.
#
# SESSION LIFECYCLE:
# 1. Caller enters `session_scope()`
# 2. Work happens inside one transaction
# 3. Commit on clean exit, rollback on any exception (including cancellation)
#
# The chunk store relies on this: a cancelled or failed write for one upload
# never leaves a half-committed chunk batch behind.
# =============================================================================

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from doc_ingest.config import settings

# ---------------------------------------------------------------------------
# Lazy Engine
# ---------------------------------------------------------------------------
# Created on first use so that importing the package (tests, CLI tooling)
# does not require the asyncpg driver or a reachable database.
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_engine() -> AsyncEngine:
    """Lazily create and cache the async SQLAlchemy engine."""
    global _engine
    if _engine is None:
        _engine = create_async_engine(
            settings.database_url,
            echo=settings.debug,
            pool_size=5,
            max_overflow=10,
        )
    return _engine


def async_session_factory() -> async_sessionmaker[AsyncSession]:
    """Lazily create and cache the session factory."""
    global _session_factory
    if _session_factory is None:
        # expire_on_commit=False: rows loaded inside a session stay readable
        # after commit without another round trip.
        _session_factory = async_sessionmaker(
            bind=get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _session_factory


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncGenerator[AsyncSession, None]:
    """
    Provide a transactional session.

    Usage:
        async with session_scope() as session:
            session.add(row)
            # Auto-commits on exit, auto-rollbacks on exception

    Args:
        factory: Optional session factory override (tests, alternate DBs).
    """
    session = (factory or async_session_factory())()
    try:
        yield session
        await session.commit()
    except BaseException:
        await session.rollback()
        raise
    finally:
        await session.close()


async def dispose_engine() -> None:
    """Close pooled connections. Called from the application lifespan."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
