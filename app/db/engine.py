# =============================================================================
# Database Engine & Session Management
# =============================================================================
#
# DESIGN DECISION: Async SQLAlchemy Engine
# FastAPI is async, so the API uses SQLAlchemy's async engine over asyncpg.
# Sessions are created per-request via FastAPI's dependency injection.
#
# Services (ingestion, orchestrator, assistant) do NOT receive a request
# session. They receive an `async_sessionmaker` and open short sessions of
# their own, because the analysis pipeline must commit its claim before
# slow external calls and commit its result in a separate transaction.
#
# THREE ENGINES:
#
#   API process    → async_engine (pooled, asyncpg)
#   Celery worker  → worker engine (NullPool, asyncpg). Each task runs the
#                    async pipeline with asyncio.run(), i.e. in a fresh event
#                    loop. Pooled asyncpg connections are bound to the loop
#                    that opened them, so the worker engine never pools.
#   Scripts        → sync engine (psycopg2), lazily created
#
# COMMIT POLICY:
# 1. Dependency-injected (get_async_session via Depends): auto-commits
#    when the request handler returns, rolls back on exception.
# 2. Self-managed (session_factory() directly): used by services and
#    background work. These MUST commit explicitly.
# =============================================================================

from collections.abc import AsyncGenerator, Generator
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import NullPool

from app.config import settings

# ---------------------------------------------------------------------------
# Async Engine (API process)
# ---------------------------------------------------------------------------
# - echo=settings.debug logs SQL during development.
# - pool_size / max_overflow bound concurrent connections per API process.
# ---------------------------------------------------------------------------
async_engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_size=5,
    max_overflow=10,
)

# expire_on_commit=False: loaded objects stay readable after commit, which
# services rely on when they return ORM rows to route handlers.
async_session_factory = async_sessionmaker(
    bind=async_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


# ---------------------------------------------------------------------------
# Worker Engine (Celery processes, lazy)
# ---------------------------------------------------------------------------

_worker_session_factory = None


def worker_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory for Celery tasks: async, without connection pooling."""
    global _worker_session_factory
    if _worker_session_factory is None:
        engine = create_async_engine(
            settings.database_url,
            echo=settings.debug,
            poolclass=NullPool,
        )
        _worker_session_factory = async_sessionmaker(
            bind=engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _worker_session_factory


# ---------------------------------------------------------------------------
# Sync Engine (scripts, lazy)
# ---------------------------------------------------------------------------
# psycopg2 is only needed by maintenance scripts (schema creation, API key
# provisioning), so the engine is created on first use.
# ---------------------------------------------------------------------------

_sync_engine = None
_sync_session_factory = None


def get_sync_engine():
    """Lazily create and cache the sync SQLAlchemy engine."""
    global _sync_engine
    if _sync_engine is None:
        _sync_engine = create_engine(
            settings.database_url_sync,
            echo=settings.debug,
            pool_size=5,
            max_overflow=10,
        )
    return _sync_engine


def _get_sync_session_factory():
    global _sync_session_factory
    if _sync_session_factory is None:
        _sync_session_factory = sessionmaker(
            bind=get_sync_engine(),
            class_=Session,
            expire_on_commit=False,
        )
    return _sync_session_factory


@contextmanager
def get_sync_session() -> Generator[Session, None, None]:
    """
    Context manager that provides a sync database session for scripts.

    Commits on exit, rolls back on exception:
        with get_sync_session() as session:
            session.add(ApiKey(...))
    """
    factory = _get_sync_session_factory()
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency that provides a database session per request.

    The session commits when the handler returns and rolls back if it raises.
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
