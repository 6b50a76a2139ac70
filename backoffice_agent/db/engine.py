# =============================================================================
# Database Engine & Session Management
# =============================================================================
#
# Two engines against the same schema:
#
# - Async engine (asyncpg): the request path. Agent turns load agents,
#   history and persist turns with `await session.execute(...)`.
# - Sync engine (psycopg2): Celery ingestion workers, which are synchronous
#   and cannot drive the async engine. Created lazily so processes that
#   never ingest do not need psycopg2 configured.
#
# COMMIT POLICY:
# - `get_async_session()` / `get_sync_session()` commit on exit and roll
#   back on exception.
# - Callers holding `async_session_factory()` directly must commit
#   explicitly (the conversation store does this per turn).
# =============================================================================

from collections.abc import AsyncGenerator, Generator
from contextlib import asynccontextmanager, contextmanager

from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import Session, sessionmaker

from backoffice_agent.config import settings

# ---------------------------------------------------------------------------
# Async Engine
# ---------------------------------------------------------------------------
# expire_on_commit=False: attributes stay readable after commit, which the
# async path relies on (no implicit lazy IO outside a session).
# ---------------------------------------------------------------------------
async_engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_size=5,
    max_overflow=10,
)

async_session_factory = async_sessionmaker(
    bind=async_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


# ---------------------------------------------------------------------------
# Sync Engine — For Celery Workers (Lazy Initialization)
# ---------------------------------------------------------------------------

_sync_engine = None
_sync_session_factory = None


def _get_sync_engine():
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


def get_sync_session_factory() -> sessionmaker:
    """Lazily create and cache the sync session factory."""
    global _sync_session_factory
    if _sync_session_factory is None:
        _sync_session_factory = sessionmaker(
            bind=_get_sync_engine(),
            class_=Session,
            expire_on_commit=False,
        )
    return _sync_session_factory


@contextmanager
def get_sync_session(
    factory: sessionmaker | None = None,
) -> Generator[Session, None, None]:
    """
    Sync session for Celery workers: commit on exit, rollback on error.

        with get_sync_session() as session:
            kb = session.get(KnowledgeBase, kb_id)
            kb.status = KnowledgeStatus.INDEXED
    """
    session = (factory or get_sync_session_factory())()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@asynccontextmanager
async def get_async_session(
    factory: async_sessionmaker | None = None,
) -> AsyncGenerator[AsyncSession, None]:
    """Async session for the request path: commit on exit, rollback on error."""
    async with (factory or async_session_factory)() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
