# =============================================================================
# Shared Fixtures — SQLite-backed Database
# =============================================================================
#
# Repository and service tests run against a throwaway SQLite file: the
# async side through aiosqlite, the worker side through the sync driver.
# The pgvector `knowledge_chunks` table is PostgreSQL-only and is not
# created here.
# =============================================================================

import asyncio

import pytest
from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.orm import sessionmaker

from backoffice_agent.db.models import (
    Agent,
    Base,
    Conversation,
    ConversationTurn,
    KnowledgeBase,
    KnowledgeFile,
    SystemPrompt,
)

RELATIONAL_TABLES = [
    model.__table__
    for model in (
        Agent, SystemPrompt, KnowledgeBase, KnowledgeFile, Conversation, ConversationTurn,
    )
]


@pytest.fixture
def db_path(tmp_path):
    path = tmp_path / "backoffice.db"
    engine = create_engine(f"sqlite:///{path}")
    Base.metadata.create_all(engine, tables=RELATIONAL_TABLES)
    engine.dispose()
    return path


@pytest.fixture
def sync_factory(db_path):
    engine = create_engine(f"sqlite:///{db_path}")
    yield sessionmaker(bind=engine, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def with_db(db_path):
    """
    Run `scenario(async_session_factory)` on a fresh event loop.

    The async engine lives and dies inside one asyncio.run() call, since
    aiosqlite connections cannot move between event loops.
    """

    def _run(scenario):
        async def _go():
            engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
            try:
                return await scenario(async_sessionmaker(engine, expire_on_commit=False))
            finally:
                await engine.dispose()

        return asyncio.run(_go())

    return _run
