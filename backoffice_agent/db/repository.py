# =============================================================================
# Repositories — Agents, Knowledge Bases, Conversations
# =============================================================================
#
# Thin data-access helpers over the ORM models, split by caller:
#
# - Async helpers (request path): take an AsyncSession owned by the caller,
#   flush but never commit. AgentService decides transaction boundaries.
# - ConversationRepository (request path): owns its sessions, commits one
#   turn at a time. Turns are insert-only, so concurrent turns on the same
#   conversation never overwrite each other.
# - SqlKnowledgeLedger (Celery workers): sync sessions, one short
#   transaction per status update so progress is visible while a knowledge
#   base is still being ingested.
#
# DESIGN DECISION: ORM get-modify-flush instead of bulk UPDATE for rows with
# a `version` column. The mapper bumps the version on every flush, so a
# stale concurrent write fails loudly instead of silently winning.
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Protocol

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import sessionmaker

from backoffice_agent.db.engine import async_session_factory, get_sync_session
from backoffice_agent.db.models import (
    Agent,
    AgentStatus,
    Conversation,
    ConversationTurn,
    KnowledgeBase,
    KnowledgeFile,
    KnowledgeStatus,
    SystemPrompt,
)
from backoffice_agent.errors import (
    AgentNotFound,
    ConversationNotFound,
    KnowledgeBaseNotFound,
)
from backoffice_agent.services.prompt import HistoryTurn

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Agents & System Prompts
# ---------------------------------------------------------------------------


async def get_agent(
    session: AsyncSession,
    agent_id: str,
    include_deleted: bool = False,
) -> Agent:
    """Load an agent with its prompts. Soft-deleted agents are not found."""
    agent = await session.get(Agent, agent_id)
    if agent is None or (agent.deleted_at is not None and not include_deleted):
        raise AgentNotFound(agent_id)
    return agent


async def create_agent(
    session: AsyncSession,
    *,
    name: str,
    model_name: str,
    provider: str,
    description: str | None = None,
    temperature: float,
    max_tokens: int,
    max_input_tokens: int,
    stop_sequences: list[str] | None = None,
    integrations: list[dict[str, Any]] | None = None,
    knowledge_search: dict[str, Any] | None = None,
    created_by: str | None = None,
) -> Agent:
    agent = Agent(
        name=name,
        description=description,
        model_name=model_name,
        provider=provider,
        status=AgentStatus.ACTIVE,
        temperature=temperature,
        max_tokens=max_tokens,
        max_input_tokens=max_input_tokens,
        stop_sequences=stop_sequences or [],
        integrations=integrations or [],
        knowledge_search=knowledge_search or {},
        created_by=created_by,
        system_prompts=[],
    )
    session.add(agent)
    await session.flush()
    await session.refresh(agent)
    logger.info("Created agent %s (%s, model=%s)", agent.id, name, model_name)
    return agent


async def add_system_prompt(
    session: AsyncSession,
    agent: Agent,
    content: str,
    variables: list[dict[str, Any]] | None = None,
    examples: list[dict[str, Any]] | None = None,
    constraints: list[str] | None = None,
) -> SystemPrompt:
    """
    Append a new active prompt version ("v{n}") and deactivate the others.

    Earlier versions are kept for history; exactly one stays active.
    """
    for previous in agent.system_prompts:
        previous.is_active = False

    prompt = SystemPrompt(
        content=content,
        variables=variables or [],
        examples=examples or [],
        constraints=constraints or [],
        version_label=f"v{len(agent.system_prompts) + 1}",
        is_active=True,
        created_at=_utcnow(),
    )
    agent.system_prompts.append(prompt)
    await session.flush()

    logger.info("Agent %s: system prompt %s is now active", agent.id, prompt.version_label)
    return prompt


async def soft_delete_agent(session: AsyncSession, agent: Agent) -> None:
    """Mark the agent deleted, along with its knowledge bases and conversations."""
    now = _utcnow()
    agent.status = AgentStatus.DELETED
    agent.deleted_at = now

    for model in (KnowledgeBase, Conversation):
        await session.execute(
            update(model)
            .where(model.agent_id == agent.id, model.deleted_at.is_(None))
            .values(deleted_at=now, version=model.version + 1)
            .execution_options(synchronize_session=False)
        )
    await session.flush()


# ---------------------------------------------------------------------------
# Knowledge Bases
# ---------------------------------------------------------------------------


async def create_knowledge_base(
    session: AsyncSession,
    *,
    agent_id: str,
    name: str,
    files: list[dict[str, Any]],
    description: str | None = None,
    celery_task_id: str | None = None,
) -> KnowledgeBase:
    """
    Create a PENDING knowledge base with its files, in upload order.

    Each entry of `files` holds id, file_name, mime_type, file_size and
    storage_path.
    """
    knowledge_base = KnowledgeBase(
        agent_id=agent_id,
        name=name,
        description=description,
        status=KnowledgeStatus.PENDING,
        celery_task_id=celery_task_id,
        files=[
            KnowledgeFile(position=position, status=KnowledgeStatus.PENDING, **row)
            for position, row in enumerate(files)
        ],
    )
    session.add(knowledge_base)
    await session.flush()
    await session.refresh(knowledge_base)
    return knowledge_base


async def get_knowledge_base(
    session: AsyncSession,
    knowledge_base_id: str,
    agent_id: str | None = None,
) -> KnowledgeBase:
    knowledge_base = await session.get(KnowledgeBase, knowledge_base_id)
    if (
        knowledge_base is None
        or knowledge_base.deleted_at is not None
        or (agent_id is not None and knowledge_base.agent_id != agent_id)
    ):
        raise KnowledgeBaseNotFound(knowledge_base_id)
    return knowledge_base


async def list_knowledge_bases(session: AsyncSession, agent_id: str) -> list[KnowledgeBase]:
    result = await session.execute(
        select(KnowledgeBase)
        .where(KnowledgeBase.agent_id == agent_id, KnowledgeBase.deleted_at.is_(None))
        .order_by(KnowledgeBase.created_at)
    )
    return list(result.scalars().all())


async def soft_delete_knowledge_base(
    session: AsyncSession,
    knowledge_base: KnowledgeBase,
) -> None:
    knowledge_base.deleted_at = _utcnow()
    await session.flush()


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------


@dataclass
class TurnRecord:
    """Everything persisted for one completed turn."""

    conversation_id: str
    user_message: str
    assistant_message: str
    context: dict[str, Any] = field(default_factory=dict)
    sources: list[dict[str, Any]] = field(default_factory=list)
    actions: list[dict[str, Any]] = field(default_factory=list)
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cost_usd: float = 0.0
    execution_time_ms: int = 0
    model: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class ConversationStore(Protocol):
    async def load_history(
        self,
        conversation_id: str,
        limit: int,
        agent_id: str | None = None,
    ) -> list[HistoryTurn]:
        """Latest `limit` turns in chronological order."""
        ...

    async def append_turn(self, record: TurnRecord) -> None:
        ...


class ConversationRepository:
    """SQL-backed conversation history. Each call uses its own session."""

    def __init__(self, session_factory: async_sessionmaker | None = None) -> None:
        self._session_factory = session_factory or async_session_factory

    async def create_conversation(
        self,
        agent_id: str,
        user_id: str,
        title: str | None = None,
    ) -> str:
        async with self._session_factory() as session:
            conversation = Conversation(agent_id=agent_id, user_id=user_id, title=title)
            session.add(conversation)
            await session.commit()
            return conversation.id

    async def load_history(
        self,
        conversation_id: str,
        limit: int,
        agent_id: str | None = None,
    ) -> list[HistoryTurn]:
        """
        Raises:
            ConversationNotFound: Unknown, soft-deleted, or owned by
                another agent.
        """
        async with self._session_factory() as session:
            conversation = await session.get(Conversation, conversation_id)
            if (
                conversation is None
                or conversation.deleted_at is not None
                or (agent_id is not None and conversation.agent_id != agent_id)
            ):
                raise ConversationNotFound(conversation_id)

            result = await session.execute(
                select(ConversationTurn)
                .where(ConversationTurn.conversation_id == conversation_id)
                .order_by(ConversationTurn.created_at.desc())
                .limit(limit)
            )
            turns = list(result.scalars().all())

        turns.reverse()
        return [
            HistoryTurn(
                user_message=turn.user_message,
                assistant_message=turn.assistant_message,
            )
            for turn in turns
        ]

    async def append_turn(self, record: TurnRecord) -> None:
        async with self._session_factory() as session:
            now = _utcnow()
            session.add(ConversationTurn(
                conversation_id=record.conversation_id,
                user_message=record.user_message,
                assistant_message=record.assistant_message,
                context=record.context,
                sources=record.sources,
                actions=record.actions,
                prompt_tokens=record.prompt_tokens,
                completion_tokens=record.completion_tokens,
                cost_usd=record.cost_usd,
                execution_time_ms=record.execution_time_ms,
                model=record.model,
                metadata_=record.metadata,
                created_at=now,
            ))

            conversation = await session.get(Conversation, record.conversation_id)
            if conversation is None:
                raise ConversationNotFound(record.conversation_id)
            conversation.last_message_at = now

            await session.commit()


# ---------------------------------------------------------------------------
# Knowledge Ledger — Sync, For Celery Workers
# ---------------------------------------------------------------------------


class SqlKnowledgeLedger:
    """
    KnowledgeLedger backed by the sync engine.

    Every method commits immediately (own session) so status changes are
    visible to pollers during ingestion.
    """

    def __init__(self, session_factory: sessionmaker | None = None) -> None:
        self._session_factory = session_factory

    def mark_file(
        self,
        file_id: str,
        status: KnowledgeStatus,
        chunk_count: int | None = None,
        token_count: int | None = None,
        error_message: str | None = None,
    ) -> None:
        with get_sync_session(self._session_factory) as session:
            knowledge_file = session.get(KnowledgeFile, file_id)
            if knowledge_file is None:
                logger.warning("Knowledge file %s vanished during ingestion", file_id)
                return
            knowledge_file.status = status
            if chunk_count is not None:
                knowledge_file.chunk_count = chunk_count
            if token_count is not None:
                knowledge_file.token_count = token_count
            knowledge_file.error_message = error_message

    def indexed_files(self, knowledge_base_id: str) -> dict[str, int]:
        with get_sync_session(self._session_factory) as session:
            result = session.execute(
                select(KnowledgeFile.id, KnowledgeFile.chunk_count).where(
                    KnowledgeFile.knowledge_base_id == knowledge_base_id,
                    KnowledgeFile.status == KnowledgeStatus.INDEXED,
                )
            )
            return {file_id: chunk_count for file_id, chunk_count in result}

    def sync_totals(self, knowledge_base_id: str) -> tuple[int, int]:
        """Set the knowledge base totals to the sums over its INDEXED files."""
        with get_sync_session(self._session_factory) as session:
            knowledge_base = self._knowledge_base(session, knowledge_base_id)
            indexed = [
                f for f in knowledge_base.files if f.status is KnowledgeStatus.INDEXED
            ]
            chunks = sum(f.chunk_count for f in indexed)
            tokens = sum(f.token_count for f in indexed)
            if (knowledge_base.total_chunks, knowledge_base.total_tokens) != (chunks, tokens):
                knowledge_base.total_chunks = chunks
                knowledge_base.total_tokens = tokens
            return chunks, tokens

    def refresh_status(self, knowledge_base_id: str) -> KnowledgeStatus:
        with get_sync_session(self._session_factory) as session:
            return self._refresh(self._knowledge_base(session, knowledge_base_id))

    def deleted_scope(
        self, agent_id: str, knowledge_base_id: str,
    ) -> Literal["agent", "knowledge_base"] | None:
        """Which owner, if any, was deleted (or vanished) since ingestion began."""
        with get_sync_session(self._session_factory) as session:
            agent = session.get(Agent, agent_id)
            if agent is None or agent.deleted_at is not None:
                return "agent"
            knowledge_base = session.get(KnowledgeBase, knowledge_base_id)
            if knowledge_base is None or knowledge_base.deleted_at is not None:
                return "knowledge_base"
            return None

    def fail_unfinished(self, knowledge_base_id: str, message: str) -> KnowledgeStatus:
        """
        Mark every file that is not INDEXED as ERROR and refresh the status.

        Called when the ingestion task gives up, so no file is left PENDING
        or PROCESSING with nothing scheduled to advance it.
        """
        with get_sync_session(self._session_factory) as session:
            knowledge_base = self._knowledge_base(session, knowledge_base_id)
            for knowledge_file in knowledge_base.files:
                if knowledge_file.status is not KnowledgeStatus.INDEXED:
                    knowledge_file.status = KnowledgeStatus.ERROR
                    knowledge_file.error_message = message
            return self._refresh(knowledge_base)

    @staticmethod
    def _knowledge_base(session, knowledge_base_id: str) -> KnowledgeBase:
        knowledge_base = session.get(KnowledgeBase, knowledge_base_id)
        if knowledge_base is None:
            raise KnowledgeBaseNotFound(knowledge_base_id)
        return knowledge_base

    @staticmethod
    def _refresh(knowledge_base: KnowledgeBase) -> KnowledgeStatus:
        status = KnowledgeStatus.least_advanced(f.status for f in knowledge_base.files)
        if knowledge_base.status != status:
            knowledge_base.status = status
        return status
