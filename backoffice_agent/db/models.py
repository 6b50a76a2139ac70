# =============================================================================
# Database Models — SQLAlchemy ORM
# =============================================================================
#
# SCHEMA OVERVIEW:
#
# ┌──────────────┐ 1:N ┌────────────────┐
# │ agents       │────▶│ system_prompts │   append-only, one is_active
# │              │     └────────────────┘
# │              │ 1:N ┌─────────────────┐ 1:N ┌─────────────────┐
# │              │────▶│ knowledge_bases │────▶│ knowledge_files │
# │              │     └─────────────────┘     └─────────────────┘
# │              │ 1:N ┌───────────────┐ 1:N ┌────────────────────┐
# │              │────▶│ conversations │────▶│ conversation_turns │
# └──────────────┘     └───────────────┘     └────────────────────┘
#
# ┌──────────────────┐
# │ knowledge_chunks │   pgvector backend only (owner_id partitions rows)
# └──────────────────┘
#
# CONVENTIONS:
# - String UUID primary keys, generated client-side.
# - `deleted_at` is the soft-delete marker on agents, knowledge bases and
#   conversations. Rows are never hard-deleted by the pipeline.
# - Mutable entities carry an optimistic `version` counter
#   (SQLAlchemy `version_id_col`); a concurrent stale write raises
#   StaleDataError on flush.
# - JSON columns are JSONB on PostgreSQL and plain JSON elsewhere.
# - `metadata_` has a trailing underscore to avoid SQLAlchemy's `.metadata`.
# =============================================================================

import enum
import uuid
from datetime import datetime

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from backoffice_agent.config import settings

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """SQLAlchemy declarative base class for all ORM models."""

    pass


# =============================================================================
# Status Enums
# =============================================================================


class AgentStatus(str, enum.Enum):
    """Only ACTIVE agents can be executed."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    DELETED = "deleted"


class KnowledgeStatus(str, enum.Enum):
    """
    Ingestion state, shared by knowledge files and knowledge bases.

    State machine (per file):
        PENDING → PROCESSING → INDEXED
                             → ERROR

    A knowledge base mirrors its least-advanced file, ranked
    ERROR < PENDING < PROCESSING < INDEXED.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    INDEXED = "indexed"
    ERROR = "error"

    @classmethod
    def least_advanced(cls, statuses) -> "KnowledgeStatus":
        """Aggregate file statuses; no files means PENDING."""
        statuses = list(statuses)
        if not statuses:
            return cls.PENDING
        return min(statuses, key=_KNOWLEDGE_STATUS_RANK.__getitem__)


_KNOWLEDGE_STATUS_RANK = {
    KnowledgeStatus.ERROR: 0,
    KnowledgeStatus.PENDING: 1,
    KnowledgeStatus.PROCESSING: 2,
    KnowledgeStatus.INDEXED: 3,
}


class ConversationStatus(str, enum.Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"


# =============================================================================
# Agents & System Prompts
# =============================================================================


class Agent(Base):
    """
    A configured LLM persona.

    `integrations` is an ordered list of collaborator-module bindings:
        {"module_id", "module_name", "enabled", "permissions": [...],
         "data_mapping": [{"source": "a.b", "target": "x.y"}]}

    `knowledge_search` holds {"top_k", "similarity_threshold", "filter"}.
    """

    __tablename__ = "agents"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Model identifier (e.g. "gpt-4o", "claude-sonnet-4-6"). The provider
    # label is informational; invocation routes on the model name.
    model_name: Mapped[str] = mapped_column(String(200), nullable=False)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)

    status: Mapped[AgentStatus] = mapped_column(
        Enum(AgentStatus), nullable=False, default=AgentStatus.ACTIVE,
    )

    temperature: Mapped[float] = mapped_column(
        Float, nullable=False, default=settings.llm_default_temperature,
    )
    max_tokens: Mapped[int] = mapped_column(
        Integer, nullable=False, default=settings.llm_default_max_tokens,
    )
    max_input_tokens: Mapped[int] = mapped_column(
        Integer, nullable=False, default=settings.llm_default_max_input_tokens,
    )
    stop_sequences: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    integrations: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    knowledge_search: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    metadata_: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    created_by: Mapped[str | None] = mapped_column(String(200), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
    deleted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    system_prompts: Mapped[list["SystemPrompt"]] = relationship(
        "SystemPrompt",
        back_populates="agent",
        order_by="SystemPrompt.created_at",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def active_prompt(self) -> "SystemPrompt | None":
        for prompt in self.system_prompts:
            if prompt.is_active:
                return prompt
        return None

    def __repr__(self) -> str:
        return f"<Agent(id={self.id}, name='{self.name}', status={self.status})>"


class SystemPrompt(Base):
    """
    One version of an agent's system prompt.

    Versions are append-only; exactly one per agent has is_active=True.
    `variables` declares template variables:
        [{"name", "description", "default", "required"}]
    """

    __tablename__ = "system_prompts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    agent_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("agents.id", ondelete="CASCADE"), nullable=False,
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    variables: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    examples: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    constraints: Mapped[list | None] = mapped_column(JSONType, nullable=True)

    # "v1", "v2", ... (count of earlier versions + 1)
    version_label: Mapped[str] = mapped_column(String(20), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False,
    )

    agent: Mapped["Agent"] = relationship("Agent", back_populates="system_prompts")


# =============================================================================
# Knowledge Bases & Files
# =============================================================================


class KnowledgeBase(Base):
    """A set of knowledge files ingested into the owning agent's collection."""

    __tablename__ = "knowledge_bases"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    agent_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("agents.id", ondelete="CASCADE"), nullable=False,
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[KnowledgeStatus] = mapped_column(
        Enum(KnowledgeStatus), nullable=False, default=KnowledgeStatus.PENDING,
    )
    total_chunks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    celery_task_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    metadata_: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
    deleted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    files: Mapped[list["KnowledgeFile"]] = relationship(
        "KnowledgeFile",
        back_populates="knowledge_base",
        cascade="all, delete-orphan",
        order_by="KnowledgeFile.position",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return (
            f"<KnowledgeBase(id={self.id}, agent_id={self.agent_id}, "
            f"status={self.status}, chunks={self.total_chunks})>"
        )


class KnowledgeFile(Base):
    """One uploaded file of a knowledge base and its ingestion status."""

    __tablename__ = "knowledge_files"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    knowledge_base_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("knowledge_bases.id", ondelete="CASCADE"),
        nullable=False,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    file_name: Mapped[str] = mapped_column(String(500), nullable=False)
    mime_type: Mapped[str] = mapped_column(String(200), nullable=False)
    file_size: Mapped[int] = mapped_column(Integer, nullable=False)

    # Where the upload was written for the worker (under settings.upload_dir)
    storage_path: Mapped[str] = mapped_column(String(1000), nullable=False)

    status: Mapped[KnowledgeStatus] = mapped_column(
        Enum(KnowledgeStatus), nullable=False, default=KnowledgeStatus.PENDING,
    )
    chunk_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # Embedding-model tokens of the indexed chunks; the knowledge base totals
    # are the sums over its INDEXED files
    token_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    knowledge_base: Mapped["KnowledgeBase"] = relationship(
        "KnowledgeBase", back_populates="files",
    )


# =============================================================================
# Conversations & Turns
# =============================================================================


class Conversation(Base):
    __tablename__ = "conversations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    agent_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("agents.id", ondelete="CASCADE"), nullable=False,
    )
    user_id: Mapped[str] = mapped_column(String(200), nullable=False)
    title: Mapped[str | None] = mapped_column(String(500), nullable=True)
    status: Mapped[ConversationStatus] = mapped_column(
        Enum(ConversationStatus),
        nullable=False,
        default=ConversationStatus.ACTIVE,
    )
    last_message_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
    deleted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class ConversationTurn(Base):
    """
    One immutable user/assistant exchange.

    Turns are only ever inserted. Insert order across concurrent turns on
    the same conversation is not guaranteed.
    """

    __tablename__ = "conversation_turns"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    conversation_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_message: Mapped[str] = mapped_column(Text, nullable=False)
    assistant_message: Mapped[str] = mapped_column(Text, nullable=False)

    # Snapshot of the aggregated context the prompt was built from
    context: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    sources: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    actions: Mapped[list | None] = mapped_column(JSONType, nullable=True)

    prompt_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completion_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cost_usd: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    execution_time_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    model: Mapped[str | None] = mapped_column(String(200), nullable=True)
    metadata_: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False,
    )


# =============================================================================
# Knowledge Chunks — pgvector backend
# =============================================================================
#
# Used only when settings.vectorstore_type == "pgvector". The Chroma
# backend keeps chunks in Chroma collections instead. `owner_id` plays the
# role of a Chroma collection name: rows for one agent share an owner_id.
# =============================================================================


class KnowledgeChunk(Base):
    __tablename__ = "knowledge_chunks"

    id: Mapped[str] = mapped_column(String(200), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(200), nullable=False)
    knowledge_base_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    embedding: Mapped[list[float]] = mapped_column(
        Vector(settings.embedding_dimensions), nullable=False,
    )
    metadata_: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False,
    )


# HNSW index for cosine similarity search
knowledge_chunk_embedding_idx = Index(
    "idx_knowledge_chunk_embedding_hnsw",
    KnowledgeChunk.embedding,
    postgresql_using="hnsw",
    postgresql_with={"m": 16, "ef_construction": 64},
    postgresql_ops={"embedding": "vector_cosine_ops"},
)

knowledge_chunk_owner_idx = Index(
    "idx_knowledge_chunk_owner", KnowledgeChunk.owner_id,
)

conversation_turn_conversation_idx = Index(
    "idx_conversation_turn_conversation",
    ConversationTurn.conversation_id,
    ConversationTurn.created_at,
)
