# =============================================================================
# Response Models — Pydantic V2 Schemas
# =============================================================================
#
# Shapes of data going OUT of the pipeline:
#   - AgentReply: the result of one turn
#   - KnowledgeBaseResponse: the result of queuing an ingestion
#
# Sources and actions come from lexical heuristics (see
# services/postprocess.py). They are marked `approximate` and the raw model
# output is always returned in `message`.
# =============================================================================

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class Source(BaseModel):
    """A knowledge file the reply appears to draw on."""

    type: Literal["knowledge_base"] = "knowledge_base"
    name: str = Field(description="Source file name")
    relevance: float = Field(description="Keyword overlap score, 0.0–1.0")
    metadata: dict[str, Any] = Field(default_factory=dict)
    approximate: bool = Field(
        default=True,
        description="Attribution is a keyword-overlap heuristic, not a citation",
    )


class Action(BaseModel):
    """A directive parsed from an `[ACTION: type|key=value]` marker."""

    type: str
    parameters: dict[str, str] = Field(default_factory=dict)


class Usage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost: float = Field(default=0.0, description="USD, rounded to 6 decimals")


class ReplyMetadata(BaseModel):
    model: str
    temperature: float
    finish_reason: str | None = None
    confidence: float
    confidence_level: Literal["high", "medium", "low"]
    knowledge_used: int = 0
    execution_time_ms: int = Field(description="Wall-clock time of the model call")
    total_time_ms: int = Field(description="Wall-clock time of the whole turn")
    attribution: Literal["approximate"] = "approximate"


class AgentReply(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    agent_id: str
    message: str = Field(description="Raw model output")
    sources: list[Source] = Field(default_factory=list)
    actions: list[Action] = Field(default_factory=list)
    usage: Usage = Field(default_factory=Usage)
    metadata: ReplyMetadata
    conversation_id: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class KnowledgeFileResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    file_name: str
    mime_type: str
    file_size: int
    status: str
    chunk_count: int = 0
    error_message: str | None = None


class KnowledgeBaseResponse(BaseModel):
    """
    State of a knowledge base. Returned by ingest() while still `pending`.
    """

    model_config = ConfigDict(from_attributes=True)

    id: str
    agent_id: str
    name: str
    status: str
    total_chunks: int = 0
    total_tokens: int = 0
    task_id: str | None = None
    files: list[KnowledgeFileResponse] = Field(default_factory=list)
    created_at: datetime | None = None
