# =============================================================================
# Request Models — Pydantic V2 Schemas
# =============================================================================
#
# Shapes of data coming INTO the pipeline from the controller layer:
#   - TurnInput:             one user message for AgentService.execute()
#   - KnowledgeFileUpload:   one file for AgentService.ingest()
#   - CreateAgentRequest / SystemPromptRequest: agent configuration
# =============================================================================

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from backoffice_agent.config import settings
from backoffice_agent.models.agent import (
    Integration,
    KnowledgeSearchSettings,
    PromptVariable,
)


class TurnInput(BaseModel):
    """
    One user turn.

    Example:
        {
            "message": "Which invoices are overdue?",
            "conversation_id": "8c1d...",
            "user_id": "user-42",
            "context": {"locale": "pl-PL"},
            "variables": {"company": "Acme"}
        }
    """

    message: str = Field(..., min_length=1, max_length=20000)

    # Turns without a conversation id are one-off calls and are not persisted.
    conversation_id: str | None = None
    user_id: str | None = None

    # Accumulate streamed deltas from the provider (reply is still one string)
    stream: bool = False

    # Ad-hoc context; wins over collaborator-derived context on key collision.
    context: dict[str, Any] = Field(default_factory=dict)

    # Explicit template variables; win over declared defaults.
    variables: dict[str, Any] = Field(default_factory=dict)

    # Restrict retrieval to these knowledge bases of the agent.
    knowledge_base_ids: list[str] | None = None

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {
                    "message": "Which invoices are overdue?",
                    "user_id": "user-42",
                },
            ]
        }
    )


class SystemPromptRequest(BaseModel):
    content: str = Field(..., min_length=1)
    variables: list[PromptVariable] = Field(default_factory=list)
    examples: list[dict[str, Any]] = Field(default_factory=list)
    constraints: list[str] = Field(default_factory=list)


class CreateAgentRequest(BaseModel):
    """Configuration for a new agent. The model name must be routable."""

    name: str = Field(..., min_length=1, max_length=200)
    description: str | None = None
    model_name: str = settings.llm_default_model
    temperature: float = Field(default=settings.llm_default_temperature, ge=0.0, le=2.0)
    max_tokens: int = Field(default=settings.llm_default_max_tokens, ge=1)
    max_input_tokens: int = Field(default=settings.llm_default_max_input_tokens, ge=1)
    stop_sequences: list[str] = Field(default_factory=list)
    integrations: list[Integration] = Field(default_factory=list)
    knowledge_search: KnowledgeSearchSettings = Field(
        default_factory=KnowledgeSearchSettings,
    )
    system_prompt: SystemPromptRequest | None = None
    created_by: str | None = None


class KnowledgeFileUpload(BaseModel):
    """An uploaded file handed over by the (out-of-scope) upload transport."""

    file_name: str = Field(..., min_length=1, max_length=500)
    mime_type: str
    content: bytes

    @property
    def size(self) -> int:
        return len(self.content)
