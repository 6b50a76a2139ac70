# =============================================================================
# Agent Profile — Pydantic V2 Schemas
# =============================================================================
#
# The executor works on an AgentProfile: a validated, detached snapshot of
# an Agent row plus its active system prompt. Building the snapshot once per
# turn keeps ORM objects (and their sessions) out of the pipeline, and lets
# tests describe agents as plain data.
# =============================================================================

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from backoffice_agent.config import settings


class FieldMapping(BaseModel):
    """Copy `source` (dotted path in the module payload) to `target`."""

    source: str = Field(min_length=1)
    target: str = Field(min_length=1)


class Integration(BaseModel):
    """A collaborator module the agent may read from."""

    module_id: str
    module_name: str = ""
    enabled: bool = True
    permissions: list[str] = Field(default_factory=list)
    data_mapping: list[FieldMapping] = Field(default_factory=list)


class KnowledgeSearchSettings(BaseModel):
    top_k: int = Field(default=settings.retrieval_top_k, ge=1, le=50)
    similarity_threshold: float = Field(
        default=settings.retrieval_similarity_threshold, ge=0.0, le=1.0,
    )
    filter: dict[str, Any] | None = None


class PromptVariable(BaseModel):
    name: str
    description: str = ""
    default: str | None = None
    required: bool = False


class PromptVersion(BaseModel):
    """The active system prompt of an agent."""

    model_config = ConfigDict(from_attributes=True)

    id: str | None = None
    content: str
    variables: list[PromptVariable] = Field(default_factory=list)
    version_label: str = "v1"


class AgentProfile(BaseModel):
    """Everything the executor needs to run one turn for an agent."""

    id: str
    name: str
    model_name: str
    provider: str = ""
    status: str = "active"
    temperature: float = settings.llm_default_temperature
    max_tokens: int = settings.llm_default_max_tokens
    max_input_tokens: int = settings.llm_default_max_input_tokens
    stop_sequences: list[str] = Field(default_factory=list)
    integrations: list[Integration] = Field(default_factory=list)
    knowledge_search: KnowledgeSearchSettings = Field(
        default_factory=KnowledgeSearchSettings,
    )
    system_prompt: PromptVersion | None = None

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    @classmethod
    def from_orm_agent(cls, agent: Any) -> AgentProfile:
        """Snapshot an `Agent` ORM row (with prompts loaded)."""
        prompt = agent.active_prompt
        status = getattr(agent.status, "value", agent.status)
        return cls(
            id=agent.id,
            name=agent.name,
            model_name=agent.model_name,
            provider=agent.provider,
            status=status,
            temperature=agent.temperature,
            max_tokens=agent.max_tokens,
            max_input_tokens=agent.max_input_tokens,
            stop_sequences=agent.stop_sequences or [],
            integrations=agent.integrations or [],
            knowledge_search=agent.knowledge_search or {},
            system_prompt=(
                PromptVersion(
                    id=prompt.id,
                    content=prompt.content,
                    variables=prompt.variables or [],
                    version_label=prompt.version_label,
                )
                if prompt is not None
                else None
            ),
        )
