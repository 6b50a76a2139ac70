# =============================================================================
# Error Taxonomy — Agent Pipeline
# =============================================================================
#
# Every failure the pipeline surfaces is an AgentPipelineError carrying:
#   - kind:       stable machine-readable category ("validation", ...)
#   - identifier: the offending entity (model name, file name, agent id, ...)
#   - upstream:   the underlying provider/collaborator message, if any
#
# The controller layer maps these to user-facing messages without having
# to re-derive context.
#
#   AgentPipelineError
#   ├── ValidationFailure          — bad input, raised before side effects
#   │   ├── UnsupportedFileType
#   │   ├── UnsupportedModel
#   │   └── AgentNotActive
#   ├── NotFound
#   │   ├── AgentNotFound
#   │   ├── KnowledgeBaseNotFound
#   │   └── ConversationNotFound
#   ├── TokenBudgetExceeded        — raised before the model is invoked
#   ├── EmbeddingFailure           — embedding provider error
#   ├── CompletionFailure          — LLM provider error or timeout
#   └── CollaboratorFetchFailure   — isolated per collaborator, logged only
# =============================================================================

from __future__ import annotations


class AgentPipelineError(Exception):
    """Base exception for all pipeline errors."""

    kind = "pipeline"

    def __init__(
        self,
        message: str,
        identifier: str | None = None,
        upstream: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.identifier = identifier
        self.upstream = upstream

    def to_dict(self) -> dict:
        """Structured detail for rendering an error to a caller."""
        return {
            "kind": self.kind,
            "message": self.message,
            "identifier": self.identifier,
            "upstream": self.upstream,
        }


class ValidationFailure(AgentPipelineError):
    kind = "validation"


class UnsupportedFileType(ValidationFailure):
    kind = "unsupported_file_type"

    def __init__(self, mime_type: str, file_name: str | None = None) -> None:
        super().__init__(
            f"Unsupported file type: {mime_type}",
            identifier=file_name or mime_type,
        )
        self.mime_type = mime_type


class UnsupportedModel(ValidationFailure):
    kind = "unsupported_model"

    def __init__(self, model: str) -> None:
        super().__init__(f"Unsupported model: {model}", identifier=model)
        self.model = model


class AgentNotActive(ValidationFailure):
    kind = "agent_not_active"

    def __init__(self, agent_id: str, status: str) -> None:
        super().__init__(
            f"Agent '{agent_id}' is not active (status={status})",
            identifier=agent_id,
        )
        self.status = status


class NotFound(AgentPipelineError):
    kind = "not_found"
    resource = "Resource"

    def __init__(self, identifier: str) -> None:
        super().__init__(
            f"{self.resource} '{identifier}' not found", identifier=identifier,
        )


class AgentNotFound(NotFound):
    resource = "Agent"


class KnowledgeBaseNotFound(NotFound):
    resource = "Knowledge base"


class ConversationNotFound(NotFound):
    resource = "Conversation"


class TokenBudgetExceeded(AgentPipelineError):
    kind = "token_budget_exceeded"

    def __init__(self, agent_id: str, prompt_tokens: int, limit: int) -> None:
        super().__init__(
            f"Prompt uses {prompt_tokens} tokens, above the agent's "
            f"input limit of {limit}",
            identifier=agent_id,
        )
        self.prompt_tokens = prompt_tokens
        self.limit = limit

    def to_dict(self) -> dict:
        detail = super().to_dict()
        detail.update(prompt_tokens=self.prompt_tokens, limit=self.limit)
        return detail


class EmbeddingFailure(AgentPipelineError):
    kind = "embedding_failure"

    def __init__(self, provider: str, upstream: str, input_count: int) -> None:
        super().__init__(
            f"Embedding {input_count} input(s) with {provider} failed: {upstream}",
            identifier=provider,
            upstream=upstream,
        )
        self.provider = provider
        self.input_count = input_count


class CompletionFailure(AgentPipelineError):
    kind = "completion_failure"

    def __init__(self, provider: str, upstream: str, model: str | None = None) -> None:
        super().__init__(
            f"Completion with {provider} failed: {upstream}",
            identifier=model or provider,
            upstream=upstream,
        )
        self.provider = provider
        self.model = model


class CollaboratorFetchFailure(AgentPipelineError):
    kind = "collaborator_fetch_failure"

    def __init__(self, module_id: str, scope: str, upstream: str) -> None:
        super().__init__(
            f"Fetching '{scope}' from module '{module_id}' failed: {upstream}",
            identifier=f"{module_id}:{scope}",
            upstream=upstream,
        )
        self.module_id = module_id
        self.scope = scope
