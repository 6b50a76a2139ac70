# =============================================================================
# Model Invocation Gateway — Provider-Agnostic Completions
# =============================================================================
#
# Routes a normalised CompletionRequest to a provider adapter and returns a
# normalised CompletionResponse.
#
# ROUTING: purely by model name. resolve_model_family() maps a name onto a
# ModelFamily; the gateway looks the family up in its adapter registry.
#   gpt-*, o1*, o3*, o4*, chatgpt-*   → OPENAI            (OpenAIAdapter)
#   claude*                           → ANTHROPIC         (AnthropicAdapter)
#   settings.openai_compatible_prefixes → OPENAI_COMPATIBLE (OpenAIAdapter
#                                        against settings.llm_base_url)
# The same resolution validates models when agents are created.
#
# PER-CALL STATE MACHINE (logged):
#   ROUTING → INVOKING → SUCCEEDED
#                      → FAILED    (CompletionFailure)
#
# DESIGN DECISION: Native SDKs (openai, anthropic), async clients. SDK
# clients are created lazily on first use of a family and reused.
#
# DESIGN DECISION: No retries. The SDK clients are built with
# max_retries=0 and any adapter exception (including a timeout) is wrapped
# in CompletionFailure. Retry policy belongs to the caller.
#
# STREAMING: deltas are accumulated into one content string. Usage is
# taken from the stream when the provider reports it, otherwise zero.
# =============================================================================

from __future__ import annotations

import asyncio
import enum
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from backoffice_agent.config import settings
from backoffice_agent.errors import CompletionFailure, UnsupportedModel

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Model Families
# ---------------------------------------------------------------------------


class ModelFamily(str, enum.Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    OPENAI_COMPATIBLE = "openai_compatible"


_OPENAI_PREFIXES = ("gpt-", "o1", "o3", "o4", "chatgpt-")
_ANTHROPIC_PREFIXES = ("claude",)


def resolve_model_family(
    model: str,
    compatible_prefixes: list[str] | None = None,
) -> ModelFamily:
    """
    Map a model name onto its provider family.

    Raises:
        UnsupportedModel: If no family matches.
    """
    name = model.strip().lower()
    if name.startswith(_OPENAI_PREFIXES):
        return ModelFamily.OPENAI
    if name.startswith(_ANTHROPIC_PREFIXES):
        return ModelFamily.ANTHROPIC

    prefixes = (
        settings.openai_compatible_prefixes
        if compatible_prefixes is None
        else compatible_prefixes
    )
    if any(name.startswith(prefix.lower()) for prefix in prefixes):
        return ModelFamily.OPENAI_COMPATIBLE

    raise UnsupportedModel(model)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class CompletionRequest:
    model: str
    messages: list[dict[str, str]]
    temperature: float = settings.llm_default_temperature
    max_tokens: int = settings.llm_default_max_tokens
    stream: bool = False
    stop_sequences: list[str] = field(default_factory=list)


@dataclass
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0


@dataclass
class CompletionResponse:
    """
    Standardised response from any provider.

    finish_reason is normalised: "stop" for a natural end, "length" when
    max_tokens cut the output, otherwise the provider's own value.
    """

    content: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    finish_reason: str | None = None
    processing_time_ms: int = 0
    model: str = ""
    provider: str = ""


class CallState(str, enum.Enum):
    ROUTING = "routing"
    INVOKING = "invoking"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Adapter Protocol
# ---------------------------------------------------------------------------


class ProviderAdapter(Protocol):
    """Absorbs one provider's request/response shapes."""

    provider_name: str

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        ...


# ---------------------------------------------------------------------------
# Adapter 1: OpenAI and OpenAI-compatible APIs
# ---------------------------------------------------------------------------


class OpenAIAdapter:
    """
    Chat Completions via AsyncOpenAI.

    With a base_url the same adapter serves OpenAI-compatible providers
    (DeepSeek, Qwen, GLM, Kimi, MiniMax).
    """

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        provider_name: str = "openai",
        client: Any | None = None,
    ) -> None:
        self.provider_name = provider_name
        if client is not None:
            self._client = client
            return

        from openai import AsyncOpenAI

        resolved_key = api_key or settings.openai_api_key or settings.llm_api_key
        if not resolved_key:
            raise CompletionFailure(
                provider_name,
                "No API key configured. Set OPENAI_API_KEY or LLM_API_KEY in .env",
            )

        client_kwargs: dict = {"api_key": resolved_key, "max_retries": 0}
        if base_url:
            client_kwargs["base_url"] = base_url
        self._client = AsyncOpenAI(**client_kwargs)

        logger.info(
            "Initialized OpenAIAdapter (provider=%s, base_url=%s)",
            provider_name, base_url or "https://api.openai.com/v1",
        )

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        kwargs: dict = {
            "model": request.model,
            "messages": request.messages,
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
        }
        if request.stop_sequences:
            kwargs["stop"] = request.stop_sequences

        if request.stream:
            return await self._complete_streaming(request, kwargs)

        response = await self._client.chat.completions.create(**kwargs)
        choice = response.choices[0]
        usage = response.usage

        return CompletionResponse(
            content=choice.message.content or "",
            usage=TokenUsage(
                prompt_tokens=usage.prompt_tokens if usage else 0,
                completion_tokens=usage.completion_tokens if usage else 0,
            ),
            finish_reason=choice.finish_reason,
            model=response.model or request.model,
            provider=self.provider_name,
        )

    async def _complete_streaming(
        self,
        request: CompletionRequest,
        kwargs: dict,
    ) -> CompletionResponse:
        stream = await self._client.chat.completions.create(stream=True, **kwargs)

        parts: list[str] = []
        finish_reason: str | None = None
        usage = TokenUsage()
        async for chunk in stream:
            if getattr(chunk, "usage", None):
                usage = TokenUsage(
                    prompt_tokens=chunk.usage.prompt_tokens,
                    completion_tokens=chunk.usage.completion_tokens,
                )
            if not chunk.choices:
                continue
            choice = chunk.choices[0]
            if choice.delta and choice.delta.content:
                parts.append(choice.delta.content)
            if choice.finish_reason:
                finish_reason = choice.finish_reason

        return CompletionResponse(
            content="".join(parts),
            usage=usage,
            finish_reason=finish_reason,
            model=request.model,
            provider=self.provider_name,
        )


# ---------------------------------------------------------------------------
# Adapter 2: Anthropic (Claude)
# ---------------------------------------------------------------------------


_ANTHROPIC_FINISH_REASONS = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "max_tokens": "length",
}


class AnthropicAdapter:
    """
    Messages API via AsyncAnthropic.

    KEY API DIFFERENCE: system prompts are the top-level `system=` argument,
    not a message. System messages are pulled out of the list and joined.
    Anthropic caps temperature at 1.0.
    """

    provider_name = "anthropic"

    def __init__(self, api_key: str | None = None, client: Any | None = None) -> None:
        if client is not None:
            self._client = client
            return

        from anthropic import AsyncAnthropic

        resolved_key = api_key or settings.anthropic_api_key
        if not resolved_key:
            raise CompletionFailure(
                self.provider_name,
                "No Anthropic API key configured. Set ANTHROPIC_API_KEY in .env",
            )

        self._client = AsyncAnthropic(api_key=resolved_key, max_retries=0)
        logger.info("Initialized AnthropicAdapter")

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        system_parts = [m["content"] for m in request.messages if m["role"] == "system"]
        messages = [m for m in request.messages if m["role"] != "system"]

        kwargs: dict = {
            "model": request.model,
            "messages": messages,
            "max_tokens": request.max_tokens,
            "temperature": min(request.temperature, 1.0),
        }
        if system_parts:
            kwargs["system"] = "\n\n".join(system_parts)
        if request.stop_sequences:
            kwargs["stop_sequences"] = request.stop_sequences

        if request.stream:
            return await self._complete_streaming(request, kwargs)

        response = await self._client.messages.create(**kwargs)
        content = "".join(
            block.text for block in response.content if block.type == "text"
        )

        return CompletionResponse(
            content=content,
            usage=TokenUsage(
                prompt_tokens=response.usage.input_tokens,
                completion_tokens=response.usage.output_tokens,
            ),
            finish_reason=_normalise_anthropic_finish(response.stop_reason),
            model=response.model or request.model,
            provider=self.provider_name,
        )

    async def _complete_streaming(
        self,
        request: CompletionRequest,
        kwargs: dict,
    ) -> CompletionResponse:
        stream = await self._client.messages.create(stream=True, **kwargs)

        parts: list[str] = []
        stop_reason: str | None = None
        usage = TokenUsage()
        async for event in stream:
            if event.type == "message_start":
                usage.prompt_tokens = event.message.usage.input_tokens
            elif event.type == "content_block_delta":
                if getattr(event.delta, "type", None) == "text_delta":
                    parts.append(event.delta.text)
            elif event.type == "message_delta":
                stop_reason = event.delta.stop_reason
                if event.usage is not None:
                    usage.completion_tokens = event.usage.output_tokens

        return CompletionResponse(
            content="".join(parts),
            usage=usage,
            finish_reason=_normalise_anthropic_finish(stop_reason),
            model=request.model,
            provider=self.provider_name,
        )


def _normalise_anthropic_finish(stop_reason: str | None) -> str | None:
    if stop_reason is None:
        return None
    return _ANTHROPIC_FINISH_REASONS.get(stop_reason, stop_reason)


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


class LLMGateway:
    """
    Routes completion requests to provider adapters by model family.

    Args:
        adapters: Registry of family → adapter. Families missing from the
            registry get a default adapter built from settings on first use.
        timeout: Per-call timeout in seconds (default
            settings.llm_timeout_seconds).
    """

    def __init__(
        self,
        adapters: Mapping[ModelFamily, ProviderAdapter] | None = None,
        timeout: float | None = None,
    ) -> None:
        self._adapters: dict[ModelFamily, ProviderAdapter] = dict(adapters or {})
        self._timeout = timeout or settings.llm_timeout_seconds

    def adapter_for(self, family: ModelFamily) -> ProviderAdapter:
        adapter = self._adapters.get(family)
        if adapter is None:
            adapter = _build_default_adapter(family)
            self._adapters[family] = adapter
        return adapter

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        """
        Run one completion.

        Raises:
            UnsupportedModel: If the model name matches no family.
            CompletionFailure: On any adapter error or timeout.
        """
        state = CallState.ROUTING
        family = resolve_model_family(request.model)
        provider = family.value

        started = time.monotonic()
        try:
            adapter = self.adapter_for(family)
            provider = adapter.provider_name

            state = _transition(state, CallState.INVOKING, request.model, provider)
            response = await asyncio.wait_for(
                adapter.complete(request), timeout=self._timeout,
            )
        except CompletionFailure:
            _transition(state, CallState.FAILED, request.model, provider)
            raise
        except asyncio.TimeoutError as exc:
            _transition(state, CallState.FAILED, request.model, provider)
            raise CompletionFailure(
                provider,
                f"timed out after {self._timeout:.0f}s",
                model=request.model,
            ) from exc
        except Exception as exc:
            _transition(state, CallState.FAILED, request.model, provider)
            raise CompletionFailure(
                provider, str(exc) or type(exc).__name__, model=request.model,
            ) from exc

        response.processing_time_ms = int((time.monotonic() - started) * 1000)
        response.provider = response.provider or provider
        _transition(state, CallState.SUCCEEDED, request.model, provider)

        logger.info(
            "Completion %s/%s: %d ms, finish=%s, usage=%d/%d",
            provider,
            request.model,
            response.processing_time_ms,
            response.finish_reason,
            response.usage.prompt_tokens,
            response.usage.completion_tokens,
        )
        return response


def _transition(
    current: CallState,
    new: CallState,
    model: str,
    provider: str,
) -> CallState:
    log = logger.warning if new is CallState.FAILED else logger.debug
    log("Completion %s → %s (model=%s, provider=%s)", current.value, new.value, model, provider)
    return new


def _build_default_adapter(family: ModelFamily) -> ProviderAdapter:
    if family is ModelFamily.ANTHROPIC:
        return AnthropicAdapter()
    if family is ModelFamily.OPENAI_COMPATIBLE:
        return OpenAIAdapter(
            api_key=settings.llm_api_key,
            base_url=settings.llm_base_url,
            provider_name="openai_compatible",
        )
    return OpenAIAdapter()
