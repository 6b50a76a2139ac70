# =============================================================================
# Agent Executor — One Turn, End to End
# =============================================================================
#
# Runs one user turn for one agent as a LangGraph StateGraph:
#
#   START ──▶ gather ──▶ assemble ──▶ invoke ──▶ finalize ──▶ END
#
#   gather:   collaborator context ┐
#             knowledge search     ├─ asyncio.gather (fan-out / fan-in)
#             conversation history ┘
#   assemble: variables → prompt → messages → prompt token count.
#             Above agent.max_input_tokens → TokenBudgetExceeded, and the
#             model is never called.
#   invoke:   LLMGateway.complete() with the agent's sampling settings.
#   finalize: completion tokens, cost, actions, sources, confidence;
#             persist the turn (only when it belongs to a conversation).
#
# DESIGN DECISION: Linear graph, no conditional edges. Every failure is an
# exception that aborts the graph; there is no partial reply.
#
# DESIGN DECISION: Graph compiled per executor, nodes are bound methods.
# Collaborators (vector store, gateway, stores) are constructor arguments,
# so tests build an executor from fakes and nothing is read from globals
# at turn time.
#
# DESIGN DECISION: Knowledge retrieval degrades. An embedding failure while
# searching logs a warning and the turn continues without knowledge; a
# model failure, by contrast, fails the turn.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any

from langgraph.graph import END, START, StateGraph
from typing_extensions import TypedDict

from backoffice_agent.config import settings
from backoffice_agent.db.repository import (
    ConversationRepository,
    ConversationStore,
    TurnRecord,
)
from backoffice_agent.errors import (
    AgentNotActive,
    EmbeddingFailure,
    TokenBudgetExceeded,
)
from backoffice_agent.models.agent import AgentProfile
from backoffice_agent.models.requests import TurnInput
from backoffice_agent.models.responses import AgentReply, ReplyMetadata, Usage
from backoffice_agent.services.context import ContextAggregator
from backoffice_agent.services.embedder import embed_query
from backoffice_agent.services.llm import (
    CompletionRequest,
    CompletionResponse,
    LLMGateway,
)
from backoffice_agent.services.postprocess import attribute_sources, extract_actions
from backoffice_agent.services.pricing import CostCalculator
from backoffice_agent.services.prompt import (
    HistoryTurn,
    assemble_prompt,
    build_messages,
    resolve_variables,
    system_prompt_text,
)
from backoffice_agent.services.tokens import EncoderCache, TokenCounter
from backoffice_agent.services.vectorstore import (
    VectorSearchResult,
    VectorStore,
    get_vector_store,
)

logger = logging.getLogger(__name__)

# finish_reason → (confidence, level)
CONFIDENCE_BY_FINISH_REASON: dict[str, tuple[float, str]] = {
    "stop": (0.9, "high"),
    "length": (0.7, "medium"),
}
DEFAULT_CONFIDENCE: tuple[float, str] = (0.5, "low")


def confidence_for(finish_reason: str | None) -> tuple[float, str]:
    return CONFIDENCE_BY_FINISH_REASON.get(finish_reason or "", DEFAULT_CONFIDENCE)


# ---------------------------------------------------------------------------
# Turn State Schema
# ---------------------------------------------------------------------------


class TurnState(TypedDict, total=False):
    """
    State flowing through the turn graph.

    total=False: each node returns only the keys it sets.
    """

    # --- Input ---
    agent: AgentProfile
    turn: TurnInput
    started_at: float

    # --- gather ---
    context: dict[str, Any]
    knowledge: list[VectorSearchResult]
    history: list[HistoryTurn]

    # --- assemble ---
    prompt: str
    messages: list[dict[str, str]]
    prompt_tokens: int

    # --- invoke ---
    completion: CompletionResponse

    # --- finalize ---
    reply: AgentReply


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------


class AgentExecutor:
    """
    Executes turns for agents.

    Every collaborator is optional; omitted ones are built from settings.
    `embed` is the synchronous single-text embedding function, run in a
    worker thread.
    """

    def __init__(
        self,
        *,
        context_aggregator: ContextAggregator | None = None,
        vector_store: VectorStore | None = None,
        gateway: LLMGateway | None = None,
        token_counter: TokenCounter | None = None,
        cost_calculator: CostCalculator | None = None,
        conversation_store: ConversationStore | None = None,
        embed: Callable[[str], list[float]] = embed_query,
    ) -> None:
        self._context = context_aggregator or ContextAggregator()
        self._vector_store = vector_store or get_vector_store()
        self._gateway = gateway or LLMGateway()
        self._tokens = token_counter or TokenCounter(EncoderCache())
        self._costs = cost_calculator or CostCalculator()
        self._conversations = conversation_store or ConversationRepository()
        self._embed = embed

        builder = StateGraph(TurnState)
        builder.add_node("gather", self._gather_node)
        builder.add_node("assemble", self._assemble_node)
        builder.add_node("invoke", self._invoke_node)
        builder.add_node("finalize", self._finalize_node)

        builder.add_edge(START, "gather")
        builder.add_edge("gather", "assemble")
        builder.add_edge("assemble", "invoke")
        builder.add_edge("invoke", "finalize")
        builder.add_edge("finalize", END)
        self._graph = builder.compile()

    async def execute(self, agent: AgentProfile, turn: TurnInput) -> AgentReply:
        """
        Run one turn and return the structured reply.

        Raises:
            AgentNotActive: The agent is not active.
            ConversationNotFound: turn.conversation_id is unknown.
            TokenBudgetExceeded: The assembled prompt is over budget.
            CompletionFailure: The model call failed or timed out.
        """
        if not agent.is_active:
            raise AgentNotActive(agent.id, agent.status)

        logger.info(
            "Executing turn: agent=%s model=%s conversation=%s",
            agent.id, agent.model_name, turn.conversation_id,
        )
        final_state = await self._graph.ainvoke({
            "agent": agent,
            "turn": turn,
            "started_at": time.monotonic(),
        })
        return final_state["reply"]

    # -----------------------------------------------------------------------
    # Nodes
    # -----------------------------------------------------------------------

    async def _gather_node(self, state: TurnState) -> dict:
        agent, turn = state["agent"], state["turn"]

        context, knowledge, history = await asyncio.gather(
            self._context.build(agent, turn.user_id, turn.context),
            self._retrieve_knowledge(agent, turn),
            self._load_history(agent, turn),
        )

        logger.info(
            "Gathered for agent %s: %d context keys, %d chunks, %d history turns",
            agent.id, len(context), len(knowledge), len(history),
        )
        return {"context": context, "knowledge": knowledge, "history": history}

    async def _assemble_node(self, state: TurnState) -> dict:
        agent, turn = state["agent"], state["turn"]

        variables = resolve_variables(agent, agent.system_prompt, turn)
        prompt = assemble_prompt(
            system_prompt_text(agent.system_prompt),
            variables=variables,
            knowledge=[chunk.content for chunk in state.get("knowledge", [])],
            context=state.get("context"),
            history=state.get("history", []),
        )
        messages = build_messages(prompt, turn.message)

        prompt_tokens = self._tokens.count_message_list(messages, agent.model_name)
        if prompt_tokens > agent.max_input_tokens:
            logger.warning(
                "Token budget exceeded for agent %s: %d > %d",
                agent.id, prompt_tokens, agent.max_input_tokens,
            )
            raise TokenBudgetExceeded(agent.id, prompt_tokens, agent.max_input_tokens)

        return {"prompt": prompt, "messages": messages, "prompt_tokens": prompt_tokens}

    async def _invoke_node(self, state: TurnState) -> dict:
        agent, turn = state["agent"], state["turn"]
        completion = await self._gateway.complete(CompletionRequest(
            model=agent.model_name,
            messages=state["messages"],
            temperature=agent.temperature,
            max_tokens=agent.max_tokens,
            stream=turn.stream,
            stop_sequences=list(agent.stop_sequences),
        ))
        return {"completion": completion}

    async def _finalize_node(self, state: TurnState) -> dict:
        agent, turn = state["agent"], state["turn"]
        completion = state["completion"]
        knowledge = state.get("knowledge", [])

        prompt_tokens = state["prompt_tokens"]
        completion_tokens = self._tokens.count_tokens(completion.content, agent.model_name)
        cost = round(self._costs.cost(agent.model_name, prompt_tokens, completion_tokens), 6)

        actions = extract_actions(completion.content)
        sources = attribute_sources(completion.content, knowledge)
        confidence, confidence_level = confidence_for(completion.finish_reason)
        total_time_ms = int((time.monotonic() - state["started_at"]) * 1000)

        reply = AgentReply(
            agent_id=agent.id,
            message=completion.content,
            sources=sources,
            actions=actions,
            usage=Usage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=prompt_tokens + completion_tokens,
                cost=cost,
            ),
            metadata=ReplyMetadata(
                model=agent.model_name,
                temperature=agent.temperature,
                finish_reason=completion.finish_reason,
                confidence=confidence,
                confidence_level=confidence_level,
                knowledge_used=len(knowledge),
                execution_time_ms=completion.processing_time_ms,
                total_time_ms=total_time_ms,
            ),
            conversation_id=turn.conversation_id,
        )

        if turn.conversation_id:
            await self._conversations.append_turn(TurnRecord(
                conversation_id=turn.conversation_id,
                user_message=turn.message,
                assistant_message=completion.content,
                context=state.get("context", {}),
                sources=[source.model_dump() for source in sources],
                actions=[action.model_dump() for action in actions],
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                cost_usd=cost,
                execution_time_ms=total_time_ms,
                model=agent.model_name,
                metadata=reply.metadata.model_dump(),
            ))

        logger.info(
            "Turn complete: agent=%s tokens=%d/%d cost=$%.6f confidence=%s "
            "sources=%d actions=%d time=%dms",
            agent.id, prompt_tokens, completion_tokens, cost, confidence_level,
            len(sources), len(actions), total_time_ms,
        )
        return {"reply": reply}

    # -----------------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------------

    async def _retrieve_knowledge(
        self,
        agent: AgentProfile,
        turn: TurnInput,
    ) -> list[VectorSearchResult]:
        search = agent.knowledge_search
        search_filter: dict[str, Any] = dict(search.filter or {})
        if turn.knowledge_base_ids:
            search_filter["knowledge_base_id"] = list(turn.knowledge_base_ids)

        try:
            query_vector = await asyncio.to_thread(self._embed, turn.message)
        except EmbeddingFailure as exc:
            logger.warning("Knowledge search skipped for agent %s: %s", agent.id, exc)
            return []

        return await self._vector_store.search(
            agent.id,
            query_vector,
            top_k=search.top_k,
            score_threshold=search.similarity_threshold,
            filter=search_filter or None,
        )

    async def _load_history(self, agent: AgentProfile, turn: TurnInput) -> list[HistoryTurn]:
        if not turn.conversation_id:
            return []
        return await self._conversations.load_history(
            turn.conversation_id, settings.history_turn_limit, agent_id=agent.id,
        )
