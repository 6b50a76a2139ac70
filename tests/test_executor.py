# =============================================================================
# Unit Tests — Agent Executor (turn graph)
# =============================================================================
#
# Every collaborator of the executor is a small fake, so a turn runs end to
# end without API keys, databases or collaborator modules.
# =============================================================================

import asyncio

import pytest

from backoffice_agent.agents.executor import AgentExecutor, confidence_for
from backoffice_agent.errors import (
    AgentNotActive,
    ConversationNotFound,
    EmbeddingFailure,
    TokenBudgetExceeded,
)
from backoffice_agent.models.agent import (
    AgentProfile,
    KnowledgeSearchSettings,
    PromptVariable,
    PromptVersion,
)
from backoffice_agent.models.requests import TurnInput
from backoffice_agent.services.llm import CompletionResponse, TokenUsage
from backoffice_agent.services.prompt import HistoryTurn
from backoffice_agent.services.vectorstore import VectorSearchResult


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class _FakeContext:
    def __init__(self, context=None):
        self.context = context or {}

    async def build(self, agent, user_id, turn_context=None):
        return {**self.context, **(turn_context or {})}


class _FakeVectorStore:
    def __init__(self, results=None):
        self.results = results or []
        self.searches: list[dict] = []

    async def search(self, owner_id, query_vector, top_k=5, score_threshold=0.0, filter=None):
        self.searches.append({
            "owner_id": owner_id, "top_k": top_k,
            "score_threshold": score_threshold, "filter": filter,
        })
        return list(self.results)


class _FakeGateway:
    def __init__(self, content="Answer.", finish_reason="stop"):
        self.content = content
        self.finish_reason = finish_reason
        self.requests = []

    async def complete(self, request):
        self.requests.append(request)
        return CompletionResponse(
            content=self.content,
            usage=TokenUsage(0, 0),
            finish_reason=self.finish_reason,
            processing_time_ms=42,
            model=request.model,
        )


class _WordCounter:
    """One token per word; a message list adds 4 per message."""

    def count_tokens(self, text, model):
        return len(text.split())

    def count_message_list(self, messages, model):
        return sum(4 + len(m["content"].split()) for m in messages)


class _FakeConversations:
    def __init__(self, history=None, known=("conv-1",)):
        self.history = history or []
        self.known = set(known)
        self.appended = []
        self.loads = []

    async def load_history(self, conversation_id, limit, agent_id=None):
        self.loads.append((conversation_id, limit, agent_id))
        if conversation_id not in self.known:
            raise ConversationNotFound(conversation_id)
        return list(self.history)

    async def append_turn(self, record):
        self.appended.append(record)


def _agent(**overrides) -> AgentProfile:
    data = {
        "id": "agent-1",
        "name": "Ledger Bot",
        "model_name": "gpt-4o-mini",
        "temperature": 0.3,
        "max_tokens": 256,
        "max_input_tokens": 4000,
        "stop_sequences": ["END"],
        "system_prompt": PromptVersion(
            content="You help {{company}}.",
            variables=[PromptVariable(name="company", default="Acme")],
        ),
    }
    data.update(overrides)
    return AgentProfile(**data)


def _executor(gateway=None, store=None, conversations=None, context=None, embed=None):
    return AgentExecutor(
        context_aggregator=context or _FakeContext(),
        vector_store=store or _FakeVectorStore(),
        gateway=gateway or _FakeGateway(),
        token_counter=_WordCounter(),
        conversation_store=conversations or _FakeConversations(),
        embed=embed or (lambda text: [0.1, 0.2, 0.3]),
    )


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


class TestTokenBudget:
    def test_over_budget_never_calls_gateway(self):
        gateway = _FakeGateway()
        conversations = _FakeConversations()
        executor = _executor(gateway=gateway, conversations=conversations)

        with pytest.raises(TokenBudgetExceeded) as exc_info:
            _run(executor.execute(
                _agent(max_input_tokens=5),
                TurnInput(message="List every overdue invoice", conversation_id="conv-1"),
            ))

        assert len(gateway.requests) == 0
        assert conversations.appended == []
        assert exc_info.value.limit == 5
        assert exc_info.value.prompt_tokens > 5

    def test_at_budget_is_allowed(self):
        agent = _agent(system_prompt=PromptVersion(content="one two"), stop_sequences=[])
        # (4 + 2) system + (4 + 1) user
        reply = _run(_executor().execute(
            agent.model_copy(update={"max_input_tokens": 11}),
            TurnInput(message="hi"),
        ))
        assert reply.usage.prompt_tokens == 11


class TestTurn:
    def test_reply_shape_for_one_off_turn(self):
        gateway = _FakeGateway(content="Two invoices. [ACTION: notify|to=alice]")
        conversations = _FakeConversations()
        executor = _executor(gateway=gateway, conversations=conversations)

        reply = _run(executor.execute(_agent(), TurnInput(message="Overdue invoices?")))

        assert reply.agent_id == "agent-1"
        assert reply.message == "Two invoices. [ACTION: notify|to=alice]"
        assert reply.actions[0].type == "notify"
        assert reply.actions[0].parameters == {"to": "alice"}
        assert reply.usage.completion_tokens == 4
        assert reply.usage.total_tokens == reply.usage.prompt_tokens + 4
        assert reply.usage.cost > 0
        assert reply.metadata.confidence == 0.9
        assert reply.metadata.confidence_level == "high"
        assert reply.metadata.execution_time_ms == 42
        assert reply.metadata.attribution == "approximate"
        assert reply.conversation_id is None
        # One-off turns are neither loaded nor persisted
        assert conversations.loads == []
        assert conversations.appended == []

    def test_request_carries_agent_settings(self):
        gateway = _FakeGateway()
        _run(_executor(gateway=gateway).execute(
            _agent(), TurnInput(message="hi", stream=True, variables={"company": "Globex"}),
        ))

        request = gateway.requests[0]
        assert request.model == "gpt-4o-mini"
        assert request.temperature == 0.3
        assert request.max_tokens == 256
        assert request.stop_sequences == ["END"]
        assert request.stream is True
        assert request.messages[0]["content"].startswith("You help Globex.")
        assert request.messages[-1] == {"role": "user", "content": "hi"}

    def test_conversation_turn_is_persisted_with_history(self):
        gateway = _FakeGateway(content="Still two.")
        conversations = _FakeConversations(history=[HistoryTurn("Earlier?", "Two.")])
        executor = _executor(gateway=gateway, conversations=conversations)

        reply = _run(executor.execute(
            _agent(), TurnInput(message="And now?", conversation_id="conv-1"),
        ))

        assert conversations.loads == [("conv-1", 10, "agent-1")]
        assert "User: Earlier?\nAssistant: Two." in gateway.requests[0].messages[0]["content"]

        assert len(conversations.appended) == 1
        record = conversations.appended[0]
        assert record.conversation_id == "conv-1"
        assert record.user_message == "And now?"
        assert record.assistant_message == "Still two."
        assert record.prompt_tokens == reply.usage.prompt_tokens
        assert record.cost_usd == reply.usage.cost
        assert record.metadata["confidence_level"] == "high"
        assert reply.conversation_id == "conv-1"

    def test_unknown_conversation_fails_before_model_call(self):
        gateway = _FakeGateway()
        executor = _executor(gateway=gateway)

        with pytest.raises(ConversationNotFound):
            _run(executor.execute(_agent(), TurnInput(message="hi", conversation_id="nope")))

        assert gateway.requests == []

    def test_inactive_agent_is_rejected(self):
        gateway = _FakeGateway()
        with pytest.raises(AgentNotActive):
            _run(_executor(gateway=gateway).execute(
                _agent(status="inactive"), TurnInput(message="hi"),
            ))
        assert gateway.requests == []

    def test_context_is_rendered(self):
        gateway = _FakeGateway()
        executor = _executor(gateway=gateway, context=_FakeContext({"finance": {"overdue": 3}}))

        _run(executor.execute(_agent(), TurnInput(message="hi")))

        assert '"overdue": 3' in gateway.requests[0].messages[0]["content"]


class TestKnowledge:
    def _results(self):
        return [VectorSearchResult(
            id="p1",
            content="Invoices become overdue after thirty days",
            similarity_score=0.91,
            metadata={"file_name": "terms.pdf", "knowledge_base_id": "kb-1"},
        )]

    def test_knowledge_in_prompt_and_sources(self):
        store = _FakeVectorStore(self._results())
        gateway = _FakeGateway(content="Invoices become overdue after thirty days.")
        agent = _agent(knowledge_search=KnowledgeSearchSettings(
            top_k=3, similarity_threshold=0.5, filter={"department": "finance"},
        ))

        reply = _run(_executor(gateway=gateway, store=store).execute(
            agent, TurnInput(message="When is an invoice overdue?", knowledge_base_ids=["kb-1"]),
        ))

        assert store.searches == [{
            "owner_id": "agent-1",
            "top_k": 3,
            "score_threshold": 0.5,
            "filter": {"department": "finance", "knowledge_base_id": ["kb-1"]},
        }]
        assert "## Knowledge Base" in gateway.requests[0].messages[0]["content"]
        assert [s.name for s in reply.sources] == ["terms.pdf"]
        assert reply.metadata.knowledge_used == 1

    def test_no_filter_when_nothing_configured(self):
        store = _FakeVectorStore()
        _run(_executor(store=store).execute(_agent(), TurnInput(message="hi")))
        assert store.searches[0]["filter"] is None

    def test_embedding_failure_degrades_to_no_knowledge(self):
        def failing_embed(text):
            raise EmbeddingFailure("openai", "quota exceeded", 1)

        store = _FakeVectorStore(self._results())
        gateway = _FakeGateway()

        reply = _run(_executor(gateway=gateway, store=store, embed=failing_embed).execute(
            _agent(), TurnInput(message="hi"),
        ))

        assert store.searches == []
        assert reply.metadata.knowledge_used == 0
        assert "Knowledge Base" not in gateway.requests[0].messages[0]["content"]


class TestConfidence:
    @pytest.mark.parametrize(
        ("finish_reason", "expected"),
        [
            ("stop", (0.9, "high")),
            ("length", (0.7, "medium")),
            ("content_filter", (0.5, "low")),
            (None, (0.5, "low")),
        ],
    )
    def test_levels(self, finish_reason, expected):
        assert confidence_for(finish_reason) == expected

    def test_length_truncated_reply_is_medium(self):
        gateway = _FakeGateway(finish_reason="length")
        reply = _run(_executor(gateway=gateway).execute(_agent(), TurnInput(message="hi")))
        assert reply.metadata.confidence_level == "medium"
        assert reply.metadata.finish_reason == "length"
