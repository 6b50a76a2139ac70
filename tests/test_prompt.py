# =============================================================================
# Unit Tests — Prompt Assembly
# =============================================================================

import json
import logging
from datetime import date

from backoffice_agent.models.agent import AgentProfile, PromptVariable, PromptVersion
from backoffice_agent.models.requests import TurnInput
from backoffice_agent.services.prompt import (
    HistoryTurn,
    PromptTemplate,
    assemble_prompt,
    build_messages,
    resolve_variables,
    substitute_variables,
    system_prompt_text,
)


def _agent(**overrides) -> AgentProfile:
    data = {"id": "agent-1", "name": "Ledger Bot", "model_name": "gpt-4o-mini"}
    data.update(overrides)
    return AgentProfile(**data)


class TestSubstituteVariables:
    def test_known_variables_are_replaced(self):
        assert substitute_variables("Hi {{name}}, {{n}}!", {"name": "Ann", "n": 3}) == "Hi Ann, 3!"

    def test_missing_variables_stay_verbatim(self):
        assert substitute_variables("Hi {{name}}", {}) == "Hi {{name}}"

    def test_none_values_stay_verbatim(self):
        assert substitute_variables("Hi {{name}}", {"name": None}) == "Hi {{name}}"

    def test_placeholders(self):
        template = PromptTemplate("{{a}} and {{b}} and {{a}}")
        assert template.placeholders() == ["a", "b", "a"]

    def test_unresolved_placeholders_are_logged_once(self, caplog):
        with caplog.at_level(logging.WARNING, logger="backoffice_agent.services.prompt"):
            prompt = assemble_prompt(
                "Hi {{name}}, see {{fact}} and {{name}}", variables={"fact": "42"},
            )

        assert prompt == "Hi {{name}}, see 42 and {{name}}"
        assert [r.getMessage() for r in caplog.records] == [
            "Prompt variables without a value, left verbatim: name",
        ]


class TestAssemblePrompt:
    def test_answer_using_scenario(self):
        prompt = assemble_prompt("Answer using: {{fact}}", variables={"fact": "42"})

        assert prompt.startswith("Answer using: 42")
        assert "Knowledge Base" not in prompt
        assert "## Context" not in prompt
        assert "Conversation History" not in prompt

    def test_sections_in_fixed_order(self):
        prompt = assemble_prompt(
            "Base",
            knowledge=["Chunk one.", "Chunk two."],
            context={"client": {"name": "Acme"}},
            history=[HistoryTurn("Hello", "Hi there")],
        )

        knowledge_at = prompt.index("## Knowledge Base")
        context_at = prompt.index("## Context")
        history_at = prompt.index("## Conversation History")
        assert knowledge_at < context_at < history_at

        assert "Chunk one.\n\nChunk two." in prompt
        assert json.dumps({"client": {"name": "Acme"}}, indent=2) in prompt
        assert "User: Hello\nAssistant: Hi there" in prompt

    def test_history_turns_separated_by_blank_line(self):
        prompt = assemble_prompt(
            "Base",
            history=[HistoryTurn("q1", "a1"), HistoryTurn("q2", "a2")],
        )
        assert prompt.endswith("User: q1\nAssistant: a1\n\nUser: q2\nAssistant: a2")

    def test_context_with_dates_is_serialised(self):
        prompt = assemble_prompt("Base", context={"due": date(2024, 5, 1)})
        assert '"due": "2024-05-01"' in prompt

    def test_variables_only_substituted_in_base(self):
        prompt = assemble_prompt(
            "{{x}}", variables={"x": "base"}, knowledge=["literal {{x}}"],
        )
        assert prompt.startswith("base")
        assert "literal {{x}}" in prompt


class TestBuildMessages:
    def test_system_then_user(self):
        assert build_messages("sys", "question") == [
            {"role": "system", "content": "sys"},
            {"role": "user", "content": "question"},
        ]


class TestResolveVariables:
    def test_builtins(self):
        variables = resolve_variables(
            _agent(), None, TurnInput(message="hi", user_id="user-42"),
        )
        assert variables["userId"] == "user-42"
        assert variables["agentName"] == "Ledger Bot"
        assert variables["currentDate"] == date.today().isoformat()

    def test_precedence_default_context_explicit(self):
        prompt = PromptVersion(
            content="{{company}} {{currency}} {{region}}",
            variables=[
                PromptVariable(name="company", default="DefaultCo"),
                PromptVariable(name="currency", default="EUR"),
                PromptVariable(name="region"),
            ],
        )
        turn = TurnInput(
            message="hi",
            context={"currency": "PLN"},
            variables={"company": "Acme"},
        )

        variables = resolve_variables(_agent(system_prompt=prompt), prompt, turn)

        assert variables["company"] == "Acme"
        assert variables["currency"] == "PLN"
        assert "region" not in variables

    def test_system_prompt_text_default(self):
        assert system_prompt_text(None) == "You are a helpful AI assistant."
        assert system_prompt_text(PromptVersion(content="Custom")) == "Custom"
