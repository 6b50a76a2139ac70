# =============================================================================
# Prompt Assembler — Templates, Sections, Variables
# =============================================================================
#
# Builds the system instruction for one turn:
#
#   <system prompt with {{variables}} substituted>
#
#   ## Knowledge Base          (retrieved chunk texts)
#   ## Context                 (aggregated context, pretty-printed JSON)
#   ## Conversation History    (User:/Assistant: pairs)
#
# followed by the live user message as its own chat message. Section order
# is fixed so retrieved facts sit closest to the instructions. Empty
# sections are omitted.
#
# KNOWN SHARP EDGE: a `{{name}}` with no value in the variable map is left
# in the prompt verbatim and reaches the model as-is. render() logs a
# warning naming every such variable.
# =============================================================================

from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import date
from typing import Any

from backoffice_agent.config import settings
from backoffice_agent.models.agent import AgentProfile, PromptVersion
from backoffice_agent.models.requests import TurnInput

logger = logging.getLogger(__name__)

_VARIABLE_PATTERN = re.compile(r"\{\{(\w+)\}\}")

KNOWLEDGE_SECTION = "Knowledge Base"
CONTEXT_SECTION = "Context"
HISTORY_SECTION = "Conversation History"


@dataclass
class HistoryTurn:
    user_message: str
    assistant_message: str


class PromptTemplate:
    """A base prompt plus titled sections, rendered with variables."""

    def __init__(self, base: str) -> None:
        self.base = base
        self.sections: list[tuple[str, str]] = []

    def add_section(self, title: str, content: str) -> PromptTemplate:
        self.sections.append((title, content))
        return self

    def render(self, variables: Mapping[str, Any] | None = None) -> str:
        variables = variables or {}
        unresolved = [
            name for name in dict.fromkeys(self.placeholders())
            if variables.get(name) is None
        ]
        if unresolved:
            logger.warning(
                "Prompt variables without a value, left verbatim: %s",
                ", ".join(unresolved),
            )

        prompt = substitute_variables(self.base, variables)
        for title, content in self.sections:
            prompt += f"\n\n## {title}\n\n{content}"
        return prompt

    def placeholders(self) -> list[str]:
        """Variable names referenced by the base text, in order."""
        return _VARIABLE_PATTERN.findall(self.base)


def substitute_variables(text: str, variables: Mapping[str, Any]) -> str:
    """Replace `{{name}}` with str(value); unknown names stay verbatim."""

    def _replace(match: re.Match) -> str:
        name = match.group(1)
        if name in variables and variables[name] is not None:
            return str(variables[name])
        return match.group(0)

    return _VARIABLE_PATTERN.sub(_replace, text)


def assemble_prompt(
    system_prompt: str,
    variables: Mapping[str, Any] | None = None,
    knowledge: Sequence[str] = (),
    context: Mapping[str, Any] | None = None,
    history: Sequence[HistoryTurn] = (),
) -> str:
    template = PromptTemplate(system_prompt)

    if knowledge:
        template.add_section(KNOWLEDGE_SECTION, "\n\n".join(knowledge))

    if context:
        template.add_section(
            CONTEXT_SECTION, json.dumps(context, indent=2, default=str),
        )

    if history:
        template.add_section(
            HISTORY_SECTION,
            "\n\n".join(
                f"User: {turn.user_message}\nAssistant: {turn.assistant_message}"
                for turn in history
            ),
        )

    return template.render(variables)


def build_messages(prompt: str, user_message: str) -> list[dict[str, str]]:
    """Chat messages for the gateway; the live user message comes last."""
    return [
        {"role": "system", "content": prompt},
        {"role": "user", "content": user_message},
    ]


def resolve_variables(
    agent: AgentProfile,
    prompt: PromptVersion | None,
    turn: TurnInput,
) -> dict[str, Any]:
    """
    Variable map for one turn.

    Precedence (lowest first): built-ins (currentDate, userId, agentName),
    declared prompt variables from the turn context or their defaults, then
    the turn's explicit `variables`.
    """
    variables: dict[str, Any] = {
        "currentDate": date.today().isoformat(),
        "userId": turn.user_id or "",
        "agentName": agent.name,
    }

    for variable in prompt.variables if prompt else []:
        value = turn.context.get(variable.name, variable.default)
        if value is not None:
            variables[variable.name] = value

    variables.update(turn.variables)
    return variables


def system_prompt_text(prompt: PromptVersion | None) -> str:
    return prompt.content if prompt else settings.default_system_prompt
