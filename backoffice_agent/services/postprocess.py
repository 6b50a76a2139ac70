# =============================================================================
# Response Post-Processor — Actions & Source Attribution
# =============================================================================
#
# Two heuristics over the raw model output. Both are approximate: callers
# always receive the raw text alongside their results.
#
# ACTIONS: the model is instructed to emit markers such as
#     [ACTION: notify|to=alice|urgent=true]
# Each marker becomes Action(type="notify", parameters={"to": "alice",
# "urgent": "true"}). Segments without "=" are dropped.
#
# SOURCES: a retrieved chunk counts as used when enough of its significant
# words (lowercase, longer than 4 characters, first 20) also occur among
# the response's first 20 significant words:
#     relevance = matched chunk keywords / chunk keyword count
# Chunks with relevance > 0.3 are attributed, at most once per file.
# =============================================================================

from __future__ import annotations

import re
from collections.abc import Sequence

from backoffice_agent.models.responses import Action, Source
from backoffice_agent.services.vectorstore import VectorSearchResult

ACTION_PATTERN = re.compile(r"\[ACTION:\s*(.*?)\]")
RELEVANCE_THRESHOLD = 0.3
MIN_KEYWORD_LENGTH = 5
MAX_KEYWORDS = 20


def extract_actions(text: str) -> list[Action]:
    actions: list[Action] = []
    for match in ACTION_PATTERN.finditer(text):
        action_type, *segments = match.group(1).split("|")
        action_type = action_type.strip()
        if not action_type:
            continue

        parameters: dict[str, str] = {}
        for segment in segments:
            if "=" not in segment:
                continue
            key, value = segment.split("=", 1)
            key = key.strip()
            if key:
                parameters[key] = value.strip()

        actions.append(Action(type=action_type, parameters=parameters))
    return actions


def significant_words(text: str) -> list[str]:
    """Lowercased words longer than 4 characters, first 20, in order."""
    words = [
        word for word in re.split(r"\W+", text.lower())
        if len(word) >= MIN_KEYWORD_LENGTH
    ]
    return words[:MAX_KEYWORDS]


def attribute_sources(
    response: str,
    knowledge: Sequence[VectorSearchResult],
) -> list[Source]:
    response_keywords = set(significant_words(response))
    sources: list[Source] = []
    seen_files: set[str] = set()

    for chunk in knowledge:
        chunk_keywords = significant_words(chunk.content)
        if not chunk_keywords:
            continue

        matched = sum(1 for word in chunk_keywords if word in response_keywords)
        relevance = matched / len(chunk_keywords)
        if relevance <= RELEVANCE_THRESHOLD:
            continue

        file_name = str(chunk.metadata.get("file_name") or "unknown")
        if file_name in seen_files:
            continue
        seen_files.add(file_name)

        sources.append(Source(
            name=file_name,
            relevance=round(relevance, 4),
            metadata=dict(chunk.metadata),
        ))
    return sources
