# =============================================================================
# Embedding Client — Batch Vector Generation (Provider-Agnostic)
# =============================================================================
#
# Generates vector embeddings through any OpenAI-compatible embedding API
# (OpenAI, DashScope, self-hosted gateways) selected by
# `settings.embedding_base_url`.
#
# Used by both paths:
#   - ingestion (Celery, sync): embed_batch() over all chunks of one file
#   - chat turns (async):       embed_query() via asyncio.to_thread()
#
# FAILURE SEMANTICS:
# A provider error in any sub-batch fails the whole call with
# EmbeddingFailure (provider, upstream message, attempted input count).
# Nothing partial is returned. No retry here: the Celery task and the
# agent executor own failure policy.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Sequence

from openai import OpenAI, OpenAIError

from backoffice_agent.config import settings
from backoffice_agent.errors import EmbeddingFailure

logger = logging.getLogger(__name__)

PROVIDER_NAME = "openai"


# ---------------------------------------------------------------------------
# Client Initialization (Lazy Singleton)
# ---------------------------------------------------------------------------

_client: OpenAI | None = None


def _get_client() -> OpenAI:
    """Lazily initialize and cache the embedding client."""
    global _client
    if _client is None:
        resolved_key = settings.openai_api_key or settings.llm_api_key
        if not resolved_key:
            raise EmbeddingFailure(
                PROVIDER_NAME,
                "No API key configured for embeddings. "
                "Set OPENAI_API_KEY or LLM_API_KEY in .env",
                input_count=0,
            )

        client_kwargs: dict = {"api_key": resolved_key}
        if settings.embedding_base_url:
            client_kwargs["base_url"] = settings.embedding_base_url

        _client = OpenAI(**client_kwargs)

        logger.info(
            "Initialized embedding client (model=%s, base_url=%s)",
            settings.embedding_model,
            settings.embedding_base_url or "https://api.openai.com/v1",
        )
    return _client


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def embed_batch(
    texts: Sequence[str],
    batch_size: int | None = None,
) -> list[list[float]]:
    """
    Generate embeddings for a batch of texts.

    Args:
        texts: Texts to embed.
        batch_size: Inputs per provider call (default
            settings.embedding_batch_size).

    Returns:
        One embedding vector per input, in input order.

    Raises:
        EmbeddingFailure: If the client cannot be built or any provider call
            fails. No partial result is returned.
    """
    if not texts:
        return []

    _batch_size = batch_size or settings.embedding_batch_size
    all_embeddings: list[list[float]] = [[] for _ in texts]

    try:
        client = _get_client()
        for i in range(0, len(texts), _batch_size):
            batch = list(texts[i : i + _batch_size])
            logger.debug(
                "Embedding batch %d–%d of %d texts (model=%s)",
                i + 1,
                min(i + _batch_size, len(texts)),
                len(texts),
                settings.embedding_model,
            )

            create_kwargs: dict = {
                "model": settings.embedding_model,
                "input": batch,
            }
            if settings.embedding_dimensions:
                create_kwargs["dimensions"] = settings.embedding_dimensions

            response = client.embeddings.create(**create_kwargs)

            # Order by the provider's index so vectors line up with inputs.
            for item in sorted(response.data, key=lambda x: x.index):
                all_embeddings[i + item.index] = item.embedding

    except EmbeddingFailure as exc:
        raise EmbeddingFailure(
            exc.provider, exc.upstream or exc.message, len(texts),
        ) from exc
    except OpenAIError as exc:
        logger.error(
            "Embedding %d texts failed (model=%s): %s",
            len(texts), settings.embedding_model, exc,
        )
        raise EmbeddingFailure(PROVIDER_NAME, str(exc), len(texts)) from exc

    missing = sum(1 for vector in all_embeddings if not vector)
    if missing:
        raise EmbeddingFailure(
            PROVIDER_NAME,
            f"Provider returned no vector for {missing} input(s)",
            len(texts),
        )

    logger.info(
        "Generated %d embeddings (model=%s, dimensions=%d)",
        len(texts),
        settings.embedding_model,
        settings.embedding_dimensions,
    )
    return all_embeddings


def embed_query(text: str) -> list[float]:
    """Embed a single query string (wraps embed_batch)."""
    return embed_batch([text], batch_size=1)[0]
