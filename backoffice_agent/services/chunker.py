# =============================================================================
# Sentence-Bounded Text Chunker
# =============================================================================
#
# Splits extracted knowledge text into overlapping, size-bounded passages
# ready for embedding.
#
# ALGORITHM:
# 1. Split the text into sentences on terminal punctuation (. ! ?). A
#    trailing run without terminal punctuation is kept as a final sentence,
#    so concatenating the sentences always gives back the input.
# 2. Append sentences to the current chunk until the next sentence would
#    push it past `chunk_size` characters.
# 3. Emit the chunk and seed the next one with the last `chunk_overlap // 5`
#    words of the emitted chunk, then the sentence that triggered the split.
#
# Sizes are in characters, not tokens. A single sentence longer than
# `chunk_size` becomes one oversized chunk.
# =============================================================================

from __future__ import annotations

import logging
import re

from backoffice_agent.config import settings
from backoffice_agent.errors import ValidationFailure

logger = logging.getLogger(__name__)

# Average characters per word, used to turn the character overlap into a
# word count.
_CHARS_PER_WORD = 5

_SENTENCE_PATTERN = re.compile(r"[^.!?]*[.!?]+|[^.!?]+\Z")


def split_sentences(text: str) -> list[str]:
    """
    Split text into sentences, keeping surrounding whitespace.

    `"".join(split_sentences(text)) == text` holds for every input.
    """
    return _SENTENCE_PATTERN.findall(text)


def chunk_text(
    text: str,
    chunk_size: int | None = None,
    chunk_overlap: int | None = None,
) -> list[str]:
    """
    Split text into overlapping, sentence-bounded chunks.

    Args:
        text: Raw extracted text.
        chunk_size: Target chunk size in characters (default from settings).
        chunk_overlap: Overlap carried into the next chunk, in characters
            (default from settings).

    Returns:
        Whitespace-stripped chunks in document order. Empty input gives [].

    Raises:
        ValidationFailure: If chunk_size is not positive or the overlap is
            not smaller than the chunk size.
    """
    _chunk_size = chunk_size if chunk_size is not None else settings.chunk_size
    _chunk_overlap = (
        chunk_overlap if chunk_overlap is not None else settings.chunk_overlap
    )

    if _chunk_size <= 0:
        raise ValidationFailure(f"chunk_size must be positive, got {_chunk_size}")
    if not 0 <= _chunk_overlap < _chunk_size:
        raise ValidationFailure(
            f"chunk_overlap must be in [0, {_chunk_size}), got {_chunk_overlap}"
        )

    if not text or not text.strip():
        return []

    overlap_words = _chunk_overlap // _CHARS_PER_WORD
    chunks: list[str] = []
    current = ""

    for sentence in split_sentences(text):
        if current and len(current) + len(sentence) > _chunk_size:
            _emit(chunks, current)
            current = _overlap_seed(current, overlap_words) + sentence
        else:
            current += sentence

    _emit(chunks, current)

    logger.debug(
        "Chunked %d characters into %d chunks (size=%d, overlap=%d)",
        len(text), len(chunks), _chunk_size, _chunk_overlap,
    )
    return chunks


def _emit(chunks: list[str], chunk: str) -> None:
    stripped = chunk.strip()
    if stripped:
        chunks.append(stripped)


def _overlap_seed(chunk: str, overlap_words: int) -> str:
    """Trailing words of the emitted chunk plus a joining space."""
    if overlap_words <= 0:
        return ""
    # Whitespace words: the seam between a seed and its sentence holds two
    # spaces, which must not count as a word of the next seed
    words = chunk.split()
    return " ".join(words[-overlap_words:]) + " "
