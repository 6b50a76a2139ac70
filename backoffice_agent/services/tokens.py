# =============================================================================
# Token Counting — tiktoken with a length-based fallback
# =============================================================================
#
# EncoderCache holds one tiktoken Encoding per model name, populated lazily.
# It is created by whoever owns the pipeline (the agent service, a worker,
# a test) and passed into TokenCounter. There is no module-level cache, and
# close() releases the encoders.
#
# TokenCounter never raises: if the tokenizer cannot be loaded (unknown
# encoding, BPE download failure) or fails on a given input, counts fall
# back to ceil(len(text) / 4).
#
# Message-list framing follows OpenAI's documented chat accounting:
#   per message: 4 framing tokens + tokens(role) + tokens(content)
#   per reply:   2 priming tokens
# =============================================================================

from __future__ import annotations

import logging
import math
import threading
from collections.abc import Iterable, Mapping

import tiktoken

from backoffice_agent.config import settings

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4
MESSAGE_FRAMING_TOKENS = 4
REPLY_PRIMING_TOKENS = 2


class EncoderCache:
    """Lazily populated, explicitly owned cache of tiktoken encoders."""

    def __init__(self, default_encoding: str | None = None) -> None:
        self._default_encoding = default_encoding or settings.default_encoding
        self._encoders: dict[str, tiktoken.Encoding] = {}
        self._lock = threading.Lock()
        self._closed = False

    def get(self, model: str) -> tiktoken.Encoding:
        """
        Encoder for `model`; models tiktoken does not know (e.g. Claude)
        use the default encoding.

        Raises:
            RuntimeError: If the cache was closed.
        """
        with self._lock:
            if self._closed:
                raise RuntimeError("EncoderCache is closed")
            encoder = self._encoders.get(model)
            if encoder is None:
                try:
                    encoder = tiktoken.encoding_for_model(model)
                except KeyError:
                    encoder = tiktoken.get_encoding(self._default_encoding)
                self._encoders[model] = encoder
                logger.debug("Loaded tokenizer %s for model %s", encoder.name, model)
            return encoder

    def close(self) -> None:
        with self._lock:
            self._encoders.clear()
            self._closed = True

    def __len__(self) -> int:
        return len(self._encoders)


class TokenCounter:
    """Counts tokens for text and chat message lists."""

    def __init__(self, cache: EncoderCache) -> None:
        self._cache = cache

    def count_tokens(self, text: str, model: str) -> int:
        try:
            return len(self._cache.get(model).encode(text, disallowed_special=()))
        except Exception as exc:
            logger.warning(
                "Tokenizer unavailable for %s, estimating from length: %s",
                model, exc,
            )
            return estimate_tokens(text)

    def count_message_list(
        self,
        messages: Iterable[Mapping[str, str]],
        model: str,
    ) -> int:
        messages = list(messages)
        try:
            encoder = self._cache.get(model)
            total = REPLY_PRIMING_TOKENS
            for message in messages:
                total += MESSAGE_FRAMING_TOKENS
                total += len(encoder.encode(message.get("role", ""), disallowed_special=()))
                total += len(encoder.encode(message.get("content", ""), disallowed_special=()))
            return total
        except Exception as exc:
            logger.warning(
                "Tokenizer unavailable for %s, estimating message list: %s",
                model, exc,
            )
            joined = "".join(
                message.get("role", "") + message.get("content", "")
                for message in messages
            )
            return (
                estimate_tokens(joined)
                + MESSAGE_FRAMING_TOKENS * len(messages)
                + REPLY_PRIMING_TOKENS
            )


def estimate_tokens(text: str) -> int:
    """Length-based estimate: ceil(len / 4)."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)
