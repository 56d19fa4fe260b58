"""
Token counting helpers.

Used to keep embedding inputs inside the embedding model's budget. Uses
tiktoken's encoding for the model; when the encoding cannot be loaded (it
is downloaded on first use) a ~4 chars/token heuristic is used instead.
"""

from __future__ import annotations

import logging
from functools import lru_cache

import tiktoken

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "text-embedding-3-small"


@lru_cache(maxsize=8)
def _encoding_for(model: str) -> tiktoken.Encoding | None:
    try:
        try:
            return tiktoken.encoding_for_model(model)
        except KeyError:
            return tiktoken.get_encoding("cl100k_base")
    except Exception as e:
        logger.warning(f"tiktoken encoding unavailable, estimating tokens from length: {e}")
        return None


def count_text_tokens(text: str, model: str = DEFAULT_MODEL) -> int:
    """
    Count tokens of plain text.

    Falls back to a char-based heuristic when the tokenizer is unavailable.
    """
    if not text:
        return 0
    encoding = _encoding_for(model)
    if encoding is None:
        return max(1, (len(text) + 3) // 4)
    return len(encoding.encode(text))


def truncate_to_tokens(text: str, max_tokens: int, model: str = DEFAULT_MODEL) -> str:
    """Cut text to at most max_tokens tokens."""
    encoding = _encoding_for(model)
    if encoding is None:
        return text[: max_tokens * 4]
    tokens = encoding.encode(text)
    if len(tokens) <= max_tokens:
        return text
    return encoding.decode(tokens[:max_tokens])
