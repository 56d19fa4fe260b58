"""
Delimiter-Grammar Extractor

Asks a language model for entity and relation lines for one chunk. The raw
text is what stage 1 caches; parsing happens later in stage 2.

Flow:
    1. System prompt (grammar, entity types, few-shot examples) + user prompt
    2. Up to max_gleaning continuation turns asking for missed records
    3. Completion markers are stripped from each turn, the turns are joined
       and a single marker is appended

Example:
    >>> from kgbuild.providers.llm import OpenAILLMProvider
    >>> llm = OpenAILLMProvider()
    >>> raw = await extract_from_chunk("Ada Lovelace worked with Charles Babbage.", llm)
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from kgbuild.config.settings import DEFAULT_ENTITY_TYPES
from kgbuild.errors import ExtractionOutputError
from kgbuild.ingestion.extraction.prompts import (
    CONTINUE_EXTRACTION_TEMPLATE,
    EXTRACTION_EXAMPLES,
    EXTRACTION_SYSTEM_PROMPT,
    EXTRACTION_USER_TEMPLATE,
)
from kgbuild.ingestion.parser import COMPLETION_DELIMITER, TUPLE_DELIMITER, is_record_line

if TYPE_CHECKING:
    from kgbuild.providers.base import ChatMessage, LLMProvider

logger = logging.getLogger(__name__)


def _format_examples() -> str:
    return "\n\n".join(
        example.format(tuple_delimiter=TUPLE_DELIMITER, completion_delimiter=COMPLETION_DELIMITER)
        for example in EXTRACTION_EXAMPLES
    )


def build_extraction_messages(
    content: str,
    *,
    entity_types: list[str] | None = None,
    language: str = "English",
) -> list["ChatMessage"]:
    """System and user messages of the first extraction turn."""
    types = ", ".join(entity_types or DEFAULT_ENTITY_TYPES)
    system = EXTRACTION_SYSTEM_PROMPT.format(
        entity_types=types,
        language=language,
        tuple_delimiter=TUPLE_DELIMITER,
        completion_delimiter=COMPLETION_DELIMITER,
        examples=_format_examples(),
    )
    user = EXTRACTION_USER_TEMPLATE.format(entity_types=types, input_text=content)
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": user},
    ]


def _strip_completion(text: str) -> str:
    return text.replace(COMPLETION_DELIMITER, "").strip()


def combine_turns(turns: list[str]) -> str:
    """
    Join the answers of all turns into the cached raw output.

    Raises:
        ExtractionOutputError: If the output is empty or carries no record
            line and no completion marker
    """
    if not any(turn.strip() for turn in turns):
        raise ExtractionOutputError("empty extraction output")

    has_marker = any(COMPLETION_DELIMITER in turn for turn in turns)
    bodies = [_strip_completion(turn) for turn in turns]
    body = "\n".join(b for b in bodies if b)
    if not has_marker and not any(is_record_line(line) for line in body.splitlines()):
        raise ExtractionOutputError("malformed extraction output")

    return f"{body}\n{COMPLETION_DELIMITER}" if body else COMPLETION_DELIMITER


async def extract_from_chunk(
    content: str,
    llm: "LLMProvider",
    *,
    entity_types: list[str] | None = None,
    language: str = "English",
    max_gleaning: int = 0,
    temperature: float = 0.0,
    max_tokens: int = 4096,
) -> str:
    """
    Run the extraction conversation for one chunk.

    Args:
        content: Chunk text
        llm: Language-model provider
        entity_types: Types the model may assign (default: DEFAULT_ENTITY_TYPES)
        language: Output language for names and descriptions
        max_gleaning: Continuation turns after the first answer
        temperature: Sampling temperature
        max_tokens: Completion budget per turn

    Returns:
        Raw output ending with exactly one completion marker

    Raises:
        ProviderError: If a model call fails
        ExtractionOutputError: If the combined output is empty or malformed
    """
    messages = build_extraction_messages(content, entity_types=entity_types, language=language)
    answer = await llm.chat(messages, temperature=temperature, max_tokens=max_tokens)
    turns = [answer]

    for turn in range(max_gleaning):
        if not answer.strip():
            break
        messages = [
            *messages,
            {"role": "assistant", "content": answer},
            {"role": "user", "content": CONTINUE_EXTRACTION_TEMPLATE.format(
                completion_delimiter=COMPLETION_DELIMITER,
            )},
        ]
        answer = await llm.chat(messages, temperature=temperature, max_tokens=max_tokens)
        logger.debug(f"Gleaning turn {turn + 1} returned {len(answer)} characters")
        turns.append(answer)

    return combine_turns(turns)
