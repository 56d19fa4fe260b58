"""
Helpers for deterministic embedding input text and content hashes.

The content hash must match the SQL expression used by the embedding
scheduler to find stale rows:

    entity:   md5(entity_name || chr(10) || coalesce(description, ''))
    relation: md5(coalesce(array_to_string(keywords, ','), '') || chr(10)
                  || in_id || chr(10) || out_id || chr(10)
                  || coalesce(description, ''))
"""

from __future__ import annotations

import hashlib

from kgbuild.utils.token_count import count_text_tokens, truncate_to_tokens

DESCRIPTION_SEPARATOR = "\n---\n"


def entity_content_hash(name: str, description: str | None) -> str:
    return hashlib.md5(f"{name}\n{description or ''}".encode("utf-8")).hexdigest()


def relation_content_hash(
    keywords: list[str] | None, source: str, target: str, description: str | None
) -> str:
    text = f"{','.join(keywords or [])}\n{source}\n{target}\n{description or ''}"
    return hashlib.md5(text.encode("utf-8")).hexdigest()


def fit_description(description: str | None, max_tokens: int, model: str) -> str:
    """
    Keep whole description segments while they fit the token budget.

    The first segment is truncated if it alone exceeds the budget.
    """
    if not description:
        return ""
    kept: list[str] = []
    used = 0
    for segment in description.split(DESCRIPTION_SEPARATOR):
        segment = segment.strip()
        if not segment:
            continue
        tokens = count_text_tokens(segment, model)
        if used + tokens > max_tokens:
            if not kept:
                kept.append(truncate_to_tokens(segment, max_tokens, model))
            break
        kept.append(segment)
        used += tokens
    return " ".join(kept)


def format_entity_text(
    name: str, description: str | None, max_tokens: int = 512, model: str = "text-embedding-3-small"
) -> str:
    """Embedding text for an entity: "name: description"."""
    return f"{name}: {fit_description(description, max_tokens, model)}"


def format_relation_text(
    keywords: list[str] | None,
    source: str,
    target: str,
    description: str | None,
    max_tokens: int = 512,
    model: str = "text-embedding-3-small",
) -> str:
    """Embedding text for a relation: keywords, both endpoints, description."""
    body = fit_description(description, max_tokens, model)
    return f"{', '.join(keywords or [])}\n{source}\n{target}\n{body}"
