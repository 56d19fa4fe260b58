"""
Text Processing Utilities

Deterministic keys for graph records. Entity identity is the sanitized
name; relation identity is the sorted pair of sanitized endpoint names, so
(A, B) and (B, A) address the same row.
"""

from __future__ import annotations

import re

MAX_NAME_LENGTH = 100
RELATION_KEY_SEPARATOR = "::"

_WHITESPACE_RE = re.compile(r"\s+")
# Letters, digits, underscore and CJK unified ideographs survive
_ILLEGAL_RE = re.compile(r"[^a-zA-Z0-9_\u4e00-\u9fff]")


def sanitize_entity_name(name: str) -> str:
    """
    Turn an extracted name into a deterministic key.

    Args:
        name: Raw entity name from extraction, e.g. "Apple  Inc."

    Returns:
        Sanitized key, e.g. "Apple_Inc" (may be empty)
    """
    name = _WHITESPACE_RE.sub("_", name.strip())
    name = _ILLEGAL_RE.sub("", name)
    return name[:MAX_NAME_LENGTH]


def make_relation_key(source: str, target: str) -> str:
    """Relation key of two sanitized names, independent of their order."""
    first, second = sorted((source, target))
    return f"{first}{RELATION_KEY_SEPARATOR}{second}"


def make_chunk_ref(source_table: str, file_key: str, chunk_index: int) -> str:
    """Stable provenance id of a source chunk row."""
    return f"{source_table}:{file_key}:{chunk_index}"
