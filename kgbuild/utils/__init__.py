"""
Utility Functions

Helpers used throughout the package.

Modules:
    text: Entity-name sanitization and deterministic keys
    token_count: Token counting with tiktoken
    embedding_text: Embedding input text and content hashes
"""

from kgbuild.utils.embedding_text import (
    entity_content_hash,
    format_entity_text,
    format_relation_text,
    relation_content_hash,
)
from kgbuild.utils.text import make_chunk_ref, make_relation_key, sanitize_entity_name

__all__ = [
    "sanitize_entity_name",
    "make_relation_key",
    "make_chunk_ref",
    "entity_content_hash",
    "relation_content_hash",
    "format_entity_text",
    "format_relation_text",
]
