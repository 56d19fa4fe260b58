"""
Extraction Response Parser

Turns the raw text a model returned for one chunk into entity and relation
records. Pure function, no I/O.

Grammar (one record per line, fields split on TUPLE_DELIMITER):
    entity<|#|>name<|#|>type<|#|>description
    relation<|#|>source<|#|>target<|#|>keywords<|#|>description
    <|COMPLETE|>

Parsing stops at the first line containing the completion marker. Lines with
an unknown tag, too few fields, or a name that sanitizes to nothing are
skipped.
"""

from __future__ import annotations

from kgbuild.types import ParsedEntity, ParsedRelation, ParseResult
from kgbuild.utils.text import make_relation_key, sanitize_entity_name

TUPLE_DELIMITER = "<|#|>"
COMPLETION_DELIMITER = "<|COMPLETE|>"

ENTITY_TAG = "entity"
RELATION_TAG = "relation"

_ENTITY_FIELDS = 4
_RELATION_FIELDS = 5


def _field(parts: list[str], index: int) -> str:
    return parts[index].strip() if index < len(parts) else ""


def _parse_entity(parts: list[str]) -> ParsedEntity | None:
    if len(parts) < _ENTITY_FIELDS:
        return None
    display_name = _field(parts, 1)
    name = sanitize_entity_name(display_name)
    if not name:
        return None
    return ParsedEntity(
        name=name,
        display_name=display_name,
        entity_type=_field(parts, 2) or "Other",
        description=_field(parts, 3),
    )


def _parse_relation(parts: list[str]) -> ParsedRelation | None:
    if len(parts) < _RELATION_FIELDS:
        return None
    source = sanitize_entity_name(_field(parts, 1))
    target = sanitize_entity_name(_field(parts, 2))
    if not source or not target:
        return None
    return ParsedRelation(
        source=source,
        target=target,
        key=make_relation_key(source, target),
        keywords=_field(parts, 3),
        description=_field(parts, 4),
    )


def is_record_line(line: str) -> bool:
    """True if a line carries an entity or relation tag."""
    tag = line.strip().split(TUPLE_DELIMITER, 1)[0].strip().lower()
    return TUPLE_DELIMITER in line and tag in (ENTITY_TAG, RELATION_TAG)


def parse_extraction_output(raw: str | None) -> ParseResult:
    """
    Parse raw extraction text into entities and relations.

    Never raises on malformed input.

    Args:
        raw: Text as cached by the extraction scheduler

    Returns:
        ParseResult in line order (duplicates are kept; the upsert engine
        folds them per key)

    Example:
        >>> result = parse_extraction_output(
        ...     "entity<|#|>Apple Inc.<|#|>Organization<|#|>Maker of the iPhone"
        ... )
        >>> result.entities[0].name
        'Apple_Inc'
    """
    result = ParseResult()
    if not raw:
        return result

    for line in raw.splitlines():
        line = line.strip()
        if not line:
            continue
        if COMPLETION_DELIMITER in line:
            break

        parts = line.split(TUPLE_DELIMITER)
        tag = parts[0].strip().lower()
        if tag == ENTITY_TAG:
            entity = _parse_entity(parts)
            if entity is not None:
                result.entities.append(entity)
        elif tag == RELATION_TAG:
            relation = _parse_relation(parts)
            if relation is not None:
                result.relations.append(relation)

    return result
