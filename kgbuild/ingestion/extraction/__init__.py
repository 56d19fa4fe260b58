"""
LLM-Based Extraction

Delimiter-grammar extraction of entities and relations from chunks.

Modules:
    prompts: System, user and continuation templates plus few-shot examples
    extractor: The extraction conversation and output validation

Gleaning:
    After the first answer the model may be asked up to max_gleaning times
    for records it missed. All turns are cached together as one raw output.
"""

from kgbuild.ingestion.extraction.extractor import (
    DEFAULT_ENTITY_TYPES,
    build_extraction_messages,
    combine_turns,
    extract_from_chunk,
)

__all__ = [
    "DEFAULT_ENTITY_TYPES",
    "build_extraction_messages",
    "combine_turns",
    "extract_from_chunk",
]
