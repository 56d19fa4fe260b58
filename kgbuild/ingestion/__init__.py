"""
Ingestion Pipeline

The per-chunk building blocks that the schedulers drive.

Stages:
    Stage 1 - Extraction:
        - submission: source rows -> task + pending chunks
        - extraction/: delimiter-grammar prompts, gleaning, raw output

    Stage 2 - Graph build:
        - parser: raw output -> entity and relation records (pure)
        - upsert: records -> graph tables (idempotent merge)

Stage 3 (embedding and the vector index) lives in kgbuild.scheduler.embedding
and kgbuild.storage.lancedb.
"""

from kgbuild.ingestion.parser import COMPLETION_DELIMITER, TUPLE_DELIMITER, parse_extraction_output
from kgbuild.ingestion.submission import TaskSubmitter
from kgbuild.ingestion.upsert import GraphUpsertEngine

__all__ = [
    "TUPLE_DELIMITER",
    "COMPLETION_DELIMITER",
    "parse_extraction_output",
    "GraphUpsertEngine",
    "TaskSubmitter",
]
