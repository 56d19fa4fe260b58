"""
Type Definitions

Pydantic models used across the pipeline.

Modules:
    tasks: Task/chunk bookkeeping rows and submission parameters
    graph: Parsed graph records, table names, embedding status
    events: Events delivered to subscribers
"""

from kgbuild.types.events import (
    BuildCompletedEvent,
    BuildFailedEvent,
    BuildProgressEvent,
    EmbeddingProgressEvent,
    EventKind,
    PipelineEvent,
    TaskCompletedEvent,
    TaskFailedEvent,
    TaskProgressEvent,
)
from kgbuild.types.graph import (
    EmbeddingBatchInfo,
    EmbeddingStatus,
    GraphTableNames,
    ParsedEntity,
    ParsedRelation,
    ParseResult,
    TargetEmbeddingStatus,
    UpsertResult,
)
from kgbuild.types.tasks import (
    BuildChunkRecord,
    BuildTaskRecord,
    ChunkCounts,
    ChunkRecord,
    ExtractionConfig,
    GraphTarget,
    SubmitResult,
    SubmitTaskParams,
    TaskRecord,
    TaskStatus,
    derive_status,
)

__all__ = [
    # Tasks
    "TaskStatus",
    "derive_status",
    "GraphTarget",
    "ExtractionConfig",
    "SubmitTaskParams",
    "SubmitResult",
    "TaskRecord",
    "ChunkRecord",
    "BuildTaskRecord",
    "BuildChunkRecord",
    "ChunkCounts",
    # Graph
    "GraphTableNames",
    "ParsedEntity",
    "ParsedRelation",
    "ParseResult",
    "UpsertResult",
    "EmbeddingBatchInfo",
    "EmbeddingStatus",
    "TargetEmbeddingStatus",
    # Events
    "EventKind",
    "PipelineEvent",
    "TaskProgressEvent",
    "TaskCompletedEvent",
    "TaskFailedEvent",
    "BuildProgressEvent",
    "BuildCompletedEvent",
    "BuildFailedEvent",
    "EmbeddingProgressEvent",
]
