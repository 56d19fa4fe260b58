"""
Task Types

Bookkeeping records for the three pipeline stages and the parameters used to
create them.

Stage 1 rows:
    - TaskRecord (kg_task): one source file's extraction job
    - ChunkRecord (kg_chunk): one chunk of that file, with cached model output

Stage 2 rows:
    - BuildTaskRecord (kg_build_task): derived from a completed TaskRecord
    - BuildChunkRecord (kg_build_chunk): points at a completed ChunkRecord
"""

from __future__ import annotations

import re
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from kgbuild.errors import InvalidIdentifierError

_NAME_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
_TABLE_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")


def validate_name(value: str) -> str:
    """Validate a namespace or database name (used as a directory name)."""
    if not isinstance(value, str) or not _NAME_RE.match(value):
        raise InvalidIdentifierError(f"Invalid namespace/database name: {value!r}")
    return value


def validate_table_name(value: str) -> str:
    """Validate a table name (interpolated into SQL)."""
    if not isinstance(value, str) or not _TABLE_RE.match(value):
        raise InvalidIdentifierError(f"Invalid table name: {value!r}")
    return value


class TaskStatus(str, Enum):
    """Lifecycle of tasks and chunks in both stages."""

    PENDING = "pending"
    PROGRESSING = "progressing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


def derive_status(total: int, completed: int, failed: int, progressing: int) -> TaskStatus:
    """
    Derive a parent status from its chunk counts.

    A parent is terminal only when every chunk is terminal: completed when
    no chunk failed, failed otherwise.
    """
    if total > 0 and completed + failed >= total:
        return TaskStatus.FAILED if failed > 0 else TaskStatus.COMPLETED
    if progressing > 0 or completed > 0 or failed > 0:
        return TaskStatus.PROGRESSING
    return TaskStatus.PENDING


class GraphTarget(BaseModel):
    """
    Address of one graph inside a knowledge base.

    Attributes:
        namespace: Knowledge-base namespace
        database: Knowledge-base database
        graph_table_base: Prefix of the four graph tables
    """

    model_config = ConfigDict(frozen=True)

    namespace: str
    database: str
    graph_table_base: str = "kg"

    @field_validator("namespace", "database")
    @classmethod
    def check_name(cls, v: str) -> str:
        return validate_name(v)

    @field_validator("graph_table_base")
    @classmethod
    def check_base(cls, v: str) -> str:
        return validate_table_name(v)

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.database}/{self.graph_table_base}"


class ExtractionConfig(BaseModel):
    """
    Per-task extraction settings, persisted with the task.

    API keys are never stored here; they come from KGBuildConfig.

    Attributes:
        model: Model name (None = configured default)
        protocol: Provider protocol (None = configured default)
        base_url: OpenAI-compatible endpoint override
        entity_types: Entity types the model should extract
        language: Output language for names and descriptions
        max_gleaning: Continuation turns after the first answer
        temperature: Sampling temperature
    """

    model: str | None = None
    protocol: str | None = None
    base_url: str | None = None
    entity_types: list[str] | None = None
    language: str | None = None
    max_gleaning: int | None = Field(default=None, ge=0, le=5)
    temperature: float | None = None


class SubmitTaskParams(BaseModel):
    """
    Parameters for enqueueing one file's chunks.

    The target graph defaults to the source knowledge base.
    """

    file_key: str = Field(min_length=1)
    source_namespace: str
    source_database: str
    source_table: str
    graph_table_base: str = "kg"
    target_namespace: str | None = None
    target_database: str | None = None
    config: ExtractionConfig = Field(default_factory=ExtractionConfig)

    @field_validator("source_namespace", "source_database")
    @classmethod
    def check_names(cls, v: str) -> str:
        return validate_name(v)

    @field_validator("source_table", "graph_table_base")
    @classmethod
    def check_tables(cls, v: str) -> str:
        return validate_table_name(v)

    @field_validator("target_namespace", "target_database")
    @classmethod
    def check_target(cls, v: str | None) -> str | None:
        return None if v is None else validate_name(v)

    @property
    def target(self) -> GraphTarget:
        return GraphTarget(
            namespace=self.target_namespace or self.source_namespace,
            database=self.target_database or self.source_database,
            graph_table_base=self.graph_table_base,
        )


class SubmitResult(BaseModel):
    """
    Result of a submission.

    Attributes:
        task_id: New task id, or None when every source row was already covered
        chunks_total: Chunks in the new task
        chunks_skipped: Source rows skipped because a task already covers them
    """

    task_id: str | None
    chunks_total: int
    chunks_skipped: int = 0


class TaskRecord(BaseModel):
    """A row of kg_task."""

    id: str
    file_key: str
    status: TaskStatus
    source_namespace: str
    source_database: str
    source_table: str
    target_namespace: str | None = None
    target_database: str | None = None
    graph_table_base: str | None = None
    chunks_total: int = 0
    chunks_completed: int = 0
    chunks_failed: int = 0
    config: ExtractionConfig = Field(default_factory=ExtractionConfig)
    error: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("config", mode="before")
    @classmethod
    def parse_config(cls, v: object) -> object:
        if v is None or v == "":
            return ExtractionConfig()
        if isinstance(v, str):
            return ExtractionConfig.model_validate_json(v)
        return v

    @property
    def target(self) -> GraphTarget | None:
        if not (self.target_namespace and self.target_database and self.graph_table_base):
            return None
        return GraphTarget(
            namespace=self.target_namespace,
            database=self.target_database,
            graph_table_base=self.graph_table_base,
        )


class ChunkRecord(BaseModel):
    """A row of kg_chunk."""

    id: str
    task_id: str
    chunk_index: int
    chunk_ref: str
    content: str = ""
    status: TaskStatus
    result: str | None = None
    error: str | None = None
    attempts: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None


class BuildTaskRecord(BaseModel):
    """A row of kg_build_task."""

    id: str
    source_task_id: str
    file_key: str
    target_namespace: str
    target_database: str
    graph_table_base: str
    status: TaskStatus
    chunks_total: int = 0
    chunks_completed: int = 0
    chunks_failed: int = 0
    entities_upserted: int = 0
    relations_upserted: int = 0
    error: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def target(self) -> GraphTarget:
        return GraphTarget(
            namespace=self.target_namespace,
            database=self.target_database,
            graph_table_base=self.graph_table_base,
        )


class BuildChunkRecord(BaseModel):
    """A row of kg_build_chunk."""

    id: str
    build_task_id: str
    source_chunk_id: str
    chunk_index: int
    chunk_ref: str
    status: TaskStatus
    entities_count: int = 0
    relations_count: int = 0
    error: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class ChunkCounts(BaseModel):
    """Status counts of a parent's chunks."""

    total: int = 0
    completed: int = 0
    failed: int = 0
    progressing: int = 0
    pending: int = 0

    @property
    def status(self) -> TaskStatus:
        return derive_status(self.total, self.completed, self.failed, self.progressing)
