"""
Event Types

Events emitted by the schedulers to subscribers of the EventBus.

Kinds:
    task-progress, task-completed, task-failed (stage 1)
    build-progress, build-completed, build-failed (stage 2)
    embedding-progress (stage 3)
"""

from __future__ import annotations

from enum import Enum
from typing import Literal, Union

from pydantic import BaseModel

from kgbuild.types.tasks import GraphTarget


class EventKind(str, Enum):
    TASK_PROGRESS = "task-progress"
    TASK_COMPLETED = "task-completed"
    TASK_FAILED = "task-failed"
    BUILD_PROGRESS = "build-progress"
    BUILD_COMPLETED = "build-completed"
    BUILD_FAILED = "build-failed"
    EMBEDDING_PROGRESS = "embedding-progress"


class TaskProgressEvent(BaseModel):
    kind: Literal[EventKind.TASK_PROGRESS] = EventKind.TASK_PROGRESS
    task_id: str
    completed: int
    failed: int
    total: int


class TaskCompletedEvent(BaseModel):
    kind: Literal[EventKind.TASK_COMPLETED] = EventKind.TASK_COMPLETED
    task_id: str


class TaskFailedEvent(BaseModel):
    kind: Literal[EventKind.TASK_FAILED] = EventKind.TASK_FAILED
    task_id: str
    error: str


class BuildProgressEvent(BaseModel):
    kind: Literal[EventKind.BUILD_PROGRESS] = EventKind.BUILD_PROGRESS
    build_task_id: str
    source_task_id: str
    completed: int
    failed: int
    total: int
    entities_total: int
    relations_total: int


class BuildCompletedEvent(BaseModel):
    kind: Literal[EventKind.BUILD_COMPLETED] = EventKind.BUILD_COMPLETED
    build_task_id: str
    source_task_id: str
    target: GraphTarget
    entities_total: int
    relations_total: int


class BuildFailedEvent(BaseModel):
    kind: Literal[EventKind.BUILD_FAILED] = EventKind.BUILD_FAILED
    build_task_id: str
    source_task_id: str
    error: str


class EmbeddingProgressEvent(BaseModel):
    kind: Literal[EventKind.EMBEDDING_PROGRESS] = EventKind.EMBEDDING_PROGRESS
    target: GraphTarget
    target_kind: str
    embedded: int
    remaining: int


PipelineEvent = Union[
    TaskProgressEvent,
    TaskCompletedEvent,
    TaskFailedEvent,
    BuildProgressEvent,
    BuildCompletedEvent,
    BuildFailedEvent,
    EmbeddingProgressEvent,
]
