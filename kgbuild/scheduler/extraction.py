"""
Extraction Scheduler (Stage 1)

Drains pending chunks: claim -> language-model extraction -> cache raw text.

Each tick claims up to max_concurrency pending chunks with the conditional
pending -> progressing update, runs their model calls concurrently, then
records every outcome and re-derives the affected tasks' counters from their
chunk rows. With the default concurrency of 1 exactly one chunk is in
flight.

Chunk lifecycle:
    pending -> progressing -> completed (raw output cached)
                           -> failed (error message recorded)

Start-up cleanup fails chunks a previous process left in progressing and
re-derives their tasks' counters.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from kgbuild.events import EventBus
from kgbuild.ingestion.extraction import extract_from_chunk
from kgbuild.providers.base import LLMProvider
from kgbuild.scheduler.base import ACTIVE, IDLE, PollingScheduler
from kgbuild.storage.duckdb.tasks import TaskStore
from kgbuild.types import (
    ChunkRecord,
    ExtractionConfig,
    TaskCompletedEvent,
    TaskFailedEvent,
    TaskProgressEvent,
    TaskRecord,
    TaskStatus,
)

logger = logging.getLogger(__name__)

INTERRUPTED_ERROR = "interrupted: process restarted"

LLMFactory = Callable[[ExtractionConfig], LLMProvider]


class ExtractionScheduler(PollingScheduler):
    """
    Stage 1 loop.

    Args:
        tasks: Stage 1 bookkeeping queries
        events: Bus receiving task-progress/completed/failed events
        llm_factory: Builds a provider for a task's extraction settings
        max_concurrency: Chunks claimed (and in flight) per tick
        entity_types: Default entity types for tasks that set none
        language: Default output language
        max_gleaning: Default continuation turns
        temperature: Default sampling temperature
        max_tokens: Completion budget per model call
    """

    name = "extraction-scheduler"

    def __init__(
        self,
        tasks: TaskStore,
        events: EventBus,
        llm_factory: LLMFactory,
        *,
        max_concurrency: int = 1,
        idle_interval: float = 2.0,
        active_interval: float = 0.0,
        entity_types: list[str] | None = None,
        language: str = "English",
        max_gleaning: int = 0,
        temperature: float = 0.0,
        max_tokens: int = 4096,
    ) -> None:
        super().__init__(idle_interval, active_interval)
        self._tasks = tasks
        self._events = events
        self._llm_factory = llm_factory
        self._providers: dict[str, LLMProvider] = {}
        self.max_concurrency = max(1, max_concurrency)
        self.entity_types = entity_types
        self.language = language
        self.max_gleaning = max_gleaning
        self.temperature = temperature
        self.max_tokens = max_tokens

    def update_concurrency(self, value: int) -> int:
        """Set how many chunks are claimed per tick (at least 1)."""
        self.max_concurrency = max(1, int(value))
        logger.info(f"Extraction concurrency set to {self.max_concurrency}")
        return self.max_concurrency

    def _provider_for(self, config: ExtractionConfig) -> LLMProvider:
        key = config.model_dump_json(exclude_none=True)
        provider = self._providers.get(key)
        if provider is None:
            provider = self._llm_factory(config)
            self._providers[key] = provider
        return provider

    # -------------------------------------------------------------------------
    # Loop
    # -------------------------------------------------------------------------

    async def run_once(self) -> bool:
        chunk_ids = await self._tasks.next_pending_chunk_ids(self.max_concurrency)
        if not chunk_ids:
            self._set_state(IDLE)
            return False
        self._set_state(ACTIVE)

        claimed: list[ChunkRecord] = []
        for chunk_id in chunk_ids:
            chunk = await self._tasks.claim_chunk(chunk_id)
            if chunk is not None:
                claimed.append(chunk)
        if not claimed:
            return True

        task_records: dict[str, TaskRecord | None] = {}
        for chunk in claimed:
            if chunk.task_id not in task_records:
                task_records[chunk.task_id] = await self._tasks.get_task(chunk.task_id)

        outcomes = await asyncio.gather(
            *(self._extract(chunk, task_records[chunk.task_id]) for chunk in claimed)
        )

        for chunk, (raw, error) in zip(claimed, outcomes):
            if error is None:
                await self._tasks.complete_chunk(chunk.id, raw)
            else:
                logger.warning(f"Chunk {chunk.task_id}#{chunk.chunk_index} failed: {error}")
                await self._tasks.fail_chunk(chunk.id, error)

        for task_id in dict.fromkeys(chunk.task_id for chunk in claimed):
            await self.reconcile(task_id)
        return True

    async def _extract(self, chunk: ChunkRecord, task: TaskRecord | None) -> tuple[str, str | None]:
        """Run one chunk's extraction; returns (raw output, error message)."""
        config = task.config if task is not None else ExtractionConfig()
        try:
            provider = self._provider_for(config)
            raw = await extract_from_chunk(
                chunk.content,
                provider,
                entity_types=config.entity_types or self.entity_types,
                language=config.language or self.language,
                max_gleaning=self.max_gleaning if config.max_gleaning is None else config.max_gleaning,
                temperature=self.temperature if config.temperature is None else config.temperature,
                max_tokens=self.max_tokens,
            )
        except Exception as e:
            return "", str(e) or type(e).__name__
        logger.debug(f"Chunk {chunk.task_id}#{chunk.chunk_index} extracted ({len(raw)} characters)")
        return raw, None

    # -------------------------------------------------------------------------
    # Task bookkeeping
    # -------------------------------------------------------------------------

    async def reconcile(self, task_id: str) -> TaskRecord | None:
        """Re-derive a task from its chunks and emit progress and transition events."""
        task, previous = await self._tasks.reconcile_task(task_id)
        if task is None:
            return None

        await self._events.emit(TaskProgressEvent(
            task_id=task.id,
            completed=task.chunks_completed,
            failed=task.chunks_failed,
            total=task.chunks_total,
        ))
        if task.status != previous:
            if task.status is TaskStatus.COMPLETED:
                logger.info(f"Task {task.id} completed: {task.chunks_completed}/{task.chunks_total} chunks")
                await self._events.emit(TaskCompletedEvent(task_id=task.id))
            elif task.status is TaskStatus.FAILED:
                logger.info(f"Task {task.id} failed: {task.error}")
                await self._events.emit(TaskFailedEvent(task_id=task.id, error=task.error or ""))
        return task

    async def cleanup(self) -> None:
        """Fail chunks interrupted by a previous process and re-derive their tasks."""
        interrupted = await self._tasks.fail_interrupted_chunks(INTERRUPTED_ERROR)
        unsettled = await self._tasks.unsettled_task_ids()
        for task_id in dict.fromkeys([*interrupted, *unsettled]):
            await self.reconcile(task_id)
        if interrupted:
            logger.info(f"Failed interrupted chunks of {len(interrupted)} tasks")
