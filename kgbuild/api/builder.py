"""
KnowledgeGraphBuilder - Primary Entry Point

Owns the DuckDB client, the three pipeline schedulers and the event bus of
one process.

Layout under config.data_dir:
    - kg_home.duckdb: task bookkeeping for all three stages
    - <namespace>/<database>.duckdb: source chunk tables and graph tables
    - lancedb/<namespace>/<database>/: vector indices rebuilt by stage 3

Example:
    >>> async with KnowledgeGraphBuilder(data_dir="./kb_data") as builder:
    ...     builder.subscribe("build-completed", print)
    ...     await builder.start()
    ...     result = await builder.submit_task(SubmitTaskParams(
    ...         file_key="report.pdf",
    ...         source_namespace="acme",
    ...         source_database="docs",
    ...         source_table="chunks",
    ...     ))

    # Or drive the stages by hand (scripts and tests)
    >>> builder = KnowledgeGraphBuilder(data_dir="./kb_data")
    >>> await builder.submit_task(params)
    >>> await builder.run_until_idle()
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from kgbuild.errors import InvalidTaskStateError, TaskNotFoundError
from kgbuild.events import EventBus, EventCallback
from kgbuild.ingestion.submission import TaskSubmitter
from kgbuild.ingestion.upsert import GraphUpsertEngine
from kgbuild.scheduler.embedding import EmbeddingScheduler
from kgbuild.scheduler.extraction import ExtractionScheduler
from kgbuild.scheduler.graph_build import GraphBuildScheduler
from kgbuild.storage.duckdb.builds import BuildStore
from kgbuild.storage.duckdb.client import DuckDBClient
from kgbuild.storage.duckdb.tasks import TaskStore
from kgbuild.storage.lancedb.indices import GraphVectorIndex
from kgbuild.storage.schema import SchemaProvisioner, ensure_system_schema
from kgbuild.types import (
    BuildCompletedEvent,
    BuildTaskRecord,
    ChunkRecord,
    EmbeddingStatus,
    EventKind,
    ExtractionConfig,
    GraphTableNames,
    GraphTarget,
    SubmitResult,
    SubmitTaskParams,
    TaskRecord,
    TaskStatus,
)

if TYPE_CHECKING:
    from kgbuild.config.settings import KGBuildConfig
    from kgbuild.providers.base import EmbeddingProvider, LLMProvider

logger = logging.getLogger(__name__)

CANCELLED_ERROR = "cancelled"


class KnowledgeGraphBuilder:
    """
    The knowledge-graph construction service.

    Args:
        config: Optional configuration. Uses defaults (and environment) if not provided.
        llm_provider: Provider used for every task instead of one built from config
        embedding_provider: Provider used by stage 3 instead of one built from config
        **overrides: Configuration options applied on top of config
    """

    def __init__(
        self,
        config: "KGBuildConfig | None" = None,
        *,
        llm_provider: "LLMProvider | None" = None,
        embedding_provider: "EmbeddingProvider | None" = None,
        **overrides: Any,
    ) -> None:
        if config is None:
            from kgbuild.config import KGBuildConfig
            config = KGBuildConfig(**overrides)
        elif overrides:
            config = config.with_overrides(**overrides)
        self._config = config
        self._llm_provider = llm_provider
        self._embedding_provider = embedding_provider

        self.events = EventBus()
        self.client = DuckDBClient(config.data_dir, config.home_database)
        self.tasks = TaskStore(self.client)
        self.builds = BuildStore(self.client)
        self.provisioner = SchemaProvisioner(self.client)
        self.index = GraphVectorIndex(
            config.data_dir / "lancedb",
            index_type=config.lancedb_index_type,
            min_rows_for_index=config.lancedb_index_min_rows,
        )
        self.submitter = TaskSubmitter(self.client, self.tasks)

        self.extraction = ExtractionScheduler(
            self.tasks,
            self.events,
            self._create_llm_provider,
            max_concurrency=config.extraction_concurrency,
            idle_interval=config.extraction_idle_interval,
            active_interval=config.extraction_active_interval,
            entity_types=config.default_entity_types,
            language=config.default_language,
            max_gleaning=config.max_gleaning,
            temperature=config.llm_temperature,
            max_tokens=config.llm_max_tokens,
        )
        self.graph_build = GraphBuildScheduler(
            self.client,
            self.tasks,
            self.builds,
            self.provisioner,
            GraphUpsertEngine(
                self.client,
                batch_size=config.upsert_batch_size,
                max_retries=config.upsert_max_retries,
            ),
            self.events,
            batch_size=config.build_batch_size,
            idle_interval=config.build_idle_interval,
            active_interval=config.build_active_interval,
        )
        self.embedding = EmbeddingScheduler(
            self.client,
            self.provisioner,
            self.index,
            self.events,
            self._create_embedding_provider,
            batch_size=config.embedding_batch_size,
            max_tokens=config.embedding_max_tokens,
            embedding_timeout=config.embedding_timeout,
            idle_interval=config.embedding_idle_interval,
            active_interval=config.embedding_active_interval,
        )
        self.events.subscribe(EventKind.BUILD_COMPLETED, self._on_build_completed)

        self._initialized = False
        self._started = False

    def _create_llm_provider(self, extraction: ExtractionConfig) -> "LLMProvider":
        if self._llm_provider is not None:
            return self._llm_provider
        from kgbuild.providers import create_llm_provider
        return create_llm_provider(self._config, extraction)

    def _create_embedding_provider(self) -> "EmbeddingProvider":
        if self._embedding_provider is not None:
            return self._embedding_provider
        from kgbuild.providers import create_embedding_provider
        return create_embedding_provider(self._config)

    def _on_build_completed(self, event: BuildCompletedEvent) -> None:
        self.embedding.trigger(event.target)

    async def _ensure_initialized(self) -> None:
        """Connect and create the bookkeeping tables on first use."""
        if self._initialized:
            return
        await self.client.connect()
        await ensure_system_schema(self.client)
        self._initialized = True

    # === Lifecycle ===

    async def __aenter__(self) -> "KnowledgeGraphBuilder":
        await self._ensure_initialized()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.stop()

    async def start(self) -> None:
        """Run each stage's start-up sweep, then launch the three loops."""
        await self._ensure_initialized()
        if self._started:
            return
        await self.cleanup()
        for scheduler in self.schedulers:
            scheduler.start()
        self._started = True

    async def stop(self) -> None:
        """Stop the loops and release the stores."""
        for scheduler in self.schedulers:
            await scheduler.stop()
        self._started = False
        await self.index.close()
        await self.client.close()
        self._initialized = False

    async def cleanup(self) -> None:
        """Start-up housekeeping of all three stages."""
        await self._ensure_initialized()
        await self.extraction.cleanup()
        await self.graph_build.cleanup()
        await self.embedding.cleanup()

    async def run_until_idle(self, max_rounds: int = 1000) -> None:
        """
        Tick the stages in order until none of them finds work.

        Used by scripts and tests instead of the background loops.
        """
        await self._ensure_initialized()
        for _ in range(max_rounds):
            worked = 0
            worked += await self.extraction.run_until_idle()
            worked += await self.graph_build.run_until_idle()
            worked += await self.embedding.run_until_idle()
            if not worked:
                return

    # === Properties ===

    @property
    def config(self) -> "KGBuildConfig":
        return self._config

    @property
    def schedulers(self) -> tuple[ExtractionScheduler, GraphBuildScheduler, EmbeddingScheduler]:
        return self.extraction, self.graph_build, self.embedding

    @property
    def is_running(self) -> bool:
        return self._started

    # === Submission and status ===

    async def submit_task(self, params: SubmitTaskParams) -> SubmitResult:
        """Enqueue a file's chunks for extraction and wake stage 1."""
        await self._ensure_initialized()
        result = await self.submitter.submit(params)
        if result.task_id is not None:
            self.extraction.wake()
        return result

    async def query_status(self, limit: int = 100) -> list[TaskRecord]:
        await self._ensure_initialized()
        return await self.tasks.list_tasks(limit)

    async def query_build_status(self, limit: int = 100) -> list[BuildTaskRecord]:
        await self._ensure_initialized()
        return await self.builds.list_build_tasks(limit)

    async def get_task(self, task_id: str) -> TaskRecord:
        await self._ensure_initialized()
        task = await self.tasks.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task not found: {task_id}")
        return task

    async def list_chunks(self, task_id: str) -> list[ChunkRecord]:
        await self.get_task(task_id)
        return await self.tasks.list_chunks(task_id)

    def update_concurrency(self, value: int) -> int:
        """Adjust how many chunks stage 1 keeps in flight."""
        return self.extraction.update_concurrency(value)

    async def create_graph_schema(self, target: GraphTarget) -> GraphTableNames:
        """Provision a graph's tables now instead of on its first build."""
        await self._ensure_initialized()
        tables = await self.provisioner.create_graph_schema(target)
        self.embedding.trigger(target)
        return tables

    def subscribe(self, kind: EventKind | str | None, callback: EventCallback):
        """Register an event callback; returns a function that unsubscribes it."""
        return self.events.subscribe(kind, callback)

    # === Task administration ===

    async def reconcile_task(self, task_id: str) -> TaskRecord:
        """Re-derive a task's counters and status from its chunk rows."""
        await self.get_task(task_id)
        task = await self.extraction.reconcile(task_id)
        assert task is not None
        return task

    async def cancel_task(self, task_id: str) -> TaskRecord:
        """
        Fail every pending chunk of a task.

        Chunks already in flight finish normally.
        """
        await self.get_task(task_id)
        cancelled = await self.tasks.cancel_pending_chunks(task_id, CANCELLED_ERROR)
        logger.info(f"Cancelled {cancelled} pending chunks of task {task_id}")
        return await self.reconcile_task(task_id)

    async def retry_task(self, task_id: str) -> TaskRecord:
        """
        Move a failed task's failed chunks back to pending.

        Raises:
            TaskNotFoundError: If the task does not exist
            InvalidTaskStateError: If the task is not failed
        """
        task = await self.get_task(task_id)
        if task.status is not TaskStatus.FAILED:
            raise InvalidTaskStateError(f"Task {task_id} is {task.status.value}, only failed tasks can be retried")
        reset = await self.tasks.reset_failed_chunks(task_id)
        logger.info(f"Retrying {reset} failed chunks of task {task_id}")
        task = await self.reconcile_task(task_id)
        self.extraction.wake()
        return task

    async def remove_task(self, task_id: str) -> None:
        """Delete a task, its chunks and any build task derived from it."""
        await self.get_task(task_id)
        build = await self.builds.build_task_for_source(task_id)
        if build is not None:
            await self.builds.delete_build_task(build.id)
        await self.tasks.delete_task(task_id)
        logger.info(f"Removed task {task_id}")

    async def _get_chunk(self, task_id: str, chunk_index: int) -> ChunkRecord:
        await self.get_task(task_id)
        chunk = await self.tasks.get_chunk(task_id, chunk_index)
        if chunk is None:
            raise TaskNotFoundError(f"Chunk {chunk_index} of task {task_id} not found")
        return chunk

    async def cancel_chunk(self, task_id: str, chunk_index: int) -> TaskRecord:
        """
        Fail one pending chunk.

        Raises:
            InvalidTaskStateError: If the chunk is not pending
        """
        chunk = await self._get_chunk(task_id, chunk_index)
        if chunk.status is not TaskStatus.PENDING:
            raise InvalidTaskStateError(f"Chunk {chunk_index} is {chunk.status.value}, only pending chunks can be cancelled")
        await self.tasks.cancel_pending_chunks(task_id, CANCELLED_ERROR, chunk_index)
        return await self.reconcile_task(task_id)

    async def retry_chunk(self, task_id: str, chunk_index: int) -> TaskRecord:
        """
        Move one failed chunk back to pending.

        Raises:
            InvalidTaskStateError: If the chunk is not failed
        """
        chunk = await self._get_chunk(task_id, chunk_index)
        if chunk.status is not TaskStatus.FAILED:
            raise InvalidTaskStateError(f"Chunk {chunk_index} is {chunk.status.value}, only failed chunks can be retried")
        await self.tasks.reset_failed_chunks(task_id, chunk_index)
        task = await self.reconcile_task(task_id)
        self.extraction.wake()
        return task

    async def remove_chunk(self, task_id: str, chunk_index: int) -> TaskRecord | None:
        """
        Delete one chunk.

        Returns:
            The re-derived task, or None if its last chunk was removed (the task goes too)
        """
        await self._get_chunk(task_id, chunk_index)
        await self.tasks.delete_chunk(task_id, chunk_index)
        counts = await self.tasks.chunk_counts(task_id)
        if counts.total == 0:
            await self.remove_task(task_id)
            return None
        return await self.reconcile_task(task_id)

    async def retry_build_task(self, build_task_id: str) -> BuildTaskRecord:
        """Move a build task's failed build chunks back to pending."""
        await self._ensure_initialized()
        build = await self.builds.get_build_task(build_task_id)
        if build is None:
            raise TaskNotFoundError(f"Build task not found: {build_task_id}")
        reset = await self.builds.reset_failed_build_chunks(build_task_id)
        logger.info(f"Retrying {reset} failed build chunks of build task {build_task_id}")
        build = await self.graph_build.reconcile(build_task_id)
        assert build is not None
        self.graph_build.wake()
        return build

    # === Embeddings and search ===

    def trigger_embedding(self, target: GraphTarget) -> None:
        self.embedding.trigger(target)

    async def embedding_status(self) -> EmbeddingStatus:
        await self._ensure_initialized()
        await self.embedding.load_targets()
        return await self.embedding.status()

    async def search_entities(
        self,
        target: GraphTarget,
        query: str | list[float],
        limit: int = 10,
    ) -> list[tuple[dict[str, Any], float]]:
        """
        Nearest entities of a graph by cosine similarity.

        Args:
            target: Graph to search
            query: Text to embed, or a query vector
            limit: Maximum results

        Returns:
            (entity, similarity) tuples, most similar first
        """
        await self._ensure_initialized()
        return await self.embedding.search_entities(target, query, limit)

    async def search_relations(
        self,
        target: GraphTarget,
        query: str | list[float],
        limit: int = 10,
    ) -> list[tuple[dict[str, Any], float]]:
        """Nearest relations of a graph, as (relation, similarity) tuples."""
        await self._ensure_initialized()
        return await self.embedding.search_relations(target, query, limit)

    # === Sync wrappers ===

    def submit_task_sync(self, params: SubmitTaskParams) -> SubmitResult:
        """Sync wrapper for submit_task."""
        return asyncio.run(self.submit_task(params))

    def query_status_sync(self, limit: int = 100) -> list[TaskRecord]:
        """Sync wrapper for query_status."""
        return asyncio.run(self.query_status(limit))
