"""
Graph Build Scheduler (Stage 2)

Turns cached extraction text into graph rows.

Each tick:
    1. Drain up to batch_size pending build chunks, oldest build task first
    2. Otherwise materialize a build task (one build chunk per completed
       stage 1 chunk) for every completed task that has none yet

Processing one build chunk:
    cached raw text -> parse_extraction_output -> GraphUpsertEngine
    -> build chunk completed with entity/relation counts

A parse or upsert failure marks only that build chunk failed. A
StoreUnavailableError is re-raised to the loop: the target store is probed
before claiming, so an unreachable store leaves the build chunk pending.
"""

from __future__ import annotations

import logging

from kgbuild.errors import CacheMissError, StoreUnavailableError
from kgbuild.events import EventBus
from kgbuild.ingestion.parser import parse_extraction_output
from kgbuild.ingestion.upsert import GraphUpsertEngine
from kgbuild.scheduler.base import ACTIVE, IDLE, PollingScheduler
from kgbuild.scheduler.extraction import INTERRUPTED_ERROR
from kgbuild.storage.duckdb.builds import BuildStore
from kgbuild.storage.duckdb.client import DuckDBClient
from kgbuild.storage.duckdb.tasks import TaskStore
from kgbuild.storage.schema import SchemaProvisioner
from kgbuild.types import (
    BuildChunkRecord,
    BuildCompletedEvent,
    BuildFailedEvent,
    BuildProgressEvent,
    BuildTaskRecord,
    GraphTableNames,
    TaskStatus,
)

logger = logging.getLogger(__name__)


class GraphBuildScheduler(PollingScheduler):
    """
    Stage 2 loop.

    Args:
        client: DuckDB client (used to probe target stores)
        tasks: Stage 1 queries (cached extraction text lives on kg_chunk)
        builds: Stage 2 queries
        provisioner: Creates graph tables on first use of a target
        upsert: Merges parsed records into graph tables
        events: Bus receiving build-progress/completed/failed events
        batch_size: Build chunks processed per tick
    """

    name = "graph-build-scheduler"

    def __init__(
        self,
        client: DuckDBClient,
        tasks: TaskStore,
        builds: BuildStore,
        provisioner: SchemaProvisioner,
        upsert: GraphUpsertEngine,
        events: EventBus,
        *,
        batch_size: int = 5,
        idle_interval: float = 5.0,
        active_interval: float = 0.0,
    ) -> None:
        super().__init__(idle_interval, active_interval)
        self._client = client
        self._tasks = tasks
        self._builds = builds
        self._provisioner = provisioner
        self._upsert = upsert
        self._events = events
        self.batch_size = max(1, batch_size)

    # -------------------------------------------------------------------------
    # Loop
    # -------------------------------------------------------------------------

    async def run_once(self) -> bool:
        pending = await self._builds.next_pending_build_chunks(self.batch_size)
        if pending:
            self._set_state(ACTIVE)
            builds: dict[str, BuildTaskRecord | None] = {}
            for build_chunk in pending:
                if build_chunk.build_task_id not in builds:
                    builds[build_chunk.build_task_id] = await self._builds.get_build_task(
                        build_chunk.build_task_id
                    )
                build = builds[build_chunk.build_task_id]
                if build is not None:
                    await self.process_build_chunk(build, build_chunk)
            return True

        if await self.materialize_build_tasks():
            self._set_state(ACTIVE)
            return True

        self._set_state(IDLE)
        return False

    async def materialize_build_tasks(self) -> int:
        """Create build tasks for completed stage 1 tasks that have none."""
        created = 0
        for task in await self._tasks.completed_tasks_without_build():
            chunks = await self._tasks.completed_chunks(task.id)
            if not chunks:
                continue
            await self._provisioner.create_graph_schema(task.target)
            build = await self._builds.create_build_task(task, chunks)
            logger.info(
                f"Created build task {build.id} for task {task.id} "
                f"({len(chunks)} chunks -> {task.target.key})"
            )
            created += 1
        return created

    async def process_build_chunk(self, build: BuildTaskRecord, build_chunk: BuildChunkRecord) -> None:
        """Parse and merge one build chunk, then re-derive its build task."""
        target = build.target
        tables = GraphTableNames.from_base(target.graph_table_base)
        # Raises StoreUnavailableError before the claim if the target cannot be opened
        await self._client.table_exists(target.namespace, target.database, tables.entity)

        if not await self._builds.claim_build_chunk(build_chunk.id):
            return

        try:
            raw = await self._tasks.cached_result(build_chunk.source_chunk_id)
            if raw is None:
                raise CacheMissError(f"No cached extraction text for chunk {build_chunk.chunk_ref}")
            parsed = parse_extraction_output(raw)
            await self._provisioner.create_graph_schema(target)
            result = await self._upsert.upsert(target, parsed, build_chunk.chunk_ref, build.file_key)
        except StoreUnavailableError:
            raise
        except Exception as e:
            error = str(e) or type(e).__name__
            logger.warning(f"Build chunk {build_chunk.chunk_ref} failed: {error}")
            await self._builds.fail_build_chunk(build_chunk.id, error)
        else:
            await self._builds.complete_build_chunk(
                build_chunk.id, result.entities_upserted, result.relations_upserted
            )

        await self.reconcile(build.id)

    # -------------------------------------------------------------------------
    # Build task bookkeeping
    # -------------------------------------------------------------------------

    async def reconcile(self, build_task_id: str) -> BuildTaskRecord | None:
        """Re-derive a build task from its chunks and emit progress and transition events."""
        build, previous = await self._builds.reconcile_build_task(build_task_id)
        if build is None:
            return None

        await self._events.emit(BuildProgressEvent(
            build_task_id=build.id,
            source_task_id=build.source_task_id,
            completed=build.chunks_completed,
            failed=build.chunks_failed,
            total=build.chunks_total,
            entities_total=build.entities_upserted,
            relations_total=build.relations_upserted,
        ))
        if build.status != previous:
            if build.status is TaskStatus.COMPLETED:
                logger.info(
                    f"Build task {build.id} completed: {build.entities_upserted} entities, "
                    f"{build.relations_upserted} relations"
                )
                await self._events.emit(BuildCompletedEvent(
                    build_task_id=build.id,
                    source_task_id=build.source_task_id,
                    target=build.target,
                    entities_total=build.entities_upserted,
                    relations_total=build.relations_upserted,
                ))
            elif build.status is TaskStatus.FAILED:
                logger.info(f"Build task {build.id} failed: {build.error}")
                await self._events.emit(BuildFailedEvent(
                    build_task_id=build.id,
                    source_task_id=build.source_task_id,
                    error=build.error or "",
                ))
        return build

    async def cleanup(self) -> None:
        """
        Start-up sweep.

        Fails build chunks interrupted by a previous process, re-derives
        unsettled build tasks, and deletes completed build tasks together
        with their source tasks.
        """
        interrupted = await self._builds.fail_interrupted_build_chunks(INTERRUPTED_ERROR)
        unsettled = await self._builds.unsettled_build_task_ids()
        for build_task_id in dict.fromkeys([*interrupted, *unsettled]):
            await self.reconcile(build_task_id)

        completed = await self._builds.completed_build_tasks()
        for build in completed:
            await self._builds.delete_pipeline(build)
        if interrupted or completed:
            logger.info(
                f"Build cleanup: {len(interrupted)} interrupted build tasks, "
                f"{len(completed)} completed build tasks removed"
            )
