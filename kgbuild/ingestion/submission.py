"""
Task Submission

Reads a file's rows from a source chunk table and materializes one task plus
one pending chunk per row that no existing task covers yet.

The source table lives in a knowledge-base database and must have at least
the columns chunk_index, content and file_key. It is only read.
"""

from __future__ import annotations

import logging
import uuid

from kgbuild.errors import NoSourceChunksError
from kgbuild.storage.duckdb.client import DuckDBClient
from kgbuild.storage.duckdb.tasks import TaskStore
from kgbuild.types import ChunkRecord, SubmitResult, SubmitTaskParams, TaskRecord, TaskStatus
from kgbuild.utils.text import make_chunk_ref

logger = logging.getLogger(__name__)


class TaskSubmitter:
    """
    Creates stage 1 work from source chunk tables.

    Usage:
        submitter = TaskSubmitter(client, TaskStore(client))
        result = await submitter.submit(params)
    """

    def __init__(self, client: DuckDBClient, tasks: TaskStore) -> None:
        self._client = client
        self._tasks = tasks

    async def fetch_source_rows(self, params: SubmitTaskParams) -> list[dict]:
        """
        Read a file's rows from the source table in chunk order.

        Raises:
            NoSourceChunksError: If the table is missing or holds no rows for the file
        """
        location = f"{params.source_namespace}.{params.source_database}.{params.source_table}"
        exists = await self._client.table_exists(
            params.source_namespace, params.source_database, params.source_table
        )
        if not exists:
            raise NoSourceChunksError(f"Source table {location} does not exist")

        rows = await self._client.query_in_database(
            params.source_namespace,
            params.source_database,
            f"SELECT chunk_index, content, file_key FROM {params.source_table} "
            "WHERE file_key = $file_key ORDER BY chunk_index",
            {"file_key": params.file_key},
        )
        if not rows:
            raise NoSourceChunksError(f'No chunks found for file_key="{params.file_key}" in {location}')
        return rows

    async def submit(self, params: SubmitTaskParams) -> SubmitResult:
        """
        Enqueue a file's uncovered chunks as a new task.

        Args:
            params: Source location, target graph and extraction settings

        Returns:
            SubmitResult; task_id is None when every row is already covered
        """
        rows = await self.fetch_source_rows(params)
        logger.info(f'Fetched {len(rows)} chunks for file_key="{params.file_key}"')

        covered = await self._tasks.covered_chunk_indexes(
            params.source_namespace, params.source_database, params.source_table, params.file_key
        )

        task_id = uuid.uuid4().hex
        chunks: list[ChunkRecord] = []
        skipped = 0
        for position, row in enumerate(rows):
            chunk_index = row["chunk_index"] if row["chunk_index"] is not None else position
            if chunk_index in covered:
                skipped += 1
                continue
            covered.add(chunk_index)
            chunks.append(ChunkRecord(
                id=uuid.uuid4().hex,
                task_id=task_id,
                chunk_index=chunk_index,
                chunk_ref=make_chunk_ref(params.source_table, params.file_key, chunk_index),
                content=row["content"] or "",
                status=TaskStatus.PENDING,
            ))

        if not chunks:
            logger.info(f'All {skipped} chunks of file_key="{params.file_key}" are already covered')
            return SubmitResult(task_id=None, chunks_total=0, chunks_skipped=skipped)

        target = params.target
        task = TaskRecord(
            id=task_id,
            file_key=params.file_key,
            status=TaskStatus.PENDING,
            source_namespace=params.source_namespace,
            source_database=params.source_database,
            source_table=params.source_table,
            target_namespace=target.namespace,
            target_database=target.database,
            graph_table_base=target.graph_table_base,
            chunks_total=len(chunks),
            config=params.config,
        )
        await self._tasks.create_task(task, chunks)

        logger.info(f"Created task {task_id} with {len(chunks)} chunks ({skipped} already covered)")
        return SubmitResult(task_id=task_id, chunks_total=len(chunks), chunks_skipped=skipped)
