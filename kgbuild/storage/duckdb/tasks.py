"""
Stage 1 Bookkeeping Queries

SQL over kg_task and kg_chunk in the system database. Chunk status only
moves forward (pending -> progressing -> completed | failed): every
transition is a conditional update guarded on the current status, which is
also what makes claiming safe with more than one claimant.

Administrative resets (retry) are the one exception: they move failed
chunks back to pending, starting a new attempt.
"""

from __future__ import annotations

import logging
from typing import Any

import duckdb

from kgbuild.storage.duckdb.client import DuckDBClient, Statement
from kgbuild.types import ChunkCounts, ChunkRecord, TaskRecord, TaskStatus
from kgbuild.utils.clock import utc_now

logger = logging.getLogger(__name__)

_COUNTS_SQL = """
    SELECT
        count(*) AS total,
        count(*) FILTER (WHERE status = 'completed') AS completed,
        count(*) FILTER (WHERE status = 'failed') AS failed,
        count(*) FILTER (WHERE status = 'progressing') AS progressing,
        count(*) FILTER (WHERE status = 'pending') AS pending
    FROM kg_chunk
    WHERE task_id = $task_id
"""


class TaskStore:
    """Queries over the stage 1 task and chunk tables."""

    def __init__(self, client: DuckDBClient) -> None:
        self._client = client

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    async def create_task(
        self,
        task: TaskRecord,
        chunks: list[ChunkRecord],
    ) -> None:
        """
        Insert a task and its chunks in one transaction.

        Stage 1 never sees a task whose chunks are only partly written.
        """
        now = utc_now()
        task_statement: Statement = (
            """
            INSERT INTO kg_task (
                id, file_key, status, source_namespace, source_database, source_table,
                target_namespace, target_database, graph_table_base,
                chunks_total, chunks_completed, chunks_failed, config, error,
                created_at, updated_at
            ) VALUES (
                $id, $file_key, $status, $source_namespace, $source_database, $source_table,
                $target_namespace, $target_database, $graph_table_base,
                $chunks_total, 0, 0, $config, NULL, $now, $now
            )
            """,
            {
                "id": task.id,
                "file_key": task.file_key,
                "status": TaskStatus.PENDING.value,
                "source_namespace": task.source_namespace,
                "source_database": task.source_database,
                "source_table": task.source_table,
                "target_namespace": task.target_namespace,
                "target_database": task.target_database,
                "graph_table_base": task.graph_table_base,
                "chunks_total": len(chunks),
                "config": task.config.model_dump_json(exclude_none=True),
                "now": now,
            },
        )

        statements: list[Statement] = [task_statement]
        statements.extend(
            (
                """
                INSERT INTO kg_chunk (
                    id, task_id, chunk_index, chunk_ref, content, status,
                    result, error, attempts, created_at, updated_at
                ) VALUES (
                    $id, $task_id, $chunk_index, $chunk_ref, $content, 'pending',
                    NULL, NULL, 0, $now, $now
                )
                """,
                {
                    "id": chunk.id,
                    "task_id": task.id,
                    "chunk_index": chunk.chunk_index,
                    "chunk_ref": chunk.chunk_ref,
                    "content": chunk.content,
                    "now": now,
                },
            )
            for chunk in chunks
        )
        await self._client.execute(statements)

    async def covered_chunk_indexes(
        self, source_namespace: str, source_database: str, source_table: str, file_key: str
    ) -> set[int]:
        """Chunk indexes of a source file already owned by some task."""
        rows = await self._client.query(
            """
            SELECT DISTINCT c.chunk_index
            FROM kg_chunk c JOIN kg_task t ON t.id = c.task_id
            WHERE t.source_namespace = $ns AND t.source_database = $db
              AND t.source_table = $tbl AND t.file_key = $file_key
            """,
            {"ns": source_namespace, "db": source_database, "tbl": source_table, "file_key": file_key},
        )
        return {row["chunk_index"] for row in rows}

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_task(self, task_id: str) -> TaskRecord | None:
        rows = await self._client.query("SELECT * FROM kg_task WHERE id = $id", {"id": task_id})
        return TaskRecord.model_validate(rows[0]) if rows else None

    async def list_tasks(self, limit: int = 100) -> list[TaskRecord]:
        rows = await self._client.query(
            "SELECT * FROM kg_task ORDER BY created_at DESC, id LIMIT $limit", {"limit": limit}
        )
        return [TaskRecord.model_validate(row) for row in rows]

    async def list_chunks(self, task_id: str) -> list[ChunkRecord]:
        rows = await self._client.query(
            "SELECT * FROM kg_chunk WHERE task_id = $task_id ORDER BY chunk_index", {"task_id": task_id}
        )
        return [ChunkRecord.model_validate(row) for row in rows]

    async def get_chunk(self, task_id: str, chunk_index: int) -> ChunkRecord | None:
        rows = await self._client.query(
            "SELECT * FROM kg_chunk WHERE task_id = $task_id AND chunk_index = $chunk_index",
            {"task_id": task_id, "chunk_index": chunk_index},
        )
        return ChunkRecord.model_validate(rows[0]) if rows else None

    async def completed_chunks(self, task_id: str) -> list[ChunkRecord]:
        rows = await self._client.query(
            """
            SELECT id, task_id, chunk_index, chunk_ref, status, attempts, created_at, updated_at
            FROM kg_chunk
            WHERE task_id = $task_id AND status = 'completed'
            ORDER BY chunk_index
            """,
            {"task_id": task_id},
        )
        return [ChunkRecord.model_validate(row) for row in rows]

    async def cached_result(self, chunk_id: str) -> str | None:
        """Raw extraction text cached on a completed chunk."""
        rows = await self._client.query(
            "SELECT result FROM kg_chunk WHERE id = $id AND status = 'completed'", {"id": chunk_id}
        )
        return rows[0]["result"] if rows else None

    async def chunk_counts(self, task_id: str) -> ChunkCounts:
        rows = await self._client.query(_COUNTS_SQL, {"task_id": task_id})
        return ChunkCounts.model_validate(rows[0]) if rows else ChunkCounts()

    # -------------------------------------------------------------------------
    # Claiming and completion
    # -------------------------------------------------------------------------

    async def next_pending_chunk_ids(self, limit: int = 1) -> list[str]:
        """Pending chunks in submission order (oldest task first)."""
        rows = await self._client.query(
            """
            SELECT c.id
            FROM kg_chunk c JOIN kg_task t ON t.id = c.task_id
            WHERE c.status = 'pending'
            ORDER BY t.created_at, t.id, c.chunk_index
            LIMIT $limit
            """,
            {"limit": limit},
        )
        return [row["id"] for row in rows]

    async def claim_chunk(self, chunk_id: str) -> ChunkRecord | None:
        """
        Atomically move a chunk from pending to progressing.

        Returns:
            The claimed chunk, or None if another claimant got it first
        """
        now = utc_now()
        try:
            rows = await self._client.query(
                """
                UPDATE kg_chunk
                SET status = 'progressing', attempts = attempts + 1, updated_at = $now
                WHERE id = $id AND status = 'pending'
                RETURNING *
                """,
                {"id": chunk_id, "now": now},
            )
        except duckdb.TransactionException as e:
            logger.debug(f"Claim of chunk {chunk_id} lost a write conflict: {e}")
            return None
        if not rows:
            return None

        chunk = ChunkRecord.model_validate(rows[0])
        await self._client.query(
            """
            UPDATE kg_task SET status = 'progressing', updated_at = $now
            WHERE id = $task_id AND status = 'pending'
            """,
            {"task_id": chunk.task_id, "now": now},
        )
        return chunk

    async def complete_chunk(self, chunk_id: str, result: str) -> bool:
        """Cache the raw model output and mark the chunk completed."""
        rows = await self._client.query(
            """
            UPDATE kg_chunk SET status = 'completed', result = $result, error = NULL, updated_at = $now
            WHERE id = $id AND status = 'progressing'
            RETURNING id
            """,
            {"id": chunk_id, "result": result, "now": utc_now()},
        )
        return bool(rows)

    async def fail_chunk(self, chunk_id: str, error: str) -> bool:
        rows = await self._client.query(
            """
            UPDATE kg_chunk SET status = 'failed', error = $error, updated_at = $now
            WHERE id = $id AND status = 'progressing'
            RETURNING id
            """,
            {"id": chunk_id, "error": error, "now": utc_now()},
        )
        return bool(rows)

    async def reconcile_task(self, task_id: str) -> tuple[TaskRecord | None, TaskStatus | None]:
        """
        Re-derive a task's counters and status from its chunk rows.

        Returns:
            (updated task, status before the update); (None, None) if missing
        """
        task = await self.get_task(task_id)
        if task is None:
            return None, None

        counts = await self.chunk_counts(task_id)
        status = counts.status
        error = f"{counts.failed}/{counts.total} chunks failed" if status is TaskStatus.FAILED else None
        updates: dict[str, Any] = {
            "chunks_total": counts.total,
            "chunks_completed": counts.completed,
            "chunks_failed": counts.failed,
            "status": status,
            "error": error,
        }
        await self._client.query(
            """
            UPDATE kg_task
            SET chunks_total = $chunks_total, chunks_completed = $chunks_completed,
                chunks_failed = $chunks_failed, status = $status, error = $error, updated_at = $now
            WHERE id = $id
            """,
            {**updates, "status": status.value, "id": task_id, "now": utc_now()},
        )
        return task.model_copy(update=updates), task.status

    # -------------------------------------------------------------------------
    # Housekeeping and administration
    # -------------------------------------------------------------------------

    async def fail_interrupted_chunks(self, error: str) -> list[str]:
        """
        Fail every chunk left in progressing by a previous process.

        Returns:
            Ids of the affected tasks
        """
        rows = await self._client.query(
            """
            UPDATE kg_chunk SET status = 'failed', error = $error, updated_at = $now
            WHERE status = 'progressing'
            RETURNING task_id
            """,
            {"error": error, "now": utc_now()},
        )
        return sorted({row["task_id"] for row in rows})

    async def unsettled_task_ids(self) -> list[str]:
        """Tasks whose cached status is not terminal."""
        rows = await self._client.query(
            "SELECT id FROM kg_task WHERE status IN ('pending', 'progressing') ORDER BY created_at"
        )
        return [row["id"] for row in rows]

    async def cancel_pending_chunks(self, task_id: str, error: str, chunk_index: int | None = None) -> int:
        """Force pending chunks of a task (or one chunk) to failed."""
        sql = """
            UPDATE kg_chunk SET status = 'failed', error = $error, updated_at = $now
            WHERE task_id = $task_id AND status = 'pending'
        """
        params: dict[str, Any] = {"task_id": task_id, "error": error, "now": utc_now()}
        if chunk_index is not None:
            sql += " AND chunk_index = $chunk_index"
            params["chunk_index"] = chunk_index
        rows = await self._client.query(sql + " RETURNING id", params)
        return len(rows)

    async def reset_failed_chunks(self, task_id: str, chunk_index: int | None = None) -> int:
        """Move failed chunks of a task (or one chunk) back to pending."""
        sql = """
            UPDATE kg_chunk SET status = 'pending', error = NULL, result = NULL, updated_at = $now
            WHERE task_id = $task_id AND status = 'failed'
        """
        params: dict[str, Any] = {"task_id": task_id, "now": utc_now()}
        if chunk_index is not None:
            sql += " AND chunk_index = $chunk_index"
            params["chunk_index"] = chunk_index
        rows = await self._client.query(sql + " RETURNING id", params)
        return len(rows)

    async def delete_task(self, task_id: str) -> None:
        """Delete a task and all of its chunks."""
        await self._client.execute([
            ("DELETE FROM kg_chunk WHERE task_id = $task_id", {"task_id": task_id}),
            ("DELETE FROM kg_task WHERE id = $task_id", {"task_id": task_id}),
        ])

    async def delete_chunk(self, task_id: str, chunk_index: int) -> int:
        rows = await self._client.query(
            "DELETE FROM kg_chunk WHERE task_id = $task_id AND chunk_index = $chunk_index RETURNING id",
            {"task_id": task_id, "chunk_index": chunk_index},
        )
        return len(rows)

    async def completed_tasks_without_build(self) -> list[TaskRecord]:
        """Completed tasks with a graph target and no build task yet."""
        rows = await self._client.query(
            """
            SELECT t.* FROM kg_task t
            WHERE t.status = 'completed'
              AND t.target_namespace IS NOT NULL
              AND t.target_database IS NOT NULL
              AND t.graph_table_base IS NOT NULL
              AND NOT EXISTS (SELECT 1 FROM kg_build_task b WHERE b.source_task_id = t.id)
            ORDER BY t.created_at, t.id
            """
        )
        return [TaskRecord.model_validate(row) for row in rows]

