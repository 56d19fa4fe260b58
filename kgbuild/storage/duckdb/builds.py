"""
Stage 2 Bookkeeping Queries

SQL over kg_build_task and kg_build_chunk. A build task is derived one-to-one
from a completed stage 1 task; each build chunk points at the completed
kg_chunk whose cached text it parses, rather than copying that text.
"""

from __future__ import annotations

import logging
import uuid

import duckdb

from kgbuild.storage.duckdb.client import DuckDBClient, Statement
from kgbuild.types import BuildChunkRecord, BuildTaskRecord, ChunkCounts, ChunkRecord, TaskRecord, TaskStatus
from kgbuild.utils.clock import utc_now

logger = logging.getLogger(__name__)


class BuildStore:
    """Queries over the stage 2 build task and build chunk tables."""

    def __init__(self, client: DuckDBClient) -> None:
        self._client = client

    async def create_build_task(
        self,
        task: TaskRecord,
        chunks: list[ChunkRecord],
    ) -> BuildTaskRecord:
        """
        Materialize a build task and one build chunk per completed chunk.

        Everything commits in one transaction, so a build task always holds
        all of its chunks.
        """
        target = task.target
        if target is None:
            raise ValueError(f"Task {task.id} has no graph target")

        now = utc_now()
        build = BuildTaskRecord(
            id=uuid.uuid4().hex,
            source_task_id=task.id,
            file_key=task.file_key,
            target_namespace=target.namespace,
            target_database=target.database,
            graph_table_base=target.graph_table_base,
            status=TaskStatus.PENDING,
            chunks_total=len(chunks),
            created_at=now,
            updated_at=now,
        )
        statements: list[Statement] = [(
            """
            INSERT INTO kg_build_task (
                id, source_task_id, file_key, target_namespace, target_database, graph_table_base,
                status, chunks_total, chunks_completed, chunks_failed,
                entities_upserted, relations_upserted, error, created_at, updated_at
            ) VALUES (
                $id, $source_task_id, $file_key, $target_namespace, $target_database, $graph_table_base,
                'pending', $chunks_total, 0, 0, 0, 0, NULL, $now, $now
            )
            """,
            {
                "id": build.id,
                "source_task_id": build.source_task_id,
                "file_key": build.file_key,
                "target_namespace": build.target_namespace,
                "target_database": build.target_database,
                "graph_table_base": build.graph_table_base,
                "chunks_total": build.chunks_total,
                "now": now,
            },
        )]
        for chunk in chunks:
            statements.append((
                """
                INSERT INTO kg_build_chunk (
                    id, build_task_id, source_chunk_id, chunk_index, chunk_ref, status,
                    entities_count, relations_count, error, created_at, updated_at
                ) VALUES (
                    $id, $build_task_id, $source_chunk_id, $chunk_index, $chunk_ref, 'pending',
                    0, 0, NULL, $now, $now
                )
                """,
                {
                    "id": uuid.uuid4().hex,
                    "build_task_id": build.id,
                    "source_chunk_id": chunk.id,
                    "chunk_index": chunk.chunk_index,
                    "chunk_ref": chunk.chunk_ref,
                    "now": now,
                },
            ))

        await self._client.execute(statements)
        return build

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_build_task(self, build_task_id: str) -> BuildTaskRecord | None:
        rows = await self._client.query("SELECT * FROM kg_build_task WHERE id = $id", {"id": build_task_id})
        return BuildTaskRecord.model_validate(rows[0]) if rows else None

    async def build_task_for_source(self, task_id: str) -> BuildTaskRecord | None:
        rows = await self._client.query(
            "SELECT * FROM kg_build_task WHERE source_task_id = $task_id", {"task_id": task_id}
        )
        return BuildTaskRecord.model_validate(rows[0]) if rows else None

    async def list_build_tasks(self, limit: int = 100) -> list[BuildTaskRecord]:
        rows = await self._client.query(
            "SELECT * FROM kg_build_task ORDER BY created_at DESC, id LIMIT $limit", {"limit": limit}
        )
        return [BuildTaskRecord.model_validate(row) for row in rows]

    async def list_build_chunks(self, build_task_id: str) -> list[BuildChunkRecord]:
        rows = await self._client.query(
            "SELECT * FROM kg_build_chunk WHERE build_task_id = $id ORDER BY chunk_index",
            {"id": build_task_id},
        )
        return [BuildChunkRecord.model_validate(row) for row in rows]

    async def next_pending_build_chunks(self, limit: int) -> list[BuildChunkRecord]:
        """Pending build chunks, oldest build task first."""
        rows = await self._client.query(
            """
            SELECT c.* FROM kg_build_chunk c JOIN kg_build_task t ON t.id = c.build_task_id
            WHERE c.status = 'pending'
            ORDER BY t.created_at, t.id, c.chunk_index
            LIMIT $limit
            """,
            {"limit": limit},
        )
        return [BuildChunkRecord.model_validate(row) for row in rows]

    async def chunk_counts(self, build_task_id: str) -> tuple[ChunkCounts, int, int]:
        """Status counts plus entity and relation totals of a build task."""
        rows = await self._client.query(
            """
            SELECT
                count(*) AS total,
                count(*) FILTER (WHERE status = 'completed') AS completed,
                count(*) FILTER (WHERE status = 'failed') AS failed,
                count(*) FILTER (WHERE status = 'progressing') AS progressing,
                count(*) FILTER (WHERE status = 'pending') AS pending,
                coalesce(sum(entities_count), 0) AS entities,
                coalesce(sum(relations_count), 0) AS relations
            FROM kg_build_chunk
            WHERE build_task_id = $id
            """,
            {"id": build_task_id},
        )
        row = rows[0]
        counts = ChunkCounts(
            total=row["total"],
            completed=row["completed"],
            failed=row["failed"],
            progressing=row["progressing"],
            pending=row["pending"],
        )
        return counts, int(row["entities"]), int(row["relations"])

    # -------------------------------------------------------------------------
    # Claiming and completion
    # -------------------------------------------------------------------------

    async def claim_build_chunk(self, build_chunk_id: str) -> bool:
        now = utc_now()
        try:
            rows = await self._client.query(
                """
                UPDATE kg_build_chunk SET status = 'progressing', updated_at = $now
                WHERE id = $id AND status = 'pending'
                RETURNING build_task_id
                """,
                {"id": build_chunk_id, "now": now},
            )
        except duckdb.TransactionException as e:
            logger.debug(f"Claim of build chunk {build_chunk_id} lost a write conflict: {e}")
            return False
        if not rows:
            return False
        await self._client.query(
            """
            UPDATE kg_build_task SET status = 'progressing', updated_at = $now
            WHERE id = $id AND status = 'pending'
            """,
            {"id": rows[0]["build_task_id"], "now": now},
        )
        return True

    async def complete_build_chunk(self, build_chunk_id: str, entities: int, relations: int) -> bool:
        rows = await self._client.query(
            """
            UPDATE kg_build_chunk
            SET status = 'completed', entities_count = $entities, relations_count = $relations,
                error = NULL, updated_at = $now
            WHERE id = $id AND status = 'progressing'
            RETURNING id
            """,
            {"id": build_chunk_id, "entities": entities, "relations": relations, "now": utc_now()},
        )
        return bool(rows)

    async def fail_build_chunk(self, build_chunk_id: str, error: str) -> bool:
        rows = await self._client.query(
            """
            UPDATE kg_build_chunk SET status = 'failed', error = $error, updated_at = $now
            WHERE id = $id AND status = 'progressing'
            RETURNING id
            """,
            {"id": build_chunk_id, "error": error, "now": utc_now()},
        )
        return bool(rows)

    async def reconcile_build_task(
        self, build_task_id: str
    ) -> tuple[BuildTaskRecord | None, TaskStatus | None]:
        """
        Re-derive a build task's counters, totals and status from its chunks.

        Returns:
            (updated build task, status before the update)
        """
        build = await self.get_build_task(build_task_id)
        if build is None:
            return None, None

        counts, entities, relations = await self.chunk_counts(build_task_id)
        status = counts.status
        error = f"{counts.failed}/{counts.total} chunks failed" if status is TaskStatus.FAILED else None
        updates = {
            "chunks_total": counts.total,
            "chunks_completed": counts.completed,
            "chunks_failed": counts.failed,
            "entities_upserted": entities,
            "relations_upserted": relations,
            "status": status,
            "error": error,
        }
        await self._client.query(
            """
            UPDATE kg_build_task
            SET chunks_total = $chunks_total, chunks_completed = $chunks_completed,
                chunks_failed = $chunks_failed, entities_upserted = $entities_upserted,
                relations_upserted = $relations_upserted, status = $status, error = $error,
                updated_at = $now
            WHERE id = $id
            """,
            {**updates, "status": status.value, "id": build_task_id, "now": utc_now()},
        )
        return build.model_copy(update=updates), build.status

    # -------------------------------------------------------------------------
    # Housekeeping and administration
    # -------------------------------------------------------------------------

    async def fail_interrupted_build_chunks(self, error: str) -> list[str]:
        """Fail build chunks left in progressing; returns affected build task ids."""
        rows = await self._client.query(
            """
            UPDATE kg_build_chunk SET status = 'failed', error = $error, updated_at = $now
            WHERE status = 'progressing'
            RETURNING build_task_id
            """,
            {"error": error, "now": utc_now()},
        )
        return sorted({row["build_task_id"] for row in rows})

    async def unsettled_build_task_ids(self) -> list[str]:
        rows = await self._client.query(
            "SELECT id FROM kg_build_task WHERE status IN ('pending', 'progressing') ORDER BY created_at"
        )
        return [row["id"] for row in rows]

    async def completed_build_tasks(self) -> list[BuildTaskRecord]:
        rows = await self._client.query(
            "SELECT * FROM kg_build_task WHERE status = 'completed' ORDER BY created_at"
        )
        return [BuildTaskRecord.model_validate(row) for row in rows]

    async def reset_failed_build_chunks(self, build_task_id: str) -> int:
        rows = await self._client.query(
            """
            UPDATE kg_build_chunk SET status = 'pending', error = NULL, updated_at = $now
            WHERE build_task_id = $id AND status = 'failed'
            RETURNING id
            """,
            {"id": build_task_id, "now": utc_now()},
        )
        return len(rows)

    def delete_statements(self, build_task_id: str) -> list[Statement]:
        return [
            ("DELETE FROM kg_build_chunk WHERE build_task_id = $id", {"id": build_task_id}),
            ("DELETE FROM kg_build_task WHERE id = $id", {"id": build_task_id}),
        ]

    async def delete_build_task(self, build_task_id: str) -> None:
        await self._client.execute(self.delete_statements(build_task_id))

    async def delete_pipeline(self, build: BuildTaskRecord) -> None:
        """Delete a build task together with the stage 1 task it came from."""
        await self._client.execute([
            *self.delete_statements(build.id),
            ("DELETE FROM kg_chunk WHERE task_id = $task_id", {"task_id": build.source_task_id}),
            ("DELETE FROM kg_task WHERE id = $task_id", {"task_id": build.source_task_id}),
        ])
