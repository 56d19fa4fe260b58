"""
Tests for the stage 2 graph build scheduler.

Tests cover:
- Build task materialization from completed extraction tasks
- Parsing cached text into graph rows
- Cache misses and unreachable stores
- Start-up housekeeping
"""

from unittest.mock import AsyncMock, patch

import duckdb
import pytest

from kgbuild.errors import StoreUnavailableError
from kgbuild.events import EventBus
from kgbuild.ingestion.submission import TaskSubmitter
from kgbuild.ingestion.upsert import GraphUpsertEngine
from kgbuild.scheduler import ExtractionScheduler, GraphBuildScheduler
from kgbuild.storage.duckdb.builds import BuildStore
from kgbuild.storage.duckdb.tasks import TaskStore
from kgbuild.storage.schema import SchemaProvisioner
from kgbuild.types import EventKind, SubmitTaskParams, TaskStatus

from conftest import FakeLLM, entity_line, extraction_output, relation_line, seed_source

RESPONSES = {
    "Marie": extraction_output(
        entity_line("Marie Curie", "Person", "Physicist"),
        entity_line("Sorbonne", "Organization", "University in Paris"),
        relation_line("Marie Curie", "Sorbonne", "employment", "She taught at the Sorbonne"),
    ),
    "Pierre": extraction_output(
        entity_line("Pierre Curie", "Person", "Physicist"),
        entity_line("Marie Curie", "Person", "Wife of Pierre Curie"),
    ),
}

ITEMS = [f"Item {i:02d}." for i in range(60)]
ITEM_RESPONSES = {
    item: extraction_output(entity_line(item.rstrip("."), "Concept", f"Catalogue entry {item}"))
    for item in ITEMS
}


async def extracted_task(client, contents, responses=RESPONSES):
    """Submit contents and run stage 1 to completion."""
    await seed_source(client, contents)
    result = await TaskSubmitter(client, TaskStore(client)).submit(SubmitTaskParams(
        file_key="doc.md", source_namespace="acme", source_database="docs", source_table="chunks",
    ))
    await ExtractionScheduler(TaskStore(client), EventBus(), lambda config: FakeLLM(responses)).run_until_idle()
    return result.task_id


def make_scheduler(client, events=None):
    return GraphBuildScheduler(
        client,
        TaskStore(client),
        BuildStore(client),
        SchemaProvisioner(client),
        GraphUpsertEngine(client),
        events or EventBus(),
    )


class TestMaterialize:
    """Tests for build task creation."""

    @pytest.mark.asyncio
    async def test_build_task_per_completed_task(self, client):
        """A completed task gets one build task with one chunk per completed chunk."""
        task_id = await extracted_task(client, ["Marie taught at the Sorbonne.", "Pierre married her."])
        scheduler = make_scheduler(client)

        assert await scheduler.materialize_build_tasks() == 1
        assert await scheduler.materialize_build_tasks() == 0

        builds = BuildStore(client)
        build = await builds.build_task_for_source(task_id)
        assert build.status == TaskStatus.PENDING
        assert build.chunks_total == 2
        assert build.target.key == "acme/docs/kg"

        chunks = await builds.list_build_chunks(build.id)
        assert [c.chunk_ref for c in chunks] == ["chunks:doc.md:0", "chunks:doc.md:1"]

    @pytest.mark.asyncio
    async def test_graph_schema_provisioned(self, client):
        """Materializing provisions the target's graph tables."""
        await extracted_task(client, ["Marie taught at the Sorbonne."])
        await make_scheduler(client).materialize_build_tasks()
        assert await client.table_exists("acme", "docs", "kg_entity")
        assert await client.table_exists("acme", "docs", "kg_relation_chunks")

    @pytest.mark.asyncio
    async def test_failed_task_not_built(self, client):
        """Tasks that did not complete get no build task."""
        await extracted_task(client, ["Marie taught at the Sorbonne."], {"Marie": RuntimeError("down")})
        scheduler = make_scheduler(client)
        assert await scheduler.run_once() is False
        assert await BuildStore(client).list_build_tasks() == []

    @pytest.mark.asyncio
    async def test_large_build_written_in_one_transaction(self, client):
        """The build task row and all of its build chunks go in with a single write."""
        task_id = await extracted_task(client, ITEMS, ITEM_RESPONSES)
        scheduler = make_scheduler(client)
        execute = client.execute
        writes = []

        async def recording_execute(statements):
            if any("INSERT INTO kg_build_chunk" in sql for sql, _ in statements):
                writes.append(len(statements))
            await execute(statements)

        with patch.object(client, "execute", side_effect=recording_execute):
            assert await scheduler.materialize_build_tasks() == 1

        assert writes == [len(ITEMS) + 1]
        build = await BuildStore(client).build_task_for_source(task_id)
        assert len(await BuildStore(client).list_build_chunks(build.id)) == len(ITEMS)

    @pytest.mark.asyncio
    async def test_failed_write_leaves_no_partial_build(self, client):
        """After a failed write and a restart, every completed chunk is still built."""
        task_id = await extracted_task(client, ITEMS, ITEM_RESPONSES)
        scheduler = make_scheduler(client)
        execute = client.execute

        async def failing_execute(statements):
            if any("INSERT INTO kg_build_chunk" in sql for sql, _ in statements):
                statements = [*statements, ("INSERT INTO kg_missing_table VALUES (1)", None)]
            await execute(statements)

        with patch.object(client, "execute", side_effect=failing_execute):
            with pytest.raises(duckdb.Error):
                await scheduler.materialize_build_tasks()

        builds = BuildStore(client)
        assert await builds.list_build_tasks() == []
        assert await client.query("SELECT id FROM kg_build_chunk") == []

        await scheduler.cleanup()
        await scheduler.run_until_idle()

        build = await builds.build_task_for_source(task_id)
        assert build.status == TaskStatus.COMPLETED
        assert build.chunks_total == len(ITEMS)
        assert build.entities_upserted == len(ITEMS)
        rows = await client.query_in_database("acme", "docs", "SELECT id FROM kg_entity")
        assert len(rows) == len(ITEMS)


class TestProcess:
    """Tests for turning cached text into graph rows."""

    @pytest.mark.asyncio
    async def test_build_completes_with_counts(self, client):
        """Every build chunk is merged and the build completes once."""
        task_id = await extracted_task(client, ["Marie taught at the Sorbonne.", "Pierre married her."])
        events = EventBus()
        received = []
        events.subscribe(None, received.append)

        scheduler = make_scheduler(client, events)
        assert await scheduler.run_until_idle() == 2

        build = await BuildStore(client).build_task_for_source(task_id)
        assert build.status == TaskStatus.COMPLETED
        assert (build.chunks_completed, build.chunks_failed) == (2, 0)
        assert build.entities_upserted == 4
        assert build.relations_upserted == 1

        completed = [e for e in received if e.kind == EventKind.BUILD_COMPLETED]
        assert len(completed) == 1
        assert completed[0].target.key == "acme/docs/kg"
        assert completed[0].entities_total == 4

        rows = await client.query_in_database(
            "acme", "docs", "SELECT id, description, source_ids FROM kg_entity ORDER BY id"
        )
        by_id = {row["id"]: row for row in rows}
        assert sorted(by_id) == ["Marie_Curie", "Pierre_Curie", "Sorbonne"]
        assert by_id["Marie_Curie"]["source_ids"] == ["chunks:doc.md:0", "chunks:doc.md:1"]
        assert by_id["Marie_Curie"]["description"].startswith("Physicist")

    @pytest.mark.asyncio
    async def test_reprocessing_chunk_is_idempotent(self, client):
        """Merging the same chunk twice leaves the rows unchanged."""
        await extracted_task(client, ["Marie taught at the Sorbonne."])
        scheduler = make_scheduler(client)
        await scheduler.run_until_idle()
        before = await client.query_in_database(
            "acme", "docs", "SELECT id, description, source_ids FROM kg_entity ORDER BY id"
        )

        await client.query("UPDATE kg_build_chunk SET status = 'pending'")
        await scheduler.run_until_idle()
        after = await client.query_in_database(
            "acme", "docs", "SELECT id, description, source_ids FROM kg_entity ORDER BY id"
        )
        assert after == before

    @pytest.mark.asyncio
    async def test_cache_miss_fails_build_chunk(self, client):
        """A build chunk whose cached text vanished fails with a clear error."""
        task_id = await extracted_task(client, ["Marie taught at the Sorbonne."])
        scheduler = make_scheduler(client)
        await scheduler.materialize_build_tasks()
        await client.query("UPDATE kg_chunk SET result = NULL")

        await scheduler.run_until_idle()

        builds = BuildStore(client)
        build = await builds.build_task_for_source(task_id)
        assert build.status == TaskStatus.FAILED
        chunk = (await builds.list_build_chunks(build.id))[0]
        assert "No cached extraction text" in chunk.error

    @pytest.mark.asyncio
    async def test_unreachable_store_leaves_chunk_pending(self, client):
        """The target is probed before claiming, so nothing is marked failed."""
        task_id = await extracted_task(client, ["Marie taught at the Sorbonne."])
        scheduler = make_scheduler(client)
        await scheduler.materialize_build_tasks()

        with patch.object(client, "table_exists", AsyncMock(side_effect=StoreUnavailableError("locked"))):
            with pytest.raises(StoreUnavailableError):
                await scheduler.run_once()

        builds = BuildStore(client)
        build = await builds.build_task_for_source(task_id)
        chunks = await builds.list_build_chunks(build.id)
        assert chunks[0].status == TaskStatus.PENDING

        await scheduler.run_until_idle()
        build = await builds.build_task_for_source(task_id)
        assert build.status == TaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_parse_of_empty_output_completes(self, client):
        """A chunk with nothing extracted completes with zero counts."""
        task_id = await extracted_task(client, ["Nothing to see here."])
        await make_scheduler(client).run_until_idle()

        build = await BuildStore(client).build_task_for_source(task_id)
        assert build.status == TaskStatus.COMPLETED
        assert build.entities_upserted == 0


class TestCleanup:
    """Tests for the start-up sweep."""

    @pytest.mark.asyncio
    async def test_completed_pipeline_deleted(self, client):
        """Completed build tasks are removed together with their source task."""
        task_id = await extracted_task(client, ["Marie taught at the Sorbonne."])
        scheduler = make_scheduler(client)
        await scheduler.run_until_idle()

        await scheduler.cleanup()

        assert await BuildStore(client).build_task_for_source(task_id) is None
        assert await TaskStore(client).get_task(task_id) is None
        rows = await client.query_in_database("acme", "docs", "SELECT count(*) AS n FROM kg_entity")
        assert rows[0]["n"] == 2

    @pytest.mark.asyncio
    async def test_interrupted_build_chunk_failed(self, client):
        """Build chunks left progressing are failed on start-up."""
        task_id = await extracted_task(client, ["Marie taught at the Sorbonne."])
        scheduler = make_scheduler(client)
        await scheduler.materialize_build_tasks()

        builds = BuildStore(client)
        build = await builds.build_task_for_source(task_id)
        chunk = (await builds.list_build_chunks(build.id))[0]
        assert await builds.claim_build_chunk(chunk.id)

        await scheduler.cleanup()

        build = await builds.build_task_for_source(task_id)
        assert build.status == TaskStatus.FAILED
        chunk = (await builds.list_build_chunks(build.id))[0]
        assert chunk.status == TaskStatus.FAILED
        assert chunk.error.startswith("interrupted")
