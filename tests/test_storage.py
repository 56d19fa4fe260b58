"""
Tests for the DuckDB client and schema provisioning.

Tests cover:
- Scoped database switching (restored on success and error)
- Connectivity errors
- Idempotent provisioning and the graph target registry
- Pending chunk ordering
"""

import duckdb
import pytest

from kgbuild.errors import InvalidIdentifierError, StoreUnavailableError
from kgbuild.ingestion.submission import TaskSubmitter
from kgbuild.storage.duckdb.client import DuckDBClient
from kgbuild.storage.duckdb.tasks import TaskStore
from kgbuild.storage.schema import SchemaProvisioner, ensure_system_schema
from kgbuild.types import GraphTableNames, GraphTarget, SubmitTaskParams

from conftest import seed_source


class TestDuckDBClient:
    """Tests for DuckDBClient."""

    @pytest.mark.asyncio
    async def test_connect_creates_home_database(self, tmp_path):
        """connect() creates the data directory and the home file."""
        client = DuckDBClient(tmp_path / "nested" / "data")
        await client.connect()
        try:
            assert client.is_connected
            assert client.home_path.exists()
            assert client.home_path.name == "kg_home.duckdb"
        finally:
            await client.close()
        assert not client.is_connected

    @pytest.mark.asyncio
    async def test_not_connected_raises_store_unavailable(self, tmp_path):
        """Queries before connect() report the store as unavailable."""
        client = DuckDBClient(tmp_path)
        with pytest.raises(StoreUnavailableError):
            await client.query("SELECT 1")

    def test_invalid_names_rejected(self, tmp_path):
        """Namespace and database names must be safe directory names."""
        client = DuckDBClient(tmp_path)
        with pytest.raises(InvalidIdentifierError):
            client.database_path("../escape", "db")

    @pytest.mark.asyncio
    async def test_knowledge_base_file_layout(self, client):
        """Knowledge-base tables live in <data_dir>/<ns>/<db>.duckdb."""
        await client.execute_in_database("acme", "docs", [("CREATE TABLE t (x INTEGER)", None)])
        assert client.database_path("acme", "docs").exists()
        assert await client.table_exists("acme", "docs", "t")
        assert not await client.table_exists("acme", "docs", "missing")
        assert not await client.table_exists("acme", "other", "t")

    @pytest.mark.asyncio
    async def test_use_database_restores_catalog(self, client):
        """The previous catalog is restored after the block."""
        conn = client._get_conn()
        with client.use_database(conn, "acme", "docs") as inner:
            assert inner.execute("SELECT current_database()").fetchone()[0] == "acme__docs"
        assert conn.execute("SELECT current_database()").fetchone()[0] == "kg_home"

    @pytest.mark.asyncio
    async def test_use_database_restores_catalog_on_error(self, client):
        """The previous catalog is restored when the block raises."""
        conn = client._get_conn()
        with pytest.raises(duckdb.Error):
            with client.use_database(conn, "acme", "docs") as inner:
                inner.execute("SELECT * FROM no_such_table")
        assert conn.execute("SELECT current_database()").fetchone()[0] == "kg_home"

    @pytest.mark.asyncio
    async def test_failed_transaction_rolls_back(self, client):
        """A failing statement rolls back the whole transaction."""
        await client.execute_in_database("acme", "docs", [("CREATE TABLE t (x INTEGER)", None)])
        with pytest.raises(duckdb.Error):
            await client.execute_in_database("acme", "docs", [
                ("INSERT INTO t VALUES (1)", None),
                ("INSERT INTO missing VALUES (2)", None),
            ])
        rows = await client.query_in_database("acme", "docs", "SELECT count(*) AS n FROM t")
        assert rows[0]["n"] == 0

    @pytest.mark.asyncio
    async def test_home_queries_unaffected_by_switch(self, client):
        """Home tables resolve after a knowledge-base call."""
        await client.query_in_database("acme", "docs", "SELECT 1 AS one")
        rows = await client.query("SELECT count(*) AS n FROM kg_task")
        assert rows[0]["n"] == 0


class TestSchemaProvisioner:
    """Tests for SchemaProvisioner."""

    @pytest.mark.asyncio
    async def test_creates_four_tables(self, client):
        """Provisioning creates the four suffixed tables."""
        target = GraphTarget(namespace="acme", database="docs", graph_table_base="people")
        tables = await SchemaProvisioner(client).create_graph_schema(target)

        assert tables == GraphTableNames.from_base("people")
        assert tables.all() == ["people_entity", "people_relates", "people_entity_chunks", "people_relation_chunks"]
        for name in tables.all():
            assert await client.table_exists("acme", "docs", name)

    @pytest.mark.asyncio
    async def test_repeat_is_safe_and_keeps_data(self, client):
        """Re-provisioning in a new process neither fails nor drops rows."""
        target = GraphTarget(namespace="acme", database="docs")
        await SchemaProvisioner(client).create_graph_schema(target)
        await client.execute_in_database("acme", "docs", [(
            "INSERT INTO kg_entity (id, entity_name, source_ids, file_keys) VALUES ('A', 'A', [], [])", None,
        )])

        fresh = SchemaProvisioner(client)
        await fresh.create_graph_schema(target)
        await fresh.create_graph_schema(target)
        rows = await client.query_in_database("acme", "docs", "SELECT id FROM kg_entity")
        assert [r["id"] for r in rows] == ["A"]

    @pytest.mark.asyncio
    async def test_targets_registered_once(self, client):
        """Provisioned targets are recorded in the home database once each."""
        first = GraphTarget(namespace="acme", database="docs")
        second = GraphTarget(namespace="acme", database="docs", graph_table_base="alt")
        await SchemaProvisioner(client).create_graph_schema(first)
        await SchemaProvisioner(client).create_graph_schema(first)
        await SchemaProvisioner(client).create_graph_schema(second)

        targets = await SchemaProvisioner(client).registered_targets()
        assert len(targets) == 2
        assert set(targets) == {first, second}

    @pytest.mark.asyncio
    async def test_system_schema_idempotent(self, client):
        """The bookkeeping DDL can run on every start."""
        await ensure_system_schema(client)
        rows = await client.query("SELECT count(*) AS n FROM kg_build_task")
        assert rows[0]["n"] == 0

    def test_invalid_table_base_rejected(self):
        """Graph-table bases are interpolated into SQL and must be identifiers."""
        with pytest.raises(ValueError):
            GraphTarget(namespace="acme", database="docs", graph_table_base="kg; DROP TABLE x")


class TestTaskStore:
    """Tests for TaskStore claim ordering."""

    @pytest.mark.asyncio
    async def test_next_pending_chunks_in_order(self, client):
        """Pending chunks come back in chunk order, up to the limit, without claimed ones."""
        await seed_source(client, ["first", "second", "third"])
        tasks = TaskStore(client)
        result = await TaskSubmitter(client, tasks).submit(SubmitTaskParams(
            file_key="doc.md", source_namespace="acme", source_database="docs", source_table="chunks",
        ))
        chunks = await tasks.list_chunks(result.task_id)

        assert await tasks.next_pending_chunk_ids(2) == [chunks[0].id, chunks[1].id]

        assert await tasks.claim_chunk(chunks[0].id) is not None
        assert await tasks.next_pending_chunk_ids(5) == [chunks[1].id, chunks[2].id]
