"""Tests for the kgbuild command-line interface."""

import asyncio

import pytest
from typer.testing import CliRunner

from kgbuild.cli import app
from kgbuild.storage.duckdb.client import DuckDBClient

from conftest import seed_source

runner = CliRunner()


@pytest.fixture
def data_dir(tmp_path, monkeypatch):
    monkeypatch.delenv("KGBUILD_DATA_DIR", raising=False)
    return tmp_path / "data"


def invoke(data_dir, *args):
    return runner.invoke(app, ["--data-dir", str(data_dir), *args])


def seed(data_dir, contents):
    async def _seed():
        client = DuckDBClient(data_dir)
        await client.connect()
        try:
            await seed_source(client, contents)
        finally:
            await client.close()

    asyncio.run(_seed())


class TestCLI:
    """Tests for CLI commands against a temporary data directory."""

    def test_status_empty(self, data_dir):
        result = invoke(data_dir, "status")
        assert result.exit_code == 0
        assert "No tasks" in result.output

    def test_build_status_empty(self, data_dir):
        result = invoke(data_dir, "build-status")
        assert result.exit_code == 0
        assert "No build tasks" in result.output

    def test_submit_and_status(self, data_dir):
        seed(data_dir, ["first", "second"])

        result = invoke(data_dir, "submit", "doc.md", "-N", "acme", "-D", "docs", "-t", "chunks")
        assert result.exit_code == 0
        assert "Task Created" in result.output

        result = invoke(data_dir, "status")
        assert result.exit_code == 0
        assert "Extraction Tasks" in result.output

        result = invoke(data_dir, "submit", "doc.md", "-N", "acme", "-D", "docs", "-t", "chunks")
        assert result.exit_code == 0
        assert "already covered" in result.output

    def test_submit_missing_table(self, data_dir):
        result = invoke(data_dir, "submit", "doc.md", "-N", "acme", "-D", "docs", "-t", "chunks")
        assert result.exit_code == 1
        assert "NoSourceChunksError" in result.output

    def test_schema_then_embedding_status(self, data_dir):
        result = invoke(data_dir, "embedding-status")
        assert result.exit_code == 0
        assert "No graphs provisioned" in result.output

        result = invoke(data_dir, "schema", "-N", "acme", "-D", "docs")
        assert result.exit_code == 0
        assert "Provisioned acme/docs/kg" in result.output
        assert "kg_entity" in result.output

        result = invoke(data_dir, "embedding-status")
        assert result.exit_code == 0
        assert "Embeddings" in result.output

    def test_cancel_then_retry(self, data_dir):
        seed(data_dir, ["first"])
        invoke(data_dir, "submit", "doc.md", "-N", "acme", "-D", "docs", "-t", "chunks")

        async def _task_id():
            client = DuckDBClient(data_dir)
            await client.connect()
            try:
                rows = await client.query("SELECT id FROM kg_task")
            finally:
                await client.close()
            return rows[0]["id"]

        task_id = asyncio.run(_task_id())

        result = invoke(data_dir, "cancel", task_id)
        assert result.exit_code == 0
        assert "failed" in result.output

        result = invoke(data_dir, "retry", task_id)
        assert result.exit_code == 0
        assert "pending" in result.output

        result = invoke(data_dir, "remove", task_id)
        assert result.exit_code == 0
        assert "Removed task" in result.output

    def test_retry_unknown_task(self, data_dir):
        result = invoke(data_dir, "retry", "does-not-exist")
        assert result.exit_code == 1
        assert "TaskNotFoundError" in result.output

    def test_invalid_name_rejected(self, data_dir):
        result = invoke(data_dir, "schema", "-N", "../etc", "-D", "docs")
        assert result.exit_code != 0
