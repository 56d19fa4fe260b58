"""
Tests for GraphUpsertEngine.

Tests cover:
- Idempotent merge of entities and relations (provenance and descriptions)
- Description accumulation across chunks
- Type and placeholder handling
- Folding and batch packing
"""

import duckdb
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from kgbuild.errors import UpsertError
from kgbuild.ingestion.parser import parse_extraction_output
from kgbuild.ingestion.upsert import GraphUpsertEngine, fold_entities, fold_relations
from kgbuild.storage.schema import SchemaProvisioner
from kgbuild.types import GraphTableNames, GraphTarget, ParsedEntity
from kgbuild.utils.embedding_text import DESCRIPTION_SEPARATOR

from conftest import entity_line, extraction_output, relation_line

TARGET = GraphTarget(namespace="acme", database="docs")
TABLES = GraphTableNames.from_base("kg")

CURIE = extraction_output(
    entity_line("Marie Curie", "Person", "Physicist who studied radioactivity"),
    relation_line("Marie Curie", "Pierre Curie", "marriage, research", "Married and worked together"),
)


async def _rows(client, table):
    return await client.query_in_database(
        TARGET.namespace, TARGET.database, f"SELECT * FROM {table} ORDER BY id"
    )


@pytest.fixture
def engine(client):
    return GraphUpsertEngine(client, batch_size=30)


async def _provision(client):
    await SchemaProvisioner(client).create_graph_schema(TARGET)


class TestEntityMerge:
    """Entity rows after one or more upserts."""

    @pytest.mark.asyncio
    async def test_same_chunk_twice_is_idempotent(self, client, engine):
        """Applying a chunk twice leaves one row with single-application values."""
        await _provision(client)
        parsed = parse_extraction_output(CURIE)

        await engine.upsert(TARGET, parsed, "chunks:doc.md:0", "doc.md")
        first = await _rows(client, TABLES.entity)
        await engine.upsert(TARGET, parsed, "chunks:doc.md:0", "doc.md")
        second = await _rows(client, TABLES.entity)

        assert [r["id"] for r in second] == ["Marie_Curie", "Pierre_Curie"]
        marie = second[0]
        assert marie["source_ids"] == ["chunks:doc.md:0"]
        assert marie["file_keys"] == ["doc.md"]
        assert marie["description"] == "Physicist who studied radioactivity"
        assert [r["description"] for r in first] == [r["description"] for r in second]

    @pytest.mark.asyncio
    async def test_descriptions_accumulate_across_chunks(self, client, engine):
        """A second chunk appends its description and unions provenance."""
        await _provision(client)
        await engine.upsert(
            TARGET,
            parse_extraction_output(entity_line("Marie Curie", "Person", "Physicist")),
            "chunks:a.md:0",
            "a.md",
        )
        await engine.upsert(
            TARGET,
            parse_extraction_output(entity_line("Marie Curie", "Person", "Won two Nobel prizes")),
            "chunks:b.md:4",
            "b.md",
        )

        [marie] = await _rows(client, TABLES.entity)
        assert marie["description"] == f"Physicist{DESCRIPTION_SEPARATOR}Won two Nobel prizes"
        assert marie["source_ids"] == ["chunks:a.md:0", "chunks:b.md:4"]
        assert marie["file_keys"] == ["a.md", "b.md"]

    @pytest.mark.asyncio
    async def test_entity_chunks_provenance(self, client, engine):
        """The entity-chunks table lists every contributing chunk once."""
        await _provision(client)
        parsed = parse_extraction_output(entity_line("Marie Curie", "Person", "Physicist"))
        for ref in ("chunks:doc.md:0", "chunks:doc.md:1", "chunks:doc.md:0"):
            await engine.upsert(TARGET, parsed, ref, "doc.md")

        rows = await client.query_in_database(
            TARGET.namespace, TARGET.database, f"SELECT * FROM {TABLES.entity_chunks}"
        )
        assert len(rows) == 1
        assert rows[0]["entity_name"] == "Marie_Curie"
        assert rows[0]["chunk_ids"] == ["chunks:doc.md:0", "chunks:doc.md:1"]

    @pytest.mark.asyncio
    async def test_specific_type_replaces_other(self, client, engine):
        """A placeholder typed Other takes the first specific type, which then sticks."""
        await _provision(client)
        await engine.upsert(TARGET, parse_extraction_output(entity_line("Rhine", "", "A river")), "c:f:0", "f")
        await engine.upsert(TARGET, parse_extraction_output(entity_line("Rhine", "Location", "In Europe")), "c:f:1", "f")
        await engine.upsert(TARGET, parse_extraction_output(entity_line("Rhine", "Concept", "Odd")), "c:f:2", "f")

        [rhine] = await _rows(client, TABLES.entity)
        assert rhine["entity_type"] == "Location"

    @pytest.mark.asyncio
    async def test_placeholder_takes_display_name(self, client, engine):
        """An endpoint placeholder gets its display name once the entity is extracted."""
        await _provision(client)
        await engine.upsert(TARGET, parse_extraction_output(CURIE), "c:f:0", "f")
        [_, pierre] = await _rows(client, TABLES.entity)
        assert pierre["entity_name"] == "Pierre_Curie"
        assert pierre["entity_type"] == "Other"

        await engine.upsert(
            TARGET, parse_extraction_output(entity_line("Pierre Curie", "Person", "Physicist")), "c:f:1", "f"
        )
        [_, pierre] = await _rows(client, TABLES.entity)
        assert pierre["entity_name"] == "Pierre Curie"
        assert pierre["entity_type"] == "Person"
        assert pierre["description"] == "Physicist"

    @pytest.mark.asyncio
    async def test_new_contribution_clears_embedding(self, client, engine):
        """A new chunk clears the embedding; a repeated chunk keeps it."""
        await _provision(client)
        parsed = parse_extraction_output(entity_line("A", "Concept", "first"))
        await engine.upsert(TARGET, parsed, "c:f:0", "f")
        await client.execute_in_database(TARGET.namespace, TARGET.database, [(
            f"UPDATE {TABLES.entity} SET embedding = [1.0, 2.0], embedding_hash = 'h'", None,
        )])

        await engine.upsert(TARGET, parsed, "c:f:0", "f")
        [row] = await _rows(client, TABLES.entity)
        assert row["embedding"] == [1.0, 2.0]

        await engine.upsert(TARGET, parse_extraction_output(entity_line("A", "Concept", "second")), "c:f:1", "f")
        [row] = await _rows(client, TABLES.entity)
        assert row["embedding"] is None
        assert row["embedding_hash"] is None


class TestRelationMerge:
    """Relation rows after one or more upserts."""

    @pytest.mark.asyncio
    async def test_same_chunk_twice_is_idempotent(self, client, engine):
        """Re-applying a chunk does not duplicate relation provenance or text."""
        await _provision(client)
        parsed = parse_extraction_output(CURIE)
        await engine.upsert(TARGET, parsed, "c:f:0", "f")
        await engine.upsert(TARGET, parsed, "c:f:0", "f")

        [relation] = await _rows(client, TABLES.relates)
        assert relation["id"] == "Marie_Curie::Pierre_Curie"
        assert relation["in_id"] == "Marie_Curie"
        assert relation["out_id"] == "Pierre_Curie"
        assert relation["keywords"] == ["marriage", "research"]
        assert relation["source_ids"] == ["c:f:0"]
        assert relation["description"] == "Married and worked together"
        assert relation["weight"] == 1.0

    @pytest.mark.asyncio
    async def test_reversed_relation_merges_into_same_row(self, client, engine):
        """B->A from another chunk lands on the A::B row and raises its weight."""
        await _provision(client)
        await engine.upsert(TARGET, parse_extraction_output(CURIE), "c:f:0", "f")
        reversed_raw = relation_line("Pierre Curie", "Marie Curie", "nobel", "Shared the 1903 Nobel Prize")
        await engine.upsert(TARGET, parse_extraction_output(reversed_raw), "c:f:1", "f")

        [relation] = await _rows(client, TABLES.relates)
        assert relation["keywords"] == ["marriage", "nobel", "research"]
        assert relation["source_ids"] == ["c:f:0", "c:f:1"]
        assert relation["weight"] == 2.0
        assert relation["description"] == (
            f"Married and worked together{DESCRIPTION_SEPARATOR}Shared the 1903 Nobel Prize"
        )

        chunks = await client.query_in_database(
            TARGET.namespace, TARGET.database, f"SELECT * FROM {TABLES.relation_chunks}"
        )
        assert len(chunks) == 1
        assert chunks[0]["chunk_ids"] == ["c:f:0", "c:f:1"]

    @pytest.mark.asyncio
    async def test_endpoints_ensured(self, client, engine):
        """A relation alone creates both endpoint entity rows."""
        await _provision(client)
        await engine.upsert(TARGET, parse_extraction_output(relation_line("X", "Y", "k", "d")), "c:f:0", "f")
        assert [r["id"] for r in await _rows(client, TABLES.entity)] == ["X", "Y"]


class TestUpsertResult:
    """Counts and batching."""

    @pytest.mark.asyncio
    async def test_counts_are_folded(self, client, engine):
        """Duplicate records of one chunk count once."""
        await _provision(client)
        raw = extraction_output(
            entity_line("A", "Concept", "one"),
            entity_line("A", "Concept", "two"),
            relation_line("A", "B", "k", "d"),
            relation_line("B", "A", "j", "e"),
        )
        result = await engine.upsert(TARGET, parse_extraction_output(raw), "c:f:0", "f")
        assert result.entities_upserted == 1
        assert result.relations_upserted == 1

        [a, _] = await _rows(client, TABLES.entity)
        assert a["description"] == f"one{DESCRIPTION_SEPARATOR}two"

    @pytest.mark.asyncio
    async def test_empty_parse_writes_nothing(self, client, engine):
        """An empty parse result is a no-op."""
        result = await engine.upsert(TARGET, parse_extraction_output("<|COMPLETE|>"), "c:f:0", "f")
        assert result.entities_upserted == 0
        assert result.relations_upserted == 0

    def test_pack_batches_keeps_groups_whole(self):
        """Groups are never split across transactions."""
        engine = GraphUpsertEngine(MagicMock(), batch_size=10)
        groups = [[("a", None)] * 4, [("b", None)] * 4, [("c", None)] * 6]
        batches = engine.pack_batches(groups)
        assert [len(b) for b in batches] == [8, 6]

    @pytest.mark.asyncio
    async def test_many_records_span_batches(self, client):
        """Chunks larger than one batch are written in several transactions."""
        await _provision(client)
        engine = GraphUpsertEngine(client, batch_size=8)
        raw = extraction_output(*[entity_line(f"E{i}", "Concept", f"d{i}") for i in range(12)])
        result = await engine.upsert(TARGET, parse_extraction_output(raw), "c:f:0", "f")
        assert result.entities_upserted == 12
        assert len(await _rows(client, TABLES.entity)) == 12

    @pytest.mark.asyncio
    async def test_write_conflict_retried_then_fails(self, client):
        """Persistent write conflicts become an UpsertError after the retries."""
        engine = GraphUpsertEngine(client, max_retries=2, retry_base_delay=0)
        execute = AsyncMock(side_effect=duckdb.TransactionException("conflict"))
        with patch.object(client, "execute_in_database", execute):
            with pytest.raises(UpsertError, match="after 2 retries"):
                await engine.upsert(TARGET, parse_extraction_output(CURIE), "c:f:0", "f")
        assert execute.await_count == 3

    @pytest.mark.asyncio
    async def test_write_conflict_recovers(self, client):
        """A transient conflict is retried and the batch goes through."""
        await _provision(client)
        engine = GraphUpsertEngine(client, retry_base_delay=0)
        real = client.execute_in_database
        execute = AsyncMock(side_effect=[duckdb.TransactionException("conflict"), None])

        async def flaky(*args):
            if execute.await_count == 0:
                await execute(*args)
            return await real(*args)

        with patch.object(client, "execute_in_database", side_effect=flaky):
            result = await engine.upsert(TARGET, parse_extraction_output(CURIE), "c:f:0", "f")
        assert result.entities_upserted == 1


class TestFolding:
    """Tests for per-chunk folding helpers."""

    def test_fold_entities_prefers_specific_type(self):
        entities = [
            ParsedEntity(name="A", display_name="A", entity_type="Other", description="x"),
            ParsedEntity(name="A", display_name="A", entity_type="Person", description="x"),
        ]
        [folded] = fold_entities(entities)
        assert folded.entity_type == "Person"
        assert folded.description == "x"

    def test_fold_relations_unions_keywords(self):
        raw = extraction_output(relation_line("A", "B", "x, y", "d"), relation_line("B", "A", "y, z", "d"))
        [folded] = fold_relations(parse_extraction_output(raw).relations)
        assert folded.keyword_list == ["x", "y", "z"]
        assert folded.description == "d"
