"""
Schema Provisioning

DDL for the system bookkeeping tables and for the four tables of a graph.
All statements are "create if not exists"; nothing is ever dropped or
altered, so provisioning is safe to repeat on every load.

Graph tables for base "kg":
    kg_entity            entities keyed by sanitized name
    kg_relates           directed edges (in_id -> out_id) keyed by endpoint pair
    kg_entity_chunks     entity key -> contributing chunk ids
    kg_relation_chunks   relation key -> contributing chunk ids

Indexes are non-unique: uniqueness of keys is maintained by the upsert
engine's ensure-then-merge statements.
"""

from __future__ import annotations

import logging
from datetime import datetime

from kgbuild.storage.duckdb.client import DuckDBClient
from kgbuild.types import GraphTableNames, GraphTarget
from kgbuild.utils.clock import utc_now

logger = logging.getLogger(__name__)

SYSTEM_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS kg_task (
        id VARCHAR NOT NULL,
        file_key VARCHAR NOT NULL,
        status VARCHAR NOT NULL,
        source_namespace VARCHAR NOT NULL,
        source_database VARCHAR NOT NULL,
        source_table VARCHAR NOT NULL,
        target_namespace VARCHAR,
        target_database VARCHAR,
        graph_table_base VARCHAR,
        chunks_total INTEGER NOT NULL DEFAULT 0,
        chunks_completed INTEGER NOT NULL DEFAULT 0,
        chunks_failed INTEGER NOT NULL DEFAULT 0,
        config VARCHAR,
        error VARCHAR,
        created_at TIMESTAMP,
        updated_at TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS kg_chunk (
        id VARCHAR NOT NULL,
        task_id VARCHAR NOT NULL,
        chunk_index INTEGER NOT NULL,
        chunk_ref VARCHAR NOT NULL,
        content VARCHAR,
        status VARCHAR NOT NULL,
        result VARCHAR,
        error VARCHAR,
        attempts INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMP,
        updated_at TIMESTAMP
    )
    """,
    "CREATE INDEX IF NOT EXISTS kg_chunk_task_idx ON kg_chunk (task_id)",
    """
    CREATE TABLE IF NOT EXISTS kg_build_task (
        id VARCHAR NOT NULL,
        source_task_id VARCHAR NOT NULL,
        file_key VARCHAR NOT NULL,
        target_namespace VARCHAR NOT NULL,
        target_database VARCHAR NOT NULL,
        graph_table_base VARCHAR NOT NULL,
        status VARCHAR NOT NULL,
        chunks_total INTEGER NOT NULL DEFAULT 0,
        chunks_completed INTEGER NOT NULL DEFAULT 0,
        chunks_failed INTEGER NOT NULL DEFAULT 0,
        entities_upserted INTEGER NOT NULL DEFAULT 0,
        relations_upserted INTEGER NOT NULL DEFAULT 0,
        error VARCHAR,
        created_at TIMESTAMP,
        updated_at TIMESTAMP
    )
    """,
    "CREATE INDEX IF NOT EXISTS kg_build_task_source_idx ON kg_build_task (source_task_id)",
    """
    CREATE TABLE IF NOT EXISTS kg_build_chunk (
        id VARCHAR NOT NULL,
        build_task_id VARCHAR NOT NULL,
        source_chunk_id VARCHAR NOT NULL,
        chunk_index INTEGER NOT NULL,
        chunk_ref VARCHAR NOT NULL,
        status VARCHAR NOT NULL,
        entities_count INTEGER NOT NULL DEFAULT 0,
        relations_count INTEGER NOT NULL DEFAULT 0,
        error VARCHAR,
        created_at TIMESTAMP,
        updated_at TIMESTAMP
    )
    """,
    "CREATE INDEX IF NOT EXISTS kg_build_chunk_task_idx ON kg_build_chunk (build_task_id)",
    """
    CREATE TABLE IF NOT EXISTS kg_graph_target (
        target_namespace VARCHAR NOT NULL,
        target_database VARCHAR NOT NULL,
        graph_table_base VARCHAR NOT NULL,
        created_at TIMESTAMP
    )
    """,
]


def graph_schema_statements(tables: GraphTableNames) -> list[str]:
    """DDL for the four graph tables and their indexes."""
    return [
        f"""
        CREATE TABLE IF NOT EXISTS {tables.entity} (
            id VARCHAR NOT NULL,
            entity_name VARCHAR NOT NULL,
            entity_type VARCHAR NOT NULL DEFAULT 'Other',
            description VARCHAR NOT NULL DEFAULT '',
            source_ids VARCHAR[] NOT NULL,
            file_keys VARCHAR[] NOT NULL,
            embedding FLOAT[],
            embedding_hash VARCHAR,
            embedding_at TIMESTAMP,
            created_at TIMESTAMP,
            updated_at TIMESTAMP
        )
        """,
        f"CREATE INDEX IF NOT EXISTS {tables.entity}_id_idx ON {tables.entity} (id)",
        f"CREATE INDEX IF NOT EXISTS {tables.entity}_type_idx ON {tables.entity} (entity_type)",
        f"""
        CREATE TABLE IF NOT EXISTS {tables.relates} (
            id VARCHAR NOT NULL,
            in_id VARCHAR NOT NULL,
            out_id VARCHAR NOT NULL,
            keywords VARCHAR[] NOT NULL,
            description VARCHAR NOT NULL DEFAULT '',
            weight DOUBLE NOT NULL DEFAULT 1.0,
            source_ids VARCHAR[] NOT NULL,
            file_keys VARCHAR[] NOT NULL,
            embedding FLOAT[],
            embedding_hash VARCHAR,
            embedding_at TIMESTAMP,
            created_at TIMESTAMP,
            updated_at TIMESTAMP
        )
        """,
        f"CREATE INDEX IF NOT EXISTS {tables.relates}_id_idx ON {tables.relates} (id)",
        f"CREATE INDEX IF NOT EXISTS {tables.relates}_in_idx ON {tables.relates} (in_id)",
        f"CREATE INDEX IF NOT EXISTS {tables.relates}_out_idx ON {tables.relates} (out_id)",
        f"""
        CREATE TABLE IF NOT EXISTS {tables.entity_chunks} (
            entity_name VARCHAR NOT NULL,
            chunk_ids VARCHAR[] NOT NULL,
            updated_at TIMESTAMP
        )
        """,
        f"CREATE INDEX IF NOT EXISTS {tables.entity_chunks}_name_idx ON {tables.entity_chunks} (entity_name)",
        f"""
        CREATE TABLE IF NOT EXISTS {tables.relation_chunks} (
            relation_key VARCHAR NOT NULL,
            source_name VARCHAR NOT NULL,
            target_name VARCHAR NOT NULL,
            chunk_ids VARCHAR[] NOT NULL,
            updated_at TIMESTAMP
        )
        """,
        f"CREATE INDEX IF NOT EXISTS {tables.relation_chunks}_key_idx ON {tables.relation_chunks} (relation_key)",
    ]


async def ensure_system_schema(client: DuckDBClient) -> None:
    """Create the bookkeeping tables in the system database."""
    await client.execute([(sql, None) for sql in SYSTEM_SCHEMA])


class SchemaProvisioner:
    """
    Creates graph tables in knowledge-base databases.

    Each target is provisioned at most once per process; repeated calls for
    the same target return immediately.
    """

    def __init__(self, client: DuckDBClient) -> None:
        self._client = client
        self._provisioned: set[GraphTarget] = set()

    def is_provisioned(self, target: GraphTarget) -> bool:
        return target in self._provisioned

    async def create_graph_schema(self, target: GraphTarget) -> GraphTableNames:
        """
        Provision the four graph tables of a target and register it.

        Args:
            target: Knowledge base and graph-table base to provision

        Returns:
            The table names that now exist
        """
        tables = GraphTableNames.from_base(target.graph_table_base)
        if target in self._provisioned:
            return tables

        await self._client.execute_in_database(
            target.namespace,
            target.database,
            [(sql, None) for sql in graph_schema_statements(tables)],
        )
        await self._register(target, utc_now())
        self._provisioned.add(target)
        logger.info(f"Provisioned graph schema {target.key}")
        return tables

    async def _register(self, target: GraphTarget, now: datetime) -> None:
        await self._client.execute([
            (
                """
                INSERT INTO kg_graph_target (target_namespace, target_database, graph_table_base, created_at)
                SELECT $namespace, $database, $base, $now
                WHERE NOT EXISTS (
                    SELECT 1 FROM kg_graph_target
                    WHERE target_namespace = $namespace AND target_database = $database
                      AND graph_table_base = $base
                )
                """,
                {
                    "namespace": target.namespace,
                    "database": target.database,
                    "base": target.graph_table_base,
                    "now": now,
                },
            )
        ])

    async def registered_targets(self) -> list[GraphTarget]:
        """All graph targets ever provisioned, oldest first."""
        rows = await self._client.query(
            "SELECT target_namespace AS namespace, target_database AS database, graph_table_base "
            "FROM kg_graph_target ORDER BY created_at"
        )
        return [GraphTarget(**row) for row in rows]
