"""
Graph Upsert Engine

Merges the records parsed from one chunk into a target graph's tables.

Every record becomes an ensure-then-merge statement group:
    - ensure: insert an empty row under the record's key if none exists
    - merge: union provenance lists, append the description, clear the
      embedding so the embedding scheduler picks the row up again

A chunk's contribution is applied at most once per row: the description is
appended (and the embedding cleared) only when the chunk id is not yet in
the row's source_ids. Re-running a chunk after a crash leaves the graph
unchanged.

Statement groups are packed into transactions of at most batch_size
statements and executed against the target knowledge base.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime

import duckdb

from kgbuild.errors import UpsertError
from kgbuild.storage.duckdb.client import DuckDBClient, Statement
from kgbuild.types import GraphTableNames, GraphTarget, ParsedEntity, ParsedRelation, ParseResult, UpsertResult
from kgbuild.utils.clock import utc_now
from kgbuild.utils.embedding_text import DESCRIPTION_SEPARATOR

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 30


def _join_descriptions(descriptions: list[str]) -> str:
    seen: list[str] = []
    for description in descriptions:
        if description and description not in seen:
            seen.append(description)
    return DESCRIPTION_SEPARATOR.join(seen)


def fold_entities(entities: list[ParsedEntity]) -> list[ParsedEntity]:
    """
    Fold duplicate entities of one chunk into one record per key.

    The first specific type wins over "Other"; distinct descriptions are
    joined with the description separator.
    """
    folded: dict[str, ParsedEntity] = {}
    descriptions: dict[str, list[str]] = {}
    for entity in entities:
        descriptions.setdefault(entity.name, []).append(entity.description)
        current = folded.get(entity.name)
        if current is None:
            folded[entity.name] = entity
        elif current.entity_type == "Other" and entity.entity_type != "Other":
            folded[entity.name] = current.model_copy(update={"entity_type": entity.entity_type})
    return [
        entity.model_copy(update={"description": _join_descriptions(descriptions[key])})
        for key, entity in folded.items()
    ]


def fold_relations(relations: list[ParsedRelation]) -> list[ParsedRelation]:
    """Fold duplicate relations of one chunk into one record per key."""
    folded: dict[str, ParsedRelation] = {}
    keywords: dict[str, set[str]] = {}
    descriptions: dict[str, list[str]] = {}
    for relation in relations:
        folded.setdefault(relation.key, relation)
        keywords.setdefault(relation.key, set()).update(relation.keyword_list)
        descriptions.setdefault(relation.key, []).append(relation.description)
    return [
        relation.model_copy(update={
            "keywords": ",".join(sorted(keywords[key])),
            "description": _join_descriptions(descriptions[key]),
        })
        for key, relation in folded.items()
    ]


def _merge_description_sql(param: str) -> str:
    return f"""CASE
                WHEN list_contains(source_ids, $chunk_id) THEN description
                WHEN ${param} = '' THEN description
                WHEN description IS NULL OR description = '' THEN ${param}
                ELSE description || $separator || ${param}
            END"""


class GraphUpsertEngine:
    """
    Applies parsed records to graph tables.

    Usage:
        engine = GraphUpsertEngine(client)
        result = await engine.upsert(target, parsed, chunk_ref, file_key)
    """

    def __init__(
        self,
        client: DuckDBClient,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_retries: int = 3,
        retry_base_delay: float = 0.2,
    ) -> None:
        self._client = client
        self.batch_size = max(1, batch_size)
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay

    # -------------------------------------------------------------------------
    # Statement builders
    # -------------------------------------------------------------------------

    @staticmethod
    def _ensure_entity(tables: GraphTableNames, key: str, name: str, now: datetime) -> Statement:
        return (
            f"""
            INSERT INTO {tables.entity} (
                id, entity_name, entity_type, description, source_ids, file_keys, created_at, updated_at
            )
            SELECT $id, $name, 'Other', '', CAST([] AS VARCHAR[]), CAST([] AS VARCHAR[]), $now, $now
            WHERE NOT EXISTS (SELECT 1 FROM {tables.entity} WHERE id = $id)
            """,
            {"id": key, "name": name, "now": now},
        )

    def _entity_statements(
        self,
        tables: GraphTableNames,
        entity: ParsedEntity,
        chunk_ref: str,
        file_key: str,
        now: datetime,
    ) -> list[Statement]:
        merge = (
            f"""
            UPDATE {tables.entity} SET
                entity_name = CASE WHEN entity_name = id THEN $name ELSE entity_name END,
                entity_type = CASE
                    WHEN entity_type IS NULL OR entity_type IN ('', 'Other') THEN $entity_type
                    ELSE entity_type
                END,
                description = {_merge_description_sql("description_in")},
                source_ids = list_sort(list_distinct(list_append(source_ids, $chunk_id))),
                file_keys = list_sort(list_distinct(list_append(file_keys, $file_key))),
                embedding = CASE WHEN list_contains(source_ids, $chunk_id) THEN embedding ELSE NULL END,
                embedding_hash = CASE WHEN list_contains(source_ids, $chunk_id) THEN embedding_hash ELSE NULL END,
                updated_at = $now
            WHERE id = $id
            """,
            {
                "id": entity.name,
                "name": entity.label,
                "entity_type": entity.entity_type or "Other",
                "description_in": entity.description,
                "separator": DESCRIPTION_SEPARATOR,
                "chunk_id": chunk_ref,
                "file_key": file_key,
                "now": now,
            },
        )
        return [
            self._ensure_entity(tables, entity.name, entity.label, now),
            merge,
            (
                f"""
                INSERT INTO {tables.entity_chunks} (entity_name, chunk_ids, updated_at)
                SELECT $name, CAST([] AS VARCHAR[]), $now
                WHERE NOT EXISTS (SELECT 1 FROM {tables.entity_chunks} WHERE entity_name = $name)
                """,
                {"name": entity.name, "now": now},
            ),
            (
                f"""
                UPDATE {tables.entity_chunks}
                SET chunk_ids = list_sort(list_distinct(list_append(chunk_ids, $chunk_id))), updated_at = $now
                WHERE entity_name = $name
                """,
                {"name": entity.name, "chunk_id": chunk_ref, "now": now},
            ),
        ]

    def _relation_statements(
        self,
        tables: GraphTableNames,
        relation: ParsedRelation,
        chunk_ref: str,
        file_key: str,
        now: datetime,
    ) -> list[Statement]:
        # Edge direction follows key order so every chunk writes the same in/out pair
        in_id, out_id = relation.endpoints
        merge = (
            f"""
            UPDATE {tables.relates} SET
                keywords = list_sort(list_distinct(list_concat(keywords, CAST($keywords AS VARCHAR[])))),
                description = {_merge_description_sql("description_in")},
                weight = CAST(len(list_distinct(list_append(source_ids, $chunk_id))) AS DOUBLE),
                source_ids = list_sort(list_distinct(list_append(source_ids, $chunk_id))),
                file_keys = list_sort(list_distinct(list_append(file_keys, $file_key))),
                embedding = CASE WHEN list_contains(source_ids, $chunk_id) THEN embedding ELSE NULL END,
                embedding_hash = CASE WHEN list_contains(source_ids, $chunk_id) THEN embedding_hash ELSE NULL END,
                updated_at = $now
            WHERE id = $id
            """,
            {
                "id": relation.key,
                "keywords": relation.keyword_list,
                "description_in": relation.description,
                "separator": DESCRIPTION_SEPARATOR,
                "chunk_id": chunk_ref,
                "file_key": file_key,
                "now": now,
            },
        )
        return [
            self._ensure_entity(tables, in_id, in_id, now),
            self._ensure_entity(tables, out_id, out_id, now),
            (
                f"""
                INSERT INTO {tables.relates} (
                    id, in_id, out_id, keywords, description, weight, source_ids, file_keys,
                    created_at, updated_at
                )
                SELECT $id, $in_id, $out_id, CAST([] AS VARCHAR[]), '', 0.0,
                    CAST([] AS VARCHAR[]), CAST([] AS VARCHAR[]), $now, $now
                WHERE NOT EXISTS (SELECT 1 FROM {tables.relates} WHERE id = $id)
                """,
                {"id": relation.key, "in_id": in_id, "out_id": out_id, "now": now},
            ),
            merge,
            (
                f"""
                INSERT INTO {tables.relation_chunks} (relation_key, source_name, target_name, chunk_ids, updated_at)
                SELECT $key, $source, $target, CAST([] AS VARCHAR[]), $now
                WHERE NOT EXISTS (SELECT 1 FROM {tables.relation_chunks} WHERE relation_key = $key)
                """,
                {"key": relation.key, "source": in_id, "target": out_id, "now": now},
            ),
            (
                f"""
                UPDATE {tables.relation_chunks}
                SET chunk_ids = list_sort(list_distinct(list_append(chunk_ids, $chunk_id))), updated_at = $now
                WHERE relation_key = $key
                """,
                {"key": relation.key, "chunk_id": chunk_ref, "now": now},
            ),
        ]

    def build_statement_groups(
        self,
        tables: GraphTableNames,
        parsed: ParseResult,
        chunk_ref: str,
        file_key: str,
    ) -> tuple[list[list[Statement]], int, int]:
        """
        Build one statement group per folded record.

        Returns:
            (groups, entity count, relation count)
        """
        now = utc_now()
        entities = fold_entities(parsed.entities)
        relations = fold_relations(parsed.relations)
        groups = [self._entity_statements(tables, e, chunk_ref, file_key, now) for e in entities]
        groups.extend(self._relation_statements(tables, r, chunk_ref, file_key, now) for r in relations)
        return groups, len(entities), len(relations)

    def pack_batches(self, groups: list[list[Statement]]) -> list[list[Statement]]:
        """Pack whole groups into batches of at most batch_size statements."""
        batches: list[list[Statement]] = []
        current: list[Statement] = []
        for group in groups:
            if current and len(current) + len(group) > self.batch_size:
                batches.append(current)
                current = []
            current.extend(group)
        if current:
            batches.append(current)
        return batches

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def _execute_batch(self, target: GraphTarget, batch: list[Statement]) -> None:
        for attempt in range(self.max_retries + 1):
            try:
                await self._client.execute_in_database(target.namespace, target.database, batch)
                return
            except duckdb.TransactionException as e:
                if attempt >= self.max_retries:
                    raise UpsertError(f"Write conflict persisted after {self.max_retries} retries: {e}") from e
                delay = self.retry_base_delay * 2 ** attempt
                logger.debug(f"Upsert batch conflicted on {target.key}, retrying in {delay:.1f}s: {e}")
                await asyncio.sleep(delay)
            except duckdb.Error as e:
                raise UpsertError(f"Upsert batch failed on {target.key}: {e}") from e

    async def upsert(
        self,
        target: GraphTarget,
        parsed: ParseResult,
        chunk_ref: str,
        file_key: str,
    ) -> UpsertResult:
        """
        Merge one chunk's parsed records into a graph.

        Args:
            target: Graph to write into (its schema must exist)
            parsed: Output of the response parser
            chunk_ref: Provenance id of the contributing chunk
            file_key: Source file of the contributing chunk

        Returns:
            UpsertResult with the number of distinct entities and relations merged

        Raises:
            UpsertError: If a batch fails; earlier batches stay committed
        """
        if parsed.is_empty:
            return UpsertResult()

        tables = GraphTableNames.from_base(target.graph_table_base)
        groups, entity_count, relation_count = self.build_statement_groups(tables, parsed, chunk_ref, file_key)
        batches = self.pack_batches(groups)
        for batch in batches:
            await self._execute_batch(target, batch)

        logger.debug(
            f"Upserted {entity_count} entities, {relation_count} relations "
            f"from {chunk_ref} into {target.key} ({len(batches)} batches)"
        )
        return UpsertResult(entities_upserted=entity_count, relations_upserted=relation_count)
