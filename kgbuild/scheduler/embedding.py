"""
Embedding/Index Scheduler (Stage 3)

Keeps entity and relation embeddings in step with their content, then
rebuilds the vector indices.

States:
    idle      no stale rows in any registered graph
    active    embedding one batch of stale rows per tick
    indexing  rebuilding the LanceDB tables of graphs that changed

A row is stale when its embedding is missing or its embedding_hash differs
from the md5 of its current content. Nothing is staged between steps: an
interrupted batch is simply selected again on a later tick, and each vector
is written only if the row's content still hashes to what was embedded.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

import duckdb

from kgbuild.errors import ProviderError
from kgbuild.events import EventBus
from kgbuild.providers.base import EmbeddingProvider
from kgbuild.scheduler.base import ACTIVE, IDLE, PollingScheduler
from kgbuild.storage.duckdb.client import DuckDBClient, Statement
from kgbuild.storage.lancedb.indices import ENTITY_KIND, RELATION_KIND, GraphVectorIndex
from kgbuild.storage.schema import SchemaProvisioner
from kgbuild.types import (
    EmbeddingBatchInfo,
    EmbeddingProgressEvent,
    EmbeddingStatus,
    GraphTableNames,
    GraphTarget,
    TargetEmbeddingStatus,
)
from kgbuild.utils.clock import utc_now
from kgbuild.utils.embedding_text import (
    entity_content_hash,
    format_entity_text,
    format_relation_text,
    relation_content_hash,
)

logger = logging.getLogger(__name__)

INDEXING = "indexing"

ENTITY_HASH_SQL = "md5(entity_name || chr(10) || coalesce(description, ''))"
RELATION_HASH_SQL = (
    "md5(coalesce(array_to_string(keywords, ','), '') || chr(10) || in_id || chr(10) "
    "|| out_id || chr(10) || coalesce(description, ''))"
)

KINDS = (ENTITY_KIND, RELATION_KIND)


def _hash_sql(kind: str) -> str:
    return ENTITY_HASH_SQL if kind == ENTITY_KIND else RELATION_HASH_SQL


def _stale_predicate(kind: str) -> str:
    return f"embedding IS NULL OR embedding_hash IS NULL OR embedding_hash <> {_hash_sql(kind)}"


class EmbeddingScheduler(PollingScheduler):
    """
    Stage 3 loop.

    Args:
        client: DuckDB client for the graph tables
        provisioner: Registry of provisioned graph targets
        index: Vector indices rebuilt after embedding rounds
        events: Bus receiving embedding-progress events
        provider_factory: Builds the embedding provider on first use
        batch_size: Rows embedded per provider call
        max_tokens: Token budget of one embedding input
        embedding_timeout: Seconds allowed per provider call
    """

    name = "embedding-scheduler"

    def __init__(
        self,
        client: DuckDBClient,
        provisioner: SchemaProvisioner,
        index: GraphVectorIndex,
        events: EventBus,
        provider_factory: Callable[[], EmbeddingProvider],
        *,
        batch_size: int = 32,
        max_tokens: int = 512,
        embedding_timeout: float = 30.0,
        idle_interval: float = 5.0,
        active_interval: float = 0.1,
    ) -> None:
        super().__init__(idle_interval, active_interval)
        self._client = client
        self._provisioner = provisioner
        self._index = index
        self._events = events
        self._provider_factory = provider_factory
        self._provider: EmbeddingProvider | None = None
        self.batch_size = max(1, batch_size)
        self.max_tokens = max_tokens
        self.embedding_timeout = embedding_timeout
        self._targets: dict[str, GraphTarget] = {}
        self._dirty: set[str] = set()
        self.last_error: str | None = None
        self.last_batch: EmbeddingBatchInfo | None = None

    @property
    def provider(self) -> EmbeddingProvider:
        if self._provider is None:
            self._provider = self._provider_factory()
        return self._provider

    @property
    def targets(self) -> list[GraphTarget]:
        return list(self._targets.values())

    # -------------------------------------------------------------------------
    # Targets
    # -------------------------------------------------------------------------

    def trigger(self, target: GraphTarget) -> None:
        """Register a graph for embedding and run the next tick now."""
        if target.key not in self._targets:
            self._targets[target.key] = target
            logger.debug(f"Embedding target registered: {target.key}")
        self.wake()

    async def load_targets(self) -> list[GraphTarget]:
        """Register every graph target recorded by the schema provisioner."""
        for target in await self._provisioner.registered_targets():
            self._targets.setdefault(target.key, target)
        return self.targets

    def _rotate(self, target: GraphTarget) -> None:
        """Move a target to the back of the queue."""
        self._targets.pop(target.key, None)
        self._targets[target.key] = target

    # -------------------------------------------------------------------------
    # Stale rows
    # -------------------------------------------------------------------------

    async def _query(self, target: GraphTarget, sql: str, params: dict[str, Any] | None = None) -> list[dict]:
        try:
            return await self._client.query_in_database(target.namespace, target.database, sql, params)
        except duckdb.CatalogException:
            # Graph tables not provisioned yet
            return []

    async def stale_rows(self, target: GraphTarget, kind: str, limit: int) -> list[dict[str, Any]]:
        tables = GraphTableNames.from_base(target.graph_table_base)
        if kind == ENTITY_KIND:
            sql = f"""
                SELECT id, entity_name, description FROM {tables.entity}
                WHERE {_stale_predicate(kind)}
                ORDER BY updated_at, id LIMIT $limit
            """
        else:
            sql = f"""
                SELECT id, in_id, out_id, keywords, description FROM {tables.relates}
                WHERE {_stale_predicate(kind)}
                ORDER BY updated_at, id LIMIT $limit
            """
        return await self._query(target, sql, {"limit": limit})

    async def count_rows(self, target: GraphTarget, kind: str) -> tuple[int, int]:
        """(stale rows, embedded rows) of one graph table."""
        tables = GraphTableNames.from_base(target.graph_table_base)
        table = tables.entity if kind == ENTITY_KIND else tables.relates
        rows = await self._query(
            target,
            f"""
            SELECT
                count(*) FILTER (WHERE {_stale_predicate(kind)}) AS stale,
                count(*) FILTER (WHERE embedding IS NOT NULL) AS embedded
            FROM {table}
            """,
        )
        if not rows:
            return 0, 0
        return int(rows[0]["stale"]), int(rows[0]["embedded"])

    # -------------------------------------------------------------------------
    # Loop
    # -------------------------------------------------------------------------

    async def run_once(self) -> bool:
        try:
            return await self._tick()
        except Exception as e:
            self.last_error = str(e) or type(e).__name__
            raise

    async def _tick(self) -> bool:
        # Picks up graphs provisioned by stage 2 whose builds did not complete
        await self.load_targets()
        for target in self.targets:
            for kind in KINDS:
                rows = await self.stale_rows(target, kind, self.batch_size)
                if not rows:
                    continue
                self._set_state(ACTIVE)
                try:
                    await self.embed_batch(target, kind, rows)
                except Exception:
                    self._rotate(target)
                    raise
                return True

        if self._dirty:
            self._set_state(INDEXING)
            for key in sorted(self._dirty):
                target = self._targets.get(key)
                if target is not None:
                    await self.rebuild_index(target)
                self._dirty.discard(key)
            self._set_state(IDLE)
            return True

        self._set_state(IDLE)
        return False

    def _texts(self, kind: str, rows: list[dict[str, Any]]) -> list[str]:
        model = self.provider.model_name
        if kind == ENTITY_KIND:
            return [
                format_entity_text(r["entity_name"], r["description"], self.max_tokens, model)
                for r in rows
            ]
        return [
            format_relation_text(r["keywords"], r["in_id"], r["out_id"], r["description"], self.max_tokens, model)
            for r in rows
        ]

    @staticmethod
    def _content_hash(kind: str, row: dict[str, Any]) -> str:
        if kind == ENTITY_KIND:
            return entity_content_hash(row["entity_name"], row["description"])
        return relation_content_hash(row["keywords"], row["in_id"], row["out_id"], row["description"])

    async def embed_batch(self, target: GraphTarget, kind: str, rows: list[dict[str, Any]]) -> int:
        """
        Embed one batch of stale rows and write the vectors back.

        Returns:
            Number of rows the batch wrote

        Raises:
            ProviderError: If the provider fails, times out or returns the wrong count
        """
        texts = self._texts(kind, rows)
        try:
            vectors = await asyncio.wait_for(self.provider.embed(texts), timeout=self.embedding_timeout)
        except asyncio.TimeoutError as e:
            raise ProviderError(f"Embedding call timed out after {self.embedding_timeout}s") from e
        if len(vectors) != len(rows):
            raise ProviderError(f"Embedding count mismatch: {len(vectors)} vectors for {len(rows)} texts")

        tables = GraphTableNames.from_base(target.graph_table_base)
        table = tables.entity if kind == ENTITY_KIND else tables.relates
        now = utc_now()
        statements: list[Statement] = [
            (
                f"""
                UPDATE {table}
                SET embedding = CAST($embedding AS FLOAT[]), embedding_hash = $hash, embedding_at = $now
                WHERE id = $id AND {_hash_sql(kind)} = $hash
                """,
                {
                    "id": row["id"],
                    "embedding": [float(x) for x in vector],
                    "hash": self._content_hash(kind, row),
                    "now": now,
                },
            )
            for row, vector in zip(rows, vectors)
        ]
        try:
            await self._client.execute_in_database(target.namespace, target.database, statements)
        except duckdb.TransactionException as e:
            # Rows stay stale and are selected again next tick
            logger.debug(f"Embedding write conflicted on {target.key}: {e}")
            return 0

        stale, _ = await self.count_rows(target, kind)
        self._dirty.add(target.key)
        self.last_batch = EmbeddingBatchInfo(target=target, kind=kind, embedded=len(rows), remaining=stale)
        self.last_error = None
        logger.debug(f"Embedded {len(rows)} {kind} rows of {target.key}, {stale} remaining")
        await self._events.emit(EmbeddingProgressEvent(
            target=target, target_kind=kind, embedded=len(rows), remaining=stale,
        ))
        return len(rows)

    async def rebuild_index(self, target: GraphTarget) -> dict[str, int]:
        """Rebuild both vector tables of a graph from its embedded rows."""
        tables = GraphTableNames.from_base(target.graph_table_base)
        queries = {
            ENTITY_KIND: f"""
                SELECT id, entity_name, entity_type, description, embedding FROM {tables.entity}
                WHERE embedding IS NOT NULL ORDER BY id
            """,
            RELATION_KIND: f"""
                SELECT id, in_id, out_id, keywords, description, embedding FROM {tables.relates}
                WHERE embedding IS NOT NULL ORDER BY id
            """,
        }
        counts: dict[str, int] = {}
        for kind, sql in queries.items():
            rows = await self._query(target, sql)
            if rows:
                dimensions = len(rows[0]["embedding"])
                mismatched = [r for r in rows if len(r["embedding"]) != dimensions]
                if mismatched:
                    logger.warning(
                        f"Skipping {len(mismatched)} {kind} rows of {target.key} with a different dimension"
                    )
                    rows = [r for r in rows if len(r["embedding"]) == dimensions]
            counts[kind] = await self._index.rebuild(target, kind, rows)
        return counts

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    async def status(self) -> EmbeddingStatus:
        """State, per-target coverage, last error and last batch."""
        targets: list[TargetEmbeddingStatus] = []
        for target in self.targets:
            pending_entities, embedded_entities = await self.count_rows(target, ENTITY_KIND)
            pending_relations, embedded_relations = await self.count_rows(target, RELATION_KIND)
            targets.append(TargetEmbeddingStatus(
                target=target,
                pending_entities=pending_entities,
                pending_relations=pending_relations,
                embedded_entities=embedded_entities,
                embedded_relations=embedded_relations,
            ))
        return EmbeddingStatus(
            state=self.state,
            targets=targets,
            last_error=self.last_error,
            last_batch=self.last_batch,
        )

    async def self_check(self) -> list[GraphTarget]:
        """
        Find registered graphs with stale rows.

        Returns:
            Targets that still need embedding work
        """
        await self.load_targets()
        stale_targets: list[GraphTarget] = []
        for target in self.targets:
            stale = sum([(await self.count_rows(target, kind))[0] for kind in KINDS])
            if stale:
                stale_targets.append(target)
        if stale_targets:
            logger.info(f"Embedding self-check: {len(stale_targets)} graphs have stale rows")
            self.wake()
        return stale_targets

    async def cleanup(self) -> None:
        """
        Start-up sweep.

        Vectors written back by a previous process may never have reached
        the index, so every registered graph is marked for an index rebuild
        on the first tick that finds no stale rows.
        """
        await self.self_check()
        for target in self.targets:
            self._dirty.add(target.key)
        if self._dirty:
            logger.info(f"Embedding cleanup: {len(self._dirty)} graph indices queued for rebuild")
            self.wake()

    async def search_entities(
        self, target: GraphTarget, query: str | list[float], limit: int = 10
    ) -> list[tuple[dict[str, Any], float]]:
        """
        KNN search over a graph's entity index.

        Args:
            target: Graph to search
            query: Text (embedded with the provider) or a query vector
            limit: Maximum results

        Returns:
            (entity dict, similarity) tuples, most similar first
        """
        vector = await self.provider.embed_single(query) if isinstance(query, str) else query
        return await self._index.search_entities(target, vector, limit)

    async def search_relations(
        self, target: GraphTarget, query: str | list[float], limit: int = 10
    ) -> list[tuple[dict[str, Any], float]]:
        """KNN search over a graph's relation index."""
        vector = await self.provider.embed_single(query) if isinstance(query, str) else query
        return await self._index.search_relations(target, vector, limit)
