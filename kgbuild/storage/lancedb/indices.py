"""
LanceDB Vector Indices

KNN search over the embedded rows of each graph. One LanceDB directory per
knowledge base, one table per graph table:

    <root>/<namespace>/<database>/
        {base}_entity.lance/
        {base}_relates.lance/

Tables are rebuilt wholesale from the graph tables after an embedding round;
DuckDB stays the source of truth.
"""

from __future__ import annotations

import asyncio
import logging
import math
import threading
from pathlib import Path
from typing import Any

import lancedb
import pyarrow as pa
from filelock import FileLock

from kgbuild.types import GraphTableNames, GraphTarget

logger = logging.getLogger(__name__)

ENTITY_KIND = "entity"
RELATION_KIND = "relation"


def entity_schema(dimensions: int) -> pa.Schema:
    return pa.schema([
        ("id", pa.string()),
        ("entity_name", pa.string()),
        ("entity_type", pa.string()),
        ("description", pa.string()),
        ("vector", pa.list_(pa.float32(), dimensions)),
    ])


def relation_schema(dimensions: int) -> pa.Schema:
    return pa.schema([
        ("id", pa.string()),
        ("in_id", pa.string()),
        ("out_id", pa.string()),
        ("keywords", pa.string()),
        ("description", pa.string()),
        ("vector", pa.list_(pa.float32(), dimensions)),
    ])


def _sub_vectors(dimensions: int) -> int:
    """Largest divisor of dimensions not above dimensions / 16 (at least 1)."""
    for candidate in range(max(1, dimensions // 16), 0, -1):
        if dimensions % candidate == 0:
            return candidate
    return 1


class GraphVectorIndex:
    """
    Vector indices over graph entities and relations.

    Thread safety:
        Uses thread-local connections since asyncio.to_thread() may use
        different threads. Rebuilds of one knowledge base are serialized
        across processes with a FileLock.

    Args:
        root: Directory holding one LanceDB database per knowledge base
        index_type: ANN index type created once a table is large enough
        min_rows_for_index: Below this row count tables are searched brute force
    """

    def __init__(
        self,
        root: Path | str,
        index_type: str = "IVF_PQ",
        min_rows_for_index: int = 256,
    ) -> None:
        self.root = Path(root)
        self.index_type = index_type
        self.min_rows_for_index = min_rows_for_index
        self._local = threading.local()

    def _path(self, target: GraphTarget) -> Path:
        return self.root / target.namespace / target.database

    def _get_db(self, target: GraphTarget) -> lancedb.DBConnection:
        """Get thread-local LanceDB connection for a knowledge base, creating if needed."""
        connections: dict[Path, lancedb.DBConnection] = getattr(self._local, "dbs", None) or {}
        self._local.dbs = connections
        path = self._path(target)
        db = connections.get(path)
        if db is None:
            path.mkdir(parents=True, exist_ok=True)
            db = lancedb.connect(str(path))
            connections[path] = db
        return db

    def _lock(self, target: GraphTarget) -> FileLock:
        path = self._path(target)
        path.mkdir(parents=True, exist_ok=True)
        return FileLock(path / ".index.lock", timeout=30)

    @staticmethod
    def _table_names(db: lancedb.DBConnection) -> set[str]:
        """
        Return table names across LanceDB API variants.

        Recent LanceDB returns a response object from list_tables() with a
        `tables` attribute, while older versions return a plain list.
        """
        listed = db.list_tables()
        tables = getattr(listed, "tables", listed)
        return {str(name) for name in tables}

    @staticmethod
    def table_name(target: GraphTarget, kind: str) -> str:
        tables = GraphTableNames.from_base(target.graph_table_base)
        return tables.entity if kind == ENTITY_KIND else tables.relates

    async def close(self) -> None:
        """Drop this thread's connections."""
        self._local.dbs = {}

    # -------------------------------------------------------------------------
    # Rebuild
    # -------------------------------------------------------------------------

    def _to_arrow(self, kind: str, rows: list[dict[str, Any]]) -> pa.Table:
        dimensions = len(rows[0]["embedding"])
        if kind == ENTITY_KIND:
            schema = entity_schema(dimensions)
            data = {
                "id": [r["id"] for r in rows],
                "entity_name": [r["entity_name"] for r in rows],
                "entity_type": [r["entity_type"] for r in rows],
                "description": [r["description"] or "" for r in rows],
            }
        else:
            schema = relation_schema(dimensions)
            data = {
                "id": [r["id"] for r in rows],
                "in_id": [r["in_id"] for r in rows],
                "out_id": [r["out_id"] for r in rows],
                "keywords": [",".join(r["keywords"] or []) for r in rows],
                "description": [r["description"] or "" for r in rows],
            }
        data["vector"] = [[float(x) for x in r["embedding"]] for r in rows]
        return pa.Table.from_pydict(data, schema=schema)

    async def rebuild(self, target: GraphTarget, kind: str, rows: list[dict[str, Any]]) -> int:
        """
        Replace a graph table's index with the given embedded rows.

        Args:
            target: Graph the rows belong to
            kind: ENTITY_KIND or RELATION_KIND
            rows: Graph rows with an "embedding" column

        Returns:
            Number of rows indexed
        """
        name = self.table_name(target, kind)

        def _rebuild() -> int:
            with self._lock(target):
                db = self._get_db(target)
                if not rows:
                    if name in self._table_names(db):
                        db.drop_table(name)
                    return 0

                table = db.create_table(name, data=self._to_arrow(kind, rows), mode="overwrite")
                if len(rows) >= self.min_rows_for_index:
                    dimensions = len(rows[0]["embedding"])
                    table.create_index(
                        metric="cosine",
                        vector_column_name="vector",
                        index_type=self.index_type,
                        num_partitions=max(1, int(math.sqrt(len(rows)))),
                        num_sub_vectors=_sub_vectors(dimensions),
                        replace=True,
                    )
                return len(rows)

        count = await asyncio.to_thread(_rebuild)
        logger.info(f"Rebuilt {kind} index {target.key}/{name} with {count} rows")
        return count

    # -------------------------------------------------------------------------
    # Search
    # -------------------------------------------------------------------------

    async def count(self, target: GraphTarget, kind: str) -> int:
        name = self.table_name(target, kind)

        def _count() -> int:
            db = self._get_db(target)
            if name not in self._table_names(db):
                return 0
            return db.open_table(name).count_rows()

        return await asyncio.to_thread(_count)

    async def _search(
        self, target: GraphTarget, kind: str, query_vector: list[float], limit: int
    ) -> list[tuple[dict[str, Any], float]]:
        name = self.table_name(target, kind)

        def _run() -> list[tuple[dict[str, Any], float]]:
            db = self._get_db(target)
            if name not in self._table_names(db):
                return []

            results = (
                db.open_table(name)
                .search(query_vector, vector_column_name="vector")
                .distance_type("cosine")
                .limit(limit)
                .to_arrow()
            )
            output: list[tuple[dict[str, Any], float]] = []
            for row in results.to_pylist():
                # Cosine distance = 1 - similarity
                similarity = 1 - row.pop("_distance")
                row.pop("vector", None)
                output.append((row, similarity))
            return output

        return await asyncio.to_thread(_run)

    async def search_entities(
        self, target: GraphTarget, query_vector: list[float], limit: int = 10
    ) -> list[tuple[dict[str, Any], float]]:
        """
        Nearest entities of a graph.

        Returns:
            (entity dict, similarity) tuples, most similar first
        """
        return await self._search(target, ENTITY_KIND, query_vector, limit)

    async def search_relations(
        self, target: GraphTarget, query_vector: list[float], limit: int = 10
    ) -> list[tuple[dict[str, Any], float]]:
        """Nearest relations of a graph, as (relation dict, similarity) tuples."""
        return await self._search(target, RELATION_KIND, query_vector, limit)
