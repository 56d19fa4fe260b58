"""
DuckDB Client

Connection management for the system database and the per-knowledge-base
databases.

Layout under data_dir:
    <home_database>.duckdb            task bookkeeping (kg_task, kg_chunk, ...)
    <namespace>/<database>.duckdb     source chunk tables and graph tables

Statements that target a knowledge base run inside use_database(), which
attaches the knowledge-base file, switches the connection's default catalog
to it and restores the previous catalog on every exit path. The switch is
scoped to one thread-local cursor, so it does not serialize other callers.

Thread safety:
    Uses thread-local cursors since a DuckDB connection is not thread-safe
    and asyncio.to_thread() may use different threads. All cursors share one
    database instance, so attached databases are visible to every cursor.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any, TypeVar

import duckdb

from kgbuild.errors import StoreUnavailableError
from kgbuild.types.tasks import validate_name

logger = logging.getLogger(__name__)

T = TypeVar("T")

Params = dict[str, Any] | Sequence[Any] | None
Statement = tuple[str, Params]


def _quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def _quote_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def _fetch(conn: duckdb.DuckDBPyConnection, sql: str, params: Params = None) -> list[dict[str, Any]]:
    """Execute one statement and return rows as dicts."""
    cursor = conn.execute(sql, params) if params is not None else conn.execute(sql)
    if cursor.description is None:
        return []
    columns = [d[0] for d in cursor.description]
    return [dict(zip(columns, row)) for row in cursor.fetchall()]


def _run_transaction(conn: duckdb.DuckDBPyConnection, statements: Sequence[Statement]) -> None:
    """Run statements in one transaction; roll back on any failure."""
    conn.begin()
    try:
        for sql, params in statements:
            if params is not None:
                conn.execute(sql, params)
            else:
                conn.execute(sql)
        conn.commit()
    except Exception:
        try:
            conn.rollback()
        except duckdb.Error as rollback_error:
            # Failed commits are already rolled back by DuckDB
            logger.debug(f"Rollback after failed transaction: {rollback_error}")
        raise


class DuckDBClient:
    """
    Async facade over embedded DuckDB files.

    Args:
        data_dir: Directory holding all DuckDB files
        home_database: Name of the system database file (without suffix)
    """

    def __init__(self, data_dir: str | Path, home_database: str = "kg_home") -> None:
        self.data_dir = Path(data_dir)
        self.home_database = validate_name(home_database)
        self._root: duckdb.DuckDBPyConnection | None = None
        self._cursors: list[duckdb.DuckDBPyConnection] = []
        self._cursor_lock = threading.Lock()
        self._local = threading.local()
        self._generation = 0

    # -------------------------------------------------------------------------
    # Connection lifecycle
    # -------------------------------------------------------------------------

    @property
    def home_path(self) -> Path:
        return self.data_dir / f"{self.home_database}.duckdb"

    @property
    def is_connected(self) -> bool:
        return self._root is not None

    def database_path(self, namespace: str, database: str) -> Path:
        """File of a knowledge-base database."""
        return self.data_dir / validate_name(namespace) / f"{validate_name(database)}.duckdb"

    @staticmethod
    def database_alias(namespace: str, database: str) -> str:
        """Catalog name a knowledge-base database is attached under."""
        return f"{namespace}__{database}"

    async def connect(self) -> None:
        """Open the system database, creating the data directory if needed."""
        if self._root is not None:
            return

        def _connect() -> duckdb.DuckDBPyConnection:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            return duckdb.connect(str(self.home_path))

        self._root = await self._run(_connect, check_connected=False)
        logger.info(f"Connected to system database {self.home_path}")

    async def close(self) -> None:
        """Close all cursors and the system connection."""
        with self._cursor_lock:
            root, self._root = self._root, None
            cursors, self._cursors = self._cursors, []
            self._generation += 1
        for cursor in cursors:
            cursor.close()
        if root is not None:
            root.close()
            logger.info(f"Closed system database {self.home_path}")

    def _get_conn(self) -> duckdb.DuckDBPyConnection:
        """Get thread-local cursor, creating if needed."""
        conn = getattr(self._local, "conn", None)
        if conn is not None and getattr(self._local, "generation", -1) == self._generation:
            return conn

        with self._cursor_lock:
            if self._root is None:
                raise StoreUnavailableError("DuckDB client is not connected. Call connect() first.")
            conn = self._root.cursor()
            self._cursors.append(conn)
            generation = self._generation
        self._local.conn = conn
        self._local.generation = generation
        return conn

    async def _run(self, fn: Callable[[], T], *, check_connected: bool = True) -> T:
        """Run a blocking DuckDB call in a worker thread."""
        if check_connected and self._root is None:
            raise StoreUnavailableError("DuckDB client is not connected. Call connect() first.")
        try:
            return await asyncio.to_thread(fn)
        except (duckdb.IOException, duckdb.ConnectionException) as e:
            raise StoreUnavailableError(str(e)) from e

    # -------------------------------------------------------------------------
    # Cross-database context
    # -------------------------------------------------------------------------

    @contextmanager
    def use_database(
        self, conn: duckdb.DuckDBPyConnection, namespace: str, database: str
    ) -> Iterator[duckdb.DuckDBPyConnection]:
        """
        Switch a cursor to a knowledge-base database for the block.

        The previous default catalog is restored on exit, including when the
        block raises.
        """
        path = self.database_path(namespace, database)
        alias = self.database_alias(namespace, database)
        path.parent.mkdir(parents=True, exist_ok=True)

        previous = conn.execute("SELECT current_database()").fetchone()[0]
        conn.execute(f"ATTACH IF NOT EXISTS {_quote_literal(str(path))} AS {_quote_identifier(alias)}")
        conn.execute(f"USE {_quote_identifier(alias)}")
        try:
            yield conn
        finally:
            conn.execute(f"USE {_quote_identifier(previous)}")

    # -------------------------------------------------------------------------
    # Home database
    # -------------------------------------------------------------------------

    async def query(self, sql: str, params: Params = None) -> list[dict[str, Any]]:
        """Run one statement against the system database."""
        return await self._run(lambda: _fetch(self._get_conn(), sql, params))

    async def execute(self, statements: Sequence[Statement]) -> None:
        """Run statements against the system database in one transaction."""
        if not statements:
            return
        await self._run(lambda: _run_transaction(self._get_conn(), statements))

    # -------------------------------------------------------------------------
    # Knowledge-base databases
    # -------------------------------------------------------------------------

    async def query_in_database(
        self, namespace: str, database: str, sql: str, params: Params = None
    ) -> list[dict[str, Any]]:
        """Run one statement against a knowledge-base database."""

        def _query() -> list[dict[str, Any]]:
            with self.use_database(self._get_conn(), namespace, database) as conn:
                return _fetch(conn, sql, params)

        return await self._run(_query)

    async def execute_in_database(
        self, namespace: str, database: str, statements: Sequence[Statement]
    ) -> None:
        """Run statements against a knowledge-base database in one transaction."""
        if not statements:
            return

        def _execute() -> None:
            with self.use_database(self._get_conn(), namespace, database) as conn:
                _run_transaction(conn, statements)

        await self._run(_execute)

    async def table_exists(self, namespace: str, database: str, table: str) -> bool:
        """Check whether a table exists in a knowledge-base database."""
        rows = await self.query_in_database(
            namespace,
            database,
            "SELECT count(*) AS n FROM duckdb_tables() "
            "WHERE database_name = current_database() AND table_name = $table",
            {"table": table},
        )
        return bool(rows and rows[0]["n"])
