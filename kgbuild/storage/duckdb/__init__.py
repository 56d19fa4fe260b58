"""
DuckDB Storage

Modules:
    client: Connection management and the cross-database context switch
    tasks: Stage 1 bookkeeping queries (kg_task, kg_chunk)
    builds: Stage 2 bookkeeping queries (kg_build_task, kg_build_chunk)
"""

from kgbuild.storage.duckdb.builds import BuildStore
from kgbuild.storage.duckdb.client import DuckDBClient, Statement
from kgbuild.storage.duckdb.tasks import TaskStore

__all__ = ["DuckDBClient", "Statement", "TaskStore", "BuildStore"]
