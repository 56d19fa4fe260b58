"""
Storage Backends

Embedded storage using DuckDB + LanceDB, no server required.

Modules:
    duckdb/: Connection handling and bookkeeping queries
    schema: DDL for bookkeeping tables and graph tables
    lancedb/: Vector indices over embedded graph rows

Data Directory Structure:
    kgbuild_data/
    ├── kg_home.duckdb              # kg_task, kg_chunk, kg_build_*, kg_graph_target
    ├── <namespace>/
    │   └── <database>.duckdb       # source chunk tables + graph tables
    └── lancedb/
        └── <namespace>/<database>/
            ├── kg_entity.lance/
            └── kg_relates.lance/

Design Principles:
    - Zero infrastructure (embedded databases)
    - Bookkeeping and graph data in separate files
    - DuckDB is the source of truth; LanceDB is rebuilt from it
"""

from kgbuild.storage.duckdb import BuildStore, DuckDBClient, TaskStore
from kgbuild.storage.lancedb import GraphVectorIndex
from kgbuild.storage.schema import SchemaProvisioner, ensure_system_schema

__all__ = [
    "DuckDBClient",
    "TaskStore",
    "BuildStore",
    "SchemaProvisioner",
    "ensure_system_schema",
    "GraphVectorIndex",
]
