"""
kgbuild - Knowledge-Graph Construction Pipeline

Turns pre-chunked documents into an entity/relation graph with a three-stage
pipeline: language-model extraction, graph merge, and embedding/indexing.
Everything runs in-process over embedded DuckDB and LanceDB stores.

Example:
    >>> from kgbuild import KnowledgeGraphBuilder, SubmitTaskParams
    >>> async with KnowledgeGraphBuilder(data_dir="./kb_data") as builder:
    ...     await builder.start()
    ...     await builder.submit_task(SubmitTaskParams(
    ...         file_key="report.pdf",
    ...         source_namespace="acme",
    ...         source_database="docs",
    ...         source_table="chunks",
    ...     ))

Main Classes:
    KnowledgeGraphBuilder: Service facade owning the schedulers
    KGBuildConfig: Configuration management
"""

__version__ = "0.1.0"

# Public API - lazy imports to avoid loading the stores on import
def __getattr__(name: str):
    """Lazy import public API components."""

    if name == "KnowledgeGraphBuilder":
        from kgbuild.api.builder import KnowledgeGraphBuilder
        return KnowledgeGraphBuilder

    if name == "KGBuildConfig":
        from kgbuild.config.settings import KGBuildConfig
        return KGBuildConfig

    if name == "EventBus":
        from kgbuild.events import EventBus
        return EventBus

    # Types
    if name in ("GraphTarget", "SubmitTaskParams", "ExtractionConfig", "TaskStatus", "EventKind"):
        from kgbuild import types
        return getattr(types, name)

    raise AttributeError(f"module 'kgbuild' has no attribute {name!r}")


__all__ = [
    # Main classes
    "KnowledgeGraphBuilder",
    "KGBuildConfig",
    "EventBus",

    # Types
    "GraphTarget",
    "SubmitTaskParams",
    "ExtractionConfig",
    "TaskStatus",
    "EventKind",

    # Version
    "__version__",
]
