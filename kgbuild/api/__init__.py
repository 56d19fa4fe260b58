"""
Public API Layer

Modules:
    builder: KnowledgeGraphBuilder - the service facade

Design Principles:
    - Single entry point (KnowledgeGraphBuilder) for the host process
    - Async-first with a few sync wrappers (_sync suffix)
    - Lazy initialization - don't connect until needed
    - Context manager support for resource cleanup
"""

from kgbuild.api.builder import KnowledgeGraphBuilder

__all__ = ["KnowledgeGraphBuilder"]
