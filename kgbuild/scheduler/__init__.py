"""
Pipeline Schedulers

One polling loop per stage, each independently started, stopped and
recovered.

Modules:
    base: Idle/active polling loop
    extraction: Stage 1, language-model extraction per chunk
    graph_build: Stage 2, parse and merge into graph tables
    embedding: Stage 3, embeddings and vector indices
"""

from kgbuild.scheduler.base import ACTIVE, IDLE, PollingScheduler
from kgbuild.scheduler.embedding import INDEXING, EmbeddingScheduler
from kgbuild.scheduler.extraction import INTERRUPTED_ERROR, ExtractionScheduler
from kgbuild.scheduler.graph_build import GraphBuildScheduler

__all__ = [
    "IDLE",
    "ACTIVE",
    "INDEXING",
    "INTERRUPTED_ERROR",
    "PollingScheduler",
    "ExtractionScheduler",
    "GraphBuildScheduler",
    "EmbeddingScheduler",
]
