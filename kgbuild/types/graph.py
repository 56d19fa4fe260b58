"""
Graph Types

Records produced by the response parser and consumed by the upsert engine,
plus the derived table names of one graph.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from kgbuild.types.tasks import GraphTarget, validate_table_name

ENTITY_SUFFIX = "_entity"
RELATES_SUFFIX = "_relates"
ENTITY_CHUNKS_SUFFIX = "_entity_chunks"
RELATION_CHUNKS_SUFFIX = "_relation_chunks"


class GraphTableNames(BaseModel):
    """The four table names derived from a graph-table base."""

    model_config = ConfigDict(frozen=True)

    entity: str
    relates: str
    entity_chunks: str
    relation_chunks: str

    @classmethod
    def from_base(cls, base: str) -> "GraphTableNames":
        validate_table_name(base)
        return cls(
            entity=f"{base}{ENTITY_SUFFIX}",
            relates=f"{base}{RELATES_SUFFIX}",
            entity_chunks=f"{base}{ENTITY_CHUNKS_SUFFIX}",
            relation_chunks=f"{base}{RELATION_CHUNKS_SUFFIX}",
        )

    def all(self) -> list[str]:
        return [self.entity, self.relates, self.entity_chunks, self.relation_chunks]


class ParsedEntity(BaseModel):
    """
    An entity line after sanitization.

    Attributes:
        name: Sanitized name, the entity's key
        display_name: Name as extracted (trimmed)
        entity_type: Extracted type, "Other" when absent
        description: Free-text description
    """

    name: str
    display_name: str = ""
    entity_type: str = "Other"
    description: str = ""

    @property
    def label(self) -> str:
        return self.display_name or self.name


class ParsedRelation(BaseModel):
    """
    A relation line after sanitization.

    Attributes:
        source: Sanitized source name as extracted
        target: Sanitized target name as extracted
        key: Order-independent relation key of the endpoint pair
        keywords: Comma-separated keywords as extracted
        description: Free-text description
    """

    source: str
    target: str
    key: str
    keywords: str = ""
    description: str = ""

    @property
    def endpoints(self) -> tuple[str, str]:
        """Endpoints in key order (FROM, TO)."""
        first, second = sorted((self.source, self.target))
        return first, second

    @property
    def keyword_list(self) -> list[str]:
        return sorted({k.strip() for k in self.keywords.split(",") if k.strip()})


class ParseResult(BaseModel):
    """Entities and relations parsed from one extraction output."""

    entities: list[ParsedEntity] = Field(default_factory=list)
    relations: list[ParsedRelation] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.entities and not self.relations


class UpsertResult(BaseModel):
    """Counts of graph records merged for one chunk."""

    entities_upserted: int = 0
    relations_upserted: int = 0


class EmbeddingBatchInfo(BaseModel):
    """What the last embedding batch did."""

    target: GraphTarget
    kind: str
    embedded: int
    remaining: int


class TargetEmbeddingStatus(BaseModel):
    """Embedding coverage of one graph."""

    target: GraphTarget
    pending_entities: int = 0
    pending_relations: int = 0
    embedded_entities: int = 0
    embedded_relations: int = 0


class EmbeddingStatus(BaseModel):
    """Snapshot of the embedding scheduler."""

    state: str
    targets: list[TargetEmbeddingStatus] = Field(default_factory=list)
    last_error: str | None = None
    last_batch: EmbeddingBatchInfo | None = None
