"""
LanceDB Storage

Vector indices rebuilt from the embedded graph rows.
"""

from kgbuild.storage.lancedb.indices import ENTITY_KIND, RELATION_KIND, GraphVectorIndex

__all__ = ["GraphVectorIndex", "ENTITY_KIND", "RELATION_KIND"]
