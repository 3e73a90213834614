"""Knowledge base: append-only fact log, latest view, edges, samples, runs."""

from cataloger.kb.database import Database
from cataloger.kb.models import FactStatus
from cataloger.kb.queries import KnowledgeBaseQueries, SearchHit, TypeDetail
from cataloger.kb.store import (
    FileBatch,
    KnowledgeBaseStore,
    MergeResult,
    StoredEdge,
    StoredFact,
    StoredRevision,
    revision_id_for,
)

__all__ = [
    "Database",
    "FactStatus",
    "FileBatch",
    "KnowledgeBaseQueries",
    "KnowledgeBaseStore",
    "MergeResult",
    "SearchHit",
    "StoredEdge",
    "StoredFact",
    "StoredRevision",
    "TypeDetail",
    "revision_id_for",
]
