"""Read-side queries over the latest view: search and get-type."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import or_
from sqlmodel import col, select

from cataloger.config.constants import SEARCH_DEFAULT_LIMIT, SEARCH_MAX_LIMIT
from cataloger.core.errors import KnowledgeBaseError
from cataloger.facts.models import FactKind, ResolvedCollection, Sample
from cataloger.kb.models import FactLatest, FactLogEntry, FactStatus
from cataloger.kb.store import KnowledgeBaseStore, StoredEdge, StoredFact, stored_fact

_MATCH_ORDER = {"symbol": 0, "collection": 1, "field": 2}


def _like_pattern(query: str) -> str:
    escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


@dataclass(frozen=True, slots=True)
class SearchHit:
    fact: StoredFact
    matched_on: str  # symbol | collection | field
    matched_text: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "fact_id": self.fact.fact_id,
            "kind": self.fact.kind.value,
            "symbol_name": self.fact.symbol_name,
            "collection_name": self.fact.collection_name,
            "confidence": self.fact.confidence,
            "matched_on": self.matched_on,
            "matched_text": self.matched_text,
            "deep_link": self.fact.deep_link,
        }


@dataclass
class TypeDetail:
    """Everything known about one symbol."""

    fact: StoredFact
    collection: ResolvedCollection | None = None
    operations: list[StoredFact] = field(default_factory=list)
    edges: list[StoredEdge] = field(default_factory=list)
    sample: Sample | None = None

    @property
    def deep_link(self) -> str:
        return self.fact.deep_link

    def to_dict(self) -> dict[str, Any]:
        return {
            "fact": self.fact.to_dict(),
            "collection": self.collection.to_dict() if self.collection else None,
            "operations": [
                {
                    "fact_id": op.fact_id,
                    "symbol_name": op.symbol_name,
                    "operation": op.payload.get("operation"),
                    "collection_name": op.collection_name,
                    "confidence": op.confidence,
                    "deep_link": op.deep_link,
                }
                for op in self.operations
            ],
            "edges": [
                {
                    "from": e.from_fact_id,
                    "to": e.to_fact_id,
                    "kind": e.kind.value,
                    "confidence": e.confidence,
                }
                for e in self.edges
            ],
            "sample": self.sample.to_dict() if self.sample else None,
            "deep_link": self.deep_link,
        }


class KnowledgeBaseQueries:
    """Queries for the CLI. Only live facts are visible."""

    def __init__(self, store: KnowledgeBaseStore) -> None:
        self._store = store

    def search(
        self,
        query: str,
        *,
        repository: str | None = None,
        limit: int = SEARCH_DEFAULT_LIMIT,
    ) -> list[SearchHit]:
        """Facts whose symbol, resolved collection or field names contain ``query``.

        Matching is case-insensitive. Symbol matches rank before collection
        matches, which rank before field matches; exact matches rank first.
        """
        needle = query.strip()
        if not needle:
            return []
        limit = max(1, min(limit, SEARCH_MAX_LIMIT))
        pattern = _like_pattern(needle)

        with self._store.read_session() as session:
            stmt = select(FactLatest, FactLogEntry).where(
                FactLatest.log_id == FactLogEntry.id,
                FactLatest.status == FactStatus.LIVE.value,
                or_(
                    col(FactLatest.symbol_name).ilike(pattern, escape="\\"),
                    col(FactLatest.collection_name).ilike(pattern, escape="\\"),
                    col(FactLogEntry.payload_json).ilike(pattern, escape="\\"),
                ),
            )
            if repository is not None:
                stmt = stmt.where(FactLatest.repository == repository)
            rows = session.exec(stmt).all()

        lowered = needle.lower()
        hits: list[tuple[tuple[int, int, str], SearchHit]] = []
        for latest, entry in rows:
            fact = stored_fact(latest, entry)
            hit = _classify_hit(fact, lowered)
            if hit is None:
                continue
            exact = 0 if hit.matched_text.lower() == lowered else 1
            hits.append(((exact, _MATCH_ORDER[hit.matched_on], fact.symbol_name), hit))

        hits.sort(key=lambda pair: pair[0])
        return [hit for _, hit in hits[:limit]]

    def get_type(self, symbol_name: str, *, repository: str | None = None) -> list[TypeDetail]:
        """Full detail for every live fact named ``symbol_name``.

        Record shapes come before operations. Raises KnowledgeBaseError.not_found
        when nothing matches.
        """
        facts = [
            f
            for f in self._store.latest_facts(repository)
            if f.symbol_name == symbol_name or f.symbol_name.endswith(f".{symbol_name}")
        ]
        if not facts:
            raise KnowledgeBaseError.not_found(f"symbol {symbol_name!r}")
        facts.sort(key=lambda f: (f.kind is not FactKind.RECORD, f.file_path, f.symbol_name))

        operations = self._store.latest_facts(repository, kind=FactKind.OPERATION)
        return [self._detail(fact, operations) for fact in facts]

    def _detail(self, fact: StoredFact, operations: list[StoredFact]) -> TypeDetail:
        detail = TypeDetail(fact=fact, edges=self._store.edges_of(fact.fact_id))
        if fact.kind is FactKind.OPERATION:
            detail.collection = fact.resolution
        else:
            detail.operations = [
                op for op in operations if op.payload.get("bound_record_type_id") == fact.fact_id
            ]
            detail.collection = _best_resolution(fact, detail.operations)

        if detail.collection is not None and detail.collection.collection_name:
            detail.sample = self._store.latest_sample(detail.collection.collection_name)
        return detail


def _classify_hit(fact: StoredFact, needle: str) -> SearchHit | None:
    if needle in fact.symbol_name.lower():
        return SearchHit(fact, "symbol", fact.symbol_name)
    if fact.collection_name and needle in fact.collection_name.lower():
        return SearchHit(fact, "collection", fact.collection_name)
    for spec in fact.payload.get("fields", []):
        name = spec.get("name", "")
        if needle in name.lower():
            return SearchHit(fact, "field", name)
    return None


def _best_resolution(record: StoredFact, operations: list[StoredFact]) -> ResolvedCollection | None:
    """Most confident resolution among the record's operations, else its own."""
    resolved = [op.resolution for op in operations if op.resolution and op.resolution.is_resolved]
    if resolved:
        return min(resolved, key=lambda r: (-r.confidence, r.method.precedence, r.collection_name or ""))
    return record.resolution
