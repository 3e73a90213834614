"""Relationship inference over resolved facts.

The graph is an arena of nodes addressed by fact id plus a flat edge list, so
mutually referencing record types form cycles without any ownership problem.
"""

from __future__ import annotations

import ast
import re
from collections import defaultdict
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

import structlog

from cataloger.config.constants import FOREIGN_KEY_CONFIDENCE, LOOKUP_CONFIDENCE, MIN_EDGE_CONFIDENCE
from cataloger.facts.models import (
    EdgeKind,
    FactKind,
    OperationFact,
    OperationKind,
    OperationRef,
    RecordRef,
    RecordShapeFact,
    RelationshipEdge,
    ResolvedCollection,
)

logger = structlog.get_logger()

RECORD_CONFIDENCE = 1.0

_IDENTIFIER = re.compile(r"[A-Za-z_][A-Za-z0-9_.]*")
_FOREIGN_KEY = re.compile(r"^(?P<stem>[A-Za-z][A-Za-z0-9_]*?)(?:_id|Id|ID)$")
_NON_RECORD_TYPES = frozenset(
    {
        "list",
        "List",
        "dict",
        "Dict",
        "set",
        "Set",
        "frozenset",
        "FrozenSet",
        "tuple",
        "Tuple",
        "Sequence",
        "Mapping",
        "Iterable",
        "Optional",
        "Union",
        "Annotated",
        "Literal",
        "None",
        "str",
        "int",
        "float",
        "bool",
        "bytes",
        "datetime",
        "date",
        "Decimal",
        "UUID",
        "Any",
    }
)


def referenced_type_names(declared_type: str | None) -> list[str]:
    """Simple names inside a declared type, with containers and optionals unwrapped."""
    if not declared_type:
        return []
    names = []
    for token in _IDENTIFIER.findall(declared_type):
        simple = token.rsplit(".", 1)[-1]
        if simple not in _NON_RECORD_TYPES and simple not in names:
            names.append(simple)
    return names


def foreign_key_stem(field_name: str) -> str | None:
    """Folded record name a foreign-key field points at (``customer_id`` -> ``customer``)."""
    match = _FOREIGN_KEY.match(field_name)
    if match is None:
        return None
    return match.group("stem").replace("_", "").lower()


def lookup_collections(pipeline_text: str | None) -> list[str]:
    """``from`` collections of the ``$lookup`` stages in a literal aggregate pipeline.

    Pipelines built from variables are not evaluated and yield nothing.
    """
    if not pipeline_text:
        return []
    try:
        pipeline = ast.literal_eval(pipeline_text)
    except (ValueError, TypeError, SyntaxError, RecursionError):
        return []
    stages = pipeline if isinstance(pipeline, list | tuple) else [pipeline]
    joined = []
    for stage in stages:
        lookup = stage.get("$lookup") if isinstance(stage, dict) else None
        if not isinstance(lookup, dict) or not isinstance(lookup.get("from"), str):
            continue
        if lookup.get("localField") and lookup.get("foreignField"):
            joined.append(lookup["from"])
    return joined


@dataclass(frozen=True, slots=True)
class FactNode:
    fact_id: str
    kind: FactKind
    symbol_name: str
    confidence: float
    collection_name: str | None = None


@dataclass
class FactGraph:
    """Arena of fact nodes plus edges; low-confidence edges are kept apart."""

    nodes: dict[str, FactNode] = field(default_factory=dict)
    edges: list[RelationshipEdge] = field(default_factory=list)
    low_confidence: list[RelationshipEdge] = field(default_factory=list)

    def add_node(self, node: FactNode) -> None:
        self.nodes.setdefault(node.fact_id, node)

    def edges_from(self, fact_id: str) -> list[RelationshipEdge]:
        return [e for e in self.edges if e.from_fact_id == fact_id]

    def edges_of(self, kind: EdgeKind) -> list[RelationshipEdge]:
        return [e for e in self.edges if e.kind is kind]


class RelationshipInferencer:
    """Builds UsesRecord, ReferencesRecord and WritesToSameCollectionAs edges."""

    def __init__(self, min_confidence: float = MIN_EDGE_CONFIDENCE) -> None:
        self._min_confidence = min_confidence

    def infer(
        self,
        records: Iterable[RecordShapeFact],
        operations: Iterable[OperationFact],
        resolutions: Mapping[str, ResolvedCollection],
        known_records: Mapping[str, RecordRef] | None = None,
        known_operations: Iterable[OperationRef] = (),
    ) -> FactGraph:
        """Infer edges for one file's facts.

        ``known_records`` and ``known_operations`` describe facts outside the
        file, so references and shared collections resolve across files.
        """
        graph = FactGraph()
        records = list(records)
        operations = list(operations)
        local_ops = {op.id for op in operations}
        others = [ref for ref in known_operations if ref.fact_id not in local_ops]

        for record in records:
            graph.add_node(FactNode(record.id, FactKind.RECORD, record.symbol_name, RECORD_CONFIDENCE))
        for op in operations:
            resolved = resolutions.get(op.id)
            graph.add_node(
                FactNode(
                    op.id,
                    FactKind.OPERATION,
                    op.provenance.symbol_name,
                    resolved.confidence if resolved else 0.0,
                    resolved.collection_name if resolved else None,
                )
            )

        known = known_records or {}
        record_ids = {ref.symbol_name.rsplit(".", 1)[-1]: ref.fact_id for ref in known.values()}
        record_ids.update({r.symbol_name.rsplit(".", 1)[-1]: r.id for r in records})

        self._uses_record(graph, operations)
        self._references_record(graph, records, record_ids)
        self._same_collection(graph, operations, others)
        by_collection = self._records_by_collection(records, operations, resolutions, known, others)
        self._lookups(graph, operations, by_collection)

        logger.debug(
            "relationships_inferred",
            nodes=len(graph.nodes),
            edges=len(graph.edges),
            low_confidence=len(graph.low_confidence),
        )
        return graph

    def _add_edge(self, graph: FactGraph, from_id: str, to_id: str, kind: EdgeKind, confidence: float) -> None:
        edge = RelationshipEdge(from_id, to_id, kind, round(confidence, 4))
        if edge.confidence < self._min_confidence:
            graph.low_confidence.append(edge)
        else:
            graph.edges.append(edge)

    def _confidence(self, graph: FactGraph, fact_id: str) -> float:
        node = graph.nodes.get(fact_id)
        # Records outside this batch are already committed facts
        return node.confidence if node else RECORD_CONFIDENCE

    def _uses_record(self, graph: FactGraph, operations: list[OperationFact]) -> None:
        for op in operations:
            if op.bound_record_type_id is None:
                continue
            confidence = self._confidence(graph, op.id) * self._confidence(graph, op.bound_record_type_id)
            self._add_edge(graph, op.id, op.bound_record_type_id, EdgeKind.USES_RECORD, confidence)

    def _references_record(
        self, graph: FactGraph, records: list[RecordShapeFact], record_ids: Mapping[str, str]
    ) -> None:
        """Field types naming a record, then ``<record>_id`` style foreign keys."""
        by_folded_name = {name.lower(): fact_id for name, fact_id in record_ids.items()}
        for record in records:
            seen: set[str] = set()
            for spec in record.fields:
                for name in referenced_type_names(spec.declared_type):
                    target = record_ids.get(name)
                    if target is None or target in seen:
                        continue
                    seen.add(target)
                    confidence = self._confidence(graph, record.id) * self._confidence(graph, target)
                    self._add_edge(graph, record.id, target, EdgeKind.REFERENCES_RECORD, confidence)

            for spec in record.fields:
                stem = foreign_key_stem(spec.name)
                target = by_folded_name.get(stem) if stem else None
                if target is None or target in seen or target == record.id:
                    continue
                seen.add(target)
                confidence = (
                    FOREIGN_KEY_CONFIDENCE
                    * self._confidence(graph, record.id)
                    * self._confidence(graph, target)
                )
                self._add_edge(graph, record.id, target, EdgeKind.REFERENCES_RECORD, confidence)

    def _same_collection(
        self, graph: FactGraph, operations: list[OperationFact], others: list[OperationRef]
    ) -> None:
        by_collection: dict[str, dict[str, float]] = defaultdict(dict)
        for ref in others:
            by_collection[ref.collection_name][ref.fact_id] = ref.confidence

        pairs: set[tuple[str, str]] = set()
        for op in operations:
            node = graph.nodes[op.id]
            if node.collection_name is None:
                continue
            members = by_collection[node.collection_name]
            for other_id, other_confidence in members.items():
                a, b = sorted((op.id, other_id))
                if (a, b) in pairs:
                    continue
                pairs.add((a, b))
                self._add_edge(
                    graph, a, b, EdgeKind.WRITES_TO_SAME_COLLECTION_AS, node.confidence * other_confidence
                )
            members[op.id] = node.confidence

    def _records_by_collection(
        self,
        records: list[RecordShapeFact],
        operations: list[OperationFact],
        resolutions: Mapping[str, ResolvedCollection],
        known: Mapping[str, RecordRef],
        others: list[OperationRef],
    ) -> dict[str, str]:
        """Collection name to record fact id, preferring operation bindings."""
        mapping: dict[str, str] = {}
        for op in operations:
            resolved = resolutions.get(op.id)
            if op.bound_record_type_id and resolved is not None and resolved.collection_name:
                mapping.setdefault(resolved.collection_name, op.bound_record_type_id)
        for ref in others:
            if ref.bound_record_type_id:
                mapping.setdefault(ref.collection_name, ref.bound_record_type_id)
        for record in records:
            resolved = resolutions.get(record.id)
            if resolved is not None and resolved.collection_name:
                mapping.setdefault(resolved.collection_name, record.id)
        for record_ref in known.values():
            if record_ref.collection_name:
                mapping.setdefault(record_ref.collection_name, record_ref.fact_id)
        return mapping

    def _lookups(
        self, graph: FactGraph, operations: list[OperationFact], records_by_collection: dict[str, str]
    ) -> None:
        """``$lookup`` stages link the pipeline's record to the joined record."""
        for op in operations:
            if op.operation is not OperationKind.AGGREGATE:
                continue
            node = graph.nodes[op.id]
            source = op.bound_record_type_id or records_by_collection.get(node.collection_name or "")
            if source is None:
                continue
            for joined in lookup_collections(op.filter_expression_text):
                target = records_by_collection.get(joined)
                if target is None or target == source:
                    continue
                confidence = LOOKUP_CONFIDENCE * node.confidence
                self._add_edge(graph, source, target, EdgeKind.REFERENCES_RECORD, confidence)
