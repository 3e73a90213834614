"""Collection name resolution.

Each operation gets every applicable candidate, in descending confidence:

1. LiteralString        literal name argument on the handle        1.0
2. VariableBinding      literal/config key found after h hops      max(0, 1 - 0.15*h)
3. AttributeAnnotation  bound record declares its collection       0.9
4. ConventionFallback   pluralised, lower-cased record name        0.4
5. Unresolved           nothing traceable                          0.0

Ties on confidence break by method precedence (1 > 2 > 3 > 4), then by name.
"""

from __future__ import annotations

import re
from collections.abc import Iterable

import structlog

from cataloger.config.constants import (
    ANNOTATION_CONFIDENCE,
    BINDING_BASE_CONFIDENCE,
    BINDING_HOP_PENALTY,
    CONVENTION_CONFIDENCE,
    LITERAL_CONFIDENCE,
)
from cataloger.extraction.extractor import OperationContext
from cataloger.facts.models import (
    Candidate,
    OperationFact,
    RecordRef,
    RecordShapeFact,
    ResolutionMethod,
    ResolvedCollection,
)
from cataloger.parsing.models import ValueExpr, ValueKind

logger = structlog.get_logger()

_VOWELS = frozenset("aeiou")
_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def pluralize(symbol_name: str) -> str:
    """Convention collection name for a record type: ``OrderItem`` -> ``orderitems``."""
    word = symbol_name.rsplit(".", 1)[-1].lower()
    if not word:
        return word
    if word.endswith("y") and len(word) > 1 and word[-2] not in _VOWELS:
        return word[:-1] + "ies"
    if word.endswith(("s", "x", "z", "ch", "sh")):
        return word + "es"
    return word + "s"


def binding_confidence(hops: int) -> float:
    """Confidence of a name found after ``hops`` assignment lookups. Non-increasing in hops."""
    return max(0.0, round(BINDING_BASE_CONFIDENCE - BINDING_HOP_PENALTY * hops, 4))


def rank(candidates: Iterable[Candidate]) -> tuple[Candidate, ...]:
    """Sort candidates and keep the best-ranked entry per name."""
    best: dict[str, Candidate] = {}
    for c in sorted(candidates, key=Candidate.sort_key):
        best.setdefault(c.name, c)
    return tuple(sorted(best.values(), key=Candidate.sort_key))


def _unresolved(fact_id: str) -> ResolvedCollection:
    return ResolvedCollection(
        fact_id=fact_id,
        collection_name=None,
        confidence=0.0,
        method=ResolutionMethod.UNRESOLVED,
    )


class CollectionResolver:
    """Infers the target collection for operation facts."""

    def __init__(self, hop_limit: int = 5) -> None:
        self._hop_limit = hop_limit

    def resolve(self, operation: OperationFact, context: OperationContext) -> ResolvedCollection:
        candidates: list[Candidate] = []

        traced = self._trace(context)
        if traced is not None:
            candidates.append(traced)
        candidates.extend(self._record_candidates(context.record))

        if not candidates:
            logger.debug(
                "collection_unresolved",
                fact_id=operation.id,
                path=operation.provenance.file_path,
                line=operation.provenance.line_range.start,
                receiver=context.call.receiver_text,
            )
            return _unresolved(operation.id)

        ranked = rank(candidates)
        top = ranked[0]
        return ResolvedCollection(
            fact_id=operation.id,
            collection_name=top.name,
            confidence=top.confidence,
            method=top.method,
            candidates=ranked,
        )

    def resolve_record(self, record: RecordShapeFact) -> ResolvedCollection:
        """Record-scoped binding for a record no operation resolved to."""
        ref = RecordRef(record.id, record.symbol_name, record.collection_annotation)
        ranked = rank(self._record_candidates(ref))
        top = ranked[0]
        return ResolvedCollection(
            fact_id=record.id,
            collection_name=top.name,
            confidence=top.confidence,
            method=top.method,
            candidates=ranked,
        )

    # -------------------------------------------------------------------------

    def _record_candidates(self, record: RecordRef | None) -> list[Candidate]:
        if record is None:
            return []
        out = []
        if record.collection_annotation:
            out.append(
                Candidate(record.collection_annotation, ANNOTATION_CONFIDENCE, ResolutionMethod.ATTRIBUTE_ANNOTATION)
            )
        out.append(Candidate(pluralize(record.symbol_name), CONVENTION_CONFIDENCE, ResolutionMethod.CONVENTION_FALLBACK))
        return out

    def _trace(self, context: OperationContext) -> Candidate | None:
        """Walk the receiver back to a literal or configuration key.

        Each assignment lookup (local, module constant or ``self`` attribute)
        is one hop; a configuration lookup is one more.
        """
        call = context.call
        symbols = context.symbols
        value: ValueExpr | None = call.receiver
        scope = call.scope
        line = call.line_start
        hops = 0

        while value is not None and hops <= self._hop_limit:
            kind = value.kind
            if kind is ValueKind.COLLECTION:
                value = value.inner
                continue
            if kind is ValueKind.LITERAL:
                if hops == 0:
                    return Candidate(value.text, LITERAL_CONFIDENCE, ResolutionMethod.LITERAL_STRING)
                return Candidate(value.text, binding_confidence(hops), ResolutionMethod.VARIABLE_BINDING)
            if kind is ValueKind.CONFIG:
                hops += 1
                if hops > self._hop_limit:
                    break
                return Candidate(value.default or value.text, binding_confidence(hops), ResolutionMethod.VARIABLE_BINDING)
            if kind is ValueKind.NAME:
                hops += 1
                binding = symbols.lookup(scope, value.text, line)
            elif kind is ValueKind.SELF_ATTR:
                hops += 1
                binding = symbols.lookup_self(call.enclosing_class, value.text)
            else:
                break
            if binding is None:
                break
            value, scope, line = binding.value, binding.scope, binding.line

        return None
