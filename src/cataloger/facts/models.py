"""Domain model for extracted facts, resolutions, relationships and samples.

Every fact carries exactly one immutable ProvenanceRecord. A fact's identity is
(repository, file_path, symbol_name, fact_kind); its ``id`` is a stable hash of
that identity, and each distinct content/commit combination is a revision.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

# ============================================================================
# ENUMS
# ============================================================================


class FactKind(str, Enum):
    """Kind component of a fact identity key."""

    RECORD = "record"
    OPERATION = "operation"


class OperationKind(str, Enum):
    """Persistence operation category."""

    FIND = "Find"
    INSERT = "Insert"
    UPDATE = "Update"
    DELETE = "Delete"
    AGGREGATE = "Aggregate"
    OTHER = "Other"

    @property
    def is_write(self) -> bool:
        return self in (OperationKind.INSERT, OperationKind.UPDATE, OperationKind.DELETE)


class ResolutionMethod(str, Enum):
    """How a collection name was bound to an operation."""

    LITERAL_STRING = "LiteralString"
    VARIABLE_BINDING = "VariableBinding"
    ATTRIBUTE_ANNOTATION = "AttributeAnnotation"
    CONVENTION_FALLBACK = "ConventionFallback"
    UNRESOLVED = "Unresolved"

    @property
    def precedence(self) -> int:
        """Tie-break rank; lower wins."""
        return _METHOD_PRECEDENCE[self]


_METHOD_PRECEDENCE = {
    ResolutionMethod.LITERAL_STRING: 1,
    ResolutionMethod.VARIABLE_BINDING: 2,
    ResolutionMethod.ATTRIBUTE_ANNOTATION: 3,
    ResolutionMethod.CONVENTION_FALLBACK: 4,
    ResolutionMethod.UNRESOLVED: 5,
}


class EdgeKind(str, Enum):
    """Relationship edge kind."""

    USES_RECORD = "UsesRecord"
    WRITES_TO_SAME_COLLECTION_AS = "WritesToSameCollectionAs"
    REFERENCES_RECORD = "ReferencesRecord"


class ScanMode(str, Enum):
    INCREMENTAL = "incremental"
    FULL = "full"
    INTEGRITY = "integrity"


class RunStatus(str, Enum):
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


class SampleStatus(str, Enum):
    COMPLETE = "complete"
    EMPTY = "empty"
    DEGRADED = "degraded"


# ============================================================================
# IDENTITY
# ============================================================================


def utcnow() -> datetime:
    return datetime.now(UTC)


def identity_key(repository: str, file_path: str, symbol_name: str, kind: FactKind) -> str:
    """Canonical identity string; the unit of supersession in the latest view."""
    return "\x1f".join((repository, file_path, symbol_name, kind.value))


def compute_fact_id(repository: str, file_path: str, symbol_name: str, kind: FactKind) -> str:
    """Stable fact id derived from the identity key."""
    raw = identity_key(repository, file_path, symbol_name, kind)
    return hashlib.sha256(raw.encode()).hexdigest()[:16]


# ============================================================================
# FACTS
# ============================================================================


@dataclass(frozen=True, slots=True)
class LineRange:
    start: int
    end: int

    def __str__(self) -> str:
        return f"{self.start}-{self.end}" if self.end != self.start else str(self.start)


@dataclass(frozen=True, slots=True)
class ProvenanceRecord:
    """Immutable origin metadata attached to every fact."""

    repository: str
    file_path: str
    symbol_name: str
    commit_sha: str
    line_range: LineRange
    captured_at: datetime = field(default_factory=utcnow, compare=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "repository": self.repository,
            "file_path": self.file_path,
            "symbol_name": self.symbol_name,
            "commit_sha": self.commit_sha,
            "line_range": [self.line_range.start, self.line_range.end],
            "captured_at": self.captured_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProvenanceRecord:
        start, end = data["line_range"]
        return cls(
            repository=data["repository"],
            file_path=data["file_path"],
            symbol_name=data["symbol_name"],
            commit_sha=data["commit_sha"],
            line_range=LineRange(int(start), int(end)),
            captured_at=datetime.fromisoformat(data["captured_at"]),
        )


@dataclass(frozen=True, slots=True)
class FieldSpec:
    """One declared field of a record shape."""

    name: str
    declared_type: str | None
    nullable: bool


@dataclass(frozen=True, slots=True)
class RecordShapeFact:
    """A plain data type's fields, in declaration order."""

    id: str
    symbol_name: str
    fields: tuple[FieldSpec, ...]
    provenance: ProvenanceRecord
    collection_annotation: str | None = None

    kind = FactKind.RECORD

    def payload(self) -> dict[str, Any]:
        return {
            "symbol_name": self.symbol_name,
            "fields": [asdict(f) for f in self.fields],
            "collection_annotation": self.collection_annotation,
        }


@dataclass(frozen=True, slots=True)
class OperationFact:
    """A call site performing a persistence operation."""

    id: str
    operation: OperationKind
    provenance: ProvenanceRecord
    bound_record_type: str | None = None
    bound_record_type_id: str | None = None
    literal_collection_hint: str | None = None
    filter_expression_text: str | None = None
    instantiated_from: str | None = None

    kind = FactKind.OPERATION

    def payload(self) -> dict[str, Any]:
        return {
            "operation": self.operation.value,
            "bound_record_type": self.bound_record_type,
            "bound_record_type_id": self.bound_record_type_id,
            "literal_collection_hint": self.literal_collection_hint,
            "filter_expression_text": self.filter_expression_text,
            "instantiated_from": self.instantiated_from,
        }


Fact = RecordShapeFact | OperationFact


def fact_content_hash(fact: Fact, extra: dict[str, Any] | None = None) -> str:
    """Hash of a fact's content, independent of capture time."""
    prov = fact.provenance.to_dict()
    prov.pop("captured_at")
    body = {"payload": fact.payload(), "provenance": prov, "extra": extra or {}}
    return hashlib.sha256(json.dumps(body, sort_keys=True, default=str).encode()).hexdigest()


# ============================================================================
# RESOLUTION / RELATIONSHIPS
# ============================================================================


@dataclass(frozen=True, slots=True)
class Candidate:
    name: str
    confidence: float
    method: ResolutionMethod

    def sort_key(self) -> tuple[float, int, str]:
        return (-self.confidence, self.method.precedence, self.name)

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "confidence": self.confidence, "method": self.method.value}


@dataclass(frozen=True, slots=True)
class ResolvedCollection:
    """Collection binding for an operation (or, for record-level fallbacks, a record)."""

    fact_id: str
    collection_name: str | None
    confidence: float
    method: ResolutionMethod
    candidates: tuple[Candidate, ...] = ()

    @property
    def is_resolved(self) -> bool:
        return self.collection_name is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "fact_id": self.fact_id,
            "collection_name": self.collection_name,
            "confidence": self.confidence,
            "method": self.method.value,
            "candidates": [c.to_dict() for c in self.candidates],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ResolvedCollection:
        return cls(
            fact_id=data["fact_id"],
            collection_name=data["collection_name"],
            confidence=float(data["confidence"]),
            method=ResolutionMethod(data["method"]),
            candidates=tuple(
                Candidate(c["name"], float(c["confidence"]), ResolutionMethod(c["method"]))
                for c in data.get("candidates", [])
            ),
        )


@dataclass(frozen=True, slots=True)
class RelationshipEdge:
    from_fact_id: str
    to_fact_id: str
    kind: EdgeKind
    confidence: float


@dataclass(frozen=True, slots=True)
class RecordRef:
    """Reference to a record shape known outside the current file."""

    fact_id: str
    symbol_name: str
    collection_annotation: str | None = None
    collection_name: str | None = None


@dataclass(frozen=True, slots=True)
class OperationRef:
    """A resolved operation known outside the current file."""

    fact_id: str
    file_path: str
    collection_name: str
    confidence: float
    bound_record_type_id: str | None = None


# ============================================================================
# SAMPLES / RUNS
# ============================================================================


@dataclass(frozen=True, slots=True)
class FieldShape:
    """Structural description of one observed field. Never holds a value."""

    path: str
    type: str
    nullable: bool | None = None
    length_range: tuple[int, int] | None = None
    format_signature: str | None = None
    redacted: bool = False

    def to_dict(self) -> dict[str, Any]:
        if self.redacted:
            return {"path": self.path, "type": self.type, "redacted": True}
        out: dict[str, Any] = {"path": self.path, "type": self.type, "redacted": False}
        if self.nullable is not None:
            out["nullable"] = self.nullable
        if self.length_range is not None:
            out["length_range"] = list(self.length_range)
        if self.format_signature is not None:
            out["format_signature"] = self.format_signature
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FieldShape:
        length = data.get("length_range")
        return cls(
            path=data["path"],
            type=data["type"],
            nullable=data.get("nullable"),
            length_range=(int(length[0]), int(length[1])) if length else None,
            format_signature=data.get("format_signature"),
            redacted=bool(data.get("redacted", False)),
        )


@dataclass(frozen=True, slots=True)
class Sample:
    """Structural-only, PII-redacted description of a collection's stored data."""

    collection_name: str
    scan_run_id: str
    field_shapes: tuple[FieldShape, ...]
    captured_at: datetime = field(default_factory=utcnow, compare=False)
    document_count: int = 0
    status: SampleStatus = SampleStatus.COMPLETE
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "collection_name": self.collection_name,
            "scan_run_id": self.scan_run_id,
            "field_shapes": [s.to_dict() for s in self.field_shapes],
            "captured_at": self.captured_at.isoformat(),
            "document_count": self.document_count,
            "status": self.status.value,
            "error": self.error,
        }


@dataclass
class ScanRun:
    """One execution of the scan pipeline against a repository."""

    id: str
    repository: str
    mode: ScanMode
    started_at: datetime = field(default_factory=utcnow)
    finished_at: datetime | None = None
    files_scanned: int = 0
    files_skipped: int = 0
    facts_added: int = 0
    facts_retired: int = 0
    facts_drifted: int = 0
    unresolved: int = 0
    status: RunStatus = RunStatus.RUNNING
    failed_stage: str | None = None
    commit_sha: str | None = None
    base_commit_sha: str | None = None
    # Files this run could not commit; the next incremental run revisits them
    pending_files: tuple[str, ...] = ()

    @property
    def status_label(self) -> str:
        if self.status is RunStatus.FAILED:
            return f"Failed({self.failed_stage})"
        return self.status.value.capitalize()
