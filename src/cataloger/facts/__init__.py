"""Fact, resolution, relationship and sample data model."""

from cataloger.facts.models import (
    Candidate,
    EdgeKind,
    Fact,
    FactKind,
    FieldShape,
    FieldSpec,
    LineRange,
    OperationFact,
    OperationKind,
    OperationRef,
    ProvenanceRecord,
    RecordRef,
    RecordShapeFact,
    RelationshipEdge,
    ResolutionMethod,
    ResolvedCollection,
    RunStatus,
    Sample,
    SampleStatus,
    ScanMode,
    ScanRun,
    compute_fact_id,
    identity_key,
)

__all__ = [
    "Candidate",
    "EdgeKind",
    "Fact",
    "FactKind",
    "FieldShape",
    "FieldSpec",
    "LineRange",
    "OperationFact",
    "OperationKind",
    "OperationRef",
    "ProvenanceRecord",
    "RecordRef",
    "RecordShapeFact",
    "RelationshipEdge",
    "ResolutionMethod",
    "ResolvedCollection",
    "RunStatus",
    "Sample",
    "SampleStatus",
    "ScanMode",
    "ScanRun",
    "compute_fact_id",
    "identity_key",
]
