"""Fact extraction."""

from cataloger.extraction.extractor import (
    ExtractionResult,
    Extractor,
    FileDiagnostic,
    OperationContext,
    bind_records,
    is_record_shape,
    operation_kind,
)

__all__ = [
    "ExtractionResult",
    "Extractor",
    "FileDiagnostic",
    "OperationContext",
    "bind_records",
    "is_record_shape",
    "operation_kind",
]
