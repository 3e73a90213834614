"""Cataloger error types with typed error codes.

Error code ranges:
- 2xxx: Config
- 3xxx: Extraction
- 4xxx: Knowledge base
- 5xxx: Sampling
- 6xxx: Scan
- 9xxx: Internal
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any


class ErrorCode(IntEnum):
    """Typed error codes for programmatic handling."""

    # Config (2xxx)
    CONFIG_PARSE_ERROR = 2001
    CONFIG_INVALID_VALUE = 2002
    CONFIG_MISSING_REQUIRED = 2003
    CONFIG_FILE_NOT_FOUND = 2004

    # Extraction (3xxx)
    EXTRACTION_PARSE_FAILED = 3001
    EXTRACTION_FILE_UNREADABLE = 3002
    EXTRACTION_FILE_TOO_LARGE = 3003

    # Knowledge base (4xxx)
    KB_UNREACHABLE = 4001
    KB_WRITE_CONFLICT = 4002
    KB_TIMEOUT = 4003
    KB_NOT_FOUND = 4004

    # Sampling (5xxx)
    SAMPLER_CONNECTION_FAILED = 5001
    SAMPLER_NOT_READ_ONLY = 5002
    SAMPLER_TIMEOUT = 5003
    SAMPLER_CLASSIFICATION_FAILED = 5004
    SAMPLER_BELOW_THRESHOLD = 5005

    # Scan (6xxx)
    SCAN_REPOSITORY_UNREADABLE = 6001
    SCAN_INVALID_BASELINE = 6002
    SCAN_CANCELLED = 6003
    SCAN_STAGE_FAILED = 6004

    # Internal (9xxx)
    INTERNAL_ERROR = 9001
    INTERNAL_TIMEOUT = 9002


@dataclass(frozen=True, slots=True)
class CatalogerError(Exception):
    """Base error with structured context for CLI and log output."""

    code: ErrorCode
    message: str
    retryable: bool = False
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def error_name(self) -> str:
        """String identifier for logging (e.g., 'KB_WRITE_CONFLICT')."""
        return self.code.name

    def to_dict(self) -> dict[str, Any]:
        """Serialize for JSON output."""
        return {
            "code": self.code.value,
            "error": self.error_name,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }

    def __str__(self) -> str:
        return f"[{self.code.value}] {self.error_name}: {self.message}"


class ConfigError(CatalogerError):
    """Configuration-related errors."""

    @classmethod
    def parse_error(cls, path: str, reason: str) -> "ConfigError":
        return cls(
            code=ErrorCode.CONFIG_PARSE_ERROR,
            message=f"Failed to parse config at {path}: {reason}",
            details={"path": path, "reason": reason},
        )

    @classmethod
    def invalid_value(cls, field: str, value: Any, reason: str) -> "ConfigError":
        return cls(
            code=ErrorCode.CONFIG_INVALID_VALUE,
            message=f"Invalid value for '{field}': {reason}",
            details={"field": field, "value": str(value), "reason": reason},
        )

    @classmethod
    def missing_required(cls, field: str) -> "ConfigError":
        return cls(
            code=ErrorCode.CONFIG_MISSING_REQUIRED,
            message=f"Missing required config field: {field}",
            details={"field": field},
        )


class ExtractionError(CatalogerError):
    """Per-file extraction failures. Never fatal to a scan run."""

    @classmethod
    def parse_failed(cls, path: str, reason: str, line: int | None = None) -> "ExtractionError":
        return cls(
            code=ErrorCode.EXTRACTION_PARSE_FAILED,
            message=f"Failed to parse {path}: {reason}",
            details={"path": path, "reason": reason, "line": line},
        )

    @classmethod
    def unreadable(cls, path: str, reason: str) -> "ExtractionError":
        return cls(
            code=ErrorCode.EXTRACTION_FILE_UNREADABLE,
            message=f"Cannot read {path}: {reason}",
            details={"path": path, "reason": reason},
        )

    @classmethod
    def too_large(cls, path: str, size_bytes: int, limit_bytes: int) -> "ExtractionError":
        return cls(
            code=ErrorCode.EXTRACTION_FILE_TOO_LARGE,
            message=f"{path} is {size_bytes} bytes, limit is {limit_bytes}",
            details={"path": path, "size_bytes": size_bytes, "limit_bytes": limit_bytes},
        )


class KnowledgeBaseError(CatalogerError):
    """Knowledge-base store errors."""

    @classmethod
    def unreachable(cls, location: str, reason: str) -> "KnowledgeBaseError":
        return cls(
            code=ErrorCode.KB_UNREACHABLE,
            message=f"Knowledge base unreachable at {location}: {reason}",
            details={"location": location, "reason": reason},
        )

    @classmethod
    def write_conflict(cls, file_path: str, attempts: int) -> "KnowledgeBaseError":
        return cls(
            code=ErrorCode.KB_WRITE_CONFLICT,
            message=f"Write conflict for {file_path} persisted after {attempts} attempts",
            retryable=True,
            details={"file_path": file_path, "attempts": attempts},
        )

    @classmethod
    def timeout(cls, operation: str, timeout_sec: float) -> "KnowledgeBaseError":
        return cls(
            code=ErrorCode.KB_TIMEOUT,
            message=f"Knowledge base {operation} exceeded {timeout_sec}s",
            retryable=True,
            details={"operation": operation, "timeout_sec": timeout_sec},
        )

    @classmethod
    def not_found(cls, what: str) -> "KnowledgeBaseError":
        return cls(
            code=ErrorCode.KB_NOT_FOUND,
            message=f"Not found in knowledge base: {what}",
            details={"what": what},
        )


class SamplingError(CatalogerError):
    """Sampling errors. Always isolated to a single collection."""

    @classmethod
    def connection_failed(cls, collection: str, error_type: str) -> "SamplingError":
        return cls(
            code=ErrorCode.SAMPLER_CONNECTION_FAILED,
            message=f"Sampling source failed for collection '{collection}' ({error_type})",
            retryable=True,
            details={"collection": collection, "error_type": error_type},
        )

    @classmethod
    def not_read_only(cls, collection: str) -> "SamplingError":
        return cls(
            code=ErrorCode.SAMPLER_NOT_READ_ONLY,
            message=f"Refusing to sample '{collection}': source is not read-only",
            details={"collection": collection},
        )

    @classmethod
    def timeout(cls, collection: str, timeout_sec: float) -> "SamplingError":
        return cls(
            code=ErrorCode.SAMPLER_TIMEOUT,
            message=f"Sampling '{collection}' exceeded {timeout_sec}s",
            retryable=True,
            details={"collection": collection, "timeout_sec": timeout_sec},
        )

    @classmethod
    def classification_failed(cls, collection: str, error_type: str) -> "SamplingError":
        return cls(
            code=ErrorCode.SAMPLER_CLASSIFICATION_FAILED,
            message=f"PII classification failed for '{collection}' ({error_type})",
            details={"collection": collection, "error_type": error_type},
        )

    @classmethod
    def below_threshold(cls, collection: str, confidence: float, threshold: float) -> "SamplingError":
        return cls(
            code=ErrorCode.SAMPLER_BELOW_THRESHOLD,
            message=f"Collection '{collection}' resolved at {confidence:.2f} < {threshold:.2f}",
            details={"collection": collection, "confidence": confidence, "threshold": threshold},
        )


class ScanError(CatalogerError):
    """Orchestrator-level errors."""

    @classmethod
    def repository_unreadable(cls, path: str, reason: str) -> "ScanError":
        return cls(
            code=ErrorCode.SCAN_REPOSITORY_UNREADABLE,
            message=f"Cannot enumerate repository {path}: {reason}",
            details={"path": path, "reason": reason},
        )

    @classmethod
    def invalid_baseline(cls, commit_sha: str, reason: str) -> "ScanError":
        return cls(
            code=ErrorCode.SCAN_INVALID_BASELINE,
            message=f"Cannot diff against {commit_sha}: {reason}",
            details={"commit_sha": commit_sha, "reason": reason},
        )

    @classmethod
    def cancelled(cls, stage: str) -> "ScanError":
        return cls(
            code=ErrorCode.SCAN_CANCELLED,
            message=f"Scan cancelled during {stage}",
            details={"stage": stage},
        )

    @classmethod
    def stage_failed(cls, stage: str, reason: str) -> "ScanError":
        return cls(
            code=ErrorCode.SCAN_STAGE_FAILED,
            message=f"Scan failed during {stage}: {reason}",
            details={"stage": stage, "reason": reason},
        )


class InternalError(CatalogerError):
    """Internal/unexpected errors."""

    @classmethod
    def unexpected(cls, reason: str, **details: Any) -> "InternalError":
        return cls(
            code=ErrorCode.INTERNAL_ERROR,
            message=f"Internal error: {reason}",
            details=details,
        )
