"""Pydantic configuration models with env var support.

Configuration Hierarchy (highest to lowest precedence):
1. Direct kwargs to load_config()
2. Environment variables (CATALOGER__SECTION__KEY)
3. Repo YAML (.cataloger/config.yaml)
4. Global YAML (~/.config/cataloger/config.yaml)
5. Built-in defaults (this file)

Examples:
    CATALOGER__LOGGING__LEVEL=DEBUG
    CATALOGER__SCAN__MAX_WORKERS=8
    CATALOGER__SAMPLING__ENABLED=true
    CATALOGER__KNOWLEDGE_BASE__PATH=/var/lib/cataloger/kb.db
"""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class LogOutputConfig(BaseModel):
    """Single logging output configuration."""

    format: Literal["json", "console"] = "console"
    destination: str = "stderr"  # stderr, stdout, or absolute file path
    level: LogLevel | None = None  # Inherits from parent if None

    @field_validator("destination")
    @classmethod
    def validate_destination(cls, v: str) -> str:
        if v in ("stderr", "stdout"):
            return v
        path = Path(v).expanduser()
        if not path.is_absolute():
            raise ValueError(f"File destination must be absolute path: {v}")
        return str(path)


class LoggingConfig(BaseModel):
    """Logging configuration.

    Env vars:
        CATALOGER__LOGGING__LEVEL: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """

    level: LogLevel = Field(
        default="INFO",
        description="Root log level. DEBUG logs every extracted fact.",
    )
    outputs: list[LogOutputConfig] = Field(default_factory=lambda: [LogOutputConfig()])


class ScanConfig(BaseModel):
    """Repository scanning configuration.

    Env vars:
        CATALOGER__SCAN__MAX_WORKERS: Parallel extraction workers
        CATALOGER__SCAN__MAX_FILE_SIZE_MB: Skip files larger than this
        CATALOGER__SCAN__RESOLVER_HOP_LIMIT: Assignment hops traced per operation
        CATALOGER__SCAN__TIMEOUT_SEC: Cooperative run deadline
    """

    max_workers: int = Field(
        default=4,
        description="Extraction worker pool size. One unit of work per file.",
    )
    max_file_size_mb: int = Field(
        default=10,
        description="Skip files larger than this (MB). Skipped files are reported, not fatal.",
    )
    included_extensions: list[str] = Field(
        default_factory=lambda: [".py"],
        description="File extensions handed to the parser.",
    )
    excluded_dirs: list[str] = Field(
        default_factory=lambda: [
            ".git",
            ".cataloger",
            "__pycache__",
            ".venv",
            "venv",
            "node_modules",
            "build",
            "dist",
        ],
        description="Directory names never enumerated.",
    )
    resolver_hop_limit: int = Field(
        default=5,
        description="Maximum assignment hops traced when binding a collection name.",
    )
    timeout_sec: float | None = Field(
        default=None,
        description="Run deadline. When reached, no new resolution or sampling starts.",
    )

    @field_validator("max_workers", "resolver_hop_limit")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"Must be >= 1, got {v}")
        return v


class SamplingConfig(BaseModel):
    """Privacy-safe data sampling configuration.

    Env vars:
        CATALOGER__SAMPLING__ENABLED: Enable the sampling stage
        CATALOGER__SAMPLING__SOURCE_PATH: Directory of <collection>.jsonl exports
        CATALOGER__SAMPLING__MIN_CONFIDENCE: Resolution confidence required to sample
    """

    enabled: bool = Field(
        default=False,
        description="Sample resolved collections. Requires a read-only document source.",
    )
    source_path: str | None = Field(
        default=None,
        description="Directory containing read-only <collection>.jsonl exports.",
    )
    min_confidence: float = Field(
        default=0.8,
        description="Only collections resolved at or above this confidence are sampled.",
    )
    max_documents: int = Field(
        default=20,
        description="Documents drawn per collection.",
    )
    max_bytes: int = Field(
        default=262_144,
        description="Total byte budget per collection sample.",
    )
    timeout_sec: float = Field(
        default=10.0,
        description="Per-collection sampling timeout.",
    )
    max_concurrent: int = Field(
        default=2,
        description="Concurrent sampling requests against the data store. "
        "RISK: raising this consumes the store's read-only connection budget.",
    )
    min_interval_sec: float = Field(
        default=0.25,
        description="Minimum spacing between sampling requests (rate limit).",
    )

    @field_validator("min_confidence")
    @classmethod
    def validate_confidence(cls, v: float) -> float:
        if not (0.0 <= v <= 1.0):
            raise ValueError(f"Confidence must be within [0, 1], got {v}")
        return v


class KnowledgeBaseConfig(BaseModel):
    """Knowledge base storage configuration.

    Env vars:
        CATALOGER__KNOWLEDGE_BASE__PATH: SQLite file for the knowledge base
        CATALOGER__KNOWLEDGE_BASE__RETIRE_AFTER_FULL_SCANS: Absences before retirement
        CATALOGER__KNOWLEDGE_BASE__SAMPLE_TTL_DAYS: Sample retention
    """

    path: str | None = Field(
        default=None,
        description="Knowledge base file. Default: .cataloger/kb.db in the repository.",
    )
    retire_after_full_scans: int = Field(
        default=2,
        description="Consecutive full scans a fact may be absent before it is retired.",
    )
    sample_ttl_days: float = Field(
        default=30.0,
        description="Samples older than this are purged.",
    )
    busy_timeout_ms: int = Field(
        default=30000,
        description="SQLite busy timeout (ms). Bounds how long a write waits for a lock.",
    )
    max_retries: int = Field(
        default=3,
        description="Retries for a file batch whose write hits a lock conflict.",
    )
    retry_base_delay_sec: float = Field(
        default=0.1,
        description="Base delay between retries (exponential backoff).",
    )
    retry_max_delay_sec: float = Field(
        default=2.0,
        description="Cap on a single backoff delay.",
    )

    @field_validator("retire_after_full_scans")
    @classmethod
    def validate_retire(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"Must be >= 1, got {v}")
        return v


class CatalogerConfig(BaseModel):
    """Root configuration for Cataloger."""

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    scan: ScanConfig = Field(default_factory=ScanConfig)
    sampling: SamplingConfig = Field(default_factory=SamplingConfig)
    knowledge_base: KnowledgeBaseConfig = Field(default_factory=KnowledgeBaseConfig)
