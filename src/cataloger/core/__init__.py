"""Core module exports."""

from cataloger.core.errors import (
    CatalogerError,
    ConfigError,
    ErrorCode,
    ExtractionError,
    InternalError,
    KnowledgeBaseError,
    SamplingError,
    ScanError,
)
from cataloger.core.logging import (
    clear_run_id,
    configure_logging,
    get_logger,
    get_run_id,
    set_run_id,
)
from cataloger.core.progress import spinner, status

__all__ = [
    # Errors
    "CatalogerError",
    "ConfigError",
    "ErrorCode",
    "ExtractionError",
    "InternalError",
    "KnowledgeBaseError",
    "SamplingError",
    "ScanError",
    # Logging
    "clear_run_id",
    "configure_logging",
    "get_logger",
    "get_run_id",
    "set_run_id",
    # Progress
    "spinner",
    "status",
]
