"""Structured logging for scans.

Every event emitted while a scan runs carries that run's ``run_id``. Console
outputs go quiet while a Rich spinner owns the terminal; file outputs keep
their own level.
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from cataloger.config.models import LoggingConfig, LogOutputConfig

_run_id: ContextVar[str | None] = ContextVar("run_id", default=None)


def get_run_id() -> str | None:
    return _run_id.get()


def set_run_id(run_id: str) -> None:
    _run_id.set(run_id)


def clear_run_id() -> None:
    _run_id.set(None)


def _add_run_id(
    _logger: structlog.types.WrappedLogger,
    _method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    if rid := get_run_id():
        event_dict.setdefault("run_id", rid)
    return event_dict


def _level(name: str) -> int:
    return logging.getLevelNamesMapping()[name.upper()]


class ConsoleSuppressingFilter(logging.Filter):
    """Drop console records while a Rich live display owns the terminal."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: ARG002
        from cataloger.core.progress import is_console_suppressed

        return not is_console_suppressed()


def configure_logging(*, config: LoggingConfig | None = None, level: str = "INFO") -> None:
    """Configure structlog over stdlib handlers, one handler per configured output.

    Without ``config`` a single console output on stderr is installed at ``level``.
    """
    from cataloger.config.models import LoggingConfig

    if config is None:
        config = LoggingConfig(level=level)  # type: ignore[arg-type]
    default_level = _level(config.level)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S", key="timestamp"),
        _add_run_id,  # type: ignore[list-item]
    ]

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(default_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        # Don't cache - allows reconfiguration and respects level changes
        cache_logger_on_first_use=False,
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(default_level)

    # SQLAlchemy engine echo is far too chatty at INFO
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    for output in config.outputs:
        handler = _create_handler(output, shared_processors)
        handler.setLevel(_level(output.level or config.level))
        root_logger.addHandler(handler)


def _create_handler(
    output: LogOutputConfig, shared_processors: list[structlog.types.Processor]
) -> logging.Handler:
    handler: logging.Handler
    if output.destination in ("stderr", "stdout"):
        stream = sys.stderr if output.destination == "stderr" else sys.stdout
        handler = logging.StreamHandler(stream)
        handler.addFilter(ConsoleSuppressingFilter())
        renderer: structlog.types.Processor = structlog.dev.ConsoleRenderer(
            colors=stream.isatty(), pad_event_to=0, pad_level=False
        )
    else:
        path = Path(output.destination)
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(path, mode="a")
        renderer = structlog.dev.ConsoleRenderer(colors=False, pad_event_to=0, pad_level=False)

    if output.format == "json":
        renderer = structlog.processors.JSONRenderer()
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(processor=renderer, foreign_pre_chain=shared_processors)
    )
    return handler


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    logger = structlog.get_logger()
    if name:
        logger = logger.bind(logger=name)
    return logger  # type: ignore[no-any-return]
