"""SQLite engine for the knowledge base.

This module provides:
- Database: connection manager with WAL mode for concurrent readers
- write(): BEGIN IMMEDIATE transactions retried with exponential backoff
  when another writer holds the lock

A write that still conflicts after the retry budget raises
KnowledgeBaseError.write_conflict for that unit of work only.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Generator
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

import structlog
from sqlalchemy import event, text
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, SQLModel, create_engine

from cataloger.config.models import KnowledgeBaseConfig
from cataloger.core.errors import KnowledgeBaseError
from cataloger.kb.models import KB_TABLES

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = structlog.get_logger()

T = TypeVar("T")


def _is_database_locked_error(error: Exception) -> bool:
    error_str = str(error).lower()
    return "database is locked" in error_str or "database is busy" in error_str


class Database:
    """SQLite connection manager with WAL mode and retrying writes."""

    def __init__(self, db_path: Path, config: KnowledgeBaseConfig | None = None) -> None:
        self.db_path = db_path
        self._config = config or KnowledgeBaseConfig()
        self.engine = self._create_engine()

    def _create_engine(self) -> Engine:
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise KnowledgeBaseError.unreachable(str(self.db_path), type(e).__name__) from e

        engine = create_engine(
            f"sqlite:///{self.db_path}",
            connect_args={"check_same_thread": False},
            pool_pre_ping=True,
        )
        busy_timeout_ms = self._config.busy_timeout_ms

        def _configure_pragmas(dbapi_conn: Any, _connection_record: Any) -> None:
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
            cursor.execute("PRAGMA synchronous=NORMAL")  # Safe with WAL
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        event.listen(engine, "connect", _configure_pragmas)
        return engine

    def create_all(self) -> None:
        """Create the knowledge-base tables. Raises KnowledgeBaseError if the file is unusable."""
        try:
            SQLModel.metadata.create_all(self.engine, tables=[m.__table__ for m in KB_TABLES])  # type: ignore[attr-defined]
        except OperationalError as e:
            raise KnowledgeBaseError.unreachable(str(self.db_path), str(e.orig)) from e

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """ORM session for reads."""
        with Session(self.engine) as session:
            yield session

    def write(self, fn: Callable[[Session], T], *, label: str = "write") -> T:
        """Run ``fn`` inside a BEGIN IMMEDIATE transaction, retrying on lock conflicts.

        The transaction commits when ``fn`` returns and rolls back if it raises.
        """
        retries = self._config.max_retries
        for attempt in range(retries + 1):  # +1 for initial attempt
            try:
                with Session(self.engine) as session:
                    session.execute(text("BEGIN IMMEDIATE"))
                    try:
                        result = fn(session)
                        session.commit()
                    except Exception:
                        session.rollback()
                        raise
                return result
            except OperationalError as e:
                if not _is_database_locked_error(e):
                    raise KnowledgeBaseError.unreachable(str(self.db_path), str(e.orig)) from e
                if attempt >= retries:
                    logger.error("kb_write_conflict", label=label, attempts=attempt + 1)
                    raise KnowledgeBaseError.write_conflict(label, attempt + 1) from e
                delay = min(
                    self._config.retry_base_delay_sec * (2**attempt),
                    self._config.retry_max_delay_sec,
                )
                logger.warning(
                    "sqlite_busy_retry",
                    label=label,
                    attempt=attempt + 1,
                    max_retries=retries,
                    delay_sec=delay,
                )
                time.sleep(delay)
        raise AssertionError("unreachable")
