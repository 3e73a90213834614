"""Tests for kb/database.py."""

from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest
from sqlmodel import select

from cataloger.config.models import KnowledgeBaseConfig
from cataloger.core.errors import ErrorCode, KnowledgeBaseError
from cataloger.kb.database import Database
from cataloger.kb.models import ScanRunRow


def _run_row(run_id: str) -> ScanRunRow:
    return ScanRunRow(id=run_id, repository="/r", mode="full", status="running", started_at=0.0)


@pytest.fixture
def db(tmp_path: Path, kb_config: KnowledgeBaseConfig):
    database = Database(tmp_path / "nested" / "kb.db", kb_config)
    database.create_all()
    yield database
    database.dispose()


class TestDatabase:
    def test_creates_parent_directory(self, db: Database) -> None:
        assert db.db_path.parent.is_dir()

    def test_write_commits(self, db: Database) -> None:
        db.write(lambda s: s.add(_run_row("run-1")), label="t")
        with db.session() as session:
            assert session.exec(select(ScanRunRow)).one().id == "run-1"

    def test_write_rolls_back_on_error(self, db: Database) -> None:
        def _fail(session) -> None:
            session.add(_run_row("run-1"))
            session.flush()
            raise ValueError("boom")

        with pytest.raises(ValueError):
            db.write(_fail, label="t")
        with db.session() as session:
            assert session.exec(select(ScanRunRow)).all() == []

    def test_write_returns_callback_result(self, db: Database) -> None:
        assert db.write(lambda s: 42) == 42

    def test_unusable_location_is_unreachable(self, tmp_path: Path) -> None:
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        with pytest.raises(KnowledgeBaseError) as exc_info:
            Database(blocker / "kb.db")
        assert exc_info.value.code == ErrorCode.KB_UNREACHABLE


class TestWriteConflicts:
    """A write blocked by another writer retries, then fails for that unit only."""

    def test_persistent_lock_raises_write_conflict(self, db: Database) -> None:
        holder = sqlite3.connect(db.db_path, isolation_level=None)
        try:
            holder.execute("BEGIN IMMEDIATE")
            with pytest.raises(KnowledgeBaseError) as exc_info:
                db.write(lambda s: s.add(_run_row("run-1")), label="orders.py")
        finally:
            holder.execute("ROLLBACK")
            holder.close()

        error = exc_info.value
        assert error.code == ErrorCode.KB_WRITE_CONFLICT
        assert error.retryable
        assert error.details == {"file_path": "orders.py", "attempts": 3}

    def test_store_usable_after_conflict(self, db: Database) -> None:
        holder = sqlite3.connect(db.db_path, isolation_level=None)
        holder.execute("BEGIN IMMEDIATE")
        with pytest.raises(KnowledgeBaseError):
            db.write(lambda s: s.add(_run_row("run-1")))
        holder.execute("ROLLBACK")
        holder.close()

        db.write(lambda s: s.add(_run_row("run-2")))
        with db.session() as session:
            assert [r.id for r in session.exec(select(ScanRunRow)).all()] == ["run-2"]
