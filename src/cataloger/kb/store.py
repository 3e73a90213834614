"""Knowledge base store: append-only fact log plus a materialized latest view.

A file batch is the unit of commit. Its facts, their resolutions and the
relationship edges sourced from the file land in one transaction, so a failed
run never leaves a file half-represented. Writers for the same repository are
serialized in-process by a per-repository lock and across processes by
SQLite's BEGIN IMMEDIATE.
"""

from __future__ import annotations

import json
import threading
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import structlog
from sqlalchemy import and_, or_
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, col, select

from cataloger.config.models import KnowledgeBaseConfig
from cataloger.core.errors import KnowledgeBaseError
from cataloger.facts.models import (
    EdgeKind,
    Fact,
    FactKind,
    FieldShape,
    LineRange,
    OperationRef,
    RecordRef,
    RelationshipEdge,
    ResolvedCollection,
    RunStatus,
    Sample,
    SampleStatus,
    ScanMode,
    ScanRun,
    fact_content_hash,
    identity_key,
)
from cataloger.kb.database import Database
from cataloger.kb.models import (
    FactLatest,
    FactLogEntry,
    FactStatus,
    RelationshipEdgeRow,
    SampleRow,
    ScanRunRow,
)

logger = structlog.get_logger()

_SECONDS_PER_DAY = 86_400.0
_BASELINE_MODES = (ScanMode.INCREMENTAL.value, ScanMode.FULL.value)

_repo_locks: dict[str, threading.Lock] = {}
_repo_locks_guard = threading.Lock()


def _repository_lock(repository: str) -> threading.Lock:
    with _repo_locks_guard:
        lock = _repo_locks.get(repository)
        if lock is None:
            lock = _repo_locks[repository] = threading.Lock()
        return lock


def _ts(value: datetime | None) -> float | None:
    return value.timestamp() if value is not None else None


def _dt(value: float | None) -> datetime | None:
    return datetime.fromtimestamp(value, UTC) if value is not None else None


def revision_id_for(fact: Fact, resolution: ResolvedCollection | None) -> str:
    """Content address of a fact revision. Capture time does not participate."""
    extra = {
        "identity": identity_key(
            fact.provenance.repository,
            fact.provenance.file_path,
            fact.provenance.symbol_name,
            fact.kind,
        ),
        "resolution": resolution.to_dict() if resolution is not None else None,
    }
    return fact_content_hash(fact, extra)


# ============================================================================
# BATCHES AND VIEWS
# ============================================================================


@dataclass
class FileBatch:
    """Everything one file produced in one run, committed together."""

    repository: str
    file_path: str
    facts: list[Fact] = field(default_factory=list)
    resolutions: dict[str, ResolvedCollection] = field(default_factory=dict)
    edges: list[RelationshipEdge] = field(default_factory=list)
    low_confidence_edges: list[RelationshipEdge] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class MergeResult:
    added: int
    unchanged: int


@dataclass(frozen=True, slots=True)
class StoredFact:
    """A row of the latest view joined with the log entry it points to."""

    fact_id: str
    kind: FactKind
    repository: str
    file_path: str
    symbol_name: str
    commit_sha: str
    line_range: LineRange
    revision_id: str
    status: FactStatus
    drifted: bool
    collection_name: str | None
    confidence: float | None
    method: str | None
    payload: dict[str, Any]
    provenance: dict[str, Any]
    resolution: ResolvedCollection | None

    @property
    def deep_link(self) -> str:
        return f"{self.repository}/{self.file_path}#L{self.line_range.start}-L{self.line_range.end}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "fact_id": self.fact_id,
            "kind": self.kind.value,
            "symbol_name": self.symbol_name,
            "status": self.status.value,
            "drifted": self.drifted,
            "collection_name": self.collection_name,
            "confidence": self.confidence,
            "method": self.method,
            "payload": self.payload,
            "provenance": self.provenance,
            "resolution": self.resolution.to_dict() if self.resolution else None,
            "deep_link": self.deep_link,
        }


@dataclass(frozen=True, slots=True)
class StoredRevision:
    revision_id: str
    commit_sha: str
    scan_run_id: str
    captured_at: datetime
    collection_name: str | None
    payload: dict[str, Any]


@dataclass(frozen=True, slots=True)
class StoredEdge:
    from_fact_id: str
    to_fact_id: str
    kind: EdgeKind
    confidence: float
    is_candidate: bool


def stored_fact(latest: FactLatest, entry: FactLogEntry) -> StoredFact:
    return StoredFact(
        fact_id=latest.fact_id,
        kind=FactKind(latest.fact_kind),
        repository=latest.repository,
        file_path=latest.file_path,
        symbol_name=latest.symbol_name,
        commit_sha=entry.commit_sha,
        line_range=LineRange(entry.line_start, entry.line_end),
        revision_id=entry.revision_id,
        status=FactStatus(latest.status),
        drifted=latest.drifted,
        collection_name=latest.collection_name,
        confidence=latest.confidence,
        method=latest.method,
        payload=json.loads(entry.payload_json),
        provenance=json.loads(entry.provenance_json),
        resolution=(
            ResolvedCollection.from_dict(json.loads(entry.resolution_json))
            if entry.resolution_json
            else None
        ),
    )


def _sample_from_row(row: SampleRow) -> Sample:
    return Sample(
        collection_name=row.collection_name,
        scan_run_id=row.scan_run_id,
        field_shapes=tuple(FieldShape.from_dict(d) for d in json.loads(row.field_shapes_json)),
        captured_at=_dt(row.captured_at) or datetime.now(UTC),
        document_count=row.document_count,
        status=SampleStatus(row.status),
        error=row.error,
    )


def _run_from_row(row: ScanRunRow) -> ScanRun:
    return ScanRun(
        id=row.id,
        repository=row.repository,
        mode=ScanMode(row.mode),
        started_at=_dt(row.started_at) or datetime.now(UTC),
        finished_at=_dt(row.finished_at),
        files_scanned=row.files_scanned,
        files_skipped=row.files_skipped,
        facts_added=row.facts_added,
        facts_retired=row.facts_retired,
        facts_drifted=row.facts_drifted,
        unresolved=row.unresolved,
        status=RunStatus(row.status),
        failed_stage=row.failed_stage,
        commit_sha=row.commit_sha,
        base_commit_sha=row.base_commit_sha,
        pending_files=tuple(json.loads(row.pending_files_json or "[]")),
    )


# ============================================================================
# STORE
# ============================================================================


class KnowledgeBaseStore:
    """Versioned, queryable store of facts, edges, samples and scan runs."""

    def __init__(self, db: Database, config: KnowledgeBaseConfig | None = None) -> None:
        self.db = db
        self.config = config or KnowledgeBaseConfig()

    @classmethod
    def open(cls, path: Path, config: KnowledgeBaseConfig | None = None) -> KnowledgeBaseStore:
        """Open (creating if needed) the knowledge base at ``path``.

        Raises KnowledgeBaseError.unreachable when the file cannot be used.
        """
        config = config or KnowledgeBaseConfig()
        db = Database(path, config)
        db.create_all()
        return cls(db, config)

    def close(self) -> None:
        self.db.dispose()

    def read_session(self) -> Session:
        return Session(self.db.engine)

    # ------------------------------------------------------------------
    # Facts
    # ------------------------------------------------------------------

    def merge_facts(self, batch: FileBatch, scan_run_id: str) -> MergeResult:
        """Commit one file batch atomically. Re-merging identical content adds nothing."""
        with _repository_lock(batch.repository):
            result = self.db.write(
                lambda session: self._merge(session, batch, scan_run_id),
                label=batch.file_path,
            )
        logger.debug(
            "file_batch_committed",
            file=batch.file_path,
            added=result.added,
            unchanged=result.unchanged,
            edges=len(batch.edges),
        )
        return result

    def _merge(self, session: Session, batch: FileBatch, scan_run_id: str) -> MergeResult:
        now = time.time()
        added = unchanged = 0
        for fact in batch.facts:
            resolution = batch.resolutions.get(fact.id)
            revision_id = revision_id_for(fact, resolution)
            collection_name = resolution.collection_name if resolution is not None else None

            entry = session.exec(
                select(FactLogEntry).where(FactLogEntry.revision_id == revision_id)
            ).first()
            if entry is None:
                prov = fact.provenance
                entry = FactLogEntry(
                    revision_id=revision_id,
                    fact_id=fact.id,
                    repository=prov.repository,
                    file_path=prov.file_path,
                    symbol_name=prov.symbol_name,
                    fact_kind=fact.kind.value,
                    commit_sha=prov.commit_sha,
                    line_start=prov.line_range.start,
                    line_end=prov.line_range.end,
                    captured_at=prov.captured_at.timestamp(),
                    scan_run_id=scan_run_id,
                    collection_name=collection_name,
                    payload_json=json.dumps(fact.payload(), sort_keys=True),
                    provenance_json=json.dumps(prov.to_dict(), sort_keys=True),
                    resolution_json=(
                        json.dumps(resolution.to_dict(), sort_keys=True) if resolution else None
                    ),
                )
                session.add(entry)
                session.flush()
                added += 1
            else:
                unchanged += 1

            latest = session.get(FactLatest, fact.id)
            if latest is None:
                latest = FactLatest(
                    fact_id=fact.id,
                    repository=fact.provenance.repository,
                    file_path=fact.provenance.file_path,
                    symbol_name=fact.provenance.symbol_name,
                    fact_kind=fact.kind.value,
                    log_id=entry.id,  # type: ignore[arg-type]
                    revision_id=revision_id,
                    last_seen_run_id=scan_run_id,
                    updated_at=now,
                )
            latest.log_id = entry.id  # type: ignore[assignment]
            latest.revision_id = revision_id
            latest.collection_name = collection_name
            latest.confidence = resolution.confidence if resolution is not None else None
            latest.method = resolution.method.value if resolution is not None else None
            latest.status = FactStatus.LIVE.value
            latest.drifted = False
            latest.missed_full_scans = 0
            latest.last_seen_run_id = scan_run_id
            latest.updated_at = now
            session.add(latest)

        self._replace_edges(session, batch, scan_run_id)
        return MergeResult(added=added, unchanged=unchanged)

    def _replace_edges(self, session: Session, batch: FileBatch, scan_run_id: str) -> None:
        """Swap in the file's edges.

        Same-collection edges touching the file's operations are re-derived in
        full on every commit of the file, so they are dropped wherever stored.
        """
        fact_ids = [f.id for f in batch.facts]
        stale = session.exec(
            select(RelationshipEdgeRow).where(
                RelationshipEdgeRow.repository == batch.repository,
                or_(
                    col(RelationshipEdgeRow.file_path) == batch.file_path,
                    and_(
                        col(RelationshipEdgeRow.kind) == EdgeKind.WRITES_TO_SAME_COLLECTION_AS.value,
                        or_(
                            col(RelationshipEdgeRow.from_fact_id).in_(fact_ids),
                            col(RelationshipEdgeRow.to_fact_id).in_(fact_ids),
                        ),
                    ),
                ),
            )
        ).all()
        for row in stale:
            session.delete(row)
        session.flush()
        for edges, is_candidate in ((batch.edges, False), (batch.low_confidence_edges, True)):
            for edge in edges:
                # Cross-file edges may already be stored under the other file
                for row in session.exec(
                    select(RelationshipEdgeRow).where(
                        RelationshipEdgeRow.repository == batch.repository,
                        RelationshipEdgeRow.from_fact_id == edge.from_fact_id,
                        RelationshipEdgeRow.to_fact_id == edge.to_fact_id,
                        RelationshipEdgeRow.kind == edge.kind.value,
                    )
                ).all():
                    session.delete(row)
                session.add(
                    RelationshipEdgeRow(
                        repository=batch.repository,
                        file_path=batch.file_path,
                        from_fact_id=edge.from_fact_id,
                        to_fact_id=edge.to_fact_id,
                        kind=edge.kind.value,
                        confidence=edge.confidence,
                        is_candidate=is_candidate,
                        scan_run_id=scan_run_id,
                    )
                )

    def finalize_full_scan(
        self,
        repository: str,
        scan_run_id: str,
        seen: set[str],
        skip_files: Iterable[str] = (),
    ) -> int:
        """Count an absence for every live fact not seen; retire those past the threshold.

        Facts in ``skip_files`` (files that failed this run) are left untouched.
        Returns the number of facts retired.
        """
        skipped = set(skip_files)
        threshold = self.config.retire_after_full_scans

        def _finalize(session: Session) -> int:
            retired = 0
            rows = session.exec(
                select(FactLatest).where(
                    FactLatest.repository == repository,
                    FactLatest.status == FactStatus.LIVE.value,
                )
            ).all()
            for row in rows:
                if row.fact_id in seen or row.file_path in skipped:
                    continue
                row.missed_full_scans += 1
                if row.missed_full_scans >= threshold:
                    row.status = FactStatus.RETIRED.value
                    retired += 1
                    for edge in session.exec(
                        select(RelationshipEdgeRow).where(
                            RelationshipEdgeRow.from_fact_id == row.fact_id
                        )
                    ).all():
                        session.delete(edge)
                session.add(row)
            return retired

        with _repository_lock(repository):
            retired = self.db.write(_finalize, label=f"finalize:{scan_run_id}")
        logger.info("full_scan_finalized", run_id=scan_run_id, retired=retired)
        return retired

    def mark_drift(self, repository: str, drifted: set[str], present: set[str]) -> int:
        """Flag facts whose source symbol is gone; clear the flag on facts still present.

        Drifted facts stay live. Returns the number newly flagged.
        """

        def _mark(session: Session) -> int:
            flagged = 0
            ids = drifted | present
            if not ids:
                return 0
            rows = session.exec(
                select(FactLatest).where(
                    FactLatest.repository == repository,
                    col(FactLatest.fact_id).in_(ids),
                )
            ).all()
            for row in rows:
                is_drifted = row.fact_id in drifted
                if is_drifted and not row.drifted:
                    flagged += 1
                row.drifted = is_drifted
                session.add(row)
            return flagged

        with _repository_lock(repository):
            return self.db.write(_mark, label="integrity")

    def latest_facts(
        self,
        repository: str | None = None,
        *,
        include_retired: bool = False,
        kind: FactKind | None = None,
    ) -> list[StoredFact]:
        with self.read_session() as session:
            stmt = select(FactLatest, FactLogEntry).where(FactLatest.log_id == FactLogEntry.id)
            if repository is not None:
                stmt = stmt.where(FactLatest.repository == repository)
            if not include_retired:
                stmt = stmt.where(FactLatest.status == FactStatus.LIVE.value)
            if kind is not None:
                stmt = stmt.where(FactLatest.fact_kind == kind.value)
            stmt = stmt.order_by(col(FactLatest.file_path), col(FactLatest.symbol_name))
            return [stored_fact(latest, entry) for latest, entry in session.exec(stmt).all()]

    def get_fact(self, fact_id: str) -> StoredFact | None:
        with self.read_session() as session:
            latest = session.get(FactLatest, fact_id)
            if latest is None:
                return None
            entry = session.get(FactLogEntry, latest.log_id)
            return stored_fact(latest, entry) if entry is not None else None

    def history(self, fact_id: str) -> list[StoredRevision]:
        """Every logged revision of one identity, oldest first."""
        with self.read_session() as session:
            entries = session.exec(
                select(FactLogEntry)
                .where(FactLogEntry.fact_id == fact_id)
                .order_by(col(FactLogEntry.id))
            ).all()
            return [
                StoredRevision(
                    revision_id=e.revision_id,
                    commit_sha=e.commit_sha,
                    scan_run_id=e.scan_run_id,
                    captured_at=_dt(e.captured_at) or datetime.now(UTC),
                    collection_name=e.collection_name,
                    payload=json.loads(e.payload_json),
                )
                for e in entries
            ]

    def known_records(self, repository: str) -> dict[str, RecordRef]:
        """Live record shapes by symbol name, for cross-file binding."""
        refs: dict[str, RecordRef] = {}
        for fact in self.latest_facts(repository, kind=FactKind.RECORD):
            refs[fact.symbol_name.rsplit(".", 1)[-1]] = RecordRef(
                fact_id=fact.fact_id,
                symbol_name=fact.symbol_name,
                collection_annotation=fact.payload.get("collection_annotation"),
                collection_name=fact.collection_name,
            )
        return refs

    def known_operations(self, repository: str) -> list[OperationRef]:
        """Live resolved operations, for cross-file relationship inference."""
        return [
            OperationRef(
                fact_id=fact.fact_id,
                file_path=fact.file_path,
                collection_name=fact.collection_name,
                confidence=fact.confidence or 0.0,
                bound_record_type_id=fact.payload.get("bound_record_type_id"),
            )
            for fact in self.latest_facts(repository, kind=FactKind.OPERATION)
            if fact.collection_name is not None
        ]

    def edges_of(self, fact_id: str, *, include_candidates: bool = False) -> list[StoredEdge]:
        with self.read_session() as session:
            stmt = select(RelationshipEdgeRow).where(
                or_(
                    col(RelationshipEdgeRow.from_fact_id) == fact_id,
                    col(RelationshipEdgeRow.to_fact_id) == fact_id,
                )
            )
            if not include_candidates:
                stmt = stmt.where(col(RelationshipEdgeRow.is_candidate).is_(False))
            return [
                StoredEdge(
                    from_fact_id=row.from_fact_id,
                    to_fact_id=row.to_fact_id,
                    kind=EdgeKind(row.kind),
                    confidence=row.confidence,
                    is_candidate=row.is_candidate,
                )
                for row in session.exec(stmt).all()
            ]

    # ------------------------------------------------------------------
    # Samples
    # ------------------------------------------------------------------

    def record_sample(self, sample: Sample) -> None:
        """Store a sample, replacing any earlier one for the same (collection, run)."""
        captured = sample.captured_at.timestamp()
        row = SampleRow(
            collection_name=sample.collection_name,
            scan_run_id=sample.scan_run_id,
            captured_at=captured,
            expires_at=captured + self.config.sample_ttl_days * _SECONDS_PER_DAY,
            document_count=sample.document_count,
            status=sample.status.value,
            error=sample.error,
            field_shapes_json=json.dumps([s.to_dict() for s in sample.field_shapes]),
        )

        def _upsert(session: Session) -> None:
            session.merge(row)

        self.db.write(_upsert, label=f"sample:{sample.collection_name}")

    def latest_sample(self, collection_name: str, *, now: float | None = None) -> Sample | None:
        now = time.time() if now is None else now
        with self.read_session() as session:
            row = session.exec(
                select(SampleRow)
                .where(
                    SampleRow.collection_name == collection_name,
                    SampleRow.expires_at > now,
                )
                .order_by(col(SampleRow.captured_at).desc())
            ).first()
            return _sample_from_row(row) if row is not None else None

    def purge_expired_samples(self, *, now: float | None = None) -> int:
        now = time.time() if now is None else now

        def _purge(session: Session) -> int:
            rows = session.exec(select(SampleRow).where(SampleRow.expires_at <= now)).all()
            for row in rows:
                session.delete(row)
            return len(rows)

        purged = self.db.write(_purge, label="purge_samples")
        if purged:
            logger.info("samples_purged", count=purged)
        return purged

    # ------------------------------------------------------------------
    # Scan runs
    # ------------------------------------------------------------------

    def start_run(self, run: ScanRun) -> None:
        self._save_run(run)

    def finish_run(self, run: ScanRun) -> None:
        self._save_run(run)

    def _save_run(self, run: ScanRun) -> None:
        row = ScanRunRow(
            id=run.id,
            repository=run.repository,
            mode=run.mode.value,
            status=run.status.value,
            failed_stage=run.failed_stage,
            started_at=run.started_at.timestamp(),
            finished_at=_ts(run.finished_at),
            files_scanned=run.files_scanned,
            files_skipped=run.files_skipped,
            facts_added=run.facts_added,
            facts_retired=run.facts_retired,
            facts_drifted=run.facts_drifted,
            unresolved=run.unresolved,
            commit_sha=run.commit_sha,
            base_commit_sha=run.base_commit_sha,
            pending_files_json=json.dumps(list(run.pending_files)),
        )

        def _upsert(session: Session) -> None:
            session.merge(row)

        self.db.write(_upsert, label=f"run:{run.id}")

    def last_successful_run(self, repository: str) -> ScanRun | None:
        """Newest Done incremental or full run; the baseline for incremental diffs.

        Integrity runs write no facts, so they never move the baseline.
        """
        with self.read_session() as session:
            row = session.exec(
                select(ScanRunRow)
                .where(
                    ScanRunRow.repository == repository,
                    ScanRunRow.status == RunStatus.DONE.value,
                    col(ScanRunRow.mode).in_(_BASELINE_MODES),
                )
                .order_by(col(ScanRunRow.finished_at).desc())
            ).first()
            return _run_from_row(row) if row is not None else None

    def get_run(self, run_id: str) -> ScanRun | None:
        with self.read_session() as session:
            row = session.get(ScanRunRow, run_id)
            return _run_from_row(row) if row is not None else None

    def ping(self) -> None:
        """Raise KnowledgeBaseError.unreachable if the store cannot be read."""
        try:
            with self.read_session() as session:
                session.exec(select(ScanRunRow).limit(1)).all()
        except OperationalError as e:
            raise KnowledgeBaseError.unreachable(str(self.db.db_path), str(e.orig)) from e
