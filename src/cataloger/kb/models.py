"""SQLModel tables for the knowledge base.

Storage layout:
- fact_log: append-only, one row per fact revision; never updated or deleted
- fact_latest: one row per fact identity, pointing at its newest log row
- relationship_edges: edges for the current state of each source file
- samples: structural samples keyed by (collection_name, scan_run_id), with TTL
- scan_runs: one row per scan execution

Timestamps are Unix epoch seconds (float).
"""

from enum import Enum

from sqlmodel import Field, SQLModel


class FactStatus(str, Enum):
    LIVE = "live"
    RETIRED = "retired"


class FactLogEntry(SQLModel, table=True):
    """Immutable fact revision."""

    __tablename__ = "fact_log"

    id: int | None = Field(default=None, primary_key=True)
    revision_id: str = Field(unique=True, index=True)
    fact_id: str = Field(index=True)
    repository: str = Field(index=True)
    file_path: str = Field(index=True)
    symbol_name: str = Field(index=True)
    fact_kind: str
    commit_sha: str
    line_start: int
    line_end: int
    captured_at: float
    scan_run_id: str = Field(index=True)
    collection_name: str | None = Field(default=None, index=True)
    payload_json: str
    provenance_json: str
    resolution_json: str | None = None


class FactLatest(SQLModel, table=True):
    """Materialized latest view: one row per fact identity."""

    __tablename__ = "fact_latest"

    fact_id: str = Field(primary_key=True)  # hash of (repository, file, symbol, kind)
    repository: str = Field(index=True)
    file_path: str = Field(index=True)
    symbol_name: str = Field(index=True)
    fact_kind: str = Field(index=True)
    log_id: int = Field(foreign_key="fact_log.id")
    revision_id: str
    collection_name: str | None = Field(default=None, index=True)
    confidence: float | None = None
    method: str | None = None
    status: str = Field(default=FactStatus.LIVE.value, index=True)
    drifted: bool = Field(default=False)
    missed_full_scans: int = Field(default=0)
    last_seen_run_id: str
    updated_at: float


class RelationshipEdgeRow(SQLModel, table=True):
    """Edge produced by the commit of the file at ``file_path``."""

    __tablename__ = "relationship_edges"

    id: int | None = Field(default=None, primary_key=True)
    repository: str = Field(index=True)
    file_path: str = Field(index=True)
    from_fact_id: str = Field(index=True)
    to_fact_id: str = Field(index=True)
    kind: str
    confidence: float
    is_candidate: bool = Field(default=False)  # below the edge confidence floor
    scan_run_id: str


class SampleRow(SQLModel, table=True):
    __tablename__ = "samples"

    collection_name: str = Field(primary_key=True)
    scan_run_id: str = Field(primary_key=True)
    captured_at: float
    expires_at: float = Field(index=True)
    document_count: int = 0
    status: str
    error: str | None = None
    field_shapes_json: str


class ScanRunRow(SQLModel, table=True):
    __tablename__ = "scan_runs"

    id: str = Field(primary_key=True)
    repository: str = Field(index=True)
    mode: str
    status: str = Field(index=True)
    failed_stage: str | None = None
    started_at: float
    finished_at: float | None = None
    files_scanned: int = 0
    files_skipped: int = 0
    facts_added: int = 0
    facts_retired: int = 0
    facts_drifted: int = 0
    unresolved: int = 0
    commit_sha: str | None = None
    base_commit_sha: str | None = None
    pending_files_json: str = "[]"


KB_TABLES = (FactLogEntry, FactLatest, RelationshipEdgeRow, SampleRow, ScanRunRow)
