"""Scan pipeline state, plans and run summaries."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from cataloger.config.constants import EXIT_FATAL, EXIT_OK, EXIT_PARTIAL
from cataloger.core.errors import CatalogerError
from cataloger.extraction import FileDiagnostic
from cataloger.facts.models import RelationshipEdge, RunStatus, ScanMode, ScanRun


class ScanState(str, Enum):
    """Orchestrator state. Transitions are sequential within a run."""

    IDLE = "idle"
    PLANNING = "planning"
    EXTRACTING = "extracting"
    RESOLVING = "resolving"
    SAMPLING = "sampling"
    COMMITTING = "committing"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class ScanPlan:
    """Which files a run visits and at which commit."""

    mode: ScanMode
    files: tuple[str, ...]
    commit_sha: str
    base_commit_sha: str | None = None
    deleted: tuple[str, ...] = ()
    full_enumeration: bool = True


@dataclass
class ScanSummary:
    run: ScanRun
    transitions: list[ScanState] = field(default_factory=lambda: [ScanState.IDLE])
    diagnostics: list[FileDiagnostic] = field(default_factory=list)
    low_confidence_edges: list[RelationshipEdge] = field(default_factory=list)
    samples_taken: int = 0
    samples_degraded: int = 0
    error: CatalogerError | None = None
    fatal: bool = False

    @property
    def state(self) -> ScanState:
        return self.transitions[-1]

    @property
    def exit_code(self) -> int:
        """0 success, 1 partial (skips, unresolved facts, failed stage), 2 fatal."""
        if self.fatal:
            return EXIT_FATAL
        if self.run.status is RunStatus.FAILED:
            return EXIT_PARTIAL
        if self.run.files_skipped or self.run.unresolved:
            return EXIT_PARTIAL
        return EXIT_OK

    def to_dict(self) -> dict[str, Any]:
        run = self.run
        return {
            "run_id": run.id,
            "repository": run.repository,
            "mode": run.mode.value,
            "status": run.status_label,
            "commit_sha": run.commit_sha,
            "base_commit_sha": run.base_commit_sha,
            "started_at": run.started_at.isoformat(),
            "finished_at": run.finished_at.isoformat() if run.finished_at else None,
            "files_scanned": run.files_scanned,
            "files_skipped": run.files_skipped,
            "facts_added": run.facts_added,
            "facts_retired": run.facts_retired,
            "facts_drifted": run.facts_drifted,
            "unresolved": run.unresolved,
            "samples_taken": self.samples_taken,
            "samples_degraded": self.samples_degraded,
            "transitions": [s.value for s in self.transitions],
            "diagnostics": [d.to_dict() for d in self.diagnostics],
            "low_confidence_edges": [
                {
                    "from": e.from_fact_id,
                    "to": e.to_fact_id,
                    "kind": e.kind.value,
                    "confidence": e.confidence,
                }
                for e in self.low_confidence_edges
            ],
            "error": self.error.to_dict() if self.error else None,
            "exit_code": self.exit_code,
        }
