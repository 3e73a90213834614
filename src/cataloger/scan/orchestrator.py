"""Scan orchestrator: drives a run through its states and commits per file.

States: Idle -> Planning -> Extracting -> Resolving -> Sampling (optional)
-> Committing -> Done | Failed(stage).

Each file's batch is committed on its own, so a failure or cancellation at
any stage keeps every batch already produced and committed. The last
*successful* incremental or full run stays the incremental baseline, and the
files it could not commit are revisited by the next incremental run.
"""

from __future__ import annotations

import threading
import time
import uuid
from collections import defaultdict
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from pathlib import Path

import structlog

from cataloger.config.models import CatalogerConfig
from cataloger.core.errors import (
    CatalogerError,
    ErrorCode,
    ExtractionError,
    InternalError,
    KnowledgeBaseError,
    ScanError,
)
from cataloger.core.logging import clear_run_id, set_run_id
from cataloger.extraction import ExtractionResult, Extractor, FileDiagnostic, bind_records
from cataloger.facts.models import (
    OperationFact,
    OperationRef,
    RecordRef,
    ResolutionMethod,
    ResolvedCollection,
    RunStatus,
    Sample,
    ScanMode,
    ScanRun,
    utcnow,
)
from cataloger.kb.store import FileBatch, KnowledgeBaseStore
from cataloger.relationships import RelationshipInferencer
from cataloger.resolution import CollectionResolver
from cataloger.sampling import JsonLinesDocumentSource, PrivacySampler
from cataloger.scan.models import ScanPlan, ScanState, ScanSummary
from cataloger.scan.planner import ScanPlanner

logger = structlog.get_logger()


class CancellationToken:
    """Cooperative cancellation: an explicit request or an elapsed deadline."""

    def __init__(
        self,
        timeout_sec: float | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._event = threading.Event()
        self._clock = clock
        self._deadline = clock() + timeout_sec if timeout_sec else None

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._deadline is not None and self._clock() >= self._deadline:
            self._event.set()
        return self._event.is_set()


class _Cancelled(Exception):
    def __init__(self, stage: ScanState) -> None:
        super().__init__(stage.value)
        self.stage = stage


class ScanOrchestrator:
    """Runs incremental, full and integrity scans of one repository."""

    def __init__(
        self,
        root: Path,
        store: KnowledgeBaseStore,
        config: CatalogerConfig | None = None,
        *,
        sampler: PrivacySampler | None = None,
        extractor: Extractor | None = None,
    ) -> None:
        self._root = root
        self._store = store
        self._config = config or CatalogerConfig()
        scan_cfg = self._config.scan
        self._planner = ScanPlanner(root, store, scan_cfg)
        self._extractor = extractor or Extractor(
            max_file_size_bytes=scan_cfg.max_file_size_mb * 1024 * 1024,
            hop_limit=scan_cfg.resolver_hop_limit,
        )
        self._resolver = CollectionResolver(hop_limit=scan_cfg.resolver_hop_limit)
        self._inferencer = RelationshipInferencer()
        self._owns_sampler = sampler is None
        self._sampler = sampler if sampler is not None else self._build_sampler()

    @property
    def repository(self) -> str:
        return self._planner.repository

    def close(self) -> None:
        """Release the sampler if this orchestrator built it."""
        if self._owns_sampler and self._sampler is not None:
            self._sampler.close()

    def _build_sampler(self) -> PrivacySampler | None:
        sampling = self._config.sampling
        if not sampling.enabled:
            return None
        if not sampling.source_path:
            logger.warning("sampling_source_missing")
            return None
        return PrivacySampler(JsonLinesDocumentSource(Path(sampling.source_path)), sampling)

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(
        self,
        mode: ScanMode,
        *,
        since: str | None = None,
        cancel: CancellationToken | None = None,
    ) -> ScanSummary:
        """Execute one scan. Fatal conditions are reported on the summary, not raised.

        Raises KnowledgeBaseError only when the run itself cannot be recorded.
        """
        token = cancel or CancellationToken(self._config.scan.timeout_sec)
        run = ScanRun(id=uuid.uuid4().hex[:12], repository=self.repository, mode=mode)
        summary = ScanSummary(run=run)
        set_run_id(run.id)
        self._store.start_run(run)
        logger.info("scan_started", mode=mode.value, repository=run.repository, since=since)

        try:
            self._transition(summary, ScanState.PLANNING)
            plan = self._planner.plan(mode, since=since)
            run.commit_sha = plan.commit_sha
            run.base_commit_sha = plan.base_commit_sha

            if mode is ScanMode.INTEGRITY:
                self._run_integrity(summary, plan, token)
            else:
                self._run_pipeline(summary, plan, token)
        except _Cancelled as c:
            self._fail(summary, c.stage, ScanError.cancelled(c.stage.value))
        except (ScanError, KnowledgeBaseError) as e:
            self._fail(summary, summary.state, e, fatal=_is_fatal(e))
        except Exception as e:
            logger.exception("scan_stage_crashed", stage=summary.state.value)
            self._fail(summary, summary.state, InternalError.unexpected(type(e).__name__))
        else:
            run.status = RunStatus.DONE
            self._transition(summary, ScanState.DONE)

        run.finished_at = utcnow()
        try:
            self._store.finish_run(run)
        finally:
            logger.info(
                "scan_finished",
                status=run.status_label,
                files_scanned=run.files_scanned,
                files_skipped=run.files_skipped,
                facts_added=run.facts_added,
                facts_retired=run.facts_retired,
                unresolved=run.unresolved,
            )
            clear_run_id()
        return summary

    def _transition(self, summary: ScanSummary, state: ScanState) -> None:
        logger.debug("scan_state", previous=summary.state.value, state=state.value)
        summary.transitions.append(state)

    def _fail(
        self,
        summary: ScanSummary,
        stage: ScanState,
        error: CatalogerError,
        *,
        fatal: bool = False,
    ) -> None:
        summary.run.status = RunStatus.FAILED
        summary.run.failed_stage = stage.value
        summary.error = error
        summary.fatal = fatal
        summary.transitions.append(ScanState.FAILED)
        logger.error("scan_failed", stage=stage.value, code=error.error_name, reason=error.message)

    def _check(self, token: CancellationToken, stage: ScanState) -> None:
        if token.cancelled:
            raise _Cancelled(stage)

    # ------------------------------------------------------------------
    # Incremental / full
    # ------------------------------------------------------------------

    def _run_pipeline(self, summary: ScanSummary, plan: ScanPlan, token: CancellationToken) -> None:
        run = summary.run
        known = self._store.known_records(run.repository)
        visiting = set(plan.files)
        known_ops = [
            ref for ref in self._store.known_operations(run.repository) if ref.file_path not in visiting
        ]

        self._transition(summary, ScanState.EXTRACTING)
        results = self._extract(plan.files, plan.commit_sha, known, token)
        produced = [r for r in results if not r.skipped]
        for r in results:
            if r.diagnostic is not None:
                summary.diagnostics.append(r.diagnostic)
        run.files_scanned = len(produced)
        run.files_skipped = len(results) - len(produced)

        for result in produced:
            known.update(result.record_refs())

        batches: list[FileBatch] = []
        samples: list[Sample] = []
        stop: _Cancelled | None = None
        try:
            self._transition(summary, ScanState.RESOLVING)
            for result in produced:
                self._check(token, ScanState.RESOLVING)
                batch = self._resolve(result, known, known_ops)
                batches.append(batch)
                known_ops.extend(_operation_refs(batch))

            if self._sampler is not None:
                self._transition(summary, ScanState.SAMPLING)
                for resolved in self._sampling_targets(batches):
                    self._check(token, ScanState.SAMPLING)
                    sample = self._sampler.sample_resolved(resolved, run.id)
                    if sample is not None:
                        samples.append(sample)
        except _Cancelled as c:
            stop = c
            samples = []
        except Exception:
            # Batches produced before the crash are committed; the run still fails.
            self._commit(summary, batches)
            raise

        # Files fully produced before cancellation are still committed.
        self._transition(summary, ScanState.COMMITTING)
        failed_files = self._commit(summary, batches)
        for sample in samples:
            self._store.record_sample(sample)
            summary.samples_taken += 1
            if sample.error is not None:
                summary.samples_degraded += 1
        if self._sampler is not None:
            self._store.purge_expired_samples()

        if stop is not None:
            raise stop

        skipped = {d.file_path for d in summary.diagnostics} | failed_files
        run.pending_files = tuple(sorted(skipped))
        if skipped:
            logger.warning("files_pending", count=len(skipped))
        if plan.deleted:
            run.facts_drifted = self._drift_deleted(run.repository, plan.deleted)

        if plan.mode is ScanMode.FULL:
            seen = {fact.id for batch in batches for fact in batch.facts}
            run.facts_retired = self._store.finalize_full_scan(run.repository, run.id, seen, skipped)

    def _drift_deleted(self, repository: str, deleted: tuple[str, ...]) -> int:
        """Flag live facts of deleted files; a later full scan retires them."""
        gone = set(deleted)
        ids = {f.fact_id for f in self._store.latest_facts(repository) if f.file_path in gone}
        return self._store.mark_drift(repository, ids, set())

    def _extract(
        self,
        files: tuple[str, ...],
        commit_sha: str,
        known: dict[str, RecordRef],
        token: CancellationToken,
    ) -> list[ExtractionResult]:
        if not files:
            return []
        snapshot = dict(known)
        results: list[ExtractionResult] = []
        executor = ThreadPoolExecutor(
            max_workers=self._config.scan.max_workers,
            thread_name_prefix="cataloger-extract",
        )
        try:
            futures: dict[Future[ExtractionResult], str] = {
                executor.submit(
                    self._extractor.extract_file,
                    self._root,
                    path,
                    repository=self.repository,
                    commit_sha=commit_sha,
                    known_records=snapshot,
                ): path
                for path in files
            }
            for future in as_completed(futures):
                if token.cancelled:
                    raise _Cancelled(ScanState.EXTRACTING)
                path = futures[future]
                try:
                    results.append(future.result())
                except Exception as e:
                    logger.exception("extraction_crashed", path=path)
                    error = ExtractionError.unreadable(path, type(e).__name__)
                    results.append(ExtractionResult(file_path=path, diagnostic=FileDiagnostic.from_error(error)))
        finally:
            executor.shutdown(wait=True, cancel_futures=True)
        results.sort(key=lambda r: r.file_path)
        return results

    def _resolve(
        self,
        result: ExtractionResult,
        known: dict[str, RecordRef],
        known_ops: list[OperationRef],
    ) -> FileBatch:
        result = bind_records(result, known)
        resolutions: dict[str, ResolvedCollection] = {}
        for op in result.operations:
            resolutions[op.id] = self._resolver.resolve(op, result.contexts[op.id])

        bound = {
            op.bound_record_type_id
            for op in result.operations
            if op.bound_record_type_id and resolutions[op.id].is_resolved
        }
        for record in result.records:
            if record.id not in bound:
                resolutions[record.id] = self._resolver.resolve_record(record)

        graph = self._inferencer.infer(
            result.records, result.operations, resolutions, known, known_operations=known_ops
        )
        return FileBatch(
            repository=self.repository,
            file_path=result.file_path,
            facts=result.facts,
            resolutions=resolutions,
            edges=graph.edges,
            low_confidence_edges=graph.low_confidence,
        )

    def _sampling_targets(self, batches: list[FileBatch]) -> list[ResolvedCollection]:
        """Best resolution per collection name, in name order."""
        best: dict[str, ResolvedCollection] = {}
        for batch in batches:
            for resolved in batch.resolutions.values():
                name = resolved.collection_name
                if name is None:
                    continue
                current = best.get(name)
                if current is None or resolved.confidence > current.confidence:
                    best[name] = resolved
        return [best[name] for name in sorted(best)]

    def _commit(self, summary: ScanSummary, batches: list[FileBatch]) -> set[str]:
        run = summary.run
        failed: set[str] = set()
        for batch in batches:
            try:
                result = self._store.merge_facts(batch, run.id)
            except KnowledgeBaseError as e:
                if e.code is not ErrorCode.KB_WRITE_CONFLICT:
                    raise
                failed.add(batch.file_path)
                summary.diagnostics.append(FileDiagnostic(batch.file_path, e.error_name, e.message))
                run.files_skipped += 1
                run.files_scanned -= 1
                continue
            run.facts_added += result.added
            run.unresolved += sum(
                1
                for resolved in batch.resolutions.values()
                if resolved.method is ResolutionMethod.UNRESOLVED
            )
            summary.low_confidence_edges.extend(batch.low_confidence_edges)
        return failed

    # ------------------------------------------------------------------
    # Integrity
    # ------------------------------------------------------------------

    def _run_integrity(self, summary: ScanSummary, plan: ScanPlan, token: CancellationToken) -> None:
        """Re-validate live facts against the tree; missing symbols are flagged drifted."""
        run = summary.run
        facts_by_file: dict[str, set[str]] = defaultdict(set)
        for fact in self._store.latest_facts(run.repository):
            facts_by_file[fact.file_path].add(fact.fact_id)

        present_files = set(plan.files)
        known = self._store.known_records(run.repository)

        self._transition(summary, ScanState.EXTRACTING)
        to_check = tuple(sorted(p for p in facts_by_file if p in present_files))
        results = self._extract(to_check, plan.commit_sha, known, token)

        drifted: set[str] = set()
        present: set[str] = set()
        for path, ids in facts_by_file.items():
            if path not in present_files:
                drifted |= ids
        for result in results:
            if result.diagnostic is not None:
                summary.diagnostics.append(result.diagnostic)
                continue
            found = {f.id for f in bind_records(result, known).facts}
            ids = facts_by_file[result.file_path]
            drifted |= ids - found
            present |= ids & found

        run.files_scanned = len(results) - len(summary.diagnostics)
        run.files_skipped = len(summary.diagnostics)

        self._check(token, ScanState.COMMITTING)
        self._transition(summary, ScanState.COMMITTING)
        run.facts_drifted = self._store.mark_drift(run.repository, drifted, present)
        logger.info("integrity_checked", drifted=len(drifted), present=len(present))


def _is_fatal(error: CatalogerError) -> bool:
    return error.code in (ErrorCode.SCAN_REPOSITORY_UNREADABLE, ErrorCode.KB_UNREACHABLE)


def _operation_refs(batch: FileBatch) -> list[OperationRef]:
    refs = []
    for fact in batch.facts:
        resolved = batch.resolutions.get(fact.id)
        if not isinstance(fact, OperationFact) or resolved is None or resolved.collection_name is None:
            continue
        refs.append(
            OperationRef(
                fact_id=fact.id,
                file_path=batch.file_path,
                collection_name=resolved.collection_name,
                confidence=resolved.confidence,
                bound_record_type_id=fact.bound_record_type_id,
            )
        )
    return refs
