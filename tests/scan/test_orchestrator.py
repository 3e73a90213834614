"""Tests for scan/orchestrator.py.

End-to-end runs against temporary git repositories: state transitions,
per-file commits, incremental baselines and pending files, cross-file
relationships, retirement, cancellation, crashes and integrity drift.
"""

from __future__ import annotations

import itertools
from collections.abc import Callable
from pathlib import Path

import pygit2
import pytest

from cataloger.config.models import CatalogerConfig, SamplingConfig, ScanConfig
from cataloger.core.errors import ErrorCode, KnowledgeBaseError
from cataloger.facts.models import FactKind, RunStatus, ScanMode
from cataloger.kb import FactStatus, KnowledgeBaseStore
from cataloger.sampling import InMemoryDocumentSource, PrivacySampler
from cataloger.scan import CancellationToken, ScanOrchestrator, ScanState

WriteFile = Callable[[Path, str, str], Path]
Commit = Callable[[pygit2.Repository, str], str]

ORDERS_PY = '''from pydantic import BaseModel


class Order(BaseModel):
    id: str
    total: float


def open_orders(db):
    return db.get_collection[Order]("orders").find({"status": "open"})
'''

ORDERS_WITHOUT_QUERY_PY = '''from pydantic import BaseModel


class Order(BaseModel):
    id: str
    total: float
'''

CUSTOMERS_PY = '''from pydantic import BaseModel


class Customer(BaseModel):
    name: str
    email: str
'''

DYNAMIC_PY = '''def load(db, tenant):
    return db["events_" + tenant].find({})
'''

ARCHIVE_PY = '''def purge_orders(db):
    return db["orders"].delete_many({"status": "closed"})
'''


class _CancelAfter(CancellationToken):
    """Reports cancellation once ``checks`` checks have passed."""

    def __init__(self, checks: int) -> None:
        super().__init__()
        self._remaining = checks

    @property
    def cancelled(self) -> bool:
        self._remaining -= 1
        return self._remaining < 0


@pytest.fixture
def shop(git_repo: pygit2.Repository, write_file: WriteFile, commit: Commit) -> pygit2.Repository:
    root = Path(git_repo.workdir)
    write_file(root, "shop/customers.py", CUSTOMERS_PY)
    write_file(root, "shop/orders.py", ORDERS_PY)
    commit(git_repo, "add shop models")
    return git_repo


@pytest.fixture
def config() -> CatalogerConfig:
    return CatalogerConfig(scan=ScanConfig(max_workers=2))


def _orchestrator(repo: pygit2.Repository, store: KnowledgeBaseStore, config: CatalogerConfig, **kwargs):
    return ScanOrchestrator(Path(repo.workdir), store, config, **kwargs)


class TestCancellationToken:
    def test_explicit_cancel(self) -> None:
        token = CancellationToken()
        assert not token.cancelled
        token.cancel()
        assert token.cancelled

    def test_deadline(self) -> None:
        ticks = itertools.count()
        token = CancellationToken(timeout_sec=2, clock=lambda: float(next(ticks)))
        assert not token.cancelled
        assert token.cancelled


class TestFullScan:
    def test_commits_every_file(
        self, shop: pygit2.Repository, kb_store: KnowledgeBaseStore, config: CatalogerConfig
    ) -> None:
        orchestrator = _orchestrator(shop, kb_store, config)
        summary = orchestrator.run(ScanMode.FULL)

        assert summary.state is ScanState.DONE
        assert summary.transitions == [
            ScanState.IDLE,
            ScanState.PLANNING,
            ScanState.EXTRACTING,
            ScanState.RESOLVING,
            ScanState.COMMITTING,
            ScanState.DONE,
        ]
        assert summary.exit_code == 0
        run = summary.run
        assert run.status is RunStatus.DONE
        assert run.files_scanned == 2
        assert run.facts_added == 3
        assert run.commit_sha == str(shop.head.target)

        symbols = {f.symbol_name for f in kb_store.latest_facts(orchestrator.repository)}
        assert symbols == {"Customer", "Order", "open_orders.find#1"}

        stored = kb_store.get_run(run.id)
        assert stored is not None
        assert stored.status is RunStatus.DONE

    def test_operation_provenance(
        self, shop: pygit2.Repository, kb_store: KnowledgeBaseStore, config: CatalogerConfig
    ) -> None:
        orchestrator = _orchestrator(shop, kb_store, config)
        orchestrator.run(ScanMode.FULL)

        [op] = kb_store.latest_facts(orchestrator.repository, kind=FactKind.OPERATION)
        assert op.collection_name == "orders"
        assert op.confidence == 1.0
        assert op.method == "LiteralString"
        assert op.file_path == "shop/orders.py"
        assert op.line_range.start == 10
        assert op.commit_sha == str(shop.head.target)

    def test_untouched_record_falls_back_to_convention(
        self, shop: pygit2.Repository, kb_store: KnowledgeBaseStore, config: CatalogerConfig
    ) -> None:
        orchestrator = _orchestrator(shop, kb_store, config)
        orchestrator.run(ScanMode.FULL)

        customer = next(f for f in kb_store.latest_facts(orchestrator.repository) if f.symbol_name == "Customer")
        assert customer.collection_name == "customers"
        assert customer.confidence == 0.4
        assert customer.method == "ConventionFallback"

    def test_relationship_edges_are_stored(
        self, shop: pygit2.Repository, kb_store: KnowledgeBaseStore, config: CatalogerConfig
    ) -> None:
        orchestrator = _orchestrator(shop, kb_store, config)
        orchestrator.run(ScanMode.FULL)

        order = next(f for f in kb_store.latest_facts(orchestrator.repository) if f.symbol_name == "Order")
        [edge] = kb_store.edges_of(order.fact_id)
        assert edge.kind.value == "UsesRecord"
        assert edge.confidence == 1.0

    def test_absent_facts_retire(
        self,
        shop: pygit2.Repository,
        kb_store: KnowledgeBaseStore,
        config: CatalogerConfig,
        commit: Commit,
    ) -> None:
        orchestrator = _orchestrator(shop, kb_store, config)
        orchestrator.run(ScanMode.FULL)
        customer = next(f for f in kb_store.latest_facts(orchestrator.repository) if f.symbol_name == "Customer")

        (Path(shop.workdir) / "shop/customers.py").unlink()
        commit(shop, "drop customers")
        summary = orchestrator.run(ScanMode.FULL)

        assert summary.run.facts_retired == 1
        retired = kb_store.get_fact(customer.fact_id)
        assert retired is not None
        assert retired.status is FactStatus.RETIRED
        assert len(kb_store.history(customer.fact_id)) == 1

    def test_plain_directory(
        self, tmp_path: Path, kb_store: KnowledgeBaseStore, config: CatalogerConfig, write_file: WriteFile
    ) -> None:
        root = tmp_path / "plain"
        write_file(root, "orders.py", ORDERS_PY)
        summary = ScanOrchestrator(root, kb_store, config).run(ScanMode.FULL)
        assert summary.state is ScanState.DONE
        assert summary.run.commit_sha == "unversioned"
        assert summary.run.facts_added == 2


class TestIncrementalScan:
    def test_nothing_changed_adds_nothing(
        self, shop: pygit2.Repository, kb_store: KnowledgeBaseStore, config: CatalogerConfig
    ) -> None:
        orchestrator = _orchestrator(shop, kb_store, config)
        orchestrator.run(ScanMode.FULL)

        summary = orchestrator.run(ScanMode.INCREMENTAL)
        run = summary.run
        assert run.status is RunStatus.DONE
        assert run.facts_added == 0
        assert run.facts_retired == 0
        assert run.files_scanned == 0
        assert run.base_commit_sha == str(shop.head.target)
        assert summary.exit_code == 0

    def test_only_changed_files_are_visited(
        self,
        shop: pygit2.Repository,
        kb_store: KnowledgeBaseStore,
        config: CatalogerConfig,
        write_file: WriteFile,
        commit: Commit,
    ) -> None:
        orchestrator = _orchestrator(shop, kb_store, config)
        orchestrator.run(ScanMode.FULL)

        root = Path(shop.workdir)
        write_file(root, "shop/orders.py", ORDERS_PY.replace('"orders"', '"orders_v2"'))
        commit(shop, "rename collection")
        summary = orchestrator.run(ScanMode.INCREMENTAL)

        assert summary.run.files_scanned == 1
        # Order and the query both carry the new commit
        assert summary.run.facts_added == 2
        [op] = kb_store.latest_facts(orchestrator.repository, kind=FactKind.OPERATION)
        assert op.collection_name == "orders_v2"
        assert [h.collection_name for h in kb_store.history(op.fact_id)] == ["orders", "orders_v2"]

    def test_records_from_earlier_runs_bind(
        self,
        shop: pygit2.Repository,
        kb_store: KnowledgeBaseStore,
        config: CatalogerConfig,
        write_file: WriteFile,
        commit: Commit,
    ) -> None:
        orchestrator = _orchestrator(shop, kb_store, config)
        orchestrator.run(ScanMode.FULL)

        root = Path(shop.workdir)
        write_file(
            root,
            "shop/reports.py",
            "from shop.customers import Customer\n\n\ndef vip():\n    return Customer.find({'vip': True})\n",
        )
        commit(shop, "add reports")
        orchestrator.run(ScanMode.INCREMENTAL)

        customer = next(f for f in kb_store.latest_facts(orchestrator.repository) if f.symbol_name == "Customer")
        op = next(f for f in kb_store.latest_facts(orchestrator.repository) if f.symbol_name == "vip.find#1")
        assert op.payload["bound_record_type_id"] == customer.fact_id
        assert op.collection_name == "customers"
    def test_integrity_run_does_not_move_the_baseline(
        self,
        shop: pygit2.Repository,
        kb_store: KnowledgeBaseStore,
        config: CatalogerConfig,
        write_file: WriteFile,
        commit: Commit,
    ) -> None:
        orchestrator = _orchestrator(shop, kb_store, config)
        orchestrator.run(ScanMode.FULL)

        write_file(Path(shop.workdir), "shop/archive.py", ARCHIVE_PY)
        commit(shop, "add archive")
        orchestrator.run(ScanMode.INTEGRITY)
        summary = orchestrator.run(ScanMode.INCREMENTAL)

        assert summary.run.files_scanned == 1
        symbols = {f.symbol_name for f in kb_store.latest_facts(orchestrator.repository)}
        assert "purge_orders.delete_many#1" in symbols

    def test_operations_in_other_files_share_a_collection(
        self,
        shop: pygit2.Repository,
        kb_store: KnowledgeBaseStore,
        config: CatalogerConfig,
        write_file: WriteFile,
        commit: Commit,
    ) -> None:
        orchestrator = _orchestrator(shop, kb_store, config)
        orchestrator.run(ScanMode.FULL)

        write_file(Path(shop.workdir), "shop/archive.py", ARCHIVE_PY)
        commit(shop, "add archive")
        orchestrator.run(ScanMode.INCREMENTAL)

        facts = {f.symbol_name: f for f in kb_store.latest_facts(orchestrator.repository)}
        find = facts["open_orders.find#1"]
        purge = facts["purge_orders.delete_many#1"]
        [edge] = [e for e in kb_store.edges_of(find.fact_id) if e.kind.value == "WritesToSameCollectionAs"]
        assert {edge.from_fact_id, edge.to_fact_id} == {find.fact_id, purge.fact_id}
        assert edge.confidence == 1.0

    def test_deleted_file_facts_are_flagged_drifted(
        self,
        shop: pygit2.Repository,
        kb_store: KnowledgeBaseStore,
        config: CatalogerConfig,
        commit: Commit,
    ) -> None:
        orchestrator = _orchestrator(shop, kb_store, config)
        orchestrator.run(ScanMode.FULL)
        customer = next(f for f in kb_store.latest_facts(orchestrator.repository) if f.symbol_name == "Customer")

        (Path(shop.workdir) / "shop/customers.py").unlink()
        commit(shop, "drop customers")
        summary = orchestrator.run(ScanMode.INCREMENTAL)

        assert summary.run.facts_drifted == 1
        stored = kb_store.get_fact(customer.fact_id)
        assert stored is not None
        assert stored.drifted
        assert stored.status is FactStatus.LIVE


class TestPartialRuns:
    def test_skipped_file_exits_partial(
        self,
        shop: pygit2.Repository,
        kb_store: KnowledgeBaseStore,
        config: CatalogerConfig,
        write_file: WriteFile,
        commit: Commit,
    ) -> None:
        write_file(Path(shop.workdir), "shop/broken.py", "def broken(:\n    pass\n")
        commit(shop, "add broken file")
        summary = _orchestrator(shop, kb_store, config).run(ScanMode.FULL)

        assert summary.state is ScanState.DONE
        assert summary.run.files_skipped == 1
        assert [d.file_path for d in summary.diagnostics] == ["shop/broken.py"]
        assert summary.diagnostics[0].code == "EXTRACTION_PARSE_FAILED"
        assert summary.exit_code == 1

    def test_skipped_file_keeps_its_facts(
        self,
        shop: pygit2.Repository,
        kb_store: KnowledgeBaseStore,
        config: CatalogerConfig,
        write_file: WriteFile,
        commit: Commit,
    ) -> None:
        orchestrator = _orchestrator(shop, kb_store, config)
        orchestrator.run(ScanMode.FULL)

        write_file(Path(shop.workdir), "shop/customers.py", "class Customer(:\n")
        commit(shop, "break customers")
        summary = orchestrator.run(ScanMode.FULL)

        assert summary.run.facts_retired == 0
        assert "Customer" in {f.symbol_name for f in kb_store.latest_facts(orchestrator.repository)}

    def test_unresolved_operation_exits_partial(
        self,
        shop: pygit2.Repository,
        kb_store: KnowledgeBaseStore,
        config: CatalogerConfig,
        write_file: WriteFile,
        commit: Commit,
    ) -> None:
        write_file(Path(shop.workdir), "shop/events.py", DYNAMIC_PY)
        commit(shop, "add events")
        orchestrator = _orchestrator(shop, kb_store, config)
        summary = orchestrator.run(ScanMode.FULL)

        assert summary.state is ScanState.DONE
        assert summary.run.unresolved == 1
        assert summary.exit_code == 1
        op = next(f for f in kb_store.latest_facts(orchestrator.repository) if f.symbol_name == "load.find#1")
        assert op.collection_name is None
        assert op.method == "Unresolved"
        assert op.confidence == 0.0

    def test_write_conflict_skips_only_that_file(
        self,
        shop: pygit2.Repository,
        kb_store: KnowledgeBaseStore,
        config: CatalogerConfig,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        merge = kb_store.merge_facts

        def _merge(batch, run_id):
            if batch.file_path == "shop/customers.py":
                raise KnowledgeBaseError.write_conflict(batch.file_path, 3)
            return merge(batch, run_id)

        monkeypatch.setattr(kb_store, "merge_facts", _merge)
        orchestrator = _orchestrator(shop, kb_store, config)
        summary = orchestrator.run(ScanMode.FULL)

        assert summary.state is ScanState.DONE
        assert summary.exit_code == 1
        assert summary.run.files_scanned == 1
        assert summary.run.files_skipped == 1
        assert summary.diagnostics[0].code == "KB_WRITE_CONFLICT"
        assert {f.symbol_name for f in kb_store.latest_facts(orchestrator.repository)} == {
            "Order",
            "open_orders.find#1",
        }
    def test_conflicted_file_is_retried_by_the_next_incremental_run(
        self,
        shop: pygit2.Repository,
        kb_store: KnowledgeBaseStore,
        config: CatalogerConfig,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        merge = kb_store.merge_facts
        conflicts = ["shop/customers.py"]

        def _merge(batch, run_id):
            if batch.file_path in conflicts:
                raise KnowledgeBaseError.write_conflict(batch.file_path, 3)
            return merge(batch, run_id)

        monkeypatch.setattr(kb_store, "merge_facts", _merge)
        orchestrator = _orchestrator(shop, kb_store, config)
        first = orchestrator.run(ScanMode.FULL)
        assert first.run.pending_files == ("shop/customers.py",)

        conflicts.clear()
        summary = orchestrator.run(ScanMode.INCREMENTAL)

        assert summary.run.files_scanned == 1
        assert summary.run.pending_files == ()
        assert "Customer" in {f.symbol_name for f in kb_store.latest_facts(orchestrator.repository)}

    def test_crash_keeps_batches_already_produced(
        self,
        shop: pygit2.Repository,
        kb_store: KnowledgeBaseStore,
        config: CatalogerConfig,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        orchestrator = _orchestrator(shop, kb_store, config)
        resolve = orchestrator._resolve

        def _resolve(result, known, known_ops):
            if result.file_path == "shop/orders.py":
                raise RuntimeError("resolver crashed")
            return resolve(result, known, known_ops)

        monkeypatch.setattr(orchestrator, "_resolve", _resolve)
        summary = orchestrator.run(ScanMode.FULL)

        assert summary.run.status_label == "Failed(resolving)"
        assert summary.error is not None
        assert summary.error.code == ErrorCode.INTERNAL_ERROR
        assert summary.exit_code == 1
        assert {f.symbol_name for f in kb_store.latest_facts(orchestrator.repository)} == {"Customer"}


class TestCancellation:
    def test_cancel_during_resolving_keeps_committed_files(
        self, shop: pygit2.Repository, kb_store: KnowledgeBaseStore, config: CatalogerConfig
    ) -> None:
        orchestrator = _orchestrator(shop, kb_store, config)
        # Two extraction checks and the first file's resolving check pass.
        summary = orchestrator.run(ScanMode.FULL, cancel=_CancelAfter(3))

        run = summary.run
        assert summary.state is ScanState.FAILED
        assert run.status is RunStatus.FAILED
        assert run.status_label == "Failed(resolving)"
        assert summary.error is not None
        assert summary.error.code == ErrorCode.SCAN_CANCELLED
        assert ScanState.COMMITTING in summary.transitions
        assert summary.exit_code == 1

        symbols = {f.symbol_name for f in kb_store.latest_facts(orchestrator.repository)}
        assert symbols == {"Customer"}

    def test_cancelled_run_is_not_a_baseline(
        self, shop: pygit2.Repository, kb_store: KnowledgeBaseStore, config: CatalogerConfig
    ) -> None:
        orchestrator = _orchestrator(shop, kb_store, config)
        first = orchestrator.run(ScanMode.FULL)
        orchestrator.run(ScanMode.FULL, cancel=_CancelAfter(0))

        last = kb_store.last_successful_run(orchestrator.repository)
        assert last is not None
        assert last.id == first.run.id

    def test_cancel_before_extraction_finishes(
        self, shop: pygit2.Repository, kb_store: KnowledgeBaseStore, config: CatalogerConfig
    ) -> None:
        token = CancellationToken()
        token.cancel()
        summary = _orchestrator(shop, kb_store, config).run(ScanMode.FULL, cancel=token)
        assert summary.run.status_label == "Failed(extracting)"
        assert kb_store.latest_facts() == []


class TestFatalRuns:
    def test_missing_repository(self, tmp_path: Path, kb_store: KnowledgeBaseStore, config: CatalogerConfig) -> None:
        summary = ScanOrchestrator(tmp_path / "absent", kb_store, config).run(ScanMode.FULL)
        assert summary.fatal
        assert summary.exit_code == 2
        assert summary.run.status_label == "Failed(planning)"
        assert summary.error is not None
        assert summary.error.code == ErrorCode.SCAN_REPOSITORY_UNREADABLE

    def test_invalid_since_is_not_fatal(
        self, shop: pygit2.Repository, kb_store: KnowledgeBaseStore, config: CatalogerConfig
    ) -> None:
        summary = _orchestrator(shop, kb_store, config).run(ScanMode.INCREMENTAL, since="0" * 40)
        assert not summary.fatal
        assert summary.exit_code == 1
        assert summary.error is not None
        assert summary.error.code == ErrorCode.SCAN_INVALID_BASELINE


class TestIntegrity:
    def test_removed_symbol_is_flagged_drifted(
        self,
        shop: pygit2.Repository,
        kb_store: KnowledgeBaseStore,
        config: CatalogerConfig,
        write_file: WriteFile,
    ) -> None:
        orchestrator = _orchestrator(shop, kb_store, config)
        orchestrator.run(ScanMode.FULL)
        op = kb_store.latest_facts(orchestrator.repository, kind=FactKind.OPERATION)[0]

        write_file(Path(shop.workdir), "shop/orders.py", ORDERS_WITHOUT_QUERY_PY)
        summary = orchestrator.run(ScanMode.INTEGRITY)

        assert summary.state is ScanState.DONE
        assert summary.run.facts_drifted == 1
        drifted = kb_store.get_fact(op.fact_id)
        assert drifted is not None
        assert drifted.drifted
        assert drifted.status is FactStatus.LIVE

    def test_missing_file_drifts_all_its_facts(
        self, shop: pygit2.Repository, kb_store: KnowledgeBaseStore, config: CatalogerConfig
    ) -> None:
        orchestrator = _orchestrator(shop, kb_store, config)
        orchestrator.run(ScanMode.FULL)

        (Path(shop.workdir) / "shop/orders.py").unlink()
        summary = orchestrator.run(ScanMode.INTEGRITY)
        assert summary.run.facts_drifted == 2

    def test_integrity_writes_no_new_revisions(
        self, shop: pygit2.Repository, kb_store: KnowledgeBaseStore, config: CatalogerConfig
    ) -> None:
        orchestrator = _orchestrator(shop, kb_store, config)
        orchestrator.run(ScanMode.FULL)
        summary = orchestrator.run(ScanMode.INTEGRITY)

        assert summary.run.facts_drifted == 0
        assert summary.run.facts_added == 0
        for fact in kb_store.latest_facts(orchestrator.repository):
            assert len(kb_store.history(fact.fact_id)) == 1


class TestSampling:
    def test_resolved_collections_are_sampled(
        self, shop: pygit2.Repository, kb_store: KnowledgeBaseStore, config: CatalogerConfig
    ) -> None:
        source = InMemoryDocumentSource(
            {"orders": [{"id": "o-1", "total": 9.5, "email": "ada@example.org"}]}
        )
        sampling = SamplingConfig(enabled=True, min_interval_sec=0.0)
        with PrivacySampler(source, sampling) as sampler:
            summary = _orchestrator(shop, kb_store, config, sampler=sampler).run(ScanMode.FULL)

        assert ScanState.SAMPLING in summary.transitions
        assert summary.samples_taken == 1
        sample = kb_store.latest_sample("orders")
        assert sample is not None
        shapes = {s.path: s for s in sample.field_shapes}
        assert shapes["email"].redacted
        assert shapes["total"].type == "number"
