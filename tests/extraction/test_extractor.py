"""Tests for extraction/extractor.py.

Covers:
- record shape detection
- operation detection on collection handles, ODM classes and driver verbs
- provenance on every fact
- generic helpers emitted at their instantiation sites
- skipped files (parse failure, oversize, undecodable)
"""

from __future__ import annotations

import textwrap
from pathlib import Path

import pytest

from cataloger.core.errors import ErrorCode
from cataloger.extraction import Extractor, bind_records, operation_kind
from cataloger.facts.models import OperationKind, RecordRef

REPO = "/repos/shop"
SHA = "abc123"


def _extract(source: str, path: str = "orders.py", **kwargs: object):
    return Extractor().extract(path, textwrap.dedent(source), repository=REPO, commit_sha=SHA, **kwargs)


class TestOperationKind:
    """Verb to operation kind mapping."""

    @pytest.mark.parametrize(
        ("verb", "kind"),
        [
            ("find", OperationKind.FIND),
            ("find_one_and_update", OperationKind.FIND),
            ("insert_many", OperationKind.INSERT),
            ("replace_one", OperationKind.UPDATE),
            ("delete_one", OperationKind.DELETE),
            ("aggregate", OperationKind.AGGREGATE),
            ("bulk_write", OperationKind.OTHER),
        ],
    )
    def test_known_verbs(self, verb: str, kind: OperationKind) -> None:
        assert operation_kind(verb) is kind

    def test_unknown_verb(self) -> None:
        assert operation_kind("append") is None


class TestRecordShapes:
    """Plain data declarations become record shape facts."""

    def test_dataclass_fields_in_order(self) -> None:
        result = _extract(
            """
            from dataclasses import dataclass

            @dataclass
            class Order:
                id: str
                total: float
                note: str | None = None
            """
        )
        assert [r.symbol_name for r in result.records] == ["Order"]
        fields = result.records[0].fields
        assert [f.name for f in fields] == ["id", "total", "note"]
        assert [f.nullable for f in fields] == [False, False, True]
        assert fields[1].declared_type == "float"

    def test_class_with_behavior_is_not_a_record(self) -> None:
        result = _extract(
            """
            class OrderService:
                timeout: int

                def place(self, order):
                    return order
            """
        )
        assert result.records == []

    def test_pydantic_model_with_methods_is_a_record(self) -> None:
        result = _extract(
            """
            from pydantic import BaseModel

            class Customer(BaseModel):
                name: str

                def display(self) -> str:
                    return self.name
            """
        )
        assert [r.symbol_name for r in result.records] == ["Customer"]

    def test_collection_annotation_from_dunder(self) -> None:
        result = _extract(
            """
            from pydantic import BaseModel

            class Invoice(BaseModel):
                __collection__ = "billing_invoices"
                number: str
            """
        )
        assert result.records[0].collection_annotation == "billing_invoices"

    def test_collection_annotation_from_settings_class(self) -> None:
        result = _extract(
            """
            from beanie import Document

            class Product(Document):
                sku: str

                class Settings:
                    name = "catalog_products"
            """
        )
        assert result.records[0].collection_annotation == "catalog_products"

    def test_classvar_is_not_a_field(self) -> None:
        result = _extract(
            """
            from dataclasses import dataclass
            from typing import ClassVar

            @dataclass
            class Order:
                kind: ClassVar[str] = "order"
                id: str
            """
        )
        assert [f.name for f in result.records[0].fields] == ["id"]


class TestOperations:
    """Persistence call sites become operation facts."""

    def test_typed_handle_with_literal(self) -> None:
        """Find on GetCollection<Order>("orders") at line 42, commit abc123."""
        padding = "\n" * 40
        source = (
            "from dataclasses import dataclass\n"
            + padding
            + 'db.get_collection[Order]("orders").find({"status": "open"})\n'
        )
        result = Extractor().extract("orders.src", source, repository=REPO, commit_sha=SHA)

        assert len(result.operations) == 1
        op = result.operations[0]
        assert op.operation is OperationKind.FIND
        assert op.provenance.file_path == "orders.src"
        assert op.provenance.line_range.start == 42
        assert op.provenance.commit_sha == SHA
        assert op.literal_collection_hint == "orders"
        assert op.filter_expression_text == "{'status': 'open'}"
        assert op.bound_record_type == "Order"

    def test_subscript_and_attribute_handles(self) -> None:
        result = _extract(
            """
            def load(db):
                a = db["orders"].find_one({"_id": 1})
                b = db.customers.insert_one({"name": "x"})
                return a, b
            """
        )
        kinds = [(op.operation, op.literal_collection_hint) for op in result.operations]
        assert kinds == [(OperationKind.FIND, "orders"), (OperationKind.INSERT, "customers")]

    def test_insert_has_no_filter_text(self) -> None:
        result = _extract(
            """
            def save(db, doc):
                db["orders"].insert_one(doc)
            """
        )
        assert result.operations[0].filter_expression_text is None

    def test_handle_traced_through_assignment(self) -> None:
        result = _extract(
            """
            def load(db):
                coll = db["orders"]
                return coll.find({})
            """
        )
        assert len(result.operations) == 1
        assert result.operations[0].provenance.symbol_name == "load.find#1"

    def test_non_persistence_calls_ignored(self) -> None:
        result = _extract(
            """
            import requests

            def fetch(url, cache):
                cache.get(url)
                return requests.get(url)
            """
        )
        assert result.operations == []

    def test_strict_driver_verb_on_unknown_receiver(self) -> None:
        result = _extract(
            """
            def archive(collection, doc):
                collection.insert_one(doc)
            """
        )
        assert [op.operation for op in result.operations] == [OperationKind.INSERT]

    def test_odm_call_on_local_record(self) -> None:
        result = _extract(
            """
            from beanie import Document

            class Order(Document):
                total: float

            async def open_orders():
                return await Order.find({"open": True}).to_list()
            """
        )
        finds = [op for op in result.operations if op.operation is OperationKind.FIND]
        assert len(finds) == 1
        assert finds[0].bound_record_type_id == result.records[0].id

    def test_ordinals_keep_identity_stable_across_line_shifts(self) -> None:
        before = _extract(
            """
            def load(db):
                db["a"].find({})
                db["b"].find({})
            """
        )
        after = _extract(
            """

            # comment shifts every line
            def load(db):
                db["a"].find({})
                db["b"].find({})
            """
        )
        assert [op.id for op in before.operations] == [op.id for op in after.operations]
        assert [op.provenance.symbol_name for op in before.operations] == ["load.find#1", "load.find#2"]

    def test_every_fact_has_provenance(self) -> None:
        result = _extract(
            """
            from dataclasses import dataclass

            @dataclass
            class Order:
                id: str

            def load(db):
                return db.orders.find({})
            """
        )
        for fact in result.facts:
            assert fact.provenance.repository == REPO
            assert fact.provenance.file_path == "orders.py"
            assert fact.provenance.commit_sha == SHA
            assert fact.provenance.line_range.start >= 1


class TestGenericHelpers:
    """Operations inside generic helpers bind at the instantiation site."""

    SOURCE = """
        from typing import TypeVar
        from beanie import Document

        T = TypeVar("T")

        class Order(Document):
            __collection__ = "orders"
            total: float

        class Customer(Document):
            name: str

        async def by_id(model: type[T], oid):
            return await model.find_one({"_id": oid})

        async def load(oid):
            order = await by_id(Order, oid)
            customer = await by_id(Customer, oid)
            return order, customer
        """

    def test_one_operation_per_instantiation(self) -> None:
        result = _extract(self.SOURCE)
        ops = result.operations
        assert sorted(op.bound_record_type for op in ops) == ["Customer", "Order"]
        for op in ops:
            assert op.instantiated_from is not None
            assert op.instantiated_from.startswith("by_id:")

    def test_instantiated_operation_points_at_call_site(self) -> None:
        result = _extract(self.SOURCE)
        order_op = next(op for op in result.operations if op.bound_record_type == "Order")
        assert order_op.provenance.symbol_name == "load.by_id[Order].find_one#1"
        assert order_op.provenance.line_range.start == 18

    def test_uninstantiated_helper_is_unbound(self) -> None:
        result = _extract(
            """
            from typing import TypeVar

            T = TypeVar("T")

            async def by_id(model: type[T], oid):
                return await model.find_one({"_id": oid})
            """
        )
        assert len(result.operations) == 1
        assert result.operations[0].bound_record_type is None


class TestSkippedFiles:
    """Unreadable input is skipped with a diagnostic, never raised."""

    def test_syntax_error(self) -> None:
        result = _extract("def broken(:\n    pass\n", path="broken.py")
        assert result.skipped
        assert result.diagnostic is not None
        assert result.diagnostic.code == ErrorCode.EXTRACTION_PARSE_FAILED.name
        assert result.diagnostic.file_path == "broken.py"
        assert result.facts == []

    def test_oversized_file(self, tmp_path: Path) -> None:
        (tmp_path / "big.py").write_text("x = 1\n" * 100)
        result = Extractor(max_file_size_bytes=10).extract_file(
            tmp_path, "big.py", repository=REPO, commit_sha=SHA
        )
        assert result.diagnostic is not None
        assert result.diagnostic.code == ErrorCode.EXTRACTION_FILE_TOO_LARGE.name

    def test_undecodable_file(self, tmp_path: Path) -> None:
        (tmp_path / "latin.py").write_bytes(b"name = '\xff\xfe'\n")
        result = Extractor().extract_file(tmp_path, "latin.py", repository=REPO, commit_sha=SHA)
        assert result.diagnostic is not None
        assert result.diagnostic.code == ErrorCode.EXTRACTION_FILE_UNREADABLE.name

    def test_missing_file(self, tmp_path: Path) -> None:
        result = Extractor().extract_file(tmp_path, "gone.py", repository=REPO, commit_sha=SHA)
        assert result.skipped


class TestBindRecords:
    """Records defined in other files bind after extraction."""

    def test_imported_model_binds_to_known_record(self) -> None:
        result = _extract(
            """
            from models import Order

            def open_orders():
                return Order.find({"open": True})
            """
        )
        assert result.operations[0].bound_record_type_id is None

        ref = RecordRef("rec-1", "Order", "orders")
        bound = bind_records(result, {"Order": ref})
        assert bound.operations[0].bound_record_type_id == "rec-1"
        assert bound.contexts[bound.operations[0].id].record == ref

    def test_imported_class_that_is_not_a_record_is_dropped(self) -> None:
        result = _extract(
            """
            from services import Mailer

            def notify():
                Mailer.filter("x")
            """
        )
        assert len(result.operations) == 1
        assert bind_records(result, {}).operations == []
