"""Tests for the Python front-end (parsing/python.py)."""

from __future__ import annotations

import ast
import textwrap

import pytest

from cataloger.parsing import MODULE_SCOPE, ParseError, PythonSourceParser, SourceParser, ValueKind
from cataloger.parsing.python import summarize


def _parse(source: str, path: str = "app/models.py"):
    return PythonSourceParser().parse(path, textwrap.dedent(source))


def _expr(text: str):
    return summarize(ast.parse(text, mode="eval").body)


class TestSummarize:
    @pytest.mark.parametrize(
        ("text", "literal"),
        [
            ('"orders"', "orders"),
            ('"orders" + "_archive"', "orders_archive"),
            ('f"orders"', "orders"),
        ],
    )
    def test_folds_constant_strings(self, text: str, literal: str) -> None:
        value = _expr(text)
        assert value.kind is ValueKind.LITERAL
        assert value.text == literal

    def test_config_lookups(self) -> None:
        assert _expr('os.environ["ORDERS"]').kind is ValueKind.CONFIG
        value = _expr('os.getenv("ORDERS", "orders")')
        assert (value.kind, value.text, value.default) == (ValueKind.CONFIG, "ORDERS", "orders")
        assert _expr("settings.orders_collection").text == "orders_collection"

    def test_collection_handles(self) -> None:
        handle = _expr('db["orders"]')
        assert handle.kind is ValueKind.COLLECTION
        assert handle.inner is not None
        assert handle.inner.text == "orders"

        typed = _expr('db.get_collection[Order]("orders")')
        assert typed.kind is ValueKind.COLLECTION
        assert typed.type_args == ("Order",)

        attribute = _expr("client.get_database().invoices")
        assert attribute.kind is ValueKind.COLLECTION
        assert attribute.inner is not None
        assert attribute.inner.text == "invoices"

    def test_names_and_dynamic(self) -> None:
        assert _expr("name").kind is ValueKind.NAME
        assert _expr("self.name").kind is ValueKind.SELF_ATTR
        assert _expr('"events_" + tenant').kind is ValueKind.DYNAMIC


class TestDeclarations:
    def test_fields_in_declaration_order(self) -> None:
        parsed = _parse(
            """
            from typing import ClassVar, Optional

            class Order(BaseModel):
                id: str
                note: Optional[str]
                total: float | None = None
                kind: ClassVar[str] = "order"

                def describe(self):
                    return self.id

                @property
                def label(self):
                    return self.id
            """
        )
        [order] = parsed.declarations
        assert order.name == "Order"
        assert (order.line_start, order.line_end) == (4, 15)
        assert [(f.name, f.annotation, f.nullable) for f in order.fields] == [
            ("id", "str", False),
            ("note", "Optional[str]", True),
            ("total", "float | None", True),
        ]
        assert order.methods == ("describe",)
        assert order.bases == ("BaseModel",)

    @pytest.mark.parametrize(
        "body",
        [
            '@collection("orders")\nclass Order:\n    id: str\n',
            'class Order:\n    __collection__ = "orders"\n    id: str\n',
            'class Order:\n    id: str\n\n    class Settings:\n        name = "orders"\n',
        ],
    )
    def test_collection_annotations(self, body: str) -> None:
        parsed = _parse(body)
        order = next(d for d in parsed.declarations if d.name == "Order")
        assert order.collection_annotation == "orders"

    def test_nested_and_generic_classes(self) -> None:
        parsed = _parse(
            """
            from typing import Generic, TypeVar

            T = TypeVar("T")

            class Repository(Generic[T]):
                class Page:
                    size: int
            """
        )
        names = {d.name: d for d in parsed.declarations}
        assert names["Repository"].type_params == ("T",)
        assert "Repository.Page" in names


class TestCallSites:
    def test_scope_and_receiver(self) -> None:
        parsed = _parse(
            """
            class OrderStore:
                def __init__(self, db):
                    self.orders = db["orders"]

                def open(self):
                    return self.orders.find({"status": "open"})
            """
        )
        call = next(c for c in parsed.call_sites if c.verb == "find")
        assert call.scope == "OrderStore.open"
        assert call.enclosing_class == "OrderStore"
        assert call.receiver.kind is ValueKind.SELF_ATTR
        assert call.receiver_root == "self"
        assert call.first_arg_text == "{'status': 'open'}"
        assert call.line_start == 7

        binding = parsed.symbol_info.lookup_self("OrderStore", "orders")
        assert binding is not None
        assert binding.value.kind is ValueKind.COLLECTION

    def test_module_level_call(self) -> None:
        parsed = _parse('db["audit"].insert_one({})\n')
        [call] = parsed.call_sites
        assert call.scope == MODULE_SCOPE
        assert call.enclosing_class is None


class TestSymbolInfo:
    def test_lookup_respects_line_order(self) -> None:
        parsed = _parse(
            """
            def load(db):
                name = "orders"
                first = db[name].find({})
                name = "archive"
                return db[name].find({})
            """
        )
        symbols = parsed.symbol_info
        early = symbols.lookup("load", "name", 4)
        late = symbols.lookup("load", "name", 6)
        assert early is not None and early.value.text == "orders"
        assert late is not None and late.value.text == "archive"

    def test_lookup_falls_back_to_module(self) -> None:
        parsed = _parse(
            """
            ORDERS = "orders"

            def load(db):
                return db[ORDERS].find({})
            """
        )
        binding = parsed.symbol_info.lookup("load", "ORDERS", 5)
        assert binding is not None
        assert binding.scope == MODULE_SCOPE

    def test_parameter_defaults_are_bindings(self) -> None:
        parsed = _parse(
            """
            def load(db, name="orders"):
                return db[name].find({})
            """
        )
        binding = parsed.symbol_info.lookup("load", "name", 3)
        assert binding is not None
        assert binding.value.kind is ValueKind.LITERAL

    def test_handle_annotations_and_imports(self) -> None:
        parsed = _parse(
            """
            from pymongo.collection import Collection
            from app.models import Order

            def load(orders: Collection[Order]):
                return orders.find({})
            """
        )
        symbols = parsed.symbol_info
        assert symbols.handle_type_args("load", "orders") == ("Order",)
        assert {"Collection", "Order"} <= symbols.imports

    def test_generic_function_instantiations(self) -> None:
        parsed = _parse(
            """
            from typing import TypeVar

            T = TypeVar("T")

            def by_id(handle: type[T], key):
                return key

            def load():
                return by_id[Order](Order, "o-1")
            """
        )
        symbols = parsed.symbol_info
        assert symbols.functions["by_id"].type_params == ("T",)
        assert symbols.functions["by_id"].class_param_types == (("handle", "T"),)
        [inst] = [i for i in symbols.instantiations if i.function == "by_id"]
        assert inst.type_args == ("Order",)
        assert inst.positional == ("Order", None)
        assert inst.scope == "load"


class TestParser:
    def test_satisfies_protocol(self) -> None:
        parser = PythonSourceParser()
        assert isinstance(parser, SourceParser)
        assert ".py" in parser.extensions

    def test_syntax_error(self) -> None:
        with pytest.raises(ParseError) as exc_info:
            _parse("def broken(:\n    pass\n", path="app/broken.py")
        assert exc_info.value.path == "app/broken.py"
        assert exc_info.value.line == 1

    def test_null_bytes(self) -> None:
        with pytest.raises(ParseError):
            PythonSourceParser().parse("app/bin.py", "x = 1\x00\n")
