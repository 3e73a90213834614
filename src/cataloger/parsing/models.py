"""Parse capability contract.

A front-end turns one file's contents into declarations, call sites and the
symbol information needed to trace a value back through assignments. The
extractor and resolver consume only these dataclasses, never a syntax tree.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol, runtime_checkable

MODULE_SCOPE = "<module>"


# =============================================================================
# Values
# =============================================================================


class ValueKind(str, Enum):
    """Shape of an expression, as far as collection resolution cares."""

    LITERAL = "literal"  # string constant (folded concatenations included)
    NAME = "name"  # bare local/module name
    SELF_ATTR = "self_attr"  # self.<attr>
    CONFIG = "config"  # environment / settings lookup by key
    COLLECTION = "collection"  # a collection handle; inner names it
    DYNAMIC = "dynamic"  # anything the resolver cannot trace


@dataclass(frozen=True, slots=True)
class ValueExpr:
    """A summarised expression.

    ``text`` is the literal value for LITERAL, the identifier for NAME and
    SELF_ATTR, the key for CONFIG and the source text otherwise.
    """

    kind: ValueKind
    text: str
    default: str | None = None  # CONFIG default literal
    inner: ValueExpr | None = None  # COLLECTION name expression
    type_args: tuple[str, ...] = ()  # COLLECTION generic arguments

    @classmethod
    def dynamic(cls, text: str) -> ValueExpr:
        return cls(ValueKind.DYNAMIC, text)


@dataclass(frozen=True, slots=True)
class Binding:
    """One assignment of a value to a name."""

    line: int
    value: ValueExpr
    scope: str = MODULE_SCOPE  # scope whose names the value refers to


# =============================================================================
# Declarations and call sites
# =============================================================================


@dataclass(frozen=True, slots=True)
class FieldDecl:
    name: str
    annotation: str | None
    nullable: bool
    line: int


@dataclass(frozen=True, slots=True)
class Declaration:
    """A class declaration with its data-relevant surface."""

    name: str  # qualified within the module, e.g. "Outer.Inner"
    line_start: int
    line_end: int
    fields: tuple[FieldDecl, ...] = ()
    methods: tuple[str, ...] = ()  # non-dunder, non-property
    bases: tuple[str, ...] = ()
    decorators: tuple[str, ...] = ()
    type_params: tuple[str, ...] = ()
    collection_annotation: str | None = None


@dataclass(frozen=True, slots=True)
class CallSite:
    """A method call ``<receiver>.<verb>(args...)``."""

    verb: str
    receiver: ValueExpr
    receiver_text: str
    receiver_root: str | None  # leftmost identifier of the receiver chain
    args: tuple[ValueExpr, ...]
    first_arg_text: str | None
    line_start: int
    line_end: int
    col: int
    scope: str  # enclosing function qualname or MODULE_SCOPE
    enclosing_class: str | None = None
    type_params_in_scope: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class Instantiation:
    """A plain function call, possibly instantiating a generic helper."""

    function: str
    type_args: tuple[str, ...]
    positional: tuple[str | None, ...]  # identifier per positional arg, None if not a name
    keywords: tuple[tuple[str, str], ...]  # (param, identifier) for name-valued keywords
    line_start: int
    line_end: int
    col: int
    scope: str


@dataclass(frozen=True, slots=True)
class FunctionInfo:
    qualname: str
    params: tuple[str, ...]
    type_params: tuple[str, ...] = ()
    class_param_types: tuple[tuple[str, str], ...] = ()  # (param, T) for `param: type[T]`


# =============================================================================
# Symbol info
# =============================================================================


@dataclass
class SymbolInfo:
    """Assignment and annotation tables keyed by scope."""

    assignments: dict[str, dict[str, list[Binding]]] = field(default_factory=dict)
    self_assignments: dict[str, dict[str, list[Binding]]] = field(default_factory=dict)
    class_attributes: dict[str, dict[str, Binding]] = field(default_factory=dict)
    handle_types: dict[str, dict[str, tuple[str, ...]]] = field(default_factory=dict)
    self_handle_types: dict[str, dict[str, tuple[str, ...]]] = field(default_factory=dict)
    type_vars: set[str] = field(default_factory=set)
    imports: set[str] = field(default_factory=set)
    functions: dict[str, FunctionInfo] = field(default_factory=dict)
    instantiations: list[Instantiation] = field(default_factory=list)

    def add_binding(self, scope: str, name: str, binding: Binding) -> None:
        self.assignments.setdefault(scope, {}).setdefault(name, []).append(binding)

    def add_self_binding(self, class_name: str, attr: str, binding: Binding) -> None:
        self.self_assignments.setdefault(class_name, {}).setdefault(attr, []).append(binding)

    def lookup(self, scope: str, name: str, line: int) -> Binding | None:
        """Latest binding of ``name`` visible at ``line``, local scope first, then module."""
        local = self.assignments.get(scope, {}).get(name, [])
        before = [b for b in local if b.line <= line]
        if before:
            return before[-1]
        if scope != MODULE_SCOPE:
            module = self.assignments.get(MODULE_SCOPE, {}).get(name, [])
            if module:
                return module[-1]
        return None

    def lookup_self(self, class_name: str | None, attr: str) -> Binding | None:
        if class_name is None:
            return None
        bindings = self.self_assignments.get(class_name, {}).get(attr)
        if bindings:
            return bindings[-1]
        return self.class_attributes.get(class_name, {}).get(attr)

    def handle_type_args(self, scope: str, name: str) -> tuple[str, ...] | None:
        for s in (scope, MODULE_SCOPE):
            found = self.handle_types.get(s, {}).get(name)
            if found is not None:
                return found
        return None

    def self_handle_type_args(self, class_name: str | None, attr: str) -> tuple[str, ...] | None:
        if class_name is None:
            return None
        return self.self_handle_types.get(class_name, {}).get(attr)


@dataclass
class ParsedFile:
    path: str
    declarations: list[Declaration] = field(default_factory=list)
    call_sites: list[CallSite] = field(default_factory=list)
    symbol_info: SymbolInfo = field(default_factory=SymbolInfo)


class ParseError(Exception):
    """The front-end could not parse a file."""

    def __init__(self, path: str, reason: str, line: int | None = None) -> None:
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason
        self.line = line


@runtime_checkable
class SourceParser(Protocol):
    """Front-end capability: ``parse(file) -> {declarations, call_sites, symbol_info}``."""

    @property
    def extensions(self) -> frozenset[str]:
        """File extensions this parser accepts."""
        ...

    def parse(self, path: str, content: str) -> ParsedFile:
        """Parse one file. Raises ParseError on invalid input."""
        ...
