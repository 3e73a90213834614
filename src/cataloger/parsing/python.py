"""Python front-end built on the standard-library ``ast`` module.

Recognises the data-access idioms of pymongo/motor style drivers and
document mappers: collection handles obtained from a database object,
annotated ``Collection[Model]`` handles, and model classes carrying a
collection name via ``__collection__``, ``class Meta``/``class Settings`` or a
``@collection("...")`` decorator.
"""

from __future__ import annotations

import ast
import re
from dataclasses import dataclass

from cataloger.parsing.models import (
    MODULE_SCOPE,
    Binding,
    CallSite,
    Declaration,
    FieldDecl,
    FunctionInfo,
    Instantiation,
    ParsedFile,
    ParseError,
    SymbolInfo,
    ValueExpr,
    ValueKind,
)

_CONFIG_ROOTS = frozenset({"config", "settings", "conf", "cfg", "CONFIG", "SETTINGS"})
_ENV_MAPPINGS = frozenset({"os.environ", "environ"})
_ENV_GETTERS = frozenset({"os.getenv", "getenv", "os.environ.get", "environ.get"})
_HANDLE_FACTORIES = frozenset({"get_collection", "collection"})
_HANDLE_CONSTRUCTORS = frozenset({"Collection", "AsyncIOMotorCollection"})
_DATABASE_FACTORIES = frozenset({"get_database", "get_default_database"})
_ANNOTATION_DECORATORS = frozenset({"collection", "document", "table"})
_ANNOTATION_ATTRS = frozenset({"__collection__", "__tablename__", "__collection_name__"})
_META_CLASSES = frozenset({"Meta", "Settings"})
_META_KEYS = frozenset({"collection", "collection_name", "name", "db_table"})
_GENERIC_BASES = frozenset({"Generic", "Protocol"})
_DATABASE_NAME = re.compile(r"(db|database)$", re.IGNORECASE)


# =============================================================================
# Expression helpers
# =============================================================================


def _tail(node: ast.expr) -> str | None:
    if isinstance(node, ast.Name):
        return node.id
    if isinstance(node, ast.Attribute):
        return node.attr
    return None


def _dotted(node: ast.expr) -> str | None:
    if isinstance(node, ast.Name):
        return node.id
    if isinstance(node, ast.Attribute):
        base = _dotted(node.value)
        return f"{base}.{node.attr}" if base else None
    return None


def _root(node: ast.expr) -> str | None:
    while True:
        if isinstance(node, ast.Name):
            return node.id
        if isinstance(node, ast.Attribute | ast.Subscript):
            node = node.value
        elif isinstance(node, ast.Call):
            node = node.func
        else:
            return None


def _const_str(node: ast.expr | None) -> str | None:
    if isinstance(node, ast.Constant) and isinstance(node.value, str):
        return node.value
    return None


def _fold_string(node: ast.expr) -> str | None:
    """Fold string constants, literal concatenation and constant f-strings."""
    if isinstance(node, ast.Constant):
        return node.value if isinstance(node.value, str) else None
    if isinstance(node, ast.BinOp) and isinstance(node.op, ast.Add):
        left = _fold_string(node.left)
        right = _fold_string(node.right)
        if left is not None and right is not None:
            return left + right
        return None
    if isinstance(node, ast.JoinedStr):
        parts = [_const_str(v) for v in node.values]
        if all(p is not None for p in parts):
            return "".join(p for p in parts if p is not None)
    return None


def _type_args(node: ast.expr) -> tuple[str, ...]:
    if isinstance(node, ast.Tuple):
        return tuple(ast.unparse(e) for e in node.elts)
    return (ast.unparse(node),)


def _string_annotation(node: ast.expr) -> ast.expr:
    """Parse a quoted forward-reference annotation, if possible."""
    text = _const_str(node)
    if text is None:
        return node
    try:
        return ast.parse(text, mode="eval").body
    except SyntaxError:
        return node


def _is_none(node: ast.expr | None) -> bool:
    return isinstance(node, ast.Constant) and node.value is None


def _is_optional(annotation: ast.expr | None) -> bool:
    if annotation is None:
        return False
    annotation = _string_annotation(annotation)
    if _is_none(annotation):
        return True
    if isinstance(annotation, ast.BinOp) and isinstance(annotation.op, ast.BitOr):
        return _is_optional(annotation.left) or _is_optional(annotation.right)
    if isinstance(annotation, ast.Subscript):
        base = _tail(annotation.value)
        if base == "Optional":
            return True
        if base == "Union":
            elts = annotation.slice.elts if isinstance(annotation.slice, ast.Tuple) else [annotation.slice]
            return any(_is_optional(e) for e in elts)
    return False


def _handle_annotation(annotation: ast.expr) -> tuple[str, ...] | None:
    """Type arguments of a ``Collection[...]`` annotation, or None if not a handle."""
    annotation = _string_annotation(annotation)
    if isinstance(annotation, ast.Subscript):
        base = _tail(annotation.value)
        if base and base.endswith("Collection"):
            return _type_args(annotation.slice)
        return None
    base = _tail(annotation)
    if base and base.endswith("Collection"):
        return ()
    return None


def _class_param(annotation: ast.expr) -> str | None:
    """``T`` for a parameter annotated ``type[T]``."""
    annotation = _string_annotation(annotation)
    if isinstance(annotation, ast.Subscript) and _tail(annotation.value) in ("type", "Type"):
        return _tail(annotation.slice)
    return None


def _is_database(node: ast.expr) -> bool:
    if isinstance(node, ast.Call):
        return _tail(node.func) in _DATABASE_FACTORIES
    if isinstance(node, ast.Subscript):
        tail = _tail(node.value)
        return tail is not None and tail.lower().endswith("client")
    tail = _tail(node)
    return tail is not None and bool(_DATABASE_NAME.search(tail))


def _config_call(node: ast.Call) -> ValueExpr | None:
    func = node.func
    dotted = _dotted(func)
    is_getter = dotted in _ENV_GETTERS or (
        isinstance(func, ast.Attribute) and func.attr == "get" and _tail(func.value) in _CONFIG_ROOTS
    )
    if not is_getter or not node.args:
        return None
    key = _const_str(node.args[0])
    if key is None:
        return None
    default = _const_str(node.args[1]) if len(node.args) > 1 else None
    for kw in node.keywords:
        if kw.arg == "default":
            default = _const_str(kw.value)
    return ValueExpr(ValueKind.CONFIG, key, default=default)


def _handle_call(node: ast.Call) -> ValueExpr | None:
    func = node.func
    type_args: tuple[str, ...] = ()
    if isinstance(func, ast.Subscript):
        type_args = _type_args(func.slice)
        func = func.value
    name = _tail(func)

    arg: ast.expr | None = None
    if name in _HANDLE_FACTORIES and isinstance(func, ast.Attribute):
        arg = node.args[0] if node.args else None
    elif name in _HANDLE_CONSTRUCTORS:
        arg = node.args[1] if len(node.args) > 1 else None
    else:
        return None
    for kw in node.keywords:
        if kw.arg == "name":
            arg = kw.value

    inner = summarize(arg) if arg is not None else ValueExpr.dynamic("<missing>")
    return ValueExpr(ValueKind.COLLECTION, ast.unparse(node), inner=inner, type_args=type_args)


def summarize(node: ast.expr) -> ValueExpr:
    """Reduce an expression to the shape collection resolution works with."""
    folded = _fold_string(node)
    if folded is not None:
        return ValueExpr(ValueKind.LITERAL, folded)

    if isinstance(node, ast.Name):
        return ValueExpr(ValueKind.NAME, node.id)

    if isinstance(node, ast.Attribute):
        if isinstance(node.value, ast.Name) and node.value.id == "self":
            return ValueExpr(ValueKind.SELF_ATTR, node.attr)
        if _tail(node.value) in _CONFIG_ROOTS:
            return ValueExpr(ValueKind.CONFIG, node.attr)
        if _is_database(node.value):
            inner = ValueExpr(ValueKind.LITERAL, node.attr)
            return ValueExpr(ValueKind.COLLECTION, ast.unparse(node), inner=inner)

    if isinstance(node, ast.Subscript):
        key = _const_str(node.slice)
        if key is not None and (_dotted(node.value) in _ENV_MAPPINGS or _tail(node.value) in _CONFIG_ROOTS):
            return ValueExpr(ValueKind.CONFIG, key)
        if _is_database(node.value):
            return ValueExpr(ValueKind.COLLECTION, ast.unparse(node), inner=summarize(node.slice))

    if isinstance(node, ast.Call):
        found = _config_call(node) or _handle_call(node)
        if found is not None:
            return found

    return ValueExpr.dynamic(ast.unparse(node))


def _collect_type_vars(tree: ast.Module) -> set[str]:
    names: set[str] = set()
    for node in ast.walk(tree):
        if (
            isinstance(node, ast.Assign)
            and isinstance(node.value, ast.Call)
            and _tail(node.value.func) in ("TypeVar", "ParamSpec")
        ):
            names.update(t.id for t in node.targets if isinstance(t, ast.Name))
    return names


def _pep695_params(node: ast.ClassDef | ast.FunctionDef | ast.AsyncFunctionDef) -> list[str]:
    return [p.name for p in getattr(node, "type_params", [])]


def _decorator_collection(decorators: list[ast.expr]) -> str | None:
    for dec in decorators:
        if isinstance(dec, ast.Call) and _tail(dec.func) in _ANNOTATION_DECORATORS:
            if dec.args and (name := _const_str(dec.args[0])) is not None:
                return name
            for kw in dec.keywords:
                if kw.arg in ("name", "collection") and (name := _const_str(kw.value)) is not None:
                    return name
    return None


def _is_property(node: ast.FunctionDef | ast.AsyncFunctionDef) -> bool:
    return any(_tail(d) in ("property", "cached_property") for d in node.decorator_list)


# =============================================================================
# Visitor
# =============================================================================


@dataclass(frozen=True, slots=True)
class _Frame:
    kind: str  # "class" | "function"
    qualname: str
    type_params: tuple[str, ...]


class _ModuleVisitor(ast.NodeVisitor):
    def __init__(self, type_vars: set[str]) -> None:
        self.declarations: list[Declaration] = []
        self.call_sites: list[CallSite] = []
        self.symbols = SymbolInfo(type_vars=set(type_vars))
        self._stack: list[_Frame] = []

    # -- scope bookkeeping ---------------------------------------------------

    def _qualify(self, name: str) -> str:
        return f"{self._stack[-1].qualname}.{name}" if self._stack else name

    def _function_index(self) -> int | None:
        for i in range(len(self._stack) - 1, -1, -1):
            if self._stack[i].kind == "function":
                return i
        return None

    @property
    def _scope(self) -> str:
        i = self._function_index()
        return self._stack[i].qualname if i is not None else MODULE_SCOPE

    @property
    def _class(self) -> str | None:
        i = self._function_index()
        if i is None:
            return self._stack[-1].qualname if self._stack and self._stack[-1].kind == "class" else None
        if i > 0 and self._stack[i - 1].kind == "class":
            return self._stack[i - 1].qualname
        return None

    @property
    def _in_class_body(self) -> bool:
        return bool(self._stack) and self._stack[-1].kind == "class"

    @property
    def _type_params(self) -> tuple[str, ...]:
        params: list[str] = []
        for frame in self._stack:
            params.extend(p for p in frame.type_params if p not in params)
        return tuple(params)

    # -- declarations --------------------------------------------------------

    def visit_ClassDef(self, node: ast.ClassDef) -> None:
        qualname = self._qualify(node.name)
        type_params = _pep695_params(node)
        for base in node.bases:
            if isinstance(base, ast.Subscript) and _tail(base.value) in _GENERIC_BASES:
                type_params.extend(a for a in _type_args(base.slice) if a not in type_params)

        annotation = _decorator_collection(node.decorator_list)
        fields: list[FieldDecl] = []
        methods: list[str] = []
        for stmt in node.body:
            if isinstance(stmt, ast.AnnAssign) and isinstance(stmt.target, ast.Name):
                ann = _string_annotation(stmt.annotation)
                base = ann.value if isinstance(ann, ast.Subscript) else ann
                if _tail(base) == "ClassVar":
                    continue
                fields.append(
                    FieldDecl(
                        name=stmt.target.id,
                        annotation=ast.unparse(stmt.annotation),
                        nullable=_is_optional(stmt.annotation) or _is_none(stmt.value),
                        line=stmt.lineno,
                    )
                )
            elif isinstance(stmt, ast.Assign):
                for target in stmt.targets:
                    if isinstance(target, ast.Name) and target.id in _ANNOTATION_ATTRS:
                        annotation = annotation or _const_str(stmt.value)
            elif isinstance(stmt, ast.ClassDef) and stmt.name in _META_CLASSES:
                for sub in stmt.body:
                    if isinstance(sub, ast.Assign):
                        for target in sub.targets:
                            if isinstance(target, ast.Name) and target.id in _META_KEYS:
                                annotation = annotation or _const_str(sub.value)
            elif isinstance(stmt, ast.FunctionDef | ast.AsyncFunctionDef):
                if not (stmt.name.startswith("__") and stmt.name.endswith("__")) and not _is_property(stmt):
                    methods.append(stmt.name)

        self.declarations.append(
            Declaration(
                name=qualname,
                line_start=node.lineno,
                line_end=node.end_lineno or node.lineno,
                fields=tuple(fields),
                methods=tuple(methods),
                bases=tuple(ast.unparse(b) for b in node.bases),
                decorators=tuple(ast.unparse(d) for d in node.decorator_list),
                type_params=tuple(type_params),
                collection_annotation=annotation,
            )
        )

        for dec in node.decorator_list:
            self.visit(dec)
        self._stack.append(_Frame("class", qualname, tuple(type_params)))
        for stmt in node.body:
            self.visit(stmt)
        self._stack.pop()

    def _visit_function(self, node: ast.FunctionDef | ast.AsyncFunctionDef) -> None:
        qualname = self._qualify(node.name)
        type_params = _pep695_params(node)
        args = node.args
        positional = [*args.posonlyargs, *args.args]
        all_args = [*positional, *args.kwonlyargs]

        class_params: list[tuple[str, str]] = []
        for arg in all_args:
            if arg.annotation is None:
                continue
            for n in ast.walk(arg.annotation):
                if isinstance(n, ast.Name) and n.id in self.symbols.type_vars and n.id not in type_params:
                    type_params.append(n.id)
            if (t := _class_param(arg.annotation)) is not None:
                class_params.append((arg.arg, t))
            if (h := _handle_annotation(arg.annotation)) is not None:
                self.symbols.handle_types.setdefault(qualname, {})[arg.arg] = h

        # Parameters shadow module names; defaults are traceable bindings.
        defaults: dict[str, ast.expr] = {}
        for arg, default in zip(positional[len(positional) - len(args.defaults) :], args.defaults, strict=True):
            defaults[arg.arg] = default
        for arg, kw_default in zip(args.kwonlyargs, args.kw_defaults, strict=True):
            if kw_default is not None:
                defaults[arg.arg] = kw_default
        for arg in all_args:
            default = defaults.get(arg.arg)
            value = summarize(default) if default is not None else ValueExpr.dynamic(arg.arg)
            self.symbols.add_binding(qualname, arg.arg, Binding(node.lineno, value, self._scope))

        self.symbols.functions[qualname] = FunctionInfo(
            qualname=qualname,
            params=tuple(a.arg for a in all_args),
            type_params=tuple(type_params),
            class_param_types=tuple(class_params),
        )

        for dec in node.decorator_list:
            self.visit(dec)
        self._stack.append(_Frame("function", qualname, tuple(type_params)))
        for stmt in node.body:
            self.visit(stmt)
        self._stack.pop()

    def visit_FunctionDef(self, node: ast.FunctionDef) -> None:
        self._visit_function(node)

    def visit_AsyncFunctionDef(self, node: ast.AsyncFunctionDef) -> None:
        self._visit_function(node)

    # -- bindings ------------------------------------------------------------

    def _bind(self, target: ast.expr, value: ValueExpr, line: int) -> None:
        if isinstance(target, ast.Name):
            if self._in_class_body:
                cls = self._stack[-1].qualname
                self.symbols.class_attributes.setdefault(cls, {})[target.id] = Binding(line, value)
            else:
                self.symbols.add_binding(self._scope, target.id, Binding(line, value, self._scope))
        elif isinstance(target, ast.Attribute) and isinstance(target.value, ast.Name):
            cls = self._class
            if target.value.id == "self" and cls is not None:
                self.symbols.add_self_binding(cls, target.attr, Binding(line, value, self._scope))
        elif isinstance(target, ast.Tuple | ast.List):
            for elt in target.elts:
                self._bind(elt, ValueExpr.dynamic(ast.unparse(elt)), line)
        elif isinstance(target, ast.Starred):
            self._bind(target.value, ValueExpr.dynamic(ast.unparse(target)), line)

    def visit_Assign(self, node: ast.Assign) -> None:
        for target in node.targets:
            if (
                isinstance(target, ast.Tuple | ast.List)
                and isinstance(node.value, ast.Tuple | ast.List)
                and len(target.elts) == len(node.value.elts)
            ):
                for elt, val in zip(target.elts, node.value.elts, strict=True):
                    self._bind(elt, summarize(val), node.lineno)
            else:
                self._bind(target, summarize(node.value), node.lineno)
        self.generic_visit(node)

    def visit_AnnAssign(self, node: ast.AnnAssign) -> None:
        handle = _handle_annotation(node.annotation)
        target = node.target
        if handle is not None:
            if isinstance(target, ast.Name):
                if self._in_class_body:
                    self.symbols.self_handle_types.setdefault(self._stack[-1].qualname, {})[target.id] = handle
                else:
                    self.symbols.handle_types.setdefault(self._scope, {})[target.id] = handle
            elif (
                isinstance(target, ast.Attribute)
                and isinstance(target.value, ast.Name)
                and target.value.id == "self"
                and self._class is not None
            ):
                self.symbols.self_handle_types.setdefault(self._class, {})[target.attr] = handle
        if node.value is not None:
            self._bind(target, summarize(node.value), node.lineno)
            self.visit(node.value)

    def visit_AugAssign(self, node: ast.AugAssign) -> None:
        self._bind(node.target, ValueExpr.dynamic(ast.unparse(node)), node.lineno)
        self.generic_visit(node)

    def visit_For(self, node: ast.For) -> None:
        self._bind(node.target, ValueExpr.dynamic(ast.unparse(node.iter)), node.lineno)
        self.generic_visit(node)

    visit_AsyncFor = visit_For

    def visit_Import(self, node: ast.Import) -> None:
        for alias in node.names:
            self.symbols.imports.add(alias.asname or alias.name.split(".")[0])

    def visit_ImportFrom(self, node: ast.ImportFrom) -> None:
        for alias in node.names:
            self.symbols.imports.add(alias.asname or alias.name)

    # -- calls ---------------------------------------------------------------

    def visit_Call(self, node: ast.Call) -> None:
        func = node.func
        line_end = node.end_lineno or node.lineno
        if isinstance(func, ast.Attribute):
            args = [a for a in node.args if not isinstance(a, ast.Starred)]
            self.call_sites.append(
                CallSite(
                    verb=func.attr,
                    receiver=summarize(func.value),
                    receiver_text=ast.unparse(func.value),
                    receiver_root=_root(func.value),
                    args=tuple(summarize(a) for a in args),
                    first_arg_text=ast.unparse(args[0]) if args else None,
                    line_start=node.lineno,
                    line_end=line_end,
                    col=node.col_offset,
                    scope=self._scope,
                    enclosing_class=self._class,
                    type_params_in_scope=self._type_params,
                )
            )

        target = func
        type_args: tuple[str, ...] = ()
        if isinstance(target, ast.Subscript):
            type_args = _type_args(target.slice)
            target = target.value
        called: str | None = None
        if isinstance(target, ast.Name):
            called = target.id
        elif (
            isinstance(target, ast.Attribute)
            and isinstance(target.value, ast.Name)
            and target.value.id in ("self", "cls")
            and self._class is not None
        ):
            called = f"{self._class}.{target.attr}"
        if called is not None:
            self.symbols.instantiations.append(
                Instantiation(
                    function=called,
                    type_args=type_args,
                    positional=tuple(a.id if isinstance(a, ast.Name) else None for a in node.args),
                    keywords=tuple(
                        (kw.arg, kw.value.id)
                        for kw in node.keywords
                        if kw.arg is not None and isinstance(kw.value, ast.Name)
                    ),
                    line_start=node.lineno,
                    line_end=line_end,
                    col=node.col_offset,
                    scope=self._scope,
                )
            )

        self.generic_visit(node)


# =============================================================================
# Parser
# =============================================================================


class PythonSourceParser:
    """SourceParser for Python modules."""

    @property
    def extensions(self) -> frozenset[str]:
        return frozenset({".py", ".pyi"})

    def parse(self, path: str, content: str) -> ParsedFile:
        try:
            tree = ast.parse(content, filename=path)
        except SyntaxError as e:
            raise ParseError(path, e.msg or "invalid syntax", e.lineno) from e
        except ValueError as e:
            # Source containing null bytes
            raise ParseError(path, str(e)) from e

        visitor = _ModuleVisitor(_collect_type_vars(tree))
        try:
            visitor.visit(tree)
        except RecursionError as e:
            raise ParseError(path, "expression nesting too deep") from e

        visitor.call_sites.sort(key=lambda c: (c.line_start, c.col))
        visitor.symbols.instantiations.sort(key=lambda i: (i.line_start, i.col))
        return ParsedFile(
            path=path,
            declarations=visitor.declarations,
            call_sites=visitor.call_sites,
            symbol_info=visitor.symbols,
        )
