"""Fact extraction from parsed files.

Turns a ParsedFile into RecordShapeFacts (plain data declarations) and
OperationFacts (call sites recognised as persistence operations on a
collection handle). Files that cannot be read or parsed are skipped with a
FileDiagnostic; they never abort a run.
"""

from __future__ import annotations

import dataclasses
from collections import Counter
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from cataloger.core.errors import ExtractionError
from cataloger.facts.models import (
    Fact,
    FactKind,
    FieldSpec,
    LineRange,
    OperationFact,
    OperationKind,
    ProvenanceRecord,
    RecordRef,
    RecordShapeFact,
    compute_fact_id,
)
from cataloger.parsing.models import (
    CallSite,
    Declaration,
    FunctionInfo,
    Instantiation,
    ParsedFile,
    ParseError,
    SourceParser,
    SymbolInfo,
    ValueKind,
)
from cataloger.parsing.python import PythonSourceParser

logger = structlog.get_logger()

# =============================================================================
# Verb classification
# =============================================================================

VERB_KINDS: dict[str, OperationKind] = {
    # Find
    "find": OperationKind.FIND,
    "find_one": OperationKind.FIND,
    "count_documents": OperationKind.FIND,
    "estimated_document_count": OperationKind.FIND,
    "distinct": OperationKind.FIND,
    "objects": OperationKind.FIND,
    "filter": OperationKind.FIND,
    "get": OperationKind.FIND,
    # Insert
    "insert_one": OperationKind.INSERT,
    "insert_many": OperationKind.INSERT,
    "insert": OperationKind.INSERT,
    "save": OperationKind.INSERT,
    "create": OperationKind.INSERT,
    # Update
    "update_one": OperationKind.UPDATE,
    "update_many": OperationKind.UPDATE,
    "replace_one": OperationKind.UPDATE,
    "update": OperationKind.UPDATE,
    # Delete
    "delete_one": OperationKind.DELETE,
    "delete_many": OperationKind.DELETE,
    "remove": OperationKind.DELETE,
    "delete": OperationKind.DELETE,
    "drop": OperationKind.DELETE,
    # Aggregate
    "aggregate": OperationKind.AGGREGATE,
    "map_reduce": OperationKind.AGGREGATE,
    "watch": OperationKind.AGGREGATE,
    # Other
    "bulk_write": OperationKind.OTHER,
    "create_index": OperationKind.OTHER,
    "create_indexes": OperationKind.OTHER,
    "find_and_modify": OperationKind.OTHER,
}

# Driver-specific verbs that identify a persistence call on their own.
STRICT_VERBS = frozenset(v for v in VERB_KINDS if "_" in v) | {"aggregate"}

_FILTERED_KINDS = frozenset(
    {OperationKind.FIND, OperationKind.UPDATE, OperationKind.DELETE, OperationKind.AGGREGATE}
)

_RECORD_BASES = frozenset(
    {
        "BaseModel",
        "Document",
        "DynamicDocument",
        "EmbeddedDocument",
        "Model",
        "NamedTuple",
        "SQLModel",
        "TypedDict",
    }
)
_RECORD_DECORATORS = frozenset({"dataclass", "define", "frozen", "attrs", "s"})


def operation_kind(verb: str) -> OperationKind | None:
    """Map a method name to an operation kind, or None if it is not a persistence verb."""
    if verb.startswith("find_one_and_"):
        return OperationKind.FIND
    return VERB_KINDS.get(verb)


def _simple_name(text: str) -> str:
    return text.split("[", 1)[0].rsplit(".", 1)[-1].strip("'\" ")


def is_record_shape(decl: Declaration) -> bool:
    """Plain data declaration: a data-class style type, or annotated fields with no behavior."""
    if any(_simple_name(b) in _RECORD_BASES for b in decl.bases):
        return True
    if any(_simple_name(d.split("(", 1)[0]) in _RECORD_DECORATORS for d in decl.decorators):
        return True
    return bool(decl.fields) and not decl.methods


# =============================================================================
# Results
# =============================================================================


@dataclass(frozen=True, slots=True)
class FileDiagnostic:
    """Why a file was skipped."""

    file_path: str
    code: str
    message: str
    line: int | None = None

    @classmethod
    def from_error(cls, error: ExtractionError) -> FileDiagnostic:
        return cls(
            file_path=str(error.details.get("path", "")),
            code=error.error_name,
            message=error.message,
            line=error.details.get("line"),
        )

    def to_dict(self) -> dict[str, object]:
        return {"file_path": self.file_path, "code": self.code, "message": self.message, "line": self.line}


@dataclass(frozen=True, slots=True)
class OperationContext:
    """Local scope the resolver may consult for one operation."""

    call: CallSite
    symbols: SymbolInfo
    record: RecordRef | None = None
    odm_root: str | None = None  # receiver is a model class not yet known to be a record


@dataclass
class ExtractionResult:
    file_path: str
    records: list[RecordShapeFact] = field(default_factory=list)
    operations: list[OperationFact] = field(default_factory=list)
    contexts: dict[str, OperationContext] = field(default_factory=dict)
    diagnostic: FileDiagnostic | None = None

    @property
    def skipped(self) -> bool:
        return self.diagnostic is not None

    @property
    def facts(self) -> list[Fact]:
        return [*self.records, *self.operations]

    def record_refs(self) -> dict[str, RecordRef]:
        return {
            _simple_name(r.symbol_name): RecordRef(r.id, r.symbol_name, r.collection_annotation)
            for r in self.records
        }


@dataclass(frozen=True, slots=True)
class _HandleTrace:
    is_handle: bool
    type_args: tuple[str, ...] = ()


# =============================================================================
# Extractor
# =============================================================================


class Extractor:
    """Produces raw facts with provenance from one file at a time.

    Thread-safe: holds no per-file state, so one instance serves a worker pool.
    """

    def __init__(
        self,
        parser: SourceParser | None = None,
        *,
        max_file_size_bytes: int = 10 * 1024 * 1024,
        hop_limit: int = 5,
    ) -> None:
        self._parser = parser or PythonSourceParser()
        self._max_file_size = max_file_size_bytes
        self._hop_limit = hop_limit

    @property
    def extensions(self) -> frozenset[str]:
        return self._parser.extensions

    def extract_file(
        self,
        root: Path,
        file_path: str,
        *,
        repository: str,
        commit_sha: str,
        known_records: Mapping[str, RecordRef] | None = None,
    ) -> ExtractionResult:
        """Read ``root/file_path`` and extract its facts."""
        full = root / file_path
        try:
            size = full.stat().st_size
            if size > self._max_file_size:
                raise ExtractionError.too_large(file_path, size, self._max_file_size)
            raw = full.read_bytes()
        except ExtractionError as e:
            return self._skip(file_path, e)
        except OSError as e:
            return self._skip(file_path, ExtractionError.unreadable(file_path, e.strerror or type(e).__name__))

        try:
            content = raw.decode("utf-8")
        except UnicodeDecodeError:
            return self._skip(file_path, ExtractionError.unreadable(file_path, "not valid UTF-8"))

        return self.extract(
            file_path,
            content,
            repository=repository,
            commit_sha=commit_sha,
            known_records=known_records,
        )

    def extract(
        self,
        file_path: str,
        content: str,
        *,
        repository: str,
        commit_sha: str,
        known_records: Mapping[str, RecordRef] | None = None,
    ) -> ExtractionResult:
        """Extract facts from already-read file content."""
        try:
            parsed = self._parser.parse(file_path, content)
        except ParseError as e:
            return self._skip(file_path, ExtractionError.parse_failed(file_path, e.reason, e.line))

        result = ExtractionResult(file_path=file_path)
        result.records = self._extract_records(parsed, repository, commit_sha)
        refs = dict(known_records or {})
        refs.update(result.record_refs())
        self._extract_operations(parsed, result, refs, repository, commit_sha)

        logger.debug(
            "file_extracted",
            path=file_path,
            records=len(result.records),
            operations=len(result.operations),
        )
        return result

    def _skip(self, file_path: str, error: ExtractionError) -> ExtractionResult:
        logger.warning("file_skipped", path=file_path, code=error.error_name, reason=error.message)
        return ExtractionResult(file_path=file_path, diagnostic=FileDiagnostic.from_error(error))

    # -------------------------------------------------------------------------
    # Records
    # -------------------------------------------------------------------------

    def _extract_records(self, parsed: ParsedFile, repository: str, commit_sha: str) -> list[RecordShapeFact]:
        records = []
        for decl in parsed.declarations:
            if not is_record_shape(decl):
                continue
            provenance = ProvenanceRecord(
                repository=repository,
                file_path=parsed.path,
                symbol_name=decl.name,
                commit_sha=commit_sha,
                line_range=LineRange(decl.line_start, decl.line_end),
            )
            records.append(
                RecordShapeFact(
                    id=compute_fact_id(repository, parsed.path, decl.name, FactKind.RECORD),
                    symbol_name=decl.name,
                    fields=tuple(FieldSpec(f.name, f.annotation, f.nullable) for f in decl.fields),
                    provenance=provenance,
                    collection_annotation=decl.collection_annotation,
                )
            )
        return records

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def _trace_handle(self, call: CallSite, symbols: SymbolInfo) -> _HandleTrace:
        """Follow the receiver through assignments until it is known to be a collection handle."""
        value = call.receiver
        scope = call.scope
        line = call.line_start
        for _ in range(self._hop_limit + 1):
            if value.kind is ValueKind.COLLECTION:
                return _HandleTrace(True, value.type_args)
            if value.kind is ValueKind.NAME:
                annotated = symbols.handle_type_args(scope, value.text)
                if annotated is not None:
                    return _HandleTrace(True, annotated)
                binding = symbols.lookup(scope, value.text, line)
            elif value.kind is ValueKind.SELF_ATTR:
                annotated = symbols.self_handle_type_args(call.enclosing_class, value.text)
                if annotated is not None:
                    return _HandleTrace(True, annotated)
                binding = symbols.lookup_self(call.enclosing_class, value.text)
            else:
                break
            if binding is None:
                break
            value, scope, line = binding.value, binding.scope, binding.line
        return _HandleTrace(False)

    def _extract_operations(
        self,
        parsed: ParsedFile,
        result: ExtractionResult,
        refs: Mapping[str, RecordRef],
        repository: str,
        commit_sha: str,
    ) -> None:
        symbols = parsed.symbol_info
        ordinals: Counter[str] = Counter()
        generic: dict[str, list[tuple[CallSite, OperationKind, str]]] = {}

        for call in parsed.call_sites:
            kind = operation_kind(call.verb)
            if kind is None:
                continue

            trace = self._trace_handle(call, symbols)
            type_name = _simple_name(trace.type_args[0]) if trace.type_args else None

            # `param: type[T]` receivers bind through the parameter's class
            function = symbols.functions.get(call.scope)
            class_param = None
            if function is not None and call.receiver.kind is ValueKind.NAME:
                class_param = dict(function.class_param_types).get(call.receiver.text)
            if class_param is not None:
                type_name = class_param

            odm_root = None
            if not trace.is_handle and class_param is None:
                root = call.receiver_root
                if root and root in refs:
                    type_name = root
                elif root and root[:1].isupper() and root in symbols.imports:
                    odm_root = root
                elif call.verb not in STRICT_VERBS:
                    continue

            if type_name is not None and type_name in call.type_params_in_scope:
                generic.setdefault(call.scope, []).append((call, kind, type_name))
                continue

            symbol = f"{call.scope}.{call.verb}"
            ordinals[symbol] += 1
            self._emit(
                result,
                call,
                kind,
                symbols,
                refs,
                symbol_name=f"{symbol}#{ordinals[symbol]}",
                line_range=LineRange(call.line_start, call.line_end),
                type_name=type_name if odm_root is None else odm_root,
                odm_root=odm_root,
                repository=repository,
                commit_sha=commit_sha,
            )

        self._extract_instantiations(parsed, result, refs, generic, ordinals, repository, commit_sha)

    def _extract_instantiations(
        self,
        parsed: ParsedFile,
        result: ExtractionResult,
        refs: Mapping[str, RecordRef],
        generic: dict[str, list[tuple[CallSite, OperationKind, str]]],
        ordinals: Counter[str],
        repository: str,
        commit_sha: str,
    ) -> None:
        """Emit generic-helper operations at their instantiation sites."""
        symbols = parsed.symbol_info
        instantiated: set[str] = set()

        for inst in symbols.instantiations:
            calls = generic.get(inst.function)
            if not calls:
                continue
            mapping = _type_mapping(symbols.functions[inst.function], inst)
            instantiated.add(inst.function)
            for call, kind, param in calls:
                type_name = mapping.get(param)
                symbol = f"{inst.scope}.{inst.function}[{type_name or param}].{call.verb}"
                ordinals[symbol] += 1
                self._emit(
                    result,
                    call,
                    kind,
                    symbols,
                    refs,
                    symbol_name=f"{symbol}#{ordinals[symbol]}",
                    line_range=LineRange(inst.line_start, inst.line_end),
                    type_name=type_name,
                    odm_root=None,
                    repository=repository,
                    commit_sha=commit_sha,
                    instantiated_from=f"{inst.function}:{call.line_start}",
                )

        for function, calls in generic.items():
            if function in instantiated:
                continue
            for call, kind, _param in calls:
                symbol = f"{call.scope}.{call.verb}"
                ordinals[symbol] += 1
                self._emit(
                    result,
                    call,
                    kind,
                    symbols,
                    refs,
                    symbol_name=f"{symbol}#{ordinals[symbol]}",
                    line_range=LineRange(call.line_start, call.line_end),
                    type_name=None,
                    odm_root=None,
                    repository=repository,
                    commit_sha=commit_sha,
                )

    def _emit(
        self,
        result: ExtractionResult,
        call: CallSite,
        kind: OperationKind,
        symbols: SymbolInfo,
        refs: Mapping[str, RecordRef],
        *,
        symbol_name: str,
        line_range: LineRange,
        type_name: str | None,
        odm_root: str | None,
        repository: str,
        commit_sha: str,
        instantiated_from: str | None = None,
    ) -> None:
        record = refs.get(type_name) if type_name else None
        receiver = call.receiver
        hint = None
        if receiver.kind is ValueKind.COLLECTION and receiver.inner is not None:
            if receiver.inner.kind is ValueKind.LITERAL:
                hint = receiver.inner.text

        fact = OperationFact(
            id=compute_fact_id(repository, result.file_path, symbol_name, FactKind.OPERATION),
            operation=kind,
            provenance=ProvenanceRecord(
                repository=repository,
                file_path=result.file_path,
                symbol_name=symbol_name,
                commit_sha=commit_sha,
                line_range=line_range,
            ),
            bound_record_type=record.symbol_name if record else type_name,
            bound_record_type_id=record.fact_id if record else None,
            literal_collection_hint=hint,
            filter_expression_text=call.first_arg_text if kind in _FILTERED_KINDS else None,
            instantiated_from=instantiated_from,
        )
        result.operations.append(fact)
        result.contexts[fact.id] = OperationContext(call=call, symbols=symbols, record=record, odm_root=odm_root)


def _type_mapping(function: FunctionInfo, inst: Instantiation) -> dict[str, str]:
    """Bind a generic function's type parameters from one call of it."""
    mapping: dict[str, str] = {}
    if inst.type_args:
        for param, arg in zip(function.type_params, inst.type_args, strict=False):
            mapping[param] = _simple_name(arg)
        return mapping

    params = list(function.params)
    if "." in function.qualname and params and params[0] in ("self", "cls"):
        params = params[1:]
    keywords = dict(inst.keywords)
    for param, type_param in function.class_param_types:
        name = keywords.get(param)
        if name is None and param in params:
            index = params.index(param)
            if index < len(inst.positional):
                name = inst.positional[index]
        if name is not None:
            mapping[type_param] = name
    return mapping


def bind_records(result: ExtractionResult, records: Mapping[str, RecordRef]) -> ExtractionResult:
    """Attach record ids that only became known after extraction.

    Operations on model classes that turn out not to be record shapes are
    dropped along with their context.
    """
    if result.skipped:
        return result
    operations: list[OperationFact] = []
    contexts: dict[str, OperationContext] = {}
    for op in result.operations:
        context = result.contexts[op.id]
        if op.bound_record_type_id is None and op.bound_record_type:
            record = records.get(_simple_name(op.bound_record_type))
            if record is not None:
                op = dataclasses.replace(op, bound_record_type=record.symbol_name, bound_record_type_id=record.fact_id)
                context = dataclasses.replace(context, record=record, odm_root=None)
        if context.odm_root is not None:
            continue
        operations.append(op)
        contexts[op.id] = context
    return dataclasses.replace(result, operations=operations, contexts=contexts)
