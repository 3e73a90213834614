"""Front-end parsing capability and the bundled Python parser."""

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
    SourceParser,
    SymbolInfo,
    ValueExpr,
    ValueKind,
)
from cataloger.parsing.python import PythonSourceParser

__all__ = [
    "MODULE_SCOPE",
    "Binding",
    "CallSite",
    "Declaration",
    "FieldDecl",
    "FunctionInfo",
    "Instantiation",
    "ParsedFile",
    "ParseError",
    "PythonSourceParser",
    "SourceParser",
    "SymbolInfo",
    "ValueExpr",
    "ValueKind",
]
