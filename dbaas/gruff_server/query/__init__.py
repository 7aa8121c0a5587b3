"""
Query module for Gruff - JSON path parsing and property filter compilation.

This module handles:
- Parsing and canonicalizing JSON paths into the properties column
- Compiling property filters and AND/OR expression trees into
  parameterized SQL predicates

Invariants:
    - Compilation is pure and never touches the store
    - Paths and values are bound as parameters, never concatenated
"""

from .filters import (
    AndGroup,
    CompiledFilter,
    FilterExpression,
    FilterOperator,
    OrGroup,
    PropertyFilter,
    compile_expression,
    compile_filter,
    compile_filters,
    filter_from_dict,
)
from .json_path import (
    ComponentKind,
    JsonPathComponent,
    ParsedJsonPath,
    parse_json_path,
    sanitize_json_path,
)

__all__ = [
    "AndGroup",
    "CompiledFilter",
    "ComponentKind",
    "FilterExpression",
    "FilterOperator",
    "JsonPathComponent",
    "OrGroup",
    "ParsedJsonPath",
    "PropertyFilter",
    "compile_expression",
    "compile_filter",
    "compile_filters",
    "filter_from_dict",
    "parse_json_path",
    "sanitize_json_path",
]
