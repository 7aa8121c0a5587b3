"""
Property filter compilation for JSON-valued columns.

This module turns property filters into parameterized SQL predicates that
run against the ``properties`` column of entities or links:
- PropertyFilter: a single comparison on a JSON path
- AndGroup / OrGroup: recursive logical groups of filter expressions
- compile_filter / compile_expression: predicate + ordered parameter list

Invariants:
    - Parameters appear in exactly the order of their placeholders
      (depth-first, left-to-right), since binding is positional
    - JSON paths and values are always bound, never interpolated
    - Operator/value mismatches raise ValidationError, they are never coerced
    - Expression trees deeper than MAX_FILTER_EXPRESSION_DEPTH are rejected

How to change safely:
    - New operators need an entry in FilterOperator and in _compile_comparison
    - Keep compile functions pure; they never touch the store
    - Placeholder order must be verified by tests for every new predicate shape

Example:
    >>> expr = AndGroup([
    ...     PropertyFilter("status", "eq", "active"),
    ...     OrGroup([PropertyFilter("age", "gt", 18), PropertyFilter("vip", "eq", True)]),
    ... ])
    >>> compiled = compile_expression(expr)
    >>> compiled.parameters
    ['$.status', 'active', '$.age', 18, '$.vip', 1]
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from ..errors import ValidationError
from .json_path import sanitize_json_path

MAX_FILTER_EXPRESSION_DEPTH = 5
MAX_GROUP_CHILDREN = 50

_ALIAS_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class FilterOperator(Enum):
    """Comparison operators accepted by PropertyFilter."""

    EQ = "eq"
    NE = "ne"
    GT = "gt"
    LT = "lt"
    GTE = "gte"
    LTE = "lte"
    LIKE = "like"
    ILIKE = "ilike"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    CONTAINS = "contains"
    IN = "in"
    NOT_IN = "not_in"
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"

    @classmethod
    def from_str(cls, value: str) -> FilterOperator:
        """Convert a string operator name.

        Raises:
            ValidationError: If the operator is unknown
        """
        for operator in cls:
            if operator.value == value:
                return operator
        valid = [o.value for o in cls]
        raise ValidationError(
            f"Unsupported operator '{value}'. Valid operators: {valid}",
            field_name="operator",
        )


_NUMERIC_SQL = {
    FilterOperator.GT: ">",
    FilterOperator.LT: "<",
    FilterOperator.GTE: ">=",
    FilterOperator.LTE: "<=",
}


@dataclass(frozen=True)
class PropertyFilter:
    """A comparison on one JSON path.

    Attributes:
        path: JSON path into the properties document
        operator: Comparison operator (FilterOperator or its string value)
        value: Comparison value; ignored by exists/not_exists
    """

    path: str
    operator: FilterOperator | str
    value: Any = None

    def __post_init__(self) -> None:
        if not isinstance(self.operator, FilterOperator):
            object.__setattr__(self, "operator", FilterOperator.from_str(self.operator))


@dataclass(frozen=True)
class AndGroup:
    """All children must match."""

    children: tuple[FilterExpression, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        object.__setattr__(self, "children", tuple(self.children))


@dataclass(frozen=True)
class OrGroup:
    """At least one child must match."""

    children: tuple[FilterExpression, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        object.__setattr__(self, "children", tuple(self.children))


FilterExpression = Union[PropertyFilter, AndGroup, OrGroup]


@dataclass(frozen=True)
class CompiledFilter:
    """A compiled predicate and its positional parameters.

    Attributes:
        predicate: SQL fragment with "?" placeholders, empty when unconstrained
        parameters: Values bound to the placeholders, in order
    """

    predicate: str = ""
    parameters: list[Any] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return self.predicate == ""


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if _is_number(value):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple)):
        return "array"
    return type(value).__name__


def _extract(alias: str) -> str:
    return f"json_extract({alias}.properties, ?)"


def _typed_comparison(
    operator: FilterOperator,
    alias: str,
    json_path: str,
    value: Any,
    sql_op: str,
) -> CompiledFilter:
    """Build an equality-style comparison typed by the Python value."""
    extract = _extract(alias)
    if isinstance(value, bool):
        return CompiledFilter(
            f"CAST({extract} AS INTEGER) {sql_op} ?", [json_path, 1 if value else 0]
        )
    if _is_number(value):
        return CompiledFilter(f"CAST({extract} AS REAL) {sql_op} ?", [json_path, value])
    if isinstance(value, str):
        return CompiledFilter(f"{extract} {sql_op} ?", [json_path, value])
    raise ValidationError(
        f"Unsupported value type for {operator.value} operator: {_type_name(value)}",
        field_name="value",
    )


def _membership(operator: FilterOperator, alias: str, json_path: str, value: Any) -> CompiledFilter:
    """Build an IN / NOT IN list typed by the first element."""
    if not isinstance(value, (list, tuple)) or len(value) == 0:
        raise ValidationError(
            f"{operator.value} operator requires a non-empty array value", field_name="value"
        )

    first = value[0]
    kind = _type_name(first)
    if kind not in ("string", "number", "boolean"):
        raise ValidationError(
            f"Unsupported value type in array for {operator.value} operator: {kind}",
            field_name="value",
        )
    mismatched = [v for v in value if _type_name(v) != kind]
    if mismatched:
        raise ValidationError(
            f"{operator.value} operator requires all array elements to be {kind} values",
            field_name="value",
        )

    keyword = "IN" if operator is FilterOperator.IN else "NOT IN"
    placeholders = ", ".join("?" for _ in value)
    extract = _extract(alias)

    if kind == "boolean":
        return CompiledFilter(
            f"CAST({extract} AS INTEGER) {keyword} ({placeholders})",
            [json_path, *(1 if v else 0 for v in value)],
        )
    if kind == "number":
        return CompiledFilter(
            f"CAST({extract} AS REAL) {keyword} ({placeholders})", [json_path, *value]
        )
    return CompiledFilter(f"{extract} {keyword} ({placeholders})", [json_path, *value])


def _require_string(operator: FilterOperator, value: Any) -> str:
    if not isinstance(value, str):
        raise ValidationError(
            f"{operator.value} operator requires a string value, got {_type_name(value)}",
            field_name="value",
        )
    return value


def _compile_comparison(
    operator: FilterOperator, alias: str, json_path: str, value: Any
) -> CompiledFilter:
    extract = _extract(alias)

    if operator in (FilterOperator.EQ, FilterOperator.NE):
        if value is None:
            null_check = "IS NULL" if operator is FilterOperator.EQ else "IS NOT NULL"
            return CompiledFilter(f"{extract} {null_check}", [json_path])
        sql_op = "=" if operator is FilterOperator.EQ else "!="
        return _typed_comparison(operator, alias, json_path, value, sql_op)

    if operator in _NUMERIC_SQL:
        if not _is_number(value):
            raise ValidationError(
                f"{operator.value} operator requires a numeric value, got {_type_name(value)}",
                field_name="value",
            )
        return CompiledFilter(
            f"CAST({extract} AS REAL) {_NUMERIC_SQL[operator]} ?", [json_path, value]
        )

    if operator is FilterOperator.LIKE:
        return CompiledFilter(f"{extract} LIKE ?", [json_path, _require_string(operator, value)])

    if operator is FilterOperator.ILIKE:
        return CompiledFilter(
            f"LOWER({extract}) LIKE LOWER(?)", [json_path, _require_string(operator, value)]
        )

    if operator is FilterOperator.STARTS_WITH:
        return CompiledFilter(
            f"{extract} LIKE ?", [json_path, f"{_require_string(operator, value)}%"]
        )

    if operator is FilterOperator.ENDS_WITH:
        return CompiledFilter(
            f"{extract} LIKE ?", [json_path, f"%{_require_string(operator, value)}"]
        )

    if operator is FilterOperator.CONTAINS:
        return CompiledFilter(
            f"UPPER({extract}) LIKE UPPER(?)",
            [json_path, f"%{_require_string(operator, value)}%"],
        )

    if operator in (FilterOperator.IN, FilterOperator.NOT_IN):
        return _membership(operator, alias, json_path, value)

    if operator is FilterOperator.EXISTS:
        return CompiledFilter(f"{extract} IS NOT NULL", [json_path])

    if operator is FilterOperator.NOT_EXISTS:
        return CompiledFilter(f"{extract} IS NULL", [json_path])

    raise ValidationError(f"Unsupported operator: {operator.value}", field_name="operator")


def _check_alias(alias: str) -> str:
    if not _ALIAS_RE.fullmatch(alias):
        raise ValidationError(f"Invalid table alias: {alias!r}", field_name="alias")
    return alias


def compile_filter(filter: PropertyFilter, alias: str = "e") -> CompiledFilter:
    """Compile a single property filter.

    Args:
        filter: The property filter
        alias: Table alias owning the properties column ("e" entities, "l" links)

    Returns:
        CompiledFilter with predicate and parameters

    Raises:
        ValidationError: Invalid path, operator or value
    """
    _check_alias(alias)
    json_path = sanitize_json_path(filter.path)
    return _compile_comparison(filter.operator, alias, json_path, filter.value)


def compile_filters(filters: list[PropertyFilter], alias: str = "e") -> CompiledFilter:
    """Compile a flat list of property filters joined with AND."""
    if not filters:
        return CompiledFilter()
    compiled = [compile_filter(f, alias) for f in filters]
    return CompiledFilter(
        " AND ".join(f"({c.predicate})" for c in compiled),
        [p for c in compiled for p in c.parameters],
    )


def compile_expression(
    expression: FilterExpression,
    alias: str = "e",
    depth: int = 0,
) -> CompiledFilter:
    """Compile a filter expression tree.

    Empty groups compile to an empty predicate, single-child groups collapse
    to their child, and multi-child groups join their non-empty children
    with the group's connective, each child parenthesized.

    Args:
        expression: PropertyFilter, AndGroup or OrGroup
        alias: Table alias owning the properties column
        depth: Current nesting depth

    Returns:
        CompiledFilter with predicate and parameters

    Raises:
        ValidationError: Invalid leaf, too many children or nesting too deep
    """
    if depth > MAX_FILTER_EXPRESSION_DEPTH:
        raise ValidationError(
            f"Filter expression exceeds maximum nesting depth of {MAX_FILTER_EXPRESSION_DEPTH}",
            field_name="filter_expression",
        )

    if isinstance(expression, PropertyFilter):
        return compile_filter(expression, alias)

    if isinstance(expression, AndGroup):
        connective = " AND "
    elif isinstance(expression, OrGroup):
        connective = " OR "
    else:
        raise ValidationError(
            "Invalid filter expression: must be a property filter, AND group, or OR group",
            field_name="filter_expression",
        )

    children = expression.children
    if len(children) > MAX_GROUP_CHILDREN:
        raise ValidationError(
            f"Filter group exceeds maximum of {MAX_GROUP_CHILDREN} children",
            field_name="filter_expression",
        )
    if not children:
        return CompiledFilter()
    if len(children) == 1:
        return compile_expression(children[0], alias, depth + 1)

    results = [compile_expression(child, alias, depth + 1) for child in children]
    non_empty = [r for r in results if not r.is_empty]

    if not non_empty:
        return CompiledFilter()
    if len(non_empty) == 1:
        return non_empty[0]

    return CompiledFilter(
        connective.join(f"({r.predicate})" for r in non_empty),
        [p for r in non_empty for p in r.parameters],
    )


def filter_from_dict(data: Any, depth: int = 0) -> FilterExpression:
    """Build a filter expression from its JSON representation.

    Accepted shapes:
        {"path": ..., "operator": ..., "value": ...}
        {"and": [...]} / {"or": [...]}
        [...]  (legacy list form, combined with AND)

    Raises:
        ValidationError: If the input does not describe a filter expression
    """
    if depth > MAX_FILTER_EXPRESSION_DEPTH:
        raise ValidationError(
            f"Filter expression exceeds maximum nesting depth of {MAX_FILTER_EXPRESSION_DEPTH}",
            field_name="filter_expression",
        )

    if isinstance(data, list):
        data = {"and": data}

    if not isinstance(data, dict):
        raise ValidationError(
            "Invalid filter expression: must be an object or a list",
            field_name="filter_expression",
        )

    for key, group_cls in (("and", AndGroup), ("or", OrGroup)):
        if key in data:
            children = data[key]
            if not isinstance(children, list):
                raise ValidationError(f"'{key}' must be a list", field_name="filter_expression")
            if not 1 <= len(children) <= MAX_GROUP_CHILDREN:
                raise ValidationError(
                    f"'{key}' must contain between 1 and {MAX_GROUP_CHILDREN} expressions",
                    field_name="filter_expression",
                )
            return group_cls([filter_from_dict(child, depth + 1) for child in children])

    if "path" in data and "operator" in data:
        path = data["path"]
        if not isinstance(path, str) or not path:
            raise ValidationError("'path' must be a non-empty string", field_name="path")
        return PropertyFilter(path=path, operator=data["operator"], value=data.get("value"))

    raise ValidationError(
        "Invalid filter expression: must be a property filter, AND group, or OR group",
        field_name="filter_expression",
    )
