"""
JSON path parsing for property filters.

Paths address values inside the JSON ``properties`` column of entities and
links. Supported forms:
    - Simple properties: "name", "age"
    - Nested properties: "address.city", "user.profile.name"
    - Array indices, bracket notation: "tags[0]", "items[2]"
    - Array indices, dot notation: "tags.0", "items.2"
    - Mixed: "users[0].address.city", "orders.0.items.1.name"

Both index notations normalize to the same component sequence and to one
canonical output form ("$.tags[0]").

Invariants:
    - Only [A-Za-z0-9_.[]] characters are accepted (after an optional "$." prefix)
    - Property names match ^[A-Za-z_][A-Za-z0-9_]*$
    - At most MAX_PATH_DEPTH components; longer paths are rejected, never truncated
    - The canonical path is always bound as a query parameter, never interpolated

How to change safely:
    - Widening the accepted character set widens the injection surface;
      paths must stay bindable as a single parameter
    - Keep parse_json_path pure so it can be unit tested without a store
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum

from ..errors import ValidationError

MAX_PATH_DEPTH = 10

_SAFE_PATH_RE = re.compile(r"^[A-Za-z0-9_.\[\]]+$")
_PROPERTY_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_INDEX_RE = re.compile(r"^\d+$")


class ComponentKind(Enum):
    """Kind of a single JSON path component."""

    PROPERTY = "property"
    INDEX = "index"


@dataclass(frozen=True)
class JsonPathComponent:
    """One step of a JSON path.

    Attributes:
        kind: PROPERTY for object keys, INDEX for array positions
        value: Property name (str) or non-negative array index (int)
    """

    kind: ComponentKind
    value: str | int

    @classmethod
    def property(cls, name: str) -> JsonPathComponent:
        return cls(ComponentKind.PROPERTY, name)

    @classmethod
    def index(cls, position: int) -> JsonPathComponent:
        return cls(ComponentKind.INDEX, position)

    def render(self) -> str:
        if self.kind is ComponentKind.INDEX:
            return f"[{self.value}]"
        return f".{self.value}"


@dataclass(frozen=True)
class ParsedJsonPath:
    """Result of parsing a JSON path.

    Attributes:
        is_valid: Whether the path was accepted
        canonical_path: Store-compatible path ("$.a.b[0]"), empty when invalid
        components: Parsed components, empty when invalid
        error: Reason the path was rejected
    """

    is_valid: bool
    canonical_path: str = ""
    components: tuple[JsonPathComponent, ...] = field(default_factory=tuple)
    error: str | None = None


class _PathSyntaxError(Exception):
    pass


def _segment_component(segment: str) -> JsonPathComponent:
    """Classify a dot-separated segment as an index or a property name."""
    if _INDEX_RE.fullmatch(segment):
        return JsonPathComponent.index(int(segment))
    if not _PROPERTY_NAME_RE.fullmatch(segment):
        raise _PathSyntaxError(
            f"Invalid property name: {segment}. "
            "Property names must start with a letter or underscore."
        )
    return JsonPathComponent.property(segment)


def _scan(path: str) -> list[JsonPathComponent]:
    components: list[JsonPathComponent] = []
    current = ""
    in_bracket = False

    for position, char in enumerate(path):
        if char == "[":
            if in_bracket:
                raise _PathSyntaxError(
                    f"Invalid JSON path: nested brackets are not allowed at position {position}"
                )
            in_bracket = True
            if current:
                if not _PROPERTY_NAME_RE.fullmatch(current):
                    raise _PathSyntaxError(
                        f"Invalid property name: {current}. "
                        "Property names must start with a letter or underscore."
                    )
                components.append(JsonPathComponent.property(current))
                current = ""
        elif char == "]":
            if not in_bracket:
                raise _PathSyntaxError(
                    f"Invalid JSON path: unexpected closing bracket at position {position}"
                )
            in_bracket = False
            if not _INDEX_RE.fullmatch(current):
                raise _PathSyntaxError(
                    f"Invalid array index: '{current}'. "
                    "Array indices must be non-negative integers."
                )
            components.append(JsonPathComponent.index(int(current)))
            current = ""
        elif char == "." and not in_bracket:
            # Leading or repeated dots carry no segment.
            if current:
                components.append(_segment_component(current))
                current = ""
        else:
            current += char

    if in_bracket:
        raise _PathSyntaxError("Invalid JSON path: unclosed bracket")

    if current:
        components.append(_segment_component(current))

    return components


def parse_json_path(path: str) -> ParsedJsonPath:
    """Parse and validate a JSON path expression.

    Args:
        path: Path such as "address.city", "tags[0]" or "tags.0"

    Returns:
        ParsedJsonPath; invalid input yields is_valid=False with an error

    Example:
        >>> parse_json_path("tags.0").canonical_path
        '$.tags[0]'
    """
    if not path or not path.strip():
        return ParsedJsonPath(is_valid=False, error="JSON path cannot be empty")

    normalized = path
    if normalized.startswith("$."):
        normalized = normalized[2:]
    elif normalized.startswith("$"):
        normalized = normalized[1:]

    if not _SAFE_PATH_RE.fullmatch(normalized):
        return ParsedJsonPath(
            is_valid=False,
            error=(
                f"Invalid characters in JSON path: {path}. Only alphanumeric characters, "
                "underscores, dots, and square brackets are allowed."
            ),
        )

    try:
        components = _scan(normalized)
    except _PathSyntaxError as e:
        return ParsedJsonPath(is_valid=False, error=str(e))

    if not components:
        return ParsedJsonPath(is_valid=False, error="JSON path cannot be empty")

    if len(components) > MAX_PATH_DEPTH:
        return ParsedJsonPath(
            is_valid=False,
            error=f"JSON path exceeds maximum depth of {MAX_PATH_DEPTH}",
        )

    canonical = "$" + "".join(component.render() for component in components)
    return ParsedJsonPath(is_valid=True, canonical_path=canonical, components=tuple(components))


def sanitize_json_path(path: str) -> str:
    """Return the canonical form of a path or raise.

    Raises:
        ValidationError: If the path is invalid
    """
    parsed = parse_json_path(path)
    if not parsed.is_valid:
        raise ValidationError(parsed.error or f"Invalid JSON path: {path}", field_name="path")
    return parsed.canonical_path
