"""
Unit tests for JSON path parsing.

Tests cover:
- Property and index components
- Canonical path rendering
- Rejection of malformed paths
- sanitize_json_path error reporting
"""

import pytest

from dbaas.gruff_server.errors import ValidationError
from dbaas.gruff_server.query.json_path import (
    MAX_PATH_DEPTH,
    ComponentKind,
    JsonPathComponent,
    parse_json_path,
    sanitize_json_path,
)


class TestParseJsonPath:
    """Tests for parse_json_path."""

    def test_simple_property(self):
        """Single property name becomes $.name."""
        parsed = parse_json_path("status")
        assert parsed.is_valid
        assert parsed.canonical_path == "$.status"
        assert parsed.components == (JsonPathComponent.property("status"),)

    def test_nested_properties(self):
        """Dots separate nested properties."""
        parsed = parse_json_path("address.city")
        assert parsed.canonical_path == "$.address.city"
        assert [c.kind for c in parsed.components] == [
            ComponentKind.PROPERTY,
            ComponentKind.PROPERTY,
        ]

    def test_bracket_and_dot_index_are_equivalent(self):
        """tags[0] and tags.0 parse to the same components."""
        bracket = parse_json_path("tags[0]")
        dotted = parse_json_path("tags.0")
        assert bracket.is_valid and dotted.is_valid
        assert bracket.components == dotted.components
        assert bracket.canonical_path == "$.tags[0]"
        assert dotted.canonical_path == "$.tags[0]"

    def test_mixed_path(self):
        """Indices and properties can be interleaved."""
        parsed = parse_json_path("items[2].tags[10].name")
        assert parsed.canonical_path == "$.items[2].tags[10].name"
        assert len(parsed.components) == 5

    def test_dollar_prefix_accepted(self):
        """A leading $. is stripped before parsing."""
        assert parse_json_path("$.a.b").canonical_path == "$.a.b"

    def test_underscore_property(self):
        """Property names may start with an underscore."""
        assert parse_json_path("_meta.v2").canonical_path == "$._meta.v2"

    @pytest.mark.parametrize(
        "path",
        [
            "", "   ", "a;b", "a[[0]]", "a[]", "a[0", "0abc", "a-b", "a]", "a[x]", "a b",
            "a\n", "a.b\n", "tags[0\n]",
        ],
    )
    def test_rejects_malformed(self, path):
        """Malformed paths are invalid with an error message."""
        parsed = parse_json_path(path)
        assert parsed.is_valid is False
        assert parsed.error
        assert parsed.canonical_path == ""

    def test_max_depth(self):
        """Paths with more than MAX_PATH_DEPTH components are rejected."""
        at_limit = ".".join(f"p{i}" for i in range(MAX_PATH_DEPTH))
        over_limit = ".".join(f"p{i}" for i in range(MAX_PATH_DEPTH + 1))
        assert parse_json_path(at_limit).is_valid
        parsed = parse_json_path(over_limit)
        assert not parsed.is_valid
        assert "maximum depth" in parsed.error


class TestSanitizeJsonPath:
    """Tests for sanitize_json_path."""

    def test_returns_canonical(self):
        """Valid path returns canonical form."""
        assert sanitize_json_path("tags.0") == "$.tags[0]"

    def test_raises_validation_error(self):
        """Invalid path raises ValidationError on field 'path'."""
        with pytest.raises(ValidationError) as exc_info:
            sanitize_json_path("a;b")
        assert exc_info.value.field_name == "path"
        assert exc_info.value.code == "VALIDATION_ERROR"
