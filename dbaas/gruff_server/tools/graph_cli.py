"""
Graph CLI tool for Gruff.

This tool runs the query core against a local SQLite database:
- traverse: BFS from a start entity
- path: shortest outbound path between two entities
- compile-filter: print the SQL predicate and parameters for a filter
- acl-hash: print the canonical hash of an ACL entry set

Usage:
    gruff-graph traverse ENTITY_ID --user user-1 --direction both --max-depth 2
    gruff-graph path FROM_ID TO_ID --user user-1
    gruff-graph compile-filter '{"and": [{"path": "age", "operator": "gt", "value": 18}]}'
    gruff-graph acl-hash '[{"principal_type": "user", "principal_id": "u1", "permission": "read"}]'

Invariants:
    - Results are printed as JSON on stdout
    - GruffError exits with code 1 and a JSON error body
    - Logs go to stderr, formatted per LOG_FORMAT

How to change safely:
    - Add new commands, don't modify existing ones
    - Keep output format stable for scripting
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import replace
from typing import Any

import json_log_formatter

from ..config import ServerConfig
from ..errors import GruffError, ValidationError
from ..graph.traversal import GraphTraversal
from ..query.filters import compile_expression, filter_from_dict
from ..store.acl import compute_acl_hash, validate_acl_entries
from ..store.canonical_store import GraphStore

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]


def _load_json(raw: str, field_name: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValidationError(f"Invalid JSON for {field_name}: {e}", field_name=field_name) from e


class GraphCLI:
    """CLI commands for the graph query core.

    Example:
        >>> cli = GraphCLI(ServerConfig())
        >>> cli.acl_hash('[{"principal_type": "user", "principal_id": "u1", "permission": "read"}]')
        {'hash': '...', 'entries': 1}
    """

    def __init__(self, config: ServerConfig) -> None:
        self.config = config

    def _traversal(self) -> GraphTraversal:
        storage = self.config.storage
        store = GraphStore(
            storage.db_path,
            wal_mode=storage.wal_mode,
            busy_timeout_ms=storage.busy_timeout_ms,
            cache_size_pages=storage.cache_size_pages,
        )
        return GraphTraversal(
            store,
            max_in_clause_ids=self.config.acl.max_in_clause_ids,
            default_depth=self.config.traversal.default_depth,
            shortest_path_default_depth=self.config.traversal.shortest_path_default_depth,
        )

    async def traverse(self, args: argparse.Namespace) -> dict[str, Any]:
        traversal = self._traversal()
        await traversal.store.initialize()
        result = await traversal.traverse(
            args.entity_id,
            user_id=args.user,
            direction=args.direction,
            max_depth=args.max_depth,
            link_type_ids=args.link_type or None,
            entity_type_ids=args.entity_type or None,
            include_deleted=args.include_deleted,
            return_paths=args.return_paths,
            entity_filter=(
                filter_from_dict(_load_json(args.filter, "filter")) if args.filter else None
            ),
        )
        return result.to_dict()

    async def path(self, args: argparse.Namespace) -> dict[str, Any]:
        traversal = self._traversal()
        await traversal.store.initialize()
        result = await traversal.shortest_path(
            args.from_id,
            args.to_id,
            user_id=args.user,
            max_depth=args.max_depth,
            link_type_ids=args.link_type or None,
            include_deleted=args.include_deleted,
        )
        return result.to_dict()

    def compile_filter(self, raw: str, alias: str = "e") -> dict[str, Any]:
        """Compile a JSON filter expression to its SQL predicate."""
        compiled = compile_expression(filter_from_dict(_load_json(raw, "filter")), alias=alias)
        return {"predicate": compiled.predicate, "parameters": compiled.parameters}

    def acl_hash(self, raw: str) -> dict[str, Any]:
        """Compute the canonical hash of a JSON list of ACL entries."""
        entries = _load_json(raw, "entries")
        if not isinstance(entries, list):
            raise ValidationError("ACL entries must be a JSON list", field_name="entries")
        errors = validate_acl_entries(entries)
        if errors:
            raise ValidationError("Invalid ACL entries", field_name="entries", errors=errors)
        return {"hash": compute_acl_hash(entries), "entries": len(entries)}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Gruff graph query tool")
    parser.add_argument("--db", help="SQLite database path (default: GRUFF_DB_PATH)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # traverse command
    traverse_parser = subparsers.add_parser("traverse", help="Breadth-first traversal")
    traverse_parser.add_argument("entity_id", help="Start entity id (any version)")
    traverse_parser.add_argument("--user", help="Calling user id (omit for unauthenticated)")
    traverse_parser.add_argument(
        "--direction", choices=["outbound", "inbound", "both"], default="outbound"
    )
    traverse_parser.add_argument("--max-depth", type=int, default=None)
    traverse_parser.add_argument("--link-type", action="append", default=[])
    traverse_parser.add_argument("--entity-type", action="append", default=[])
    traverse_parser.add_argument("--include-deleted", action="store_true")
    traverse_parser.add_argument("--return-paths", action="store_true")
    traverse_parser.add_argument("--filter", help="JSON property filter on reached entities")

    # path command
    path_parser = subparsers.add_parser("path", help="Shortest outbound path")
    path_parser.add_argument("from_id", help="Origin entity id")
    path_parser.add_argument("to_id", help="Target entity id")
    path_parser.add_argument("--user", help="Calling user id (omit for unauthenticated)")
    path_parser.add_argument("--max-depth", type=int, default=None)
    path_parser.add_argument("--link-type", action="append", default=[])
    path_parser.add_argument("--include-deleted", action="store_true")

    # compile-filter command
    compile_parser = subparsers.add_parser("compile-filter", help="Compile a filter to SQL")
    compile_parser.add_argument("expression", help="JSON filter expression")
    compile_parser.add_argument("--alias", default="e", help="Table alias")

    # acl-hash command
    hash_parser = subparsers.add_parser("acl-hash", help="Hash an ACL entry set")
    hash_parser.add_argument("entries", help="JSON list of ACL entries")

    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entry point for the graph tool."""
    args = build_parser().parse_args(argv)

    config = ServerConfig.from_env()
    if args.db:
        config.storage = replace(config.storage, db_path=args.db)
    setup_logging(config)
    cli = GraphCLI(config)

    try:
        if args.command == "traverse":
            output = asyncio.run(cli.traverse(args))
        elif args.command == "path":
            output = asyncio.run(cli.path(args))
        elif args.command == "compile-filter":
            output = cli.compile_filter(args.expression, alias=args.alias)
        else:
            output = cli.acl_hash(args.entries)
    except GruffError as e:
        print(json.dumps(e.to_dict(), indent=2))
        return 1

    print(json.dumps(output, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
