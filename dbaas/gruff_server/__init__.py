"""
Gruff - versioned property-graph query core.

This package implements the query side of a versioned property graph:
- Entities and directed Links stored as immutable version chains
- Hash-deduplicated ACLs with nested groups and write-implies-read
- A JSON-path property filter compiler for AND/OR filter trees
- ACL-aware multi-hop BFS traversal and shortest-path search

Architecture:
    ┌─────────────┐     ┌──────────────────┐     ┌──────────────────┐
    │   Caller    │────▶│  GraphTraversal  │────▶│    AclResolver   │
    │ (CLI, API)  │     │   GraphSearch    │     │  (per request)   │
    └─────────────┘     └────────┬─────────┘     └────────┬─────────┘
                                 │                        │
                   compile_expression                     │
                                 │                        │
                                 ▼                        ▼
                        ┌─────────────────────────────────────────┐
                        │        GraphStore (SQLite, JSON1)       │
                        │ entities · links · acls · groups        │
                        └─────────────────────────────────────────┘

Invariants:
    - Every write inserts a new version; exactly one version per chain is latest
    - acl_id = NULL means public; unauthenticated callers see only public rows
    - Filter paths and values are always bound as query parameters
    - Traversal depth is capped at 10 hops

How to change safely:
    - Schema changes must be additive (CREATE ... IF NOT EXISTS)
    - New filter operators need compiler support and tests for parameter order
    - New permission levels go in PERMISSION_GRANTS only
"""

from ._version import __version__

__all__ = ["__version__"]
