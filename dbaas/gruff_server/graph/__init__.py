"""
Graph module for Gruff - traversal and search.

This module handles:
- Multi-hop BFS traversal and shortest-path search
- Filtered search over latest entities and links

Both are gated by the ACL resolver at every row they return.
"""

from .search import MAX_SEARCH_LIMIT, GraphSearch
from .traversal import (
    MAX_TRAVERSAL_DEPTH,
    Direction,
    GraphTraversal,
    PathHop,
    PathStep,
    ShortestPathResult,
    TraversalResult,
    TraversedEntity,
)

__all__ = [
    "MAX_SEARCH_LIMIT",
    "MAX_TRAVERSAL_DEPTH",
    "Direction",
    "GraphSearch",
    "GraphTraversal",
    "PathHop",
    "PathStep",
    "ShortestPathResult",
    "TraversalResult",
    "TraversedEntity",
]
