"""
Graph traversal engine for Gruff.

This module implements ACL-aware breadth-first graph walks over the
versioned entity/link tables:
- traverse: multi-hop BFS from a start entity, outbound, inbound or both
- shortest_path: outbound BFS from one entity to another, fewest hops

The graph is implicit: every hop is one store query (GraphStore.fetch_neighbors)
returning latest, non-deleted links and the latest entity at their far end.
Traversal state is an explicit FIFO queue of (entity_id, depth, path) and a
visited map keyed by entity id.

Invariants:
    - A node at depth == max_depth is returned but never expanded
    - Both the link and the neighbor entity of every hop pass the ACL check
    - Unauthenticated callers (user_id None) only cross rows with acl_id NULL
    - A missing start is NotFoundError; an unreadable start is AccessDeniedError
    - Queries within a BFS wave are issued sequentially

How to change safely:
    - Keep the queue FIFO; shortest_path's optimality depends on it
    - ACL and filter predicates go through fetch_neighbors so they stay in SQL
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..errors import NoPathFoundError, NotFoundError, ValidationError
from ..query.filters import CompiledFilter, FilterExpression, compile_expression
from ..store.acl import (
    MAX_ACL_IDS_FOR_IN_CLAUSE,
    AclFilterResult,
    AclResolver,
    Permission,
    filter_by_acl_permission,
)
from ..store.canonical_store import Entity, GraphStore, Link, Neighbor

logger = logging.getLogger(__name__)

MAX_TRAVERSAL_DEPTH = 10


class Direction(Enum):
    """Which link endpoint the current node must occupy."""

    OUTBOUND = "outbound"
    INBOUND = "inbound"
    BOTH = "both"

    @classmethod
    def from_str(cls, value: str) -> Direction:
        """Convert a string direction.

        Raises:
            ValidationError: If the direction is unknown
        """
        for direction in cls:
            if direction.value == value:
                return direction
        raise ValidationError(
            f"Invalid direction '{value}'. Must be one of: outbound, inbound, both",
            field_name="direction",
        )

    def hops(self) -> tuple[str, ...]:
        if self is Direction.BOTH:
            return (Direction.OUTBOUND.value, Direction.INBOUND.value)
        return (self.value,)


@dataclass(frozen=True)
class PathStep:
    """One hop of a discovered path: the link crossed and the entity reached."""

    link_id: str
    entity_id: str

    def to_dict(self) -> dict[str, str]:
        return {"link_id": self.link_id, "entity_id": self.entity_id}


@dataclass
class TraversedEntity:
    """An entity reached by traverse().

    Attributes:
        entity: Latest version of the entity
        depth: Hop count at first discovery
        paths: Paths from the start, first-discovered first. Holds only the
            first path unless return_paths was requested. The start entity
            has a single empty path.
    """

    entity: Entity
    depth: int
    paths: list[tuple[PathStep, ...]] = field(default_factory=list)

    def to_dict(self, include_paths: bool = False) -> dict[str, Any]:
        data = self.entity.to_dict()
        data["depth"] = self.depth
        if include_paths:
            data["paths"] = [[step.to_dict() for step in path] for path in self.paths]
        return data


@dataclass
class TraversalResult:
    """Result of traverse(), in BFS discovery order."""

    start_id: str
    direction: Direction
    max_depth: int
    entities: list[TraversedEntity] = field(default_factory=list)
    return_paths: bool = False

    @property
    def entity_ids(self) -> list[str]:
        return [t.entity.id for t in self.entities]

    def to_dict(self) -> dict[str, Any]:
        return {
            "start_id": self.start_id,
            "direction": self.direction.value,
            "max_depth": self.max_depth,
            "count": len(self.entities),
            "entities": [t.to_dict(include_paths=self.return_paths) for t in self.entities],
        }


@dataclass
class PathHop:
    """One node of a shortest path; link is the link used to reach it (None for the origin)."""

    entity: Entity
    link: Link | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity": self.entity.to_dict(),
            "link": self.link.to_dict() if self.link is not None else None,
        }


@dataclass
class ShortestPathResult:
    """Result of shortest_path()."""

    from_id: str
    to_id: str
    path: list[PathHop] = field(default_factory=list)

    @property
    def length(self) -> int:
        """Number of links in the path."""
        return max(len(self.path) - 1, 0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "from": self.from_id,
            "to": self.to_id,
            "length": self.length,
            "path": [hop.to_dict() for hop in self.path],
        }


def _check_depth(max_depth: Any) -> int:
    if isinstance(max_depth, bool) or not isinstance(max_depth, int):
        raise ValidationError("max_depth must be an integer", field_name="max_depth")
    if not 0 <= max_depth <= MAX_TRAVERSAL_DEPTH:
        raise ValidationError(
            f"max_depth must be between 0 and {MAX_TRAVERSAL_DEPTH}", field_name="max_depth"
        )
    return max_depth


class GraphTraversal:
    """ACL-aware traversal over a GraphStore.

    Each call builds its own AclResolver, so accessible ACL ids are computed
    at most once per call and never shared between calls.

    Example:
        >>> traversal = GraphTraversal(store)
        >>> result = await traversal.traverse("entity-a", user_id="user-1", max_depth=2)
        >>> result.entity_ids
        ['entity-a', 'entity-b']
    """

    def __init__(
        self,
        store: GraphStore,
        max_in_clause_ids: int = MAX_ACL_IDS_FOR_IN_CLAUSE,
        default_depth: int = 3,
        shortest_path_default_depth: int = MAX_TRAVERSAL_DEPTH,
    ) -> None:
        """Initialize the traversal engine.

        Args:
            store: Graph store to read from
            max_in_clause_ids: ACL ids inlined into a hop query before post-filtering
            default_depth: traverse() depth when none is given
            shortest_path_default_depth: shortest_path() depth when none is given
        """
        self.store = store
        self.max_in_clause_ids = max_in_clause_ids
        self.default_depth = default_depth
        self.shortest_path_default_depth = shortest_path_default_depth

    async def _resolve_readable(
        self,
        resolver: AclResolver,
        user_id: str | None,
        entity_id: str,
        include_deleted: bool,
    ) -> Entity:
        entity = await self.store.get_latest_entity(entity_id)
        if entity is None or (entity.is_deleted and not include_deleted):
            raise NotFoundError(f"Entity not found: {entity_id}", "entity", entity_id)
        await resolver.check_read_access(user_id, entity.acl_id, entity_id)
        return entity

    async def _acl_filters(
        self, resolver: AclResolver, user_id: str | None
    ) -> tuple[list[CompiledFilter], AclFilterResult]:
        link_acl = await resolver.build_acl_filter_clause(user_id, Permission.READ, "l.acl_id")
        entity_acl = await resolver.build_acl_filter_clause(user_id, Permission.READ, "e.acl_id")

        predicates = []
        for acl in (link_acl, entity_acl):
            if acl.use_filter:
                predicates.append(CompiledFilter(acl.where_clause, list(acl.bindings)))
        return predicates, link_acl

    async def _hop(
        self,
        entity_id: str,
        direction: str,
        predicates: list[CompiledFilter],
        acl: AclFilterResult,
        include_deleted: bool,
        link_type_ids: list[str] | None,
        entity_type_ids: list[str] | None = None,
    ) -> list[Neighbor]:
        neighbors = await self.store.fetch_neighbors(
            entity_id,
            direction,
            include_deleted=include_deleted,
            link_type_ids=link_type_ids,
            entity_type_ids=entity_type_ids,
            predicates=predicates,
        )
        if not acl.use_filter:
            neighbors = filter_by_acl_permission(
                neighbors, acl.accessible_acl_ids, key=lambda n: n.link.acl_id
            )
            neighbors = filter_by_acl_permission(
                neighbors, acl.accessible_acl_ids, key=lambda n: n.entity.acl_id
            )
        return neighbors

    async def traverse(
        self,
        start_id: str,
        user_id: str | None = None,
        direction: Direction | str = Direction.OUTBOUND,
        max_depth: int | None = None,
        link_type_ids: list[str] | None = None,
        entity_type_ids: list[str] | None = None,
        include_deleted: bool = False,
        return_paths: bool = False,
        entity_filter: FilterExpression | None = None,
        link_filter: FilterExpression | None = None,
    ) -> TraversalResult:
        """Breadth-first traversal from a start entity.

        Args:
            start_id: Any version id of the start entity
            user_id: Calling user, None when unauthenticated
            direction: outbound, inbound or both
            max_depth: Maximum hops (0 returns only the start entity)
            link_type_ids: Only cross links of these types
            entity_type_ids: Only reach entities of these types
            include_deleted: Also cross deleted links and entities
            return_paths: Record every distinct path to each entity
            entity_filter: Property filter on reached entities
            link_filter: Property filter on crossed links

        Returns:
            TraversalResult with the start entity first

        Raises:
            ValidationError: Bad direction, depth or filter
            NotFoundError: Start entity does not exist
            AccessDeniedError: Caller cannot read the start entity
        """
        if isinstance(direction, str):
            direction = Direction.from_str(direction)
        max_depth = _check_depth(self.default_depth if max_depth is None else max_depth)

        filters: list[CompiledFilter] = []
        if entity_filter is not None:
            filters.append(compile_expression(entity_filter, alias="e"))
        if link_filter is not None:
            filters.append(compile_expression(link_filter, alias="l"))

        started = time.monotonic()
        resolver = AclResolver(self.store, self.max_in_clause_ids)
        start = await self._resolve_readable(resolver, user_id, start_id, include_deleted)
        acl_predicates, acl = await self._acl_filters(resolver, user_id)
        predicates = acl_predicates + filters

        visited: dict[str, TraversedEntity] = {
            start.id: TraversedEntity(entity=start, depth=0, paths=[()])
        }
        queue: deque[tuple[str, int, tuple[PathStep, ...]]] = deque([(start.id, 0, ())])
        queries = 0

        while queue:
            current_id, depth, path = queue.popleft()
            if depth >= max_depth:
                continue

            for hop_direction in direction.hops():
                neighbors = await self._hop(
                    current_id,
                    hop_direction,
                    predicates,
                    acl,
                    include_deleted,
                    link_type_ids,
                    entity_type_ids,
                )
                queries += 1

                for neighbor in neighbors:
                    new_path = path + (PathStep(neighbor.link.id, neighbor.entity.id),)
                    seen = visited.get(neighbor.entity.id)
                    if seen is None:
                        visited[neighbor.entity.id] = TraversedEntity(
                            entity=neighbor.entity, depth=depth + 1, paths=[new_path]
                        )
                        queue.append((neighbor.entity.id, depth + 1, new_path))
                    elif return_paths and new_path not in seen.paths:
                        seen.paths.append(new_path)

        result = TraversalResult(
            start_id=start.id,
            direction=direction,
            max_depth=max_depth,
            entities=list(visited.values()),
            return_paths=return_paths,
        )

        logger.info(
            "Traversal completed",
            extra={
                "start_id": start.id,
                "direction": direction.value,
                "max_depth": max_depth,
                "entities": len(result.entities),
                "queries": queries,
                "duration_ms": int((time.monotonic() - started) * 1000),
            },
        )
        return result

    async def shortest_path(
        self,
        from_id: str,
        to_id: str,
        user_id: str | None = None,
        max_depth: int | None = None,
        link_type_ids: list[str] | None = None,
        include_deleted: bool = False,
    ) -> ShortestPathResult:
        """Find the fewest-hop outbound path between two entities.

        Among equal-length paths the first one discovered wins; neighbors are
        visited in link creation order.

        Args:
            from_id: Any version id of the origin entity
            to_id: Any version id of the target entity
            user_id: Calling user, None when unauthenticated
            max_depth: Maximum hops to search
            link_type_ids: Only cross links of these types
            include_deleted: Also cross deleted links and entities

        Returns:
            ShortestPathResult; a single-hop path of length 0 when from == to

        Raises:
            ValidationError: Bad depth
            NotFoundError: Either endpoint does not exist
            AccessDeniedError: Caller cannot read an endpoint
            NoPathFoundError: Target unreachable within max_depth
        """
        max_depth = _check_depth(
            self.shortest_path_default_depth if max_depth is None else max_depth
        )

        started = time.monotonic()
        resolver = AclResolver(self.store, self.max_in_clause_ids)
        origin = await self._resolve_readable(resolver, user_id, from_id, include_deleted)
        target = await self._resolve_readable(resolver, user_id, to_id, include_deleted)

        if origin.id == target.id:
            result = ShortestPathResult(from_id=origin.id, to_id=target.id, path=[PathHop(origin)])
            self._log_path(result, visited=1, started=started)
            return result

        predicates, acl = await self._acl_filters(resolver, user_id)

        # entity id -> (previous entity id, link id)
        parents: dict[str, tuple[str, str]] = {}
        visited = {origin.id}
        queue: deque[tuple[str, int]] = deque([(origin.id, 0)])
        found = False

        while queue and not found:
            current_id, depth = queue.popleft()
            if depth >= max_depth:
                continue

            neighbors = await self._hop(
                current_id, "outbound", predicates, acl, include_deleted, link_type_ids
            )
            for neighbor in neighbors:
                neighbor_id = neighbor.entity.id
                if neighbor_id in visited:
                    continue
                visited.add(neighbor_id)
                parents[neighbor_id] = (current_id, neighbor.link.id)
                if neighbor_id == target.id:
                    found = True
                    break
                queue.append((neighbor_id, depth + 1))

        if not found:
            raise NoPathFoundError(origin.id, target.id, max_depth)

        steps: list[tuple[str, str | None]] = []
        node_id = target.id
        while node_id in parents:
            previous_id, link_id = parents[node_id]
            steps.append((node_id, link_id))
            node_id = previous_id
        steps.append((origin.id, None))
        steps.reverse()

        path = []
        for entity_id, link_id in steps:
            entity = await self.store.get_entity(entity_id)
            if entity is None:
                raise NotFoundError(f"Entity not found: {entity_id}", "entity", entity_id)
            link = None
            if link_id is not None:
                link = await self.store.get_link(link_id)
                if link is None:
                    raise NotFoundError(f"Link not found: {link_id}", "link", link_id)
            path.append(PathHop(entity=entity, link=link))

        result = ShortestPathResult(from_id=origin.id, to_id=target.id, path=path)
        self._log_path(result, visited=len(visited), started=started)
        return result

    def _log_path(self, result: ShortestPathResult, visited: int, started: float) -> None:
        logger.info(
            "Shortest path found",
            extra={
                "from": result.from_id,
                "to": result.to_id,
                "length": result.length,
                "visited": visited,
                "duration_ms": int((time.monotonic() - started) * 1000),
            },
        )
