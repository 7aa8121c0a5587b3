"""
Filtered search over latest entities and links.

Search combines three predicate sources into one query over the latest
row of every chain: column filters (type, creator, time range, endpoints),
a compiled property filter expression, and the caller's ACL clause.

Invariants:
    - Only latest versions are returned
    - Results are newest first (created_at DESC, id DESC)
    - When the ACL clause cannot be inlined, rows are post-filtered and the
      limit is applied after filtering
"""

from __future__ import annotations

import logging
from typing import Any

from ..errors import ValidationError
from ..query.filters import CompiledFilter, FilterExpression, compile_expression
from ..store.acl import MAX_ACL_IDS_FOR_IN_CLAUSE, AclResolver, Permission, filter_by_acl_permission
from ..store.canonical_store import Entity, GraphStore, Link

logger = logging.getLogger(__name__)

MAX_SEARCH_LIMIT = 100
DEFAULT_SEARCH_LIMIT = 20

# Upper bound on rows fetched when post-filtering by ACL.
POST_FILTER_FETCH_LIMIT = 10000


def _check_limit(limit: Any) -> int:
    if isinstance(limit, bool) or not isinstance(limit, int) or not 1 <= limit <= MAX_SEARCH_LIMIT:
        raise ValidationError(
            f"limit must be an integer between 1 and {MAX_SEARCH_LIMIT}", field_name="limit"
        )
    return limit


class GraphSearch:
    """ACL-aware search over a GraphStore."""

    def __init__(self, store: GraphStore, max_in_clause_ids: int = MAX_ACL_IDS_FOR_IN_CLAUSE):
        self.store = store
        self.max_in_clause_ids = max_in_clause_ids

    def _common_filters(
        self,
        alias: str,
        type_id: str | None,
        created_by: str | None,
        created_after: int | None,
        created_before: int | None,
        include_deleted: bool,
    ) -> list[CompiledFilter]:
        filters = []
        if type_id is not None:
            filters.append(CompiledFilter(f"{alias}.type_id = ?", [type_id]))
        if created_by is not None:
            filters.append(CompiledFilter(f"{alias}.created_by = ?", [created_by]))
        if created_after is not None:
            filters.append(CompiledFilter(f"{alias}.created_at >= ?", [created_after]))
        if created_before is not None:
            filters.append(CompiledFilter(f"{alias}.created_at <= ?", [created_before]))
        if not include_deleted:
            filters.append(CompiledFilter(f"{alias}.is_deleted = 0", []))
        return filters

    async def _run(
        self,
        table: str,
        alias: str,
        user_id: str | None,
        filters: list[CompiledFilter],
        filter_expression: FilterExpression | None,
        limit: int,
    ) -> list[Any]:
        if filter_expression is not None:
            filters.append(compile_expression(filter_expression, alias=alias))

        resolver = AclResolver(self.store, self.max_in_clause_ids)
        acl = await resolver.build_acl_filter_clause(user_id, Permission.READ, f"{alias}.acl_id")

        if acl.use_filter:
            filters.append(CompiledFilter(acl.where_clause, list(acl.bindings)))
            rows = await self.store.query_latest(table, filters, limit=limit)
        else:
            rows = await self.store.query_latest(table, filters, limit=POST_FILTER_FETCH_LIMIT)
            rows = filter_by_acl_permission(rows, acl.accessible_acl_ids)[:limit]

        logger.debug(
            "Search completed",
            extra={
                "table": table,
                "user_id": user_id,
                "acl_inline": acl.use_filter,
                "results": len(rows),
            },
        )
        return rows

    async def search_entities(
        self,
        user_id: str | None = None,
        type_id: str | None = None,
        filter_expression: FilterExpression | None = None,
        created_by: str | None = None,
        created_after: int | None = None,
        created_before: int | None = None,
        include_deleted: bool = False,
        limit: int = DEFAULT_SEARCH_LIMIT,
    ) -> list[Entity]:
        """Search latest entities visible to the caller.

        Args:
            user_id: Calling user, None when unauthenticated
            type_id: Restrict to one entity type
            filter_expression: Property filter tree
            created_by: Restrict to one creator
            created_after: Inclusive lower bound on created_at (Unix ms)
            created_before: Inclusive upper bound on created_at (Unix ms)
            include_deleted: Also return soft-deleted entities
            limit: Maximum results (1-100)

        Raises:
            ValidationError: Bad limit or filter expression
        """
        limit = _check_limit(limit)
        filters = self._common_filters(
            "e", type_id, created_by, created_after, created_before, include_deleted
        )
        return await self._run("entities", "e", user_id, filters, filter_expression, limit)

    async def search_links(
        self,
        user_id: str | None = None,
        type_id: str | None = None,
        source_entity_id: str | None = None,
        target_entity_id: str | None = None,
        filter_expression: FilterExpression | None = None,
        created_by: str | None = None,
        created_after: int | None = None,
        created_before: int | None = None,
        include_deleted: bool = False,
        limit: int = DEFAULT_SEARCH_LIMIT,
    ) -> list[Link]:
        """Search latest links visible to the caller.

        source_entity_id and target_entity_id match the endpoint id stored
        on the link exactly.
        """
        limit = _check_limit(limit)
        filters = self._common_filters(
            "l", type_id, created_by, created_after, created_before, include_deleted
        )
        if source_entity_id is not None:
            filters.append(CompiledFilter("l.source_entity_id = ?", [source_entity_id]))
        if target_entity_id is not None:
            filters.append(CompiledFilter("l.target_entity_id = ?", [target_entity_id]))
        return await self._run("links", "l", user_id, filters, filter_expression, limit)
