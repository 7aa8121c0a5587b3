"""
ACL resolution for Gruff.

This module handles access control for entities and links:
- Canonical hashing of ACL entry sets (identical sets share one ACL row)
- Resolving which ACL ids grant a principal a permission level
- Building inline SQL filter clauses, with a post-filter fallback

An ACL is an immutable, hash-identified set of (principal, permission)
grants. Resources point at an ACL through acl_id; acl_id = NULL means the
resource is public.

Invariants:
    - Permutations and duplicates of the same entry set hash identically
    - Write implies read (see PERMISSION_GRANTS)
    - acl_id = NULL is readable by every principal, including unauthenticated ones
    - Unauthenticated principals can only reach resources with acl_id = NULL
    - ACL rows are never mutated; a permission change repoints acl_id

How to change safely:
    - New permission levels are added to Permission and PERMISSION_GRANTS only;
      call sites never branch on permission names
    - Changing the canonical form changes every hash; migrate existing rows first
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar

from ..errors import AccessDeniedError

if TYPE_CHECKING:
    from .canonical_store import GraphStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_ACL_ENTRIES = 100
MAX_ACL_IDS_FOR_IN_CLAUSE = 1000


class Permission(Enum):
    """Permission levels for access control."""

    READ = "read"
    WRITE = "write"


class PrincipalType(Enum):
    """Kinds of principal an ACL entry can name."""

    USER = "user"
    GROUP = "group"


# Requested permission -> entry permissions that grant it.
PERMISSION_GRANTS: dict[Permission, tuple[Permission, ...]] = {
    Permission.READ: (Permission.READ, Permission.WRITE),
    Permission.WRITE: (Permission.WRITE,),
}


@dataclass(frozen=True)
class Principal:
    """A user or group identity subject to permission checks.

    Attributes:
        type: USER or GROUP
        id: Principal identifier
    """

    type: PrincipalType
    id: str

    @classmethod
    def parse(cls, principal_str: str) -> Principal:
        """Parse a principal string such as "user:42" or "group:eng".

        Raises:
            ValueError: If format is invalid
        """
        if ":" not in principal_str:
            raise ValueError(f"Invalid principal format: {principal_str}")

        type_str, id_str = principal_str.split(":", 1)
        try:
            principal_type = PrincipalType(type_str)
        except ValueError:
            raise ValueError(f"Invalid principal type: {type_str}") from None
        if not id_str:
            raise ValueError(f"Empty principal id: {principal_str}")

        return cls(type=principal_type, id=id_str)

    @classmethod
    def user(cls, user_id: str) -> Principal:
        return cls(PrincipalType.USER, user_id)

    @classmethod
    def group(cls, group_id: str) -> Principal:
        return cls(PrincipalType.GROUP, group_id)

    def __str__(self) -> str:
        return f"{self.type.value}:{self.id}"


@dataclass(frozen=True)
class AclEntry:
    """ACL entry granting a permission to a principal.

    Attributes:
        principal_type: "user" or "group"
        principal_id: Principal identifier
        permission: "read" or "write"
    """

    principal_type: str
    principal_id: str
    permission: str

    def sort_key(self) -> tuple[str, str, str]:
        return (self.principal_type, self.principal_id, self.permission)

    def to_dict(self) -> dict[str, str]:
        """Convert to dictionary for storage and hashing."""
        return {
            "principal_type": self.principal_type,
            "principal_id": self.principal_id,
            "permission": self.permission,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AclEntry:
        """Create from dictionary."""
        return cls(
            principal_type=data["principal_type"],
            principal_id=data["principal_id"],
            permission=data["permission"],
        )


def _as_entry(entry: AclEntry | dict[str, Any]) -> AclEntry:
    return entry if isinstance(entry, AclEntry) else AclEntry.from_dict(entry)


def deduplicate_acl_entries(entries: Iterable[AclEntry | dict[str, Any]]) -> list[AclEntry]:
    """Remove structural duplicates, keeping first occurrences in order."""
    seen: set[tuple[str, str, str]] = set()
    result: list[AclEntry] = []
    for raw in entries:
        entry = _as_entry(raw)
        key = entry.sort_key()
        if key not in seen:
            seen.add(key)
            result.append(entry)
    return result


def compute_acl_hash(entries: Iterable[AclEntry | dict[str, Any]]) -> str:
    """Compute the canonical SHA-256 hash of an ACL entry set.

    Entries are deduplicated, sorted by (principal_type, principal_id,
    permission) and serialized as compact JSON before hashing, so any
    permutation or duplicate-laden input of one effective set yields the
    same 64-character hex digest.

    Args:
        entries: ACL entries (AclEntry or dict form)

    Returns:
        SHA-256 hex digest
    """
    canonical_entries = sorted(deduplicate_acl_entries(entries), key=AclEntry.sort_key)
    canonical = json.dumps(
        [entry.to_dict() for entry in canonical_entries],
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def validate_acl_entries(entries: list[dict[str, Any]]) -> list[str]:
    """Validate raw ACL entries.

    Returns:
        List of validation errors (empty if valid)
    """
    errors = []

    if len(entries) > MAX_ACL_ENTRIES:
        errors.append(f"Maximum {MAX_ACL_ENTRIES} ACL entries allowed")

    valid_types = [t.value for t in PrincipalType]
    valid_permissions = [p.value for p in Permission]

    for i, entry in enumerate(entries):
        if not isinstance(entry, dict):
            errors.append(f"Entry {i}: must be a dictionary")
            continue

        principal_type = entry.get("principal_type")
        if principal_type not in valid_types:
            errors.append(
                f"Entry {i}: invalid principal_type '{principal_type}', must be one of {valid_types}"
            )

        principal_id = entry.get("principal_id")
        if not isinstance(principal_id, str) or not principal_id:
            errors.append(f"Entry {i}: missing 'principal_id'")

        permission = entry.get("permission")
        if permission not in valid_permissions:
            errors.append(
                f"Entry {i}: invalid permission '{permission}', must be one of {valid_permissions}"
            )

    return errors


@dataclass
class AclFilterResult:
    """Result of building an ACL filter for a query.

    Attributes:
        use_filter: False when the caller must post-filter with filter_by_acl_permission
        where_clause: SQL fragment to AND into the query (empty if use_filter is False)
        bindings: Parameters for where_clause
        accessible_acl_ids: ACL ids granting the permission, for post-filtering
    """

    use_filter: bool
    where_clause: str = ""
    bindings: list[Any] = field(default_factory=list)
    accessible_acl_ids: set[int] = field(default_factory=set)


def build_acl_filter_clause(
    accessible_acl_ids: set[int],
    acl_id_column: str = "acl_id",
    authenticated: bool = True,
    max_in_clause_ids: int = MAX_ACL_IDS_FOR_IN_CLAUSE,
) -> AclFilterResult:
    """Build a WHERE fragment restricting rows to readable ACLs.

    Args:
        accessible_acl_ids: ACL ids the principal may access
        acl_id_column: Qualified acl_id column ("e.acl_id", "l.acl_id")
        authenticated: False restricts to public rows only
        max_in_clause_ids: Above this many ids the caller post-filters instead

    Returns:
        AclFilterResult
    """
    if not authenticated or not accessible_acl_ids:
        return AclFilterResult(
            use_filter=True,
            where_clause=f"{acl_id_column} IS NULL",
            accessible_acl_ids=set() if not authenticated else accessible_acl_ids,
        )

    if len(accessible_acl_ids) > max_in_clause_ids:
        return AclFilterResult(use_filter=False, accessible_acl_ids=accessible_acl_ids)

    acl_ids = sorted(accessible_acl_ids)
    placeholders = ", ".join("?" for _ in acl_ids)
    return AclFilterResult(
        use_filter=True,
        where_clause=f"({acl_id_column} IS NULL OR {acl_id_column} IN ({placeholders}))",
        bindings=list(acl_ids),
        accessible_acl_ids=accessible_acl_ids,
    )


def _default_acl_id(item: Any) -> int | None:
    if isinstance(item, dict):
        return item.get("acl_id")
    return getattr(item, "acl_id", None)


def filter_by_acl_permission(
    items: Iterable[T],
    accessible_acl_ids: set[int],
    key: Callable[[T], int | None] | None = None,
) -> list[T]:
    """Keep items that are public or whose ACL is accessible, preserving order.

    Used when build_acl_filter_clause returns use_filter=False.

    Args:
        items: Objects or dicts carrying an acl_id
        accessible_acl_ids: ACL ids the principal may access
        key: Optional accessor for the acl_id of an item
    """
    get_acl_id = key or _default_acl_id
    result = []
    for item in items:
        acl_id = get_acl_id(item)
        if acl_id is None or acl_id in accessible_acl_ids:
            result.append(item)
    return result


class AclResolver:
    """Resolves a principal's access against stored ACLs.

    One resolver serves one request: accessible ACL id sets are memoized per
    (user, permission) for its lifetime so a traversal does not re-query them
    at every hop. Nothing is shared across requests.

    Example:
        >>> resolver = AclResolver(store)
        >>> ids = await resolver.resolve_accessible_acl_ids("user-1", Permission.READ)
        >>> await resolver.has_permission("user-1", 5, Permission.READ)
        True
    """

    def __init__(
        self,
        store: GraphStore,
        max_in_clause_ids: int = MAX_ACL_IDS_FOR_IN_CLAUSE,
    ) -> None:
        """Initialize the resolver.

        Args:
            store: Graph store holding acls, acl_entries and group memberships
            max_in_clause_ids: Cap on ACL ids inlined into a query
        """
        self.store = store
        self.max_in_clause_ids = max_in_clause_ids
        self._accessible: dict[tuple[str, Permission], set[int]] = {}

    async def resolve_accessible_acl_ids(
        self,
        user_id: str | None,
        permission: Permission,
    ) -> set[int]:
        """Get all ACL ids granting a user the requested permission.

        Considers direct user entries and entries for every group the user
        belongs to, directly or through nested groups.

        Args:
            user_id: Calling user, or None when unauthenticated
            permission: Requested permission

        Returns:
            Set of ACL ids (always empty for unauthenticated callers)
        """
        if user_id is None:
            return set()

        cache_key = (user_id, permission)
        if cache_key in self._accessible:
            return self._accessible[cache_key]

        groups = await self.store.get_effective_groups(user_id)
        principals = [Principal.user(user_id)] + [Principal.group(g) for g in sorted(groups)]
        granting = [p.value for p in PERMISSION_GRANTS[permission]]

        acl_ids = await self.store.get_accessible_acl_ids(principals, granting)
        self._accessible[cache_key] = acl_ids

        logger.debug(
            "Resolved accessible ACLs",
            extra={
                "user_id": user_id,
                "permission": permission.value,
                "groups": len(groups),
                "acl_ids": len(acl_ids),
            },
        )
        return acl_ids

    async def has_permission(
        self,
        user_id: str | None,
        acl_id: int | None,
        permission: Permission,
    ) -> bool:
        """Check whether a user holds a permission on a resource's ACL.

        Public resources (acl_id None) are readable by everyone; writing
        them still needs an authenticated caller.
        """
        if acl_id is None:
            return user_id is not None or permission is Permission.READ

        if user_id is None:
            return False

        accessible = await self.resolve_accessible_acl_ids(user_id, permission)
        return acl_id in accessible

    async def check_access(
        self,
        user_id: str | None,
        acl_id: int | None,
        resource_id: str,
        permission: Permission = Permission.READ,
    ) -> None:
        """Check permission and raise if denied.

        Raises:
            AccessDeniedError: If access is denied
        """
        if not await self.has_permission(user_id, acl_id, permission):
            actor = f"user:{user_id}" if user_id is not None else "anonymous"
            raise AccessDeniedError(
                f"Access denied: {actor} lacks {permission.value} on {resource_id}",
                actor=user_id,
                resource_id=resource_id,
                required_permission=permission.value,
            )

    async def check_read_access(
        self,
        user_id: str | None,
        acl_id: int | None,
        resource_id: str,
    ) -> None:
        """Check read permission and raise if denied."""
        await self.check_access(user_id, acl_id, resource_id, Permission.READ)

    async def build_acl_filter_clause(
        self,
        user_id: str | None,
        permission: Permission = Permission.READ,
        acl_id_column: str = "acl_id",
    ) -> AclFilterResult:
        """Build the ACL filter for a list or traversal query.

        Returns:
            AclFilterResult; use_filter=False means apply filter_by_acl_permission
        """
        accessible = await self.resolve_accessible_acl_ids(user_id, permission)
        return build_acl_filter_clause(
            accessible,
            acl_id_column=acl_id_column,
            authenticated=user_id is not None,
            max_in_clause_ids=self.max_in_clause_ids,
        )
