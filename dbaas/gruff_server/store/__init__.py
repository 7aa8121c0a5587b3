"""
Store module for Gruff - versioned persistence and access control.

This module handles:
- Persisting entities and links as immutable version chains in SQLite
- Resolving any version id to the latest member of its chain
- Hash-deduplicated ACLs, nested groups and permission resolution

Invariants:
    - Rows are never updated in place except to clear is_latest
    - acl_id = NULL means public
"""

from .acl import (
    MAX_ACL_ENTRIES,
    MAX_ACL_IDS_FOR_IN_CLAUSE,
    PERMISSION_GRANTS,
    AclEntry,
    AclFilterResult,
    AclResolver,
    Permission,
    Principal,
    PrincipalType,
    build_acl_filter_clause,
    compute_acl_hash,
    deduplicate_acl_entries,
    filter_by_acl_permission,
    validate_acl_entries,
)
from .canonical_store import Entity, GraphStore, Group, Link, Neighbor
from .versions import resolve_latest, version_chain

__all__ = [
    "MAX_ACL_ENTRIES",
    "MAX_ACL_IDS_FOR_IN_CLAUSE",
    "PERMISSION_GRANTS",
    "AclEntry",
    "AclFilterResult",
    "AclResolver",
    "Entity",
    "GraphStore",
    "Group",
    "Link",
    "Neighbor",
    "Permission",
    "Principal",
    "PrincipalType",
    "build_acl_filter_clause",
    "compute_acl_hash",
    "deduplicate_acl_entries",
    "filter_by_acl_permission",
    "resolve_latest",
    "validate_acl_entries",
    "version_chain",
]
