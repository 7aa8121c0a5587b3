"""
Canonical SQLite store for Gruff.

This module manages the SQLite database that stores:
- Entities and links as immutable version chains
- Deduplicated ACLs and their entries
- Groups and (nested) group membership

Writes never mutate content in place: an update inserts version N+1 with
previous_version_id set to the prior row and clears the prior row's
is_latest flag, in one transaction.

Invariants:
    - Exactly one row per chain has is_latest = 1
    - ACL rows are looked up or created by hash and never modified
    - All multi-statement writes run inside BEGIN IMMEDIATE ... COMMIT
    - Every query is parameterized; JSON paths are bound like any value

How to change safely:
    - Schema changes must be backward compatible (CREATE ... IF NOT EXISTS)
    - Keep neighbor queries single-statement so one hop is one round trip
    - Use transactions for all write operations

Table schema:
    entities / links:
        - id TEXT PRIMARY KEY (one id per version)
        - type_id TEXT
        - source_entity_id, target_entity_id TEXT (links only, any version)
        - properties TEXT (JSON)
        - version INTEGER (>= 1)
        - previous_version_id TEXT
        - created_at INTEGER (Unix ms), created_by TEXT
        - is_deleted, is_latest INTEGER (0/1)
        - acl_id INTEGER (NULL = public)

    acls:        id INTEGER, hash TEXT UNIQUE, created_at INTEGER
    acl_entries: acl_id, principal_type, principal_id, permission
    groups:      id, name UNIQUE, description, created_at, created_by
    group_members: group_id, member_type ('user'|'group'), member_id
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ..errors import NotFoundError, ValidationError
from ..query.filters import CompiledFilter
from .acl import AclEntry, Principal, compute_acl_hash, deduplicate_acl_entries
from .versions import resolve_latest, version_chain

logger = logging.getLogger(__name__)

ENTITY_COLUMNS = (
    "id",
    "type_id",
    "properties",
    "version",
    "previous_version_id",
    "created_at",
    "created_by",
    "is_deleted",
    "is_latest",
    "acl_id",
)

LINK_COLUMNS = (
    "id",
    "type_id",
    "source_entity_id",
    "target_entity_id",
    "properties",
    "version",
    "previous_version_id",
    "created_at",
    "created_by",
    "is_deleted",
    "is_latest",
    "acl_id",
)

# direction -> (column matching the current node, column naming the neighbor)
_HOP_COLUMNS = {
    "outbound": ("source_entity_id", "target_entity_id"),
    "inbound": ("target_entity_id", "source_entity_id"),
}


def _now_ms() -> int:
    return int(time.time() * 1000)


def _load_properties(raw: str | None) -> dict[str, Any]:
    return json.loads(raw) if raw else {}


@dataclass
class Entity:
    """One version of an entity.

    Attributes:
        id: Version row id (UUID)
        type_id: Entity type identifier
        properties: JSON properties document
        version: Version number, starting at 1
        previous_version_id: Id of the prior version, None for version 1
        created_at: Creation timestamp of this version (Unix ms)
        created_by: Actor that wrote this version
        is_deleted: Soft-delete flag
        is_latest: Whether this is the current version of its chain
        acl_id: ACL id, None when public
    """

    id: str
    type_id: str
    properties: dict[str, Any]
    version: int
    previous_version_id: str | None
    created_at: int
    created_by: str | None
    is_deleted: bool = False
    is_latest: bool = True
    acl_id: int | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row, prefix: str = "") -> Entity:
        return cls(
            id=row[f"{prefix}id"],
            type_id=row[f"{prefix}type_id"],
            properties=_load_properties(row[f"{prefix}properties"]),
            version=row[f"{prefix}version"],
            previous_version_id=row[f"{prefix}previous_version_id"],
            created_at=row[f"{prefix}created_at"],
            created_by=row[f"{prefix}created_by"],
            is_deleted=bool(row[f"{prefix}is_deleted"]),
            is_latest=bool(row[f"{prefix}is_latest"]),
            acl_id=row[f"{prefix}acl_id"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type_id": self.type_id,
            "properties": self.properties,
            "version": self.version,
            "previous_version_id": self.previous_version_id,
            "created_at": self.created_at,
            "created_by": self.created_by,
            "is_deleted": self.is_deleted,
            "is_latest": self.is_latest,
            "acl_id": self.acl_id,
        }


@dataclass
class Link(Entity):
    """One version of a directed link between two entities.

    source_entity_id and target_entity_id may name any version of their
    entity; readers resolve them to latest.
    """

    source_entity_id: str = ""
    target_entity_id: str = ""

    @classmethod
    def from_row(cls, row: sqlite3.Row, prefix: str = "") -> Link:
        return cls(
            id=row[f"{prefix}id"],
            type_id=row[f"{prefix}type_id"],
            properties=_load_properties(row[f"{prefix}properties"]),
            version=row[f"{prefix}version"],
            previous_version_id=row[f"{prefix}previous_version_id"],
            created_at=row[f"{prefix}created_at"],
            created_by=row[f"{prefix}created_by"],
            is_deleted=bool(row[f"{prefix}is_deleted"]),
            is_latest=bool(row[f"{prefix}is_latest"]),
            acl_id=row[f"{prefix}acl_id"],
            source_entity_id=row[f"{prefix}source_entity_id"],
            target_entity_id=row[f"{prefix}target_entity_id"],
        )

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["source_entity_id"] = self.source_entity_id
        data["target_entity_id"] = self.target_entity_id
        return data


@dataclass
class Neighbor:
    """One hop result: the latest link and the latest entity at its far end."""

    link: Link
    entity: Entity


@dataclass
class Group:
    """A named group of users and/or other groups."""

    id: str
    name: str
    description: str | None = None
    created_at: int = 0
    created_by: str | None = None
    members: list[tuple[str, str]] = field(default_factory=list)


class GraphStore:
    """SQLite store for versioned entities, links, ACLs and groups.

    Thread safety:
        Each database connection is created per-operation.
        SQLite handles concurrent access via WAL mode.

    Example:
        >>> store = GraphStore("/var/lib/gruff/graph.db")
        >>> await store.initialize()
        >>> entity = await store.create_entity(
        ...     type_id="person",
        ...     properties={"name": "Ada"},
        ...     created_by="user-1",
        ... )
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        db_path: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        cache_size_pages: int = -64000,
    ) -> None:
        """Initialize the store.

        Args:
            db_path: SQLite database file
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
            cache_size_pages: SQLite cache size (negative = KB)
        """
        self.db_path = Path(db_path)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.cache_size_pages = cache_size_pages

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Open a configured connection for one operation."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout_ms)}")
            conn.execute(f"PRAGMA cache_size = {int(self.cache_size_pages)}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            conn.execute("PRAGMA foreign_keys = ON")

            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        """Create database schema."""
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS entities (
                id TEXT PRIMARY KEY,
                type_id TEXT NOT NULL,
                properties TEXT,
                version INTEGER NOT NULL CHECK(version > 0),
                previous_version_id TEXT REFERENCES entities(id),
                created_at INTEGER NOT NULL,
                created_by TEXT,
                is_deleted INTEGER NOT NULL DEFAULT 0 CHECK(is_deleted IN (0, 1)),
                is_latest INTEGER NOT NULL DEFAULT 1 CHECK(is_latest IN (0, 1)),
                acl_id INTEGER REFERENCES acls(id)
            );

            CREATE INDEX IF NOT EXISTS idx_entities_type_latest_deleted
                ON entities(type_id, is_latest, is_deleted);
            CREATE INDEX IF NOT EXISTS idx_entities_previous ON entities(previous_version_id);
            CREATE INDEX IF NOT EXISTS idx_entities_created_at ON entities(created_at);
            CREATE INDEX IF NOT EXISTS idx_entities_acl_id ON entities(acl_id);

            CREATE TABLE IF NOT EXISTS links (
                id TEXT PRIMARY KEY,
                type_id TEXT NOT NULL,
                source_entity_id TEXT NOT NULL REFERENCES entities(id),
                target_entity_id TEXT NOT NULL REFERENCES entities(id),
                properties TEXT,
                version INTEGER NOT NULL CHECK(version > 0),
                previous_version_id TEXT REFERENCES links(id),
                created_at INTEGER NOT NULL,
                created_by TEXT,
                is_deleted INTEGER NOT NULL DEFAULT 0 CHECK(is_deleted IN (0, 1)),
                is_latest INTEGER NOT NULL DEFAULT 1 CHECK(is_latest IN (0, 1)),
                acl_id INTEGER REFERENCES acls(id)
            );

            CREATE INDEX IF NOT EXISTS idx_links_source_latest_deleted
                ON links(source_entity_id, is_latest, is_deleted);
            CREATE INDEX IF NOT EXISTS idx_links_target_latest_deleted
                ON links(target_entity_id, is_latest, is_deleted);
            CREATE INDEX IF NOT EXISTS idx_links_previous ON links(previous_version_id);
            CREATE INDEX IF NOT EXISTS idx_links_type ON links(type_id);
            CREATE INDEX IF NOT EXISTS idx_links_acl_id ON links(acl_id);

            CREATE TABLE IF NOT EXISTS acls (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                hash TEXT UNIQUE NOT NULL,
                created_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS acl_entries (
                acl_id INTEGER NOT NULL REFERENCES acls(id) ON DELETE CASCADE,
                principal_type TEXT NOT NULL CHECK(principal_type IN ('user', 'group')),
                principal_id TEXT NOT NULL,
                permission TEXT NOT NULL CHECK(permission IN ('read', 'write')),
                PRIMARY KEY (acl_id, principal_type, principal_id, permission)
            );

            CREATE INDEX IF NOT EXISTS idx_acl_entries_principal
                ON acl_entries(principal_type, principal_id);

            CREATE TABLE IF NOT EXISTS groups (
                id TEXT PRIMARY KEY,
                name TEXT UNIQUE NOT NULL,
                description TEXT,
                created_at INTEGER NOT NULL,
                created_by TEXT
            );

            CREATE TABLE IF NOT EXISTS group_members (
                group_id TEXT NOT NULL REFERENCES groups(id) ON DELETE CASCADE,
                member_type TEXT NOT NULL CHECK(member_type IN ('user', 'group')),
                member_id TEXT NOT NULL,
                created_at INTEGER NOT NULL,
                PRIMARY KEY (group_id, member_type, member_id)
            );

            CREATE INDEX IF NOT EXISTS idx_group_members_member
                ON group_members(member_type, member_id);

            INSERT OR IGNORE INTO schema_version (version, applied_at)
            VALUES (1, strftime('%s', 'now') * 1000);
        """)

    async def initialize(self) -> None:
        """Create the database file and schema if they don't exist."""
        with self._get_connection() as conn:
            self._create_schema(conn)
        logger.info("Initialized graph database", extra={"db_path": str(self.db_path)})

    # ------------------------------------------------------------------
    # Entities
    # ------------------------------------------------------------------

    async def create_entity(
        self,
        type_id: str,
        properties: dict[str, Any] | None = None,
        created_by: str | None = None,
        acl_id: int | None = None,
        entity_id: str | None = None,
        created_at: int | None = None,
    ) -> Entity:
        """Create version 1 of a new entity.

        Args:
            type_id: Entity type identifier
            properties: JSON properties
            created_by: Actor creating the entity
            acl_id: ACL id, None for public
            entity_id: Optional specific id (generated if not provided)
            created_at: Optional creation timestamp

        Returns:
            Created Entity
        """
        entity = Entity(
            id=entity_id or str(uuid.uuid4()),
            type_id=type_id,
            properties=properties or {},
            version=1,
            previous_version_id=None,
            created_at=created_at or _now_ms(),
            created_by=created_by,
            acl_id=acl_id,
        )

        with self._transaction() as conn:
            self._insert_row(conn, "entities", entity.to_dict())

        logger.debug(
            "Created entity",
            extra={"entity_id": entity.id, "type_id": type_id, "acl_id": acl_id},
        )
        return entity

    async def update_entity(
        self,
        entity_id: str,
        properties: dict[str, Any],
        updated_by: str | None = None,
    ) -> Entity:
        """Write a new version of an entity with replaced properties.

        Args:
            entity_id: Id of any version in the chain
            properties: New properties document
            updated_by: Actor making the change

        Raises:
            NotFoundError: If the chain does not exist
            ValidationError: If the entity is deleted
        """
        with self._transaction() as conn:
            current = self._latest_or_raise(conn, "entities", entity_id)
            if current["is_deleted"]:
                raise ValidationError(f"Entity {entity_id} is deleted; restore it first")
            row = self._insert_version(
                conn, "entities", current, {"properties": json.dumps(properties)}, updated_by
            )
        return Entity.from_row(row)

    async def delete_entity(self, entity_id: str, deleted_by: str | None = None) -> Entity:
        """Soft-delete an entity by writing a deleted version.

        Raises:
            NotFoundError: If the chain does not exist
            ValidationError: If the entity is already deleted
        """
        with self._transaction() as conn:
            current = self._latest_or_raise(conn, "entities", entity_id)
            if current["is_deleted"]:
                raise ValidationError(f"Entity {entity_id} is already deleted")
            row = self._insert_version(conn, "entities", current, {"is_deleted": 1}, deleted_by)
        return Entity.from_row(row)

    async def restore_entity(self, entity_id: str, restored_by: str | None = None) -> Entity:
        """Undo a soft delete by writing a non-deleted version.

        Raises:
            NotFoundError: If the chain does not exist
            ValidationError: If the entity is not deleted
        """
        with self._transaction() as conn:
            current = self._latest_or_raise(conn, "entities", entity_id)
            if not current["is_deleted"]:
                raise ValidationError(f"Entity {entity_id} is not deleted")
            row = self._insert_version(conn, "entities", current, {"is_deleted": 0}, restored_by)
        return Entity.from_row(row)

    async def get_entity(self, entity_id: str) -> Entity | None:
        """Get one exact entity version by row id."""
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM entities WHERE id = ?", (entity_id,)).fetchone()
            return Entity.from_row(row) if row else None

    async def get_latest_entity(self, entity_id: str) -> Entity | None:
        """Resolve any version id to the latest entity version."""
        with self._get_connection() as conn:
            row = resolve_latest(conn, "entities", entity_id)
            return Entity.from_row(row) if row else None

    async def get_entity_versions(self, entity_id: str) -> list[Entity]:
        """Get the whole version chain of an entity, oldest first."""
        with self._get_connection() as conn:
            return [Entity.from_row(row) for row in version_chain(conn, "entities", entity_id)]

    # ------------------------------------------------------------------
    # Links
    # ------------------------------------------------------------------

    async def create_link(
        self,
        type_id: str,
        source_entity_id: str,
        target_entity_id: str,
        properties: dict[str, Any] | None = None,
        created_by: str | None = None,
        acl_id: int | None = None,
        link_id: str | None = None,
        created_at: int | None = None,
    ) -> Link:
        """Create version 1 of a new link.

        Endpoints may name any version of their entity.

        Raises:
            NotFoundError: If either endpoint does not exist
        """
        link = Link(
            id=link_id or str(uuid.uuid4()),
            type_id=type_id,
            properties=properties or {},
            version=1,
            previous_version_id=None,
            created_at=created_at or _now_ms(),
            created_by=created_by,
            acl_id=acl_id,
            source_entity_id=source_entity_id,
            target_entity_id=target_entity_id,
        )

        with self._transaction() as conn:
            for label, endpoint in (("Source", source_entity_id), ("Target", target_entity_id)):
                exists = conn.execute(
                    "SELECT 1 FROM entities WHERE id = ?", (endpoint,)
                ).fetchone()
                if exists is None:
                    raise NotFoundError(f"{label} entity not found", "entity", endpoint)
            self._insert_row(conn, "links", link.to_dict())

        logger.debug(
            "Created link",
            extra={
                "link_id": link.id,
                "type_id": type_id,
                "from": source_entity_id,
                "to": target_entity_id,
            },
        )
        return link

    async def update_link(
        self,
        link_id: str,
        properties: dict[str, Any],
        updated_by: str | None = None,
    ) -> Link:
        """Write a new version of a link with replaced properties."""
        with self._transaction() as conn:
            current = self._latest_or_raise(conn, "links", link_id)
            if current["is_deleted"]:
                raise ValidationError(f"Link {link_id} is deleted; restore it first")
            row = self._insert_version(
                conn, "links", current, {"properties": json.dumps(properties)}, updated_by
            )
        return Link.from_row(row)

    async def delete_link(self, link_id: str, deleted_by: str | None = None) -> Link:
        """Soft-delete a link by writing a deleted version."""
        with self._transaction() as conn:
            current = self._latest_or_raise(conn, "links", link_id)
            if current["is_deleted"]:
                raise ValidationError(f"Link {link_id} is already deleted")
            row = self._insert_version(conn, "links", current, {"is_deleted": 1}, deleted_by)
        return Link.from_row(row)

    async def restore_link(self, link_id: str, restored_by: str | None = None) -> Link:
        """Undo a soft delete of a link."""
        with self._transaction() as conn:
            current = self._latest_or_raise(conn, "links", link_id)
            if not current["is_deleted"]:
                raise ValidationError(f"Link {link_id} is not deleted")
            row = self._insert_version(conn, "links", current, {"is_deleted": 0}, restored_by)
        return Link.from_row(row)

    async def get_link(self, link_id: str) -> Link | None:
        """Get one exact link version by row id."""
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM links WHERE id = ?", (link_id,)).fetchone()
            return Link.from_row(row) if row else None

    async def get_latest_link(self, link_id: str) -> Link | None:
        """Resolve any version id to the latest link version."""
        with self._get_connection() as conn:
            row = resolve_latest(conn, "links", link_id)
            return Link.from_row(row) if row else None

    async def get_link_versions(self, link_id: str) -> list[Link]:
        """Get the whole version chain of a link, oldest first."""
        with self._get_connection() as conn:
            return [Link.from_row(row) for row in version_chain(conn, "links", link_id)]

    # ------------------------------------------------------------------
    # Version helpers
    # ------------------------------------------------------------------

    def _insert_row(self, conn: sqlite3.Connection, table: str, data: dict[str, Any]) -> None:
        columns = ENTITY_COLUMNS if table == "entities" else LINK_COLUMNS
        values = []
        for column in columns:
            value = data[column]
            if column == "properties" and not isinstance(value, str):
                value = json.dumps(value)
            elif column in ("is_deleted", "is_latest"):
                value = int(bool(value))
            values.append(value)
        conn.execute(
            f"INSERT INTO {table} ({', '.join(columns)}) "
            f"VALUES ({', '.join('?' for _ in columns)})",
            values,
        )

    def _latest_or_raise(
        self, conn: sqlite3.Connection, table: str, row_id: str
    ) -> sqlite3.Row:
        row = resolve_latest(conn, table, row_id)
        if row is None:
            resource_type = "entity" if table == "entities" else "link"
            raise NotFoundError(
                f"{resource_type.capitalize()} not found: {row_id}", resource_type, row_id
            )
        return row

    def _insert_version(
        self,
        conn: sqlite3.Connection,
        table: str,
        current: sqlite3.Row,
        changes: dict[str, Any],
        actor: str | None,
    ) -> sqlite3.Row:
        """Insert version N+1 of current with changes applied.

        Must run inside a transaction.
        """
        data = {key: current[key] for key in current.keys()}
        data.update(changes)
        data.update(
            id=str(uuid.uuid4()),
            version=current["version"] + 1,
            previous_version_id=current["id"],
            created_at=_now_ms(),
            created_by=actor,
            is_latest=1,
        )

        conn.execute(f"UPDATE {table} SET is_latest = 0 WHERE id = ?", (current["id"],))
        self._insert_row(conn, table, data)

        logger.debug(
            "Wrote new version",
            extra={
                "table": table,
                "id": data["id"],
                "previous_version_id": current["id"],
                "version": data["version"],
            },
        )
        return conn.execute(f"SELECT * FROM {table} WHERE id = ?", (data["id"],)).fetchone()

    # ------------------------------------------------------------------
    # ACLs
    # ------------------------------------------------------------------

    async def get_or_create_acl(self, entries: list[AclEntry | dict[str, Any]]) -> int | None:
        """Get the ACL id for an entry set, creating the ACL if needed.

        Args:
            entries: ACL entries (duplicates allowed)

        Returns:
            ACL id, or None if entries is empty (public)
        """
        if not entries:
            return None

        deduped = deduplicate_acl_entries(entries)
        acl_hash = compute_acl_hash(deduped)

        with self._transaction() as conn:
            existing = conn.execute("SELECT id FROM acls WHERE hash = ?", (acl_hash,)).fetchone()
            if existing is not None:
                return existing["id"]

            cursor = conn.execute(
                "INSERT INTO acls (hash, created_at) VALUES (?, ?)", (acl_hash, _now_ms())
            )
            acl_id = cursor.lastrowid
            conn.executemany(
                """
                INSERT INTO acl_entries (acl_id, principal_type, principal_id, permission)
                VALUES (?, ?, ?, ?)
                """,
                [
                    (acl_id, e.principal_type, e.principal_id, e.permission)
                    for e in deduped
                ],
            )

        logger.debug(
            "Created ACL", extra={"acl_id": acl_id, "hash": acl_hash, "entries": len(deduped)}
        )
        return acl_id

    async def create_resource_acl(
        self,
        creator_id: str,
        explicit_entries: list[AclEntry | dict[str, Any]] | None = None,
    ) -> int | None:
        """Create the ACL for a new resource.

        Args:
            creator_id: User creating the resource
            explicit_entries: None for creator-only write access, [] for a
                public resource, otherwise entries to which creator write
                access is added if missing

        Returns:
            ACL id, or None for public resources
        """
        if explicit_entries is not None and len(explicit_entries) == 0:
            return None

        creator_entry = AclEntry("user", creator_id, "write")

        if explicit_entries is None:
            entries: list[AclEntry | dict[str, Any]] = [creator_entry]
        else:
            entries = list(deduplicate_acl_entries(explicit_entries))
            if creator_entry not in entries:
                entries.insert(0, creator_entry)

        return await self.get_or_create_acl(entries)

    async def get_acl_entries(self, acl_id: int) -> list[AclEntry]:
        """Get the entries of an ACL in canonical order."""
        with self._get_connection() as conn:
            rows = conn.execute(
                """
                SELECT principal_type, principal_id, permission
                FROM acl_entries
                WHERE acl_id = ?
                ORDER BY principal_type, principal_id, permission
                """,
                (acl_id,),
            ).fetchall()
        return [AclEntry(r["principal_type"], r["principal_id"], r["permission"]) for r in rows]

    async def set_entity_acl(
        self, entity_id: str, acl_id: int | None, changed_by: str | None = None
    ) -> Entity:
        """Repoint an entity at another ACL by writing a new version.

        No version is written when the ACL does not change.
        """
        return Entity.from_row(await self._set_acl("entities", entity_id, acl_id, changed_by))

    async def set_link_acl(
        self, link_id: str, acl_id: int | None, changed_by: str | None = None
    ) -> Link:
        """Repoint a link at another ACL by writing a new version."""
        return Link.from_row(await self._set_acl("links", link_id, acl_id, changed_by))

    async def _set_acl(
        self, table: str, row_id: str, acl_id: int | None, changed_by: str | None
    ) -> sqlite3.Row:
        with self._transaction() as conn:
            current = self._latest_or_raise(conn, table, row_id)
            if current["acl_id"] == acl_id:
                return current
            if acl_id is not None:
                exists = conn.execute("SELECT 1 FROM acls WHERE id = ?", (acl_id,)).fetchone()
                if exists is None:
                    raise NotFoundError(f"ACL not found: {acl_id}", "acl", str(acl_id))
            return self._insert_version(conn, table, current, {"acl_id": acl_id}, changed_by)

    async def get_accessible_acl_ids(
        self,
        principals: list[Principal],
        permissions: list[str],
    ) -> set[int]:
        """Get ACL ids with an entry for any principal at any of the permissions."""
        if not principals or not permissions:
            return set()

        principal_conditions = " OR ".join(
            "(principal_type = ? AND principal_id = ?)" for _ in principals
        )
        permission_placeholders = ", ".join("?" for _ in permissions)

        bindings: list[Any] = []
        for principal in principals:
            bindings.extend([principal.type.value, principal.id])
        bindings.extend(permissions)

        with self._get_connection() as conn:
            rows = conn.execute(
                f"""
                SELECT DISTINCT acl_id FROM acl_entries
                WHERE ({principal_conditions})
                AND permission IN ({permission_placeholders})
                """,
                bindings,
            ).fetchall()
        return {row["acl_id"] for row in rows}

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    async def create_group(
        self,
        name: str,
        description: str | None = None,
        created_by: str | None = None,
        group_id: str | None = None,
    ) -> Group:
        """Create a group."""
        group = Group(
            id=group_id or str(uuid.uuid4()),
            name=name,
            description=description,
            created_at=_now_ms(),
            created_by=created_by,
        )
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO groups (id, name, description, created_at, created_by)
                VALUES (?, ?, ?, ?, ?)
                """,
                (group.id, group.name, group.description, group.created_at, group.created_by),
            )
        return group

    async def add_group_member(self, group_id: str, member_type: str, member_id: str) -> None:
        """Add a user or group to a group (idempotent).

        Raises:
            NotFoundError: If the group does not exist
            ValidationError: If member_type is unknown or a group would contain itself
        """
        if member_type not in ("user", "group"):
            raise ValidationError(f"Invalid member_type: {member_type}", field_name="member_type")
        if member_type == "group" and member_id == group_id:
            raise ValidationError("A group cannot be a member of itself", field_name="member_id")

        with self._get_connection() as conn:
            exists = conn.execute("SELECT 1 FROM groups WHERE id = ?", (group_id,)).fetchone()
            if exists is None:
                raise NotFoundError(f"Group not found: {group_id}", "group", group_id)
            conn.execute(
                """
                INSERT OR IGNORE INTO group_members (group_id, member_type, member_id, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (group_id, member_type, member_id, _now_ms()),
            )

    async def remove_group_member(self, group_id: str, member_type: str, member_id: str) -> bool:
        """Remove a member from a group. Returns True if a row was removed."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "DELETE FROM group_members WHERE group_id = ? AND member_type = ? AND member_id = ?",
                (group_id, member_type, member_id),
            )
            return cursor.rowcount > 0

    async def get_effective_groups(self, user_id: str) -> set[str]:
        """Get every group a user belongs to, directly or through nested groups.

        Membership cycles are tolerated.
        """
        groups: set[str] = set()
        with self._get_connection() as conn:
            frontier = [
                row["group_id"]
                for row in conn.execute(
                    "SELECT group_id FROM group_members WHERE member_type = 'user' AND member_id = ?",
                    (user_id,),
                )
            ]
            while frontier:
                group_id = frontier.pop()
                if group_id in groups:
                    continue
                groups.add(group_id)
                frontier.extend(
                    row["group_id"]
                    for row in conn.execute(
                        "SELECT group_id FROM group_members "
                        "WHERE member_type = 'group' AND member_id = ?",
                        (group_id,),
                    )
                )
        return groups

    # ------------------------------------------------------------------
    # Graph queries
    # ------------------------------------------------------------------

    async def fetch_neighbors(
        self,
        entity_id: str,
        direction: str,
        include_deleted: bool = False,
        link_type_ids: list[str] | None = None,
        entity_type_ids: list[str] | None = None,
        predicates: list[CompiledFilter] | None = None,
    ) -> list[Neighbor]:
        """Fetch one hop of latest links and their latest far-end entities.

        Links attached to any version of entity_id are followed, and the far
        endpoint (which may name a stale version) is resolved to its latest
        row, all in one statement.

        Args:
            entity_id: Latest id of the current node
            direction: "outbound" (entity is source) or "inbound" (entity is target)
            include_deleted: Keep deleted links and entities
            link_type_ids: Restrict link types
            entity_type_ids: Restrict neighbor entity types
            predicates: Extra predicates over aliases "l" and "e" (ACL, property filters)

        Returns:
            Neighbors in link creation order
        """
        if direction not in _HOP_COLUMNS:
            raise ValueError(f"Invalid direction: {direction}")
        near, far = _HOP_COLUMNS[direction]

        columns = ", ".join(
            [f"l.{c} AS l_{c}" for c in LINK_COLUMNS] + [f"e.{c} AS e_{c}" for c in ENTITY_COLUMNS]
        )
        sql = f"""
            WITH RECURSIVE
            origin(id, previous_version_id) AS (
                SELECT id, previous_version_id FROM entities WHERE id = ?
                UNION
                SELECT p.id, p.previous_version_id FROM entities p
                INNER JOIN origin o ON p.id = o.previous_version_id
            ),
            hop(link_id, entity_id) AS (
                SELECT l.id, l.{far} FROM links l
                WHERE l.{near} IN (SELECT id FROM origin) AND l.is_latest = 1
                UNION
                SELECT h.link_id, n.id FROM hop h
                INNER JOIN entities n ON n.previous_version_id = h.entity_id
            )
            SELECT {columns}
            FROM hop h
            INNER JOIN links l ON l.id = h.link_id
            INNER JOIN entities e ON e.id = h.entity_id
            WHERE e.is_latest = 1
        """
        bindings: list[Any] = [entity_id]

        if not include_deleted:
            sql += " AND l.is_deleted = 0 AND e.is_deleted = 0"

        if link_type_ids:
            sql += f" AND l.type_id IN ({', '.join('?' for _ in link_type_ids)})"
            bindings.extend(link_type_ids)

        if entity_type_ids:
            sql += f" AND e.type_id IN ({', '.join('?' for _ in entity_type_ids)})"
            bindings.extend(entity_type_ids)

        for predicate in predicates or []:
            if not predicate.is_empty:
                sql += f" AND ({predicate.predicate})"
                bindings.extend(predicate.parameters)

        sql += " ORDER BY l.created_at ASC, l.id ASC"

        with self._get_connection() as conn:
            rows = conn.execute(sql, bindings).fetchall()

        return [
            Neighbor(link=Link.from_row(row, prefix="l_"), entity=Entity.from_row(row, prefix="e_"))
            for row in rows
        ]

    async def query_latest(
        self,
        table: str,
        predicates: list[CompiledFilter] | None = None,
        limit: int = 20,
    ) -> list[Entity] | list[Link]:
        """Select latest rows of entities or links matching predicates, newest first.

        Predicates refer to the table through alias "e" (entities) or "l" (links).
        """
        if table not in ("entities", "links"):
            raise ValueError(f"Not a versioned table: {table}")
        alias = "e" if table == "entities" else "l"

        sql = f"SELECT {alias}.* FROM {table} {alias} WHERE {alias}.is_latest = 1"
        bindings: list[Any] = []
        for predicate in predicates or []:
            if not predicate.is_empty:
                sql += f" AND ({predicate.predicate})"
                bindings.extend(predicate.parameters)
        sql += f" ORDER BY {alias}.created_at DESC, {alias}.id DESC LIMIT ?"
        bindings.append(limit)

        with self._get_connection() as conn:
            rows = conn.execute(sql, bindings).fetchall()

        row_type = Entity if table == "entities" else Link
        return [row_type.from_row(row) for row in rows]

    async def get_stats(self) -> dict[str, int]:
        """Get row counts for the store."""
        with self._get_connection() as conn:
            stats = {}
            for name, sql in (
                ("entities", "SELECT COUNT(*) FROM entities WHERE is_latest = 1"),
                ("entity_versions", "SELECT COUNT(*) FROM entities"),
                ("links", "SELECT COUNT(*) FROM links WHERE is_latest = 1"),
                ("link_versions", "SELECT COUNT(*) FROM links"),
                ("acls", "SELECT COUNT(*) FROM acls"),
                ("groups", "SELECT COUNT(*) FROM groups"),
            ):
                stats[name] = conn.execute(sql).fetchone()[0]
            return stats
