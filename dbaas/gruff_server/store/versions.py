"""
Version chain resolution for entities and links.

Every write to an entity or link inserts a new row: version N+1 points back
to version N through previous_version_id and the prior row's is_latest flag
is cleared. A chain therefore looks like:

    v1 (is_latest=0) <- v2 (is_latest=0) <- v3 (is_latest=1)

Callers may hold any member's id; these helpers map it to the current row or
to the whole chain.

Invariants:
    - Following previous_version_id from the latest row terminates at version 1
    - Exactly one row per chain has is_latest = 1
    - Recursive walks use UNION so a corrupt cycle still terminates

How to change safely:
    - Table names are whitelisted; never pass user input as a table name
"""

from __future__ import annotations

import sqlite3

VERSIONED_TABLES = frozenset({"entities", "links"})


def _check_table(table: str) -> str:
    if table not in VERSIONED_TABLES:
        raise ValueError(f"Not a versioned table: {table}")
    return table


def resolve_latest(conn: sqlite3.Connection, table: str, row_id: str) -> sqlite3.Row | None:
    """Find the latest member of the chain containing row_id.

    A direct lookup is tried first; otherwise previous_version_id links are
    followed forward until the is_latest row is reached.

    Args:
        conn: Open connection
        table: "entities" or "links"
        row_id: Id of any version in the chain

    Returns:
        The latest row, or None if no chain member exists
    """
    _check_table(table)

    row = conn.execute(
        f"SELECT * FROM {table} WHERE id = ? AND is_latest = 1", (row_id,)
    ).fetchone()
    if row is not None:
        return row

    return conn.execute(
        f"""
        WITH RECURSIVE version_chain(id) AS (
            SELECT id FROM {table} WHERE id = ?
            UNION
            SELECT t.id FROM {table} t
            INNER JOIN version_chain vc ON t.previous_version_id = vc.id
        )
        SELECT t.* FROM {table} t
        INNER JOIN version_chain vc ON t.id = vc.id
        WHERE t.is_latest = 1
        LIMIT 1
        """,
        (row_id,),
    ).fetchone()


def version_chain(conn: sqlite3.Connection, table: str, row_id: str) -> list[sqlite3.Row]:
    """Return every member of the chain containing row_id, oldest first.

    Returns:
        Rows ordered by version; empty if the chain does not exist
    """
    _check_table(table)

    latest = resolve_latest(conn, table, row_id)
    if latest is None:
        return []

    return conn.execute(
        f"""
        WITH RECURSIVE version_chain(id, previous_version_id) AS (
            SELECT id, previous_version_id FROM {table} WHERE id = ?
            UNION
            SELECT t.id, t.previous_version_id FROM {table} t
            INNER JOIN version_chain vc ON t.id = vc.previous_version_id
        )
        SELECT t.* FROM {table} t
        INNER JOIN version_chain vc ON t.id = vc.id
        ORDER BY t.version ASC
        """,
        (latest["id"],),
    ).fetchall()
