"""Read-side lookups used by the CLI."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from cataloger.models import CodeType

if TYPE_CHECKING:
    import sqlite3


def _bodies(conn: sqlite3.Connection, sql: str, params: tuple[Any, ...]) -> list[dict[str, Any]]:
    return [json.loads(r["body"]) for r in conn.execute(sql, params).fetchall()]


def find_types(conn: sqlite3.Connection, name: str) -> list[CodeType]:
    """Types whose FQN or short name equals *name*."""
    rows = conn.execute(
        "SELECT body FROM code_types WHERE fqn = ? OR name = ? ORDER BY fqn, repository",
        (name, name),
    ).fetchall()
    return [CodeType.from_dict(json.loads(r["body"])) for r in rows]


def get_type(conn: sqlite3.Connection, fqn: str) -> dict[str, Any] | None:
    """A type with its mappings, relationships and the operations on its collections.

    *fqn* may also be a short type name when it is unambiguous.
    """
    types = find_types(conn, fqn)
    if len(types) != 1:
        exact = [t for t in types if t.fqn == fqn]
        if len(exact) != 1:
            return None
        types = exact
    code_type = types[0]

    mappings = _bodies(
        conn,
        "SELECT body FROM collection_mappings WHERE type_id = ? "
        "ORDER BY is_primary DESC, confidence DESC",
        (code_type.id,),
    )
    collections = [m["collection_name"] for m in mappings]
    operations: list[dict[str, Any]] = []
    if collections:
        placeholders = ",".join("?" for _ in collections)
        operations = _bodies(
            conn,
            f"SELECT body FROM query_operations "  # noqa: S608
            f"WHERE collection_name IN ({placeholders}) ORDER BY file_path, line_start",
            tuple(collections),
        )
    outgoing = _bodies(
        conn,
        "SELECT body FROM data_relationships WHERE source_type_id = ? "
        "ORDER BY confidence DESC",
        (code_type.id,),
    )
    incoming = _bodies(
        conn,
        "SELECT body FROM data_relationships WHERE target_type_id = ? "
        "ORDER BY confidence DESC",
        (code_type.id,),
    )
    return {
        "type": code_type.to_dict(),
        "mappings": mappings,
        "operations": operations,
        "relationships": {"outgoing": outgoing, "incoming": incoming},
    }


def primary_type_for(conn: sqlite3.Connection, collection_name: str) -> CodeType | None:
    """The type whose primary mapping targets *collection_name*."""
    row = conn.execute(
        "SELECT t.body FROM collection_mappings m JOIN code_types t ON t.id = m.type_id "
        "WHERE m.collection_name = ? AND m.is_primary = 1 "
        "ORDER BY m.confidence DESC, t.fqn LIMIT 1",
        (collection_name,),
    ).fetchone()
    return CodeType.from_dict(json.loads(row["body"])) if row is not None else None
