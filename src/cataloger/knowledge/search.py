"""Keyword search over active knowledge-base entries (FTS5)."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    import sqlite3


def _escape_fts5_query(query: str) -> str:
    """Escape and prepare a query string for FTS5 MATCH.

    Splits into words and double-quotes each token so that special
    characters (``*``, ``-``, ``:``, etc.) are treated as literals.
    """
    words = query.strip().split()
    if not words:
        return ""
    return " ".join('"{}"'.format(w.replace('"', '""')) for w in words)


def search_entries(
    conn: sqlite3.Connection,
    query: str,
    *,
    kind: str | None = None,
    limit: int = 10,
) -> list[dict[str, Any]]:
    """Search entries; returns dicts with id, entity_type, title, snippet, rank."""
    safe_query = _escape_fts5_query(query)
    if not safe_query:
        return []

    sql = (
        "SELECT s.entry_id, s.entity_type, s.title, "
        "snippet(kb_search, 3, '[', ']', '...', 16) AS snippet, s.rank, "
        "e.entity_id, e.file_path, e.line_start, e.repository "
        "FROM kb_search s JOIN knowledge_base_entries e ON e.id = s.entry_id "
        "WHERE kb_search MATCH ? AND e.is_active = 1"
    )
    params: list[Any] = [safe_query]
    if kind:
        sql += " AND s.entity_type = ?"
        params.append(kind)
    sql += " ORDER BY s.rank LIMIT ?"
    params.append(limit)

    return [
        {
            "id": r["entry_id"],
            "entity_type": r["entity_type"],
            "entity_id": r["entity_id"],
            "title": r["title"],
            "snippet": r["snippet"],
            "repository": r["repository"],
            "file_path": r["file_path"],
            "line": r["line_start"],
            "rank": r["rank"],
        }
        for r in conn.execute(sql, params).fetchall()
    ]
