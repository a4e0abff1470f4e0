"""Tests for cataloger.infrastructure.db: SQLite schema and connection management."""

from __future__ import annotations

import sqlite3
from typing import TYPE_CHECKING

import pytest

from cataloger.infrastructure.db import (
    ENTITY_TABLES,
    SCHEMA_VERSION,
    create_schema,
    get_meta,
    open_db,
    set_meta,
)

if TYPE_CHECKING:
    from pathlib import Path


def _tables(conn: sqlite3.Connection) -> set[str]:
    rows = conn.execute("SELECT name FROM sqlite_master WHERE type IN ('table', 'view')")
    return {row[0] for row in rows}


class TestOpenDb:
    """Tests for open_db() connection factory."""

    def test_creates_parent_directories(self, tmp_path: Path) -> None:
        db_path = tmp_path / ".cataloger" / "cataloger.db"
        conn = open_db(db_path)
        conn.close()
        assert db_path.exists()

    def test_wal_mode_enabled(self, tmp_path: Path) -> None:
        conn = open_db(tmp_path / "test.db")
        result = conn.execute("PRAGMA journal_mode").fetchone()
        assert result is not None
        assert result[0] == "wal"
        conn.close()

    def test_rows_are_addressable_by_name(self, tmp_path: Path) -> None:
        conn = open_db(tmp_path / "test.db")
        row = conn.execute("SELECT 1 AS one").fetchone()
        assert row["one"] == 1
        conn.close()


class TestCreateSchema:
    def test_all_tables_exist(self, conn: sqlite3.Connection) -> None:
        tables = _tables(conn)
        for table in (
            "repositories",
            "file_index",
            "code_type_versions",
            "accessor_sites",
            "knowledge_base_entries",
            "graph_nodes",
            "graph_edges",
            "health_snapshots",
            "kb_search",
            "meta",
            *ENTITY_TABLES.values(),
        ):
            assert table in tables

    def test_idempotent(self, conn: sqlite3.Connection) -> None:
        create_schema(conn)
        create_schema(conn)
        assert get_meta(conn, "schema_version") == SCHEMA_VERSION

    def test_confidence_is_bounded(self, conn: sqlite3.Connection) -> None:
        with pytest.raises(sqlite3.IntegrityError):
            conn.execute(
                "INSERT INTO collection_mappings (id, type_id, collection_name, method, "
                "confidence, is_primary, body, repository, file_path, symbol_name, "
                "line_start, line_end, commit_sha, extracted_at) "
                "VALUES ('m', 't', 'users', 'Literal', 1.5, 1, '{}', 'shop', 'a.cs', 'A', "
                "1, 1, 'abc', 'now')"
            )


class TestMeta:
    def test_missing_key_returns_default(self, conn: sqlite3.Connection) -> None:
        assert get_meta(conn, "nope") is None
        assert get_meta(conn, "nope", "fallback") == "fallback"

    def test_upsert(self, conn: sqlite3.Connection) -> None:
        set_meta(conn, "last_scan_at", "2024-01-01")
        set_meta(conn, "last_scan_at", "2024-02-01")
        assert get_meta(conn, "last_scan_at") == "2024-02-01"
