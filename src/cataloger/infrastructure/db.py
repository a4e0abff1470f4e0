"""SQLite knowledge base: connection management, schema, meta helpers."""

from __future__ import annotations

import sqlite3
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pathlib import Path

# Schema version, bumped on breaking changes
SCHEMA_VERSION = "1"

# Provenance columns shared by every entity table.
_PROVENANCE = """
    repository   TEXT NOT NULL,
    file_path    TEXT NOT NULL,
    symbol_name  TEXT NOT NULL,
    line_start   INTEGER NOT NULL,
    line_end     INTEGER NOT NULL,
    commit_sha   TEXT NOT NULL,
    extracted_at TEXT NOT NULL"""

_SCHEMA_SQL = f"""\
-- Scanned repositories
CREATE TABLE IF NOT EXISTS repositories (
    name            TEXT PRIMARY KEY,
    path            TEXT NOT NULL,
    last_commit_sha TEXT,
    last_scan_at    TEXT,
    last_status     TEXT
);

-- Per-repository file hashes for change detection
CREATE TABLE IF NOT EXISTS file_index (
    repository TEXT NOT NULL,
    path       TEXT NOT NULL,
    hash       TEXT NOT NULL,
    PRIMARY KEY (repository, path)
);

-- Declared document types
CREATE TABLE IF NOT EXISTS code_types (
    id        TEXT PRIMARY KEY,
    fqn       TEXT NOT NULL,
    name      TEXT NOT NULL,
    namespace TEXT NOT NULL DEFAULT '',
    body      TEXT NOT NULL,{_PROVENANCE}
);
CREATE INDEX IF NOT EXISTS idx_code_types_file ON code_types(repository, file_path);
CREATE INDEX IF NOT EXISTS idx_code_types_fqn ON code_types(fqn);

-- Per-commit snapshots of type shapes, for diffs
CREATE TABLE IF NOT EXISTS code_type_versions (
    repository  TEXT NOT NULL,
    fqn         TEXT NOT NULL,
    commit_sha  TEXT NOT NULL,
    body        TEXT NOT NULL,
    recorded_at TEXT NOT NULL,
    PRIMARY KEY (repository, fqn, commit_sha)
);

-- Collection accessor call sites (per file facts)
CREATE TABLE IF NOT EXISTS accessor_sites (
    id         INTEGER PRIMARY KEY AUTOINCREMENT,
    repository TEXT NOT NULL,
    file_path  TEXT NOT NULL,
    type_name  TEXT NOT NULL,
    body       TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_accessor_sites_file ON accessor_sites(repository, file_path);

-- Type -> collection mappings
CREATE TABLE IF NOT EXISTS collection_mappings (
    id              TEXT PRIMARY KEY,
    type_id         TEXT NOT NULL,
    collection_name TEXT NOT NULL,
    method          TEXT NOT NULL,
    confidence      REAL NOT NULL CHECK(confidence >= 0 AND confidence <= 1),
    is_primary      INTEGER NOT NULL DEFAULT 0,
    body            TEXT NOT NULL,{_PROVENANCE}
);
CREATE INDEX IF NOT EXISTS idx_mappings_type ON collection_mappings(type_id);

-- Query call sites
CREATE TABLE IF NOT EXISTS query_operations (
    id              TEXT PRIMARY KEY,
    collection_id   TEXT NOT NULL,
    collection_name TEXT NOT NULL,
    kind            TEXT NOT NULL,
    body            TEXT NOT NULL,{_PROVENANCE}
);
CREATE INDEX IF NOT EXISTS idx_operations_file ON query_operations(repository, file_path);

-- Inferred relationships
CREATE TABLE IF NOT EXISTS data_relationships (
    id             TEXT PRIMARY KEY,
    source_type_id TEXT NOT NULL,
    target_type_id TEXT NOT NULL,
    kind           TEXT NOT NULL,
    field_path     TEXT NOT NULL,
    confidence     REAL NOT NULL CHECK(confidence >= 0 AND confidence <= 1),
    body           TEXT NOT NULL,{_PROVENANCE},
    UNIQUE (source_type_id, target_type_id, kind, field_path)
);

-- Sampled schemas
CREATE TABLE IF NOT EXISTS observed_schemas (
    id              TEXT PRIMARY KEY,
    collection_id   TEXT NOT NULL,
    collection_name TEXT NOT NULL,
    sample_size     INTEGER NOT NULL,
    pii_redacted    INTEGER NOT NULL DEFAULT 0,
    sampled_at      TEXT NOT NULL,
    body            TEXT NOT NULL,{_PROVENANCE}
);

-- Search-optimized projection of every entity
CREATE TABLE IF NOT EXISTS knowledge_base_entries (
    id              TEXT PRIMARY KEY,
    entity_type     TEXT NOT NULL,
    entity_id       TEXT NOT NULL,
    title           TEXT NOT NULL,
    searchable_text TEXT NOT NULL,
    tags            TEXT NOT NULL DEFAULT '[]',
    relevance       REAL NOT NULL DEFAULT 1.0,
    metadata        TEXT NOT NULL DEFAULT '{{}}',
    fingerprint     TEXT NOT NULL,
    last_updated    TEXT NOT NULL,
    is_active       INTEGER NOT NULL DEFAULT 1,{_PROVENANCE}
);
CREATE INDEX IF NOT EXISTS idx_kb_entries_repo ON knowledge_base_entries(repository);

-- Graph projection
CREATE TABLE IF NOT EXISTS graph_nodes (
    id         TEXT PRIMARY KEY,
    kind       TEXT NOT NULL CHECK(kind IN ('type','collection')),
    label      TEXT NOT NULL,
    repository TEXT NOT NULL,
    extra      TEXT DEFAULT '{{}}'
);

CREATE TABLE IF NOT EXISTS graph_edges (
    src_id     TEXT NOT NULL,
    dst_id     TEXT NOT NULL,
    kind       TEXT NOT NULL,
    repository TEXT NOT NULL,
    extra      TEXT DEFAULT '{{}}',
    PRIMARY KEY (src_id, dst_id, kind)
);

-- Integrity check history
CREATE TABLE IF NOT EXISTS health_snapshots (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    taken_at          TEXT NOT NULL,
    status            TEXT NOT NULL,
    types_count       INTEGER NOT NULL,
    mappings_count    INTEGER NOT NULL,
    relationships_count INTEGER NOT NULL,
    issues            TEXT NOT NULL DEFAULT '[]'
);

-- Full-text index over active entries
CREATE VIRTUAL TABLE IF NOT EXISTS kb_search USING fts5(
    entry_id UNINDEXED,
    entity_type UNINDEXED,
    title,
    content
);

-- Key/value metadata
CREATE TABLE IF NOT EXISTS meta (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""

# Knowledge-base entity_type -> backing table.
ENTITY_TABLES = {
    "code_type": "code_types",
    "collection_mapping": "collection_mappings",
    "query_operation": "query_operations",
    "data_relationship": "data_relationships",
    "observed_schema": "observed_schemas",
}


def open_db(db_path: Path) -> sqlite3.Connection:
    """Open (or create) a knowledge base with WAL mode and foreign keys."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def create_schema(conn: sqlite3.Connection) -> None:
    """Create all tables if they don't exist and stamp the schema version."""
    conn.executescript(_SCHEMA_SQL)
    set_meta(conn, "schema_version", SCHEMA_VERSION)


def get_meta(conn: sqlite3.Connection, key: str, default: str | None = None) -> str | None:
    """Read a value from the meta table."""
    row = conn.execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()
    if row is None:
        return default
    return str(row[0])


def set_meta(conn: sqlite3.Connection, key: str, value: str) -> None:
    """Write a value to the meta table (upsert)."""
    conn.execute(
        "INSERT INTO meta (key, value) VALUES (?, ?) "
        "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
        (key, value),
    )
    conn.commit()
