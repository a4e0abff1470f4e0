"""Knowledge-base reads and the per-repository transactional write.

The synchronizer is the only caller of :func:`write_repository`; everything
it writes for one repository happens inside a single transaction, so a
failure leaves the previously committed state untouched.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from cataloger.models import (
    AccessorSite,
    CodeType,
    KnowledgeBaseEntry,
    ObservedSchema,
    QueryOperation,
    collection_id,
    make_id,
)

if TYPE_CHECKING:
    import sqlite3
    from collections.abc import Iterable

    from cataloger.models import (
        CollectionMapping,
        DataRelationship,
        Provenance,
        ScanContext,
    )

logger = logging.getLogger(__name__)

STORED_IN = "STORED_IN"


@dataclass
class RepositorySnapshot:
    """Everything one repository contributes to the knowledge base."""

    name: str
    path: str
    context: ScanContext
    # Files (re)processed in this run and files that disappeared.
    processed_files: set[str] = field(default_factory=set)
    deleted_files: set[str] = field(default_factory=set)
    file_hashes: dict[str, str] = field(default_factory=dict)
    # Facts of processed files only.
    new_types: list[CodeType] = field(default_factory=list)
    new_sites: list[AccessorSite] = field(default_factory=list)
    new_operations: list[QueryOperation] = field(default_factory=list)
    # Repository-wide state after this run.
    types: list[CodeType] = field(default_factory=list)
    operations: list[QueryOperation] = field(default_factory=list)
    mappings: list[CollectionMapping] = field(default_factory=list)
    relationships: list[DataRelationship] = field(default_factory=list)
    schemas: list[ObservedSchema] = field(default_factory=list)


@dataclass(frozen=True)
class WriteStats:
    entries_added: int = 0
    entries_updated: int = 0
    entries_deactivated: int = 0


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


def load_file_index(conn: sqlite3.Connection, repository: str) -> dict[str, str]:
    """Stored ``{path: sha256}`` for *repository*."""
    rows = conn.execute(
        "SELECT path, hash FROM file_index WHERE repository = ?", (repository,)
    ).fetchall()
    return {r["path"]: r["hash"] for r in rows}


def load_last_commit(conn: sqlite3.Connection, repository: str) -> str | None:
    row = conn.execute(
        "SELECT last_commit_sha FROM repositories WHERE name = ?", (repository,)
    ).fetchone()
    return row["last_commit_sha"] if row is not None else None


def _in_files(column: str, files: set[str]) -> tuple[str, list[str]]:
    placeholders = ",".join("?" for _ in files)
    return f"{column} IN ({placeholders})", sorted(files)


def load_types(conn: sqlite3.Connection, repository: str, files: set[str]) -> list[CodeType]:
    if not files:
        return []
    clause, params = _in_files("file_path", files)
    rows = conn.execute(
        f"SELECT body FROM code_types WHERE repository = ? AND {clause}",  # noqa: S608
        (repository, *params),
    ).fetchall()
    return [CodeType.from_dict(json.loads(r["body"])) for r in rows]


def load_sites(conn: sqlite3.Connection, repository: str, files: set[str]) -> list[AccessorSite]:
    if not files:
        return []
    clause, params = _in_files("file_path", files)
    rows = conn.execute(
        f"SELECT body FROM accessor_sites WHERE repository = ? AND {clause} "  # noqa: S608
        "ORDER BY id",
        (repository, *params),
    ).fetchall()
    return [AccessorSite.from_dict(json.loads(r["body"])) for r in rows]


def load_operations(
    conn: sqlite3.Connection, repository: str, files: set[str]
) -> list[QueryOperation]:
    if not files:
        return []
    clause, params = _in_files("file_path", files)
    rows = conn.execute(
        f"SELECT body FROM query_operations WHERE repository = ? AND {clause}",  # noqa: S608
        (repository, *params),
    ).fetchall()
    return [QueryOperation.from_dict(json.loads(r["body"])) for r in rows]


def load_observed_schema(conn: sqlite3.Connection, collection_name: str) -> ObservedSchema | None:
    row = conn.execute(
        "SELECT body FROM observed_schemas WHERE collection_name = ? "
        "ORDER BY sampled_at DESC LIMIT 1",
        (collection_name,),
    ).fetchone()
    return ObservedSchema.from_dict(json.loads(row["body"])) if row is not None else None


# ---------------------------------------------------------------------------
# Knowledge-base entries
# ---------------------------------------------------------------------------


def _entry(
    entity_type: str,
    entity_id: str,
    title: str,
    text: list[str],
    provenance: Provenance,
    tags: Iterable[str],
    relevance: float = 1.0,
    metadata: dict[str, Any] | None = None,
) -> KnowledgeBaseEntry:
    return KnowledgeBaseEntry(
        id=make_id("entry", entity_type, entity_id),
        entity_type=entity_type,
        entity_id=entity_id,
        title=title,
        searchable_text=" ".join(t for t in text if t),
        provenance=provenance,
        tags=tuple(sorted({t for t in tags if t})),
        relevance=round(relevance, 4),
        metadata=metadata or {},
    )


def build_entries(snapshot: RepositorySnapshot) -> list[KnowledgeBaseEntry]:
    """Search projection of every entity the repository currently has."""
    entries: list[KnowledgeBaseEntry] = []
    for t in snapshot.types:
        text = [t.fqn, t.documentation]
        text.extend(f"{f.name} {f.element_name} {f.declared_type}" for f in t.fields)
        entries.append(
            _entry(
                "code_type",
                t.id,
                t.fqn,
                text,
                t.provenance,
                ["type", t.namespace, *t.discriminators],
                metadata={"fields": len(t.fields), "file_path": t.provenance.file_path},
            )
        )
    for m in snapshot.mappings:
        entries.append(
            _entry(
                "collection_mapping",
                m.id,
                f"{m.type_fqn} -> {m.collection_name}",
                [m.collection_name, m.type_fqn, m.method.value, m.context],
                m.provenance,
                ["collection", m.method.value, "primary" if m.is_primary else ""],
                relevance=m.confidence,
                metadata={"collection": m.collection_name, "is_primary": m.is_primary},
            )
        )
    for op in snapshot.operations:
        text = [op.collection_name, op.kind.value, op.method_name, op.location.symbol_name]
        text.extend(f.field_path for f in op.filters)
        text.extend(s.name for s in op.pipeline)
        entries.append(
            _entry(
                "query_operation",
                op.id,
                f"{op.kind.value} {op.collection_name}",
                text,
                op.provenance,
                ["operation", op.kind.value],
                metadata={"collection": op.collection_name, "line": op.location.line},
            )
        )
    for r in snapshot.relationships:
        entries.append(
            _entry(
                "data_relationship",
                r.id,
                f"{r.source_fqn} {r.kind.value} {r.target_fqn}",
                [r.source_fqn, r.target_fqn, r.field_path, *(e.description for e in r.evidence)],
                r.provenance,
                ["relationship", r.kind.value, r.cardinality.value],
                relevance=r.confidence,
                metadata={"field_path": r.field_path, "evidence": len(r.evidence)},
            )
        )
    for s in snapshot.schemas:
        entries.append(
            _entry(
                "observed_schema",
                s.id,
                f"observed schema {s.collection_name}",
                [s.collection_name, *s.field_types],
                s.provenance,
                ["schema", "pii" if s.pii_detections else ""],
                metadata={"sample_size": s.sample_size, "pii_redacted": s.pii_redacted},
            )
        )
    return entries


def entry_fingerprint(entry: KnowledgeBaseEntry) -> str:
    """Content hash of an entry; timestamps and commit are excluded."""
    payload = json.dumps(
        {
            "title": entry.title,
            "text": entry.searchable_text,
            "tags": list(entry.tags),
            "relevance": entry.relevance,
            "metadata": entry.metadata,
            "file_path": entry.provenance.file_path,
            "symbol_name": entry.provenance.symbol_name,
            "lines": [entry.provenance.line_start, entry.provenance.line_end],
        },
        sort_keys=True,
        default=str,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _prov_values(p: Provenance) -> tuple[Any, ...]:
    return (
        p.repository,
        p.file_path,
        p.symbol_name,
        p.line_start,
        p.line_end,
        p.commit_sha,
        p.timestamp,
    )


_PROV_COLUMNS = (
    "repository, file_path, symbol_name, line_start, line_end, commit_sha, extracted_at"
)
_PROV_PARAMS = "?, ?, ?, ?, ?, ?, ?"


def upsert_entries(
    conn: sqlite3.Connection,
    repository: str,
    entries: list[KnowledgeBaseEntry],
    now: str,
) -> WriteStats:
    """Insert/update entries by fingerprint and deactivate the vanished ones."""
    stored = {
        r["id"]: (r["fingerprint"], r["is_active"])
        for r in conn.execute(
            "SELECT id, fingerprint, is_active FROM knowledge_base_entries WHERE repository = ?",
            (repository,),
        ).fetchall()
    }
    added = updated = 0
    current: set[str] = set()
    for entry in entries:
        current.add(entry.id)
        fingerprint = entry_fingerprint(entry)
        previous = stored.get(entry.id)
        if previous is not None and previous == (fingerprint, 1):
            continue
        if previous is None:
            added += 1
        else:
            updated += 1
        conn.execute(
            "INSERT INTO knowledge_base_entries (id, entity_type, entity_id, title, "
            "searchable_text, tags, relevance, metadata, fingerprint, last_updated, is_active, "
            f"{_PROV_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1, {_PROV_PARAMS}) "
            "ON CONFLICT(id) DO UPDATE SET title = excluded.title, "
            "searchable_text = excluded.searchable_text, tags = excluded.tags, "
            "relevance = excluded.relevance, metadata = excluded.metadata, "
            "fingerprint = excluded.fingerprint, last_updated = excluded.last_updated, "
            "is_active = 1, file_path = excluded.file_path, "
            "symbol_name = excluded.symbol_name, line_start = excluded.line_start, "
            "line_end = excluded.line_end, commit_sha = excluded.commit_sha, "
            "extracted_at = excluded.extracted_at",
            (
                entry.id,
                entry.entity_type,
                entry.entity_id,
                entry.title,
                entry.searchable_text,
                json.dumps(list(entry.tags)),
                entry.relevance,
                json.dumps(entry.metadata, sort_keys=True, default=str),
                fingerprint,
                now,
                *_prov_values(entry.provenance),
            ),
        )

    vanished = [i for i, (_, active) in stored.items() if active and i not in current]
    for entry_id in vanished:
        conn.execute(
            "UPDATE knowledge_base_entries SET is_active = 0, last_updated = ? WHERE id = ?",
            (now, entry_id),
        )
    return WriteStats(added, updated, len(vanished))


def rebuild_search_index(conn: sqlite3.Connection) -> int:
    """Repopulate ``kb_search`` from the active entries. Returns row count."""
    conn.execute("DELETE FROM kb_search")
    rows = conn.execute(
        "SELECT id, entity_type, title, searchable_text FROM knowledge_base_entries "
        "WHERE is_active = 1"
    ).fetchall()
    conn.executemany(
        "INSERT INTO kb_search (entry_id, entity_type, title, content) VALUES (?, ?, ?, ?)",
        [(r["id"], r["entity_type"], r["title"], r["searchable_text"]) for r in rows],
    )
    return len(rows)


# ---------------------------------------------------------------------------
# Repository write
# ---------------------------------------------------------------------------


def _delete_for_files(
    conn: sqlite3.Connection, table: str, repository: str, files: set[str]
) -> None:
    if not files:
        return
    clause, params = _in_files("file_path", files)
    conn.execute(
        f"DELETE FROM {table} WHERE repository = ? AND {clause}",  # noqa: S608
        (repository, *params),
    )


def _write_graph(conn: sqlite3.Connection, snapshot: RepositorySnapshot) -> None:
    repo = snapshot.name
    conn.execute("DELETE FROM graph_edges WHERE repository = ?", (repo,))
    conn.execute("DELETE FROM graph_nodes WHERE repository = ?", (repo,))

    for t in snapshot.types:
        conn.execute(
            "INSERT OR REPLACE INTO graph_nodes (id, kind, label, repository, extra) "
            "VALUES (?, 'type', ?, ?, ?)",
            (t.id, t.fqn, repo, json.dumps({"name": t.name, "namespace": t.namespace})),
        )
    collections = {m.collection_name for m in snapshot.mappings}
    collections.update(op.collection_name for op in snapshot.operations)
    for name in sorted(collections):
        conn.execute(
            "INSERT OR REPLACE INTO graph_nodes (id, kind, label, repository, extra) "
            "VALUES (?, 'collection', ?, ?, '{}')",
            (collection_id(name), name, repo),
        )

    edges: dict[tuple[str, str, str], dict[str, Any]] = {}
    for m in snapshot.mappings:
        edges[(m.type_id, m.collection_id, STORED_IN)] = {
            "confidence": m.confidence,
            "is_primary": m.is_primary,
            "method": m.method.value,
        }
    for r in snapshot.relationships:
        key = (r.source_type_id, r.target_type_id, r.kind.value)
        extra = edges.setdefault(key, {"confidence": 0.0, "field_paths": []})
        extra["confidence"] = max(extra["confidence"], r.confidence)
        extra["field_paths"].append(r.field_path)
    for (src, dst, kind), extra in edges.items():
        conn.execute(
            "INSERT OR REPLACE INTO graph_edges (src_id, dst_id, kind, repository, extra) "
            "VALUES (?, ?, ?, ?, ?)",
            (src, dst, kind, repo, json.dumps(extra, sort_keys=True)),
        )


def write_repository(conn: sqlite3.Connection, snapshot: RepositorySnapshot) -> WriteStats:
    """Commit one repository's results atomically.

    Per-file facts are replaced for processed and deleted files only;
    repository-wide facts (mappings, relationships, graph) are replaced
    wholesale.  Knowledge-base entries are upserted by fingerprint and the
    ones whose entity vanished are marked inactive.
    """
    repo = snapshot.name
    ctx = snapshot.context
    touched = snapshot.processed_files | snapshot.deleted_files

    conn.commit()
    try:
        conn.execute("BEGIN")
        for table in ("code_types", "query_operations", "accessor_sites"):
            _delete_for_files(conn, table, repo, touched)

        for t in snapshot.new_types:
            conn.execute(
                "INSERT OR REPLACE INTO code_types (id, fqn, name, namespace, body, "
                f"{_PROV_COLUMNS}) VALUES (?, ?, ?, ?, ?, {_PROV_PARAMS})",
                (t.id, t.fqn, t.name, t.namespace, json.dumps(t.to_dict()),
                 *_prov_values(t.provenance)),
            )
        # Every current type gets a version row for this commit.
        for t in snapshot.types:
            conn.execute(
                "INSERT OR REPLACE INTO code_type_versions "
                "(repository, fqn, commit_sha, body, recorded_at) VALUES (?, ?, ?, ?, ?)",
                (repo, t.fqn, ctx.commit_sha, json.dumps(t.to_dict()), ctx.timestamp),
            )
        for site in snapshot.new_sites:
            conn.execute(
                "INSERT INTO accessor_sites (repository, file_path, type_name, body) "
                "VALUES (?, ?, ?, ?)",
                (repo, site.location.file_path, site.type_name, json.dumps(site.to_dict())),
            )
        for op in snapshot.new_operations:
            conn.execute(
                "INSERT OR REPLACE INTO query_operations (id, collection_id, collection_name, "
                f"kind, body, {_PROV_COLUMNS}) VALUES (?, ?, ?, ?, ?, {_PROV_PARAMS})",
                (op.id, op.collection_id, op.collection_name, op.kind.value,
                 json.dumps(op.to_dict(), default=str), *_prov_values(op.provenance)),
            )

        conn.execute("DELETE FROM collection_mappings WHERE repository = ?", (repo,))
        for m in snapshot.mappings:
            conn.execute(
                "INSERT OR REPLACE INTO collection_mappings (id, type_id, collection_name, "
                f"method, confidence, is_primary, body, {_PROV_COLUMNS}) "
                f"VALUES (?, ?, ?, ?, ?, ?, ?, {_PROV_PARAMS})",
                (m.id, m.type_id, m.collection_name, m.method.value, m.confidence,
                 int(m.is_primary), json.dumps(m.to_dict()), *_prov_values(m.provenance)),
            )

        conn.execute("DELETE FROM data_relationships WHERE repository = ?", (repo,))
        for r in snapshot.relationships:
            conn.execute(
                "INSERT OR REPLACE INTO data_relationships (id, source_type_id, target_type_id, "
                f"kind, field_path, confidence, body, {_PROV_COLUMNS}) "
                f"VALUES (?, ?, ?, ?, ?, ?, ?, {_PROV_PARAMS})",
                (r.id, r.source_type_id, r.target_type_id, r.kind.value, r.field_path,
                 r.confidence, json.dumps(r.to_dict()), *_prov_values(r.provenance)),
            )

        for s in snapshot.schemas:
            conn.execute(
                "INSERT OR REPLACE INTO observed_schemas (id, collection_id, collection_name, "
                f"sample_size, pii_redacted, sampled_at, body, {_PROV_COLUMNS}) "
                f"VALUES (?, ?, ?, ?, ?, ?, ?, {_PROV_PARAMS})",
                (s.id, s.collection_id, s.collection_name, s.sample_size, int(s.pii_redacted),
                 s.sampled_at, json.dumps(s.to_dict(), default=str),
                 *_prov_values(s.provenance)),
            )

        for path in snapshot.deleted_files:
            conn.execute(
                "DELETE FROM file_index WHERE repository = ? AND path = ?", (repo, path)
            )
        for path in snapshot.processed_files:
            file_hash = snapshot.file_hashes.get(path)
            if file_hash is None:
                continue
            conn.execute(
                "INSERT INTO file_index (repository, path, hash) VALUES (?, ?, ?) "
                "ON CONFLICT(repository, path) DO UPDATE SET hash = excluded.hash",
                (repo, path, file_hash),
            )

        if snapshot.schemas:
            entries = build_entries(snapshot)
        else:
            # Keep the entries of schemas sampled in earlier runs alive.
            entries = build_entries(snapshot) + _stored_schema_entries(conn, snapshot)
        stats = upsert_entries(conn, repo, entries, ctx.timestamp)
        _write_graph(conn, snapshot)
        rebuild_search_index(conn)

        conn.execute(
            "INSERT INTO repositories (name, path, last_commit_sha, last_scan_at, last_status) "
            "VALUES (?, ?, ?, ?, 'success') ON CONFLICT(name) DO UPDATE SET "
            "path = excluded.path, last_commit_sha = excluded.last_commit_sha, "
            "last_scan_at = excluded.last_scan_at, last_status = excluded.last_status",
            (repo, snapshot.path, ctx.commit_sha, ctx.timestamp),
        )
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    logger.debug(
        "Committed %s: +%d ~%d -%d entries",
        repo,
        stats.entries_added,
        stats.entries_updated,
        stats.entries_deactivated,
    )
    return stats


def _stored_schema_entries(
    conn: sqlite3.Connection, snapshot: RepositorySnapshot
) -> list[KnowledgeBaseEntry]:
    rows = conn.execute(
        "SELECT body FROM observed_schemas WHERE repository = ?", (snapshot.name,)
    ).fetchall()
    kept = RepositorySnapshot(
        snapshot.name,
        snapshot.path,
        snapshot.context,
        schemas=[ObservedSchema.from_dict(json.loads(r["body"])) for r in rows],
    )
    return build_entries(kept)


def record_failure(conn: sqlite3.Connection, name: str, path: str, timestamp: str) -> None:
    """Note a failed repository without touching its committed facts."""
    conn.execute(
        "INSERT INTO repositories (name, path, last_scan_at, last_status) "
        "VALUES (?, ?, ?, 'failed') ON CONFLICT(name) DO UPDATE SET "
        "last_scan_at = excluded.last_scan_at, last_status = excluded.last_status",
        (name, path, timestamp),
    )
    conn.commit()
