"""Integrity checks over the knowledge base and their snapshot history."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from cataloger.infrastructure.db import ENTITY_TABLES
from cataloger.models import HealthStatus

if TYPE_CHECKING:
    import sqlite3


@dataclass(frozen=True)
class HealthReport:
    """Outcome of one integrity check run; never raised, always returned."""

    status: HealthStatus
    issues: tuple[str, ...] = ()
    types_count: int = 0
    mappings_count: int = 0
    relationships_count: int = 0
    checked_at: str = ""
    details: dict[str, int] = field(default_factory=dict)

    @property
    def healthy(self) -> bool:
        return self.status is HealthStatus.HEALTHY

    def to_dict(self) -> dict[str, object]:
        return {
            "status": self.status.value,
            "issues": list(self.issues),
            "types_count": self.types_count,
            "mappings_count": self.mappings_count,
            "relationships_count": self.relationships_count,
            "checked_at": self.checked_at,
            "details": dict(self.details),
        }


@dataclass(frozen=True)
class HealthSnapshot:
    """Point-in-time health metrics."""

    taken_at: str
    status: str
    types_count: int
    mappings_count: int
    relationships_count: int
    issues: list[str]


def _count(conn: sqlite3.Connection, sql: str) -> int:
    return int(conn.execute(sql).fetchone()[0])


def check_integrity(conn: sqlite3.Connection) -> HealthReport:
    """Run the post-reconciliation checks.

    * Unhealthy: any entity row with blank provenance.
    * Degraded: orphan mappings, relationships pointing at missing types,
      or active knowledge-base entries whose entity is gone.
    """
    unhealthy: list[str] = []
    degraded: list[str] = []
    details: dict[str, int] = {}

    for table in ENTITY_TABLES.values():
        missing = _count(
            conn,
            f"SELECT count(*) FROM {table} "  # noqa: S608
            "WHERE trim(repository) = '' OR trim(file_path) = '' OR trim(extracted_at) = ''",
        )
        if missing:
            details[f"{table}_missing_provenance"] = missing
            unhealthy.append(f"{missing} {table} row(s) lack provenance")

    orphans = _count(
        conn,
        "SELECT count(*) FROM collection_mappings m "
        "LEFT JOIN code_types t ON t.id = m.type_id WHERE t.id IS NULL",
    )
    if orphans:
        details["orphan_mappings"] = orphans
        degraded.append(f"{orphans} collection mapping(s) reference a missing type")

    dangling = _count(
        conn,
        "SELECT count(*) FROM data_relationships r "
        "WHERE r.source_type_id NOT IN (SELECT id FROM code_types) "
        "OR r.target_type_id NOT IN (SELECT id FROM code_types)",
    )
    if dangling:
        details["dangling_relationships"] = dangling
        degraded.append(f"{dangling} relationship(s) reference a missing type")

    stale = 0
    for entity_type, table in ENTITY_TABLES.items():
        stale += int(
            conn.execute(
                "SELECT count(*) FROM knowledge_base_entries e "
                "WHERE e.is_active = 1 AND e.entity_type = ? "
                f"AND e.entity_id NOT IN (SELECT id FROM {table})",  # noqa: S608
                (entity_type,),
            ).fetchone()[0]
        )
    if stale:
        details["stale_entries"] = stale
        degraded.append(f"{stale} active knowledge base entries without an entity")

    if unhealthy:
        status = HealthStatus.UNHEALTHY
    elif degraded:
        status = HealthStatus.DEGRADED
    else:
        status = HealthStatus.HEALTHY

    return HealthReport(
        status=status,
        issues=tuple(unhealthy + degraded),
        types_count=_count(conn, "SELECT count(*) FROM code_types"),
        mappings_count=_count(conn, "SELECT count(*) FROM collection_mappings"),
        relationships_count=_count(conn, "SELECT count(*) FROM data_relationships"),
        checked_at=datetime.now(tz=timezone.utc).isoformat(),
        details=details,
    )


def take_snapshot(conn: sqlite3.Connection, report: HealthReport | None = None) -> HealthSnapshot:
    """Persist *report* (or a fresh check) to the health_snapshots table."""
    report = report or check_integrity(conn)
    snapshot = HealthSnapshot(
        taken_at=report.checked_at or datetime.now(tz=timezone.utc).isoformat(),
        status=report.status.value,
        types_count=report.types_count,
        mappings_count=report.mappings_count,
        relationships_count=report.relationships_count,
        issues=list(report.issues),
    )
    conn.execute(
        "INSERT INTO health_snapshots "
        "(taken_at, status, types_count, mappings_count, relationships_count, issues) "
        "VALUES (?, ?, ?, ?, ?, ?)",
        (
            snapshot.taken_at,
            snapshot.status,
            snapshot.types_count,
            snapshot.mappings_count,
            snapshot.relationships_count,
            json.dumps(snapshot.issues),
        ),
    )
    conn.commit()
    return snapshot


def get_latest_snapshots(conn: sqlite3.Connection, n: int = 2) -> list[HealthSnapshot]:
    """Get the N most recent snapshots for trend comparison."""
    rows = conn.execute(
        "SELECT taken_at, status, types_count, mappings_count, relationships_count, issues "
        "FROM health_snapshots ORDER BY id DESC LIMIT ?",
        (n,),
    ).fetchall()
    return [
        HealthSnapshot(
            taken_at=r["taken_at"],
            status=r["status"],
            types_count=r["types_count"],
            mappings_count=r["mappings_count"],
            relationships_count=r["relationships_count"],
            issues=json.loads(r["issues"]),
        )
        for r in rows
    ]
