"""Type diff: compare the stored shape of a type at two commits."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import TYPE_CHECKING

from cataloger.models import CodeType, FieldInfo

if TYPE_CHECKING:
    import sqlite3

    from rich.console import Console


@dataclass(frozen=True)
class FieldChange:
    """One changed property of a field present at both commits."""

    field: str
    aspect: str  # "type" | "nullability" | "requirement" | "tags"
    old: str
    new: str


@dataclass(frozen=True)
class AttributeChange:
    """A type-level serialization attribute or discriminator change."""

    name: str
    change_type: str  # "added" | "removed" | "changed"
    old: str | None = None
    new: str | None = None


@dataclass(frozen=True)
class TypeDiff:
    fqn: str
    from_sha: str
    to_sha: str
    added_fields: tuple[str, ...] = ()
    removed_fields: tuple[str, ...] = ()
    modified_fields: tuple[FieldChange, ...] = ()
    attribute_changes: tuple[AttributeChange, ...] = ()

    @property
    def has_changes(self) -> bool:
        return bool(
            self.added_fields
            or self.removed_fields
            or self.modified_fields
            or self.attribute_changes
        )


def load_type_version(
    conn: sqlite3.Connection,
    fqn: str,
    commit_sha: str,
    repository: str | None = None,
) -> CodeType | None:
    """Shape of *fqn* recorded at *commit_sha* (full SHA or unique prefix)."""
    sql = (
        "SELECT body FROM code_type_versions "
        "WHERE fqn = ? AND (commit_sha = ? OR commit_sha LIKE ?)"
    )
    params: list[str] = [fqn, commit_sha, f"{commit_sha}%"]
    if repository is not None:
        sql += " AND repository = ?"
        params.append(repository)
    rows = conn.execute(sql + " ORDER BY recorded_at DESC", params).fetchall()
    if not rows:
        return None
    return CodeType.from_dict(json.loads(rows[0]["body"]))


def _requirement(f: FieldInfo) -> str:
    return "required" if f.required or not f.nullable else "optional"


def _tags(f: FieldInfo) -> str:
    return ", ".join(f"{t.name}={t.value}" for t in sorted(f.tags, key=lambda t: t.name))


def _field_changes(old: FieldInfo, new: FieldInfo) -> list[FieldChange]:
    changes: list[FieldChange] = []
    if old.declared_type != new.declared_type:
        changes.append(FieldChange(new.name, "type", old.declared_type, new.declared_type))
    if old.nullable != new.nullable:
        changes.append(
            FieldChange(
                new.name,
                "nullability",
                "nullable" if old.nullable else "non-nullable",
                "nullable" if new.nullable else "non-nullable",
            )
        )
    if _requirement(old) != _requirement(new):
        changes.append(FieldChange(new.name, "requirement", _requirement(old), _requirement(new)))
    if _tags(old) != _tags(new):
        changes.append(FieldChange(new.name, "tags", _tags(old), _tags(new)))
    return changes


def _attribute_changes(old: CodeType, new: CodeType) -> list[AttributeChange]:
    before = {t.name: t.value for t in old.tags}
    after = {t.name: t.value for t in new.tags}
    changes: list[AttributeChange] = []
    for name in sorted(before.keys() | after.keys()):
        if name not in after:
            changes.append(AttributeChange(name, "removed", old=before[name]))
        elif name not in before:
            changes.append(AttributeChange(name, "added", new=after[name]))
        elif before[name] != after[name]:
            changes.append(AttributeChange(name, "changed", before[name], after[name]))

    for value in sorted(set(old.discriminators) - set(new.discriminators)):
        changes.append(AttributeChange("discriminator", "removed", old=value))
    for value in sorted(set(new.discriminators) - set(old.discriminators)):
        changes.append(AttributeChange("discriminator", "added", new=value))
    return changes


def compare_types(old: CodeType, new: CodeType, from_sha: str, to_sha: str) -> TypeDiff:
    """Diff two shapes of the same type; fields are matched by name."""
    old_fields = {f.name: f for f in old.fields}
    new_fields = {f.name: f for f in new.fields}
    modified: list[FieldChange] = []
    for f in new.fields:
        if f.name in old_fields:
            modified.extend(_field_changes(old_fields[f.name], f))
    return TypeDiff(
        fqn=new.fqn,
        from_sha=from_sha,
        to_sha=to_sha,
        added_fields=tuple(f.name for f in new.fields if f.name not in old_fields),
        removed_fields=tuple(f.name for f in old.fields if f.name not in new_fields),
        modified_fields=tuple(modified),
        attribute_changes=tuple(_attribute_changes(old, new)),
    )


def diff_type(
    conn: sqlite3.Connection,
    fqn: str,
    from_sha: str,
    to_sha: str,
    repository: str | None = None,
) -> TypeDiff | None:
    """Diff *fqn* between two commits; ``None`` if either version is unknown."""
    if from_sha == to_sha:
        if load_type_version(conn, fqn, from_sha, repository) is None:
            return None
        return TypeDiff(fqn, from_sha, to_sha)
    old = load_type_version(conn, fqn, from_sha, repository)
    new = load_type_version(conn, fqn, to_sha, repository)
    if old is None or new is None:
        return None
    return compare_types(old, new, from_sha, to_sha)


def render_type_diff(diff: TypeDiff, console: Console) -> None:
    """Render a TypeDiff with ``+`` / ``-`` / ``~`` markers."""
    if not diff.has_changes:
        console.print(f"No changes to {diff.fqn} between {diff.from_sha} and {diff.to_sha}.")
        return

    console.print(f"[bold]{diff.fqn}[/bold] ({diff.from_sha} -> {diff.to_sha})")
    for name in diff.added_fields:
        console.print(f"  [green]+ {name}[/green]")
    for name in diff.removed_fields:
        console.print(f"  [red]- {name}[/red]")
    for change in diff.modified_fields:
        console.print(
            f"  [yellow]~ {change.field}[/yellow] {change.aspect}: {change.old} -> {change.new}"
        )
    for attr in diff.attribute_changes:
        console.print(
            f"  [cyan]@ {attr.name}[/cyan] {attr.change_type}: "
            f"{attr.old or '(none)'} -> {attr.new or '(none)'}"
        )
    console.print()
    console.print(
        f"{len(diff.added_fields)} added, {len(diff.removed_fields)} removed, "
        f"{len(diff.modified_fields)} modified, {len(diff.attribute_changes)} attribute changes"
    )


def type_diff_to_dict(diff: TypeDiff) -> dict[str, object]:
    return {
        "fqn": diff.fqn,
        "from_sha": diff.from_sha,
        "to_sha": diff.to_sha,
        "added_fields": list(diff.added_fields),
        "removed_fields": list(diff.removed_fields),
        "modified_fields": [
            {"field": c.field, "aspect": c.aspect, "old": c.old, "new": c.new}
            for c in diff.modified_fields
        ],
        "attribute_changes": [
            {"name": a.name, "change_type": a.change_type, "old": a.old, "new": a.new}
            for a in diff.attribute_changes
        ],
    }
