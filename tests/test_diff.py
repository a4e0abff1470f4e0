"""Tests for cataloger.knowledge.diff: type shapes across commits."""

from __future__ import annotations

import dataclasses
from typing import TYPE_CHECKING

from rich.console import Console

from cataloger.knowledge.diff import (
    compare_types,
    diff_type,
    load_type_version,
    render_type_diff,
    type_diff_to_dict,
)
from cataloger.knowledge.store import write_repository
from cataloger.models import FieldInfo, ScanContext, SerializationTag

if TYPE_CHECKING:
    import sqlite3

    from cataloger.knowledge.store import RepositorySnapshot
    from cataloger.models import CodeType

USER = "Shop.Models.User"


def _user(snapshot: RepositorySnapshot) -> CodeType:
    return next(t for t in snapshot.types if t.fqn == USER)


def _evolved(user: CodeType) -> CodeType:
    """Email renamed in storage, Nickname dropped, Age added, Id made nullable."""
    fields = (
        FieldInfo("Id", "string", nullable=True, tags=(SerializationTag("BsonId"),)),
        FieldInfo("Email", "string", tags=(SerializationTag("BsonElement", "mail"),)),
        FieldInfo("Age", "int"),
    )
    return dataclasses.replace(
        user, fields=fields, tags=(), discriminators=("customer",)
    )


class TestCompareTypes:
    def test_identical(self, snapshot: RepositorySnapshot) -> None:
        user = _user(snapshot)
        diff = compare_types(user, user, "a", "b")
        assert not diff.has_changes

    def test_fields_and_attributes(self, snapshot: RepositorySnapshot) -> None:
        user = _user(snapshot)
        diff = compare_types(user, _evolved(user), "a", "b")

        assert diff.added_fields == ("Age",)
        assert diff.removed_fields == ("Nickname",)
        aspects = {(c.field, c.aspect) for c in diff.modified_fields}
        assert aspects == {("Id", "nullability"), ("Id", "requirement"), ("Email", "tags")}
        changes = {(a.name, a.change_type) for a in diff.attribute_changes}
        assert changes == {("BsonIgnoreExtraElements", "removed"), ("discriminator", "added")}

    def test_type_change(self, snapshot: RepositorySnapshot) -> None:
        user = _user(snapshot)
        retyped = dataclasses.replace(
            user, fields=(FieldInfo("Id", "ObjectId", tags=(SerializationTag("BsonId"),)),)
        )
        diff = compare_types(user, retyped, "a", "b")
        (change,) = [c for c in diff.modified_fields if c.aspect == "type"]
        assert (change.old, change.new) == ("string", "ObjectId")


class TestDiffType:
    def test_between_recorded_commits(
        self, seeded: sqlite3.Connection, snapshot: RepositorySnapshot
    ) -> None:
        later = ScanContext("shop", "def456", "2024-02-01T00:00:00+00:00")
        evolved = _evolved(_user(snapshot))
        write_repository(
            seeded,
            dataclasses.replace(
                snapshot,
                context=later,
                processed_files=set(),
                new_types=[],
                new_operations=[],
                types=[evolved],
                schemas=[],
            ),
        )

        diff = diff_type(seeded, USER, "abc123", "def456")
        assert diff is not None
        assert diff.added_fields == ("Age",)
        assert type_diff_to_dict(diff)["removed_fields"] == ["Nickname"]

    def test_prefix_and_same_commit(self, seeded: sqlite3.Connection) -> None:
        assert load_type_version(seeded, USER, "abc") is not None
        diff = diff_type(seeded, USER, "abc123", "abc123")
        assert diff is not None
        assert not diff.has_changes

    def test_unknown_version(self, seeded: sqlite3.Connection) -> None:
        assert diff_type(seeded, USER, "abc123", "fff999") is None
        assert diff_type(seeded, "Shop.Models.Missing", "abc123", "abc123") is None
        assert load_type_version(seeded, USER, "abc123", repository="other") is None


class TestRender:
    def test_markers(self, snapshot: RepositorySnapshot) -> None:
        user = _user(snapshot)
        console = Console(record=True, width=120)
        render_type_diff(compare_types(user, _evolved(user), "a", "b"), console)
        text = console.export_text()
        assert "+ Age" in text
        assert "- Nickname" in text
        assert "~ Email" in text
        assert "1 added, 1 removed" in text

    def test_no_changes(self, snapshot: RepositorySnapshot) -> None:
        user = _user(snapshot)
        console = Console(record=True, width=120)
        render_type_diff(compare_types(user, user, "a", "b"), console)
        assert "No changes" in console.export_text()
