"""Tests for cataloger.knowledge.drift: declared vs observed schema."""

from __future__ import annotations

import dataclasses
from typing import TYPE_CHECKING

import pytest

from cataloger.knowledge.drift import compute_drift, expected_types
from cataloger.models import FieldInfo, SerializationTag

if TYPE_CHECKING:
    from cataloger.knowledge.store import RepositorySnapshot
    from cataloger.models import CodeType, ObservedSchema


def _user_and_users(snapshot: RepositorySnapshot) -> tuple[CodeType, ObservedSchema]:
    user = next(t for t in snapshot.types if t.name == "User")
    return user, snapshot.schemas[0]


class TestExpectedTypes:
    @pytest.mark.parametrize(
        ("declared", "expected"),
        [
            ("string", {"string"}),
            ("int", {"integer"}),
            ("decimal", {"number", "integer"}),
            ("DateTime", {"datetime"}),
            ("List<string>", {"array"}),
            ("string[]", {"array"}),
            ("ObjectId", {"objectid"}),
            ("Dictionary<string, object>", {"object"}),
        ],
    )
    def test_declared_types(self, declared: str, expected: set[str]) -> None:
        assert expected_types(FieldInfo("F", declared)) == expected

    def test_nullable_allows_null(self) -> None:
        assert expected_types(FieldInfo("F", "int", nullable=True)) == {"integer", "null"}

    def test_object_id_representation(self) -> None:
        f = FieldInfo("Id", "string", tags=(SerializationTag("BsonRepresentation", "ObjectId"),))
        assert expected_types(f) == {"objectid", "string"}


class TestComputeDrift:
    def test_fields_matched_on_element_names(self, snapshot: RepositorySnapshot) -> None:
        user, users = _user_and_users(snapshot)
        drift = compute_drift(user, users)

        assert drift.type_fqn == "Shop.Models.User"
        assert drift.collection_name == "users"
        assert drift.declared_only == ("Nickname",)
        assert drift.observed_only == ("lastLogin",)
        assert drift.type_mismatches == ()
        assert drift.requirement_mismatches == ()
        assert drift.has_drift

    def test_type_mismatch(self, snapshot: RepositorySnapshot) -> None:
        user, users = _user_and_users(snapshot)
        observed = dataclasses.replace(
            users, field_types={**users.field_types, "email": {"string": 0.5, "integer": 0.5}}
        )
        (mismatch,) = compute_drift(user, observed).type_mismatches
        assert mismatch.field == "email"
        assert mismatch.expected == ("string",)
        assert mismatch.observed == ("integer", "string")

    def test_requirement_mismatch(self, snapshot: RepositorySnapshot) -> None:
        user, users = _user_and_users(snapshot)
        observed = dataclasses.replace(users, required_fields=("_id",))
        drift = compute_drift(user, observed)
        assert drift.requirement_mismatches == ("email: declared required, optional in sample",)

    def test_nested_paths_are_ignored(self, snapshot: RepositorySnapshot) -> None:
        user, users = _user_and_users(snapshot)
        observed = dataclasses.replace(
            users, field_types={**users.field_types, "address.city": {"string": 1.0}}
        )
        assert "address.city" not in compute_drift(user, observed).observed_only

    def test_to_dict(self, snapshot: RepositorySnapshot) -> None:
        user, users = _user_and_users(snapshot)
        data = compute_drift(user, users).to_dict()
        assert data["declared_only"] == ["Nickname"]
        assert data["type_mismatches"] == []
