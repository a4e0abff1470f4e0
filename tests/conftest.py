"""Shared test fixtures for cataloger."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from cataloger.infrastructure.db import create_schema, open_db
from cataloger.knowledge.store import RepositorySnapshot, write_repository
from cataloger.models import (
    Cardinality,
    CodeType,
    CollectionMapping,
    DataRelationship,
    Evidence,
    EvidenceKind,
    FieldInfo,
    FilterTerm,
    ObservedSchema,
    OperationKind,
    QueryOperation,
    RelationshipKind,
    ResolutionMethod,
    ScanContext,
    SerializationTag,
    SourceLocation,
    collection_id,
    make_id,
)

if TYPE_CHECKING:
    import sqlite3
    from collections.abc import Callable, Iterator
    from pathlib import Path


@pytest.fixture()
def conn(tmp_path: Path) -> Iterator[sqlite3.Connection]:
    """Create a knowledge base with schema."""
    c = open_db(tmp_path / "kb" / "cataloger.db")
    create_schema(c)
    yield c
    c.close()


@pytest.fixture()
def context() -> ScanContext:
    return ScanContext("shop", "abc123", "2024-01-01T00:00:00+00:00")


@pytest.fixture()
def make_repo(tmp_path: Path) -> Callable[[str, dict[str, str]], Path]:
    """Write ``{relative_path: text}`` files under a named repository directory."""

    def _make(name: str, files: dict[str, str]) -> Path:
        root = tmp_path / name
        for rel, text in files.items():
            path = root / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(text, encoding="utf-8")
        root.mkdir(parents=True, exist_ok=True)
        return root

    return _make


def _type(context: ScanContext, name: str, path: str, fields: tuple[FieldInfo, ...]) -> CodeType:
    fqn = f"Shop.Models.{name}"
    return CodeType(
        id=make_id("type", context.repository, fqn),
        fqn=fqn,
        name=name,
        namespace="Shop.Models",
        fields=fields,
        provenance=context.provenance(path, fqn, 5, 20),
        tags=(SerializationTag("BsonIgnoreExtraElements"),),
    )


@pytest.fixture()
def snapshot(context: ScanContext) -> RepositorySnapshot:
    """Hand-built analysis result: User and Order, their collections and one query."""
    user = _type(
        context,
        "User",
        "Models/User.cs",
        (
            FieldInfo("Id", "string", tags=(SerializationTag("BsonId"),)),
            FieldInfo("Email", "string", tags=(SerializationTag("BsonElement", "email"),)),
            FieldInfo("Nickname", "string", nullable=True),
        ),
    )
    order = _type(
        context,
        "Order",
        "Models/Order.cs",
        (
            FieldInfo("Id", "string", tags=(SerializationTag("BsonId"),)),
            FieldInfo("UserId", "string"),
            FieldInfo("Total", "decimal"),
        ),
    )
    mappings = [
        CollectionMapping(
            id=make_id("mapping", t.id, name),
            type_id=t.id,
            type_fqn=t.fqn,
            collection_name=name,
            method=ResolutionMethod.LITERAL,
            confidence=1.0,
            is_primary=True,
            provenance=context.provenance("Services/OrderService.cs", "OrderService", 12),
        )
        for t, name in ((user, "users"), (order, "orders"))
    ]
    location = SourceLocation("Services/OrderService.cs", 18, 20, "OrderService", "ForUser")
    operation = QueryOperation(
        id=make_id("op", context.repository, location.file_path, 18, 20),
        collection_id=collection_id("orders"),
        collection_name="orders",
        kind=OperationKind.FIND,
        location=location,
        provenance=context.provenance(location.file_path, "OrderService.ForUser", 18),
        filters=(FilterTerm("UserId", "eq"),),
        limit=10,
        method_name="Find",
    )
    relationship = DataRelationship(
        id=make_id("rel", order.id, user.id, "REFERS_TO", "UserId"),
        source_type_id=order.id,
        target_type_id=user.id,
        source_fqn=order.fqn,
        target_fqn=user.fqn,
        kind=RelationshipKind.REFERS_TO,
        confidence=0.9,
        field_path="UserId",
        cardinality=Cardinality.MANY_TO_ONE,
        provenance=context.provenance(location.file_path, "OrderService.ForUser", 18),
        evidence=(Evidence(EvidenceKind.FILTER, "equality filter on UserId", 0.9, location),),
    )
    schema = ObservedSchema(
        id=make_id("schema", "shop", "users"),
        collection_id=collection_id("users"),
        collection_name="users",
        field_types={
            "_id": {"string": 1.0},
            "email": {"string": 1.0},
            "lastLogin": {"datetime": 0.5},
        },
        required_fields=("_id", "email"),
        sample_size=2,
        pii_redacted=True,
        sampled_at=context.timestamp,
        provenance=context.provenance("db:shop", "users", 0),
    )
    files = {"Models/User.cs", "Models/Order.cs", "Services/OrderService.cs"}
    return RepositorySnapshot(
        name=context.repository,
        path="/repos/shop",
        context=context,
        processed_files=files,
        file_hashes={f: f"hash-{f}" for f in files},
        new_types=[user, order],
        new_operations=[operation],
        types=[user, order],
        operations=[operation],
        mappings=mappings,
        relationships=[relationship],
        schemas=[schema],
    )


@pytest.fixture()
def seeded(conn: sqlite3.Connection, snapshot: RepositorySnapshot) -> sqlite3.Connection:
    """Knowledge base holding the ``snapshot`` fixture."""
    write_repository(conn, snapshot)
    return conn
