"""Tests for cataloger.sampling.sampler: driven by an in-memory client."""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Any

import pytest
from pymongo.errors import (
    ConfigurationError,
    ConnectionFailure,
    OperationFailure,
    ServerSelectionTimeoutError,
)

from cataloger.errors import SamplingError, SamplingTimeoutError
from cataloger.infrastructure.config import SamplingConfig
from cataloger.sampling.sampler import MongoSampler

if TYPE_CHECKING:
    from cataloger.models import ScanContext


class FakeCollection:
    def __init__(self, documents: list[dict[str, Any]], error: Exception | None = None) -> None:
        self.documents = documents
        self.error = error
        self.pipelines: list[list[dict[str, Any]]] = []

    def aggregate(self, pipeline: list[dict[str, Any]], **kwargs: Any) -> list[dict[str, Any]]:
        self.pipelines.append(pipeline)
        if self.error is not None:
            raise self.error
        size = pipeline[0]["$sample"]["size"]
        return self.documents[:size]


class FakeDatabase:
    def __init__(
        self, collections: dict[str, FakeCollection], list_error: Exception | None = None
    ) -> None:
        self.name = "shop"
        self.collections = collections
        self.list_error = list_error

    def __getitem__(self, name: str) -> FakeCollection:
        return self.collections[name]

    def list_collection_names(self) -> list[str]:
        if self.list_error is not None:
            raise self.list_error
        return list(self.collections)


class FakeClient:
    def __init__(self, database: FakeDatabase, default_error: Exception | None = None) -> None:
        self.database = database
        self.default_error = default_error
        self.closed = False

    def get_database(self, name: str) -> FakeDatabase:
        return self.database

    def get_default_database(self) -> FakeDatabase:
        if self.default_error is not None:
            raise self.default_error
        return self.database

    def close(self) -> None:
        self.closed = True


def _users(count: int) -> list[dict[str, Any]]:
    return [{"_id": i, "status": "active" if i % 2 else "inactive"} for i in range(count)]


def _sampler(
    client: FakeClient, **overrides: Any
) -> tuple[MongoSampler, list[tuple[Any, dict[str, Any]]]]:
    calls: list[tuple[Any, dict[str, Any]]] = []

    def factory(uri: Any, **kwargs: Any) -> FakeClient:
        calls.append((uri, kwargs))
        return client

    settings: dict[str, Any] = {
        "enabled": True,
        "connection_string": "mongodb://localhost:27017/shop",
        "connection_timeout_ms": 1500,
    }
    settings.update(overrides)
    return MongoSampler(SamplingConfig(**settings), client_factory=factory), calls


class TestActivation:
    def test_disabled_sampler_never_connects(self, context: ScanContext) -> None:
        calls: list[Any] = []
        sampler = MongoSampler(SamplingConfig(), client_factory=lambda *a, **k: calls.append(a))
        assert sampler.active is False
        assert sampler.sample(["users"], context) == []
        assert calls == []

    def test_enabled_without_connection_string_is_inactive(self) -> None:
        assert MongoSampler(SamplingConfig(enabled=True)).active is False


class TestSample:
    def test_named_collection(self, context: ScanContext) -> None:
        users = FakeCollection(_users(5))
        client = FakeClient(FakeDatabase({"users": users}))
        sampler, calls = _sampler(client, max_documents_per_collection=3)

        (schema,) = sampler.sample(["users"], context)

        assert schema.collection_name == "users"
        assert schema.sample_size == 3
        assert users.pipelines == [[{"$sample": {"size": 3}}]]
        assert schema.provenance.file_path == "db:shop"
        assert client.closed is True
        (_, kwargs) = calls[0]
        assert kwargs["serverSelectionTimeoutMS"] == 1500
        assert kwargs["socketTimeoutMS"] == 1500

    def test_all_collections_except_system(self, context: ScanContext) -> None:
        database = FakeDatabase(
            {
                "users": FakeCollection(_users(2)),
                "orders": FakeCollection([{"total": 1}]),
                "system.views": FakeCollection([]),
            }
        )
        sampler, _ = _sampler(FakeClient(database), database="shop")
        schemas = sampler.sample([], context)
        assert [s.collection_name for s in schemas] == ["orders", "users"]

    def test_max_collections(self, context: ScanContext) -> None:
        database = FakeDatabase({name: FakeCollection([]) for name in ("a", "b", "c")})
        sampler, _ = _sampler(FakeClient(database), max_collections=2)
        assert [s.collection_name for s in sampler.sample([], context)] == ["a", "b"]

    def test_unreadable_collection_is_skipped(
        self, context: ScanContext, caplog: pytest.LogCaptureFixture
    ) -> None:
        database = FakeDatabase(
            {
                "users": FakeCollection(_users(2)),
                "audit": FakeCollection([], error=OperationFailure("not authorized")),
            }
        )
        sampler, _ = _sampler(FakeClient(database))
        with caplog.at_level(logging.WARNING):
            schemas = sampler.sample(["users", "audit"], context)
        assert [s.collection_name for s in schemas] == ["users"]
        assert "audit" in caplog.text


class TestFailures:
    def test_server_selection_timeout(self, context: ScanContext) -> None:
        database = FakeDatabase({}, list_error=ServerSelectionTimeoutError("no servers"))
        client = FakeClient(database)
        sampler, _ = _sampler(client)
        with pytest.raises(SamplingTimeoutError, match="1500 ms"):
            sampler.sample([], context)
        assert client.closed is True

    def test_connection_failure(self, context: ScanContext) -> None:
        database = FakeDatabase({}, list_error=ConnectionFailure("refused"))
        sampler, _ = _sampler(FakeClient(database))
        with pytest.raises(SamplingError, match="cannot connect"):
            sampler.sample([], context)

    def test_missing_database_name(self, context: ScanContext) -> None:
        client = FakeClient(FakeDatabase({}), default_error=ConfigurationError("no default"))
        sampler, _ = _sampler(client, connection_string="mongodb://localhost:27017")
        with pytest.raises(SamplingError, match="no database configured"):
            sampler.sample(["users"], context)

    def test_cancellation(self, context: ScanContext) -> None:
        sampler, _ = _sampler(FakeClient(FakeDatabase({"users": FakeCollection(_users(1))})))
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(SamplingTimeoutError, match="cancelled"):
            sampler.sample(["users"], context, cancel)
