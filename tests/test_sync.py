"""Tests for cataloger.knowledge.sync: end-to-end synchronization runs."""

from __future__ import annotations

import json
import threading
from typing import TYPE_CHECKING, Any

import pytest

pytest.importorskip("tree_sitter_c_sharp")

from cataloger.errors import ConfigurationError, SynchronizationError  # noqa: E402
from cataloger.infrastructure.config import CatalogerConfig, SamplingConfig  # noqa: E402
from cataloger.infrastructure.db import get_meta  # noqa: E402
from cataloger.knowledge.sync import FAILED, SKIPPED, SUCCESS, Synchronizer  # noqa: E402
from cataloger.models import RunStatus  # noqa: E402
from cataloger.sampling.sampler import MongoSampler  # noqa: E402

if TYPE_CHECKING:
    import sqlite3
    from collections.abc import Callable
    from pathlib import Path

    MakeRepo = Callable[[str, dict[str, str]], Path]

MODELS = """\
using MongoDB.Bson.Serialization.Attributes;

namespace Shop.Models
{
    [BsonIgnoreExtraElements]
    public class User
    {
        [BsonId]
        public string Id { get; set; }

        [BsonElement("email")]
        public string Email { get; set; }
    }

    [BsonIgnoreExtraElements]
    public class Order
    {
        [BsonId]
        public string Id { get; set; }

        public string UserId { get; set; }

        public decimal Total { get; set; }
    }
}
"""

SERVICE = """\
using MongoDB.Driver;

namespace Shop.Services
{
    public class OrderService
    {
        private readonly IMongoCollection<Order> _orders;
        private readonly IMongoCollection<User> _users;

        public OrderService(IMongoDatabase database)
        {
            _orders = database.GetCollection<Order>("orders");
            _users = database.GetCollection<User>("users");
        }

        public Task<List<Order>> ForUser(string userId)
        {
            return _orders.Find(o => o.UserId == userId).Limit(10).ToListAsync();
        }
    }
}
"""

SHOP_FILES = {"Models/Entities.cs": MODELS, "Services/OrderService.cs": SERVICE}


def _count(conn: sqlite3.Connection, table: str) -> int:
    return int(conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0])  # noqa: S608


class TestFullRun:
    def test_discovers_types_collections_and_queries(
        self, conn: sqlite3.Connection, make_repo: MakeRepo
    ) -> None:
        repo = make_repo("shop", SHOP_FILES)
        result = Synchronizer(conn, CatalogerConfig()).run([repo])

        assert result.status is RunStatus.COMPLETED
        assert result.status_label == "completed"
        assert result.transitions == [
            RunStatus.STARTED,
            RunStatus.SCANNING,
            RunStatus.RECONCILING,
            RunStatus.COMPLETED,
        ]
        (shop,) = result.repositories
        assert shop.name == "shop"
        assert shop.status == SUCCESS
        assert shop.commit_sha == "uncommitted"
        assert shop.files_processed == 2
        assert shop.failed_files == []
        assert shop.queries_count == 1
        assert shop.relationships_count >= 1
        assert shop.entries_added > 0

        names = {row["name"] for row in conn.execute("SELECT name FROM code_types")}
        assert {"User", "Order"} <= names
        primary = {
            row["collection_name"]
            for row in conn.execute("SELECT collection_name FROM collection_mappings "
                                    "WHERE is_primary = 1")
        }
        assert {"users", "orders"} <= primary
        (op,) = conn.execute("SELECT collection_name, kind FROM query_operations").fetchall()
        assert op["collection_name"] == "orders"
        assert _count(conn, "file_index") == 2
        assert get_meta(conn, "last_scan_at") == result.started_at
        assert result.health is not None

    def test_second_run_is_idempotent(
        self, conn: sqlite3.Connection, make_repo: MakeRepo
    ) -> None:
        repo = make_repo("shop", SHOP_FILES)
        sync = Synchronizer(conn, CatalogerConfig())
        first = sync.run([repo])
        entries = _count(conn, "knowledge_base_entries")

        second = sync.run([repo])

        (shop,) = second.repositories
        assert shop.entries_added == 0
        assert shop.entries_updated == 0
        assert shop.entries_deactivated == 0
        assert _count(conn, "knowledge_base_entries") == entries
        assert shop.types_count == first.repositories[0].types_count

    def test_result_serializes(self, conn: sqlite3.Connection, make_repo: MakeRepo) -> None:
        repo = make_repo("shop", SHOP_FILES)
        payload = Synchronizer(conn).run([repo], "full").to_dict()
        text = json.dumps(payload)
        assert payload["status"] == "completed"
        assert payload["scan_type"] == "full"
        assert payload["repositories"][0]["queries_discovered"] == 1
        assert "shop" in text


class TestFailures:
    def test_missing_repository_is_partial_failure(
        self, conn: sqlite3.Connection, make_repo: MakeRepo, tmp_path: Path
    ) -> None:
        repo = make_repo("shop", SHOP_FILES)
        result = Synchronizer(conn).run([repo, tmp_path / "missing"])

        assert result.status is RunStatus.PARTIAL_FAILURE
        assert result.status_label == "partial"
        statuses = {r.name: r.status for r in result.repositories}
        assert statuses == {"shop": SUCCESS, "missing": FAILED}
        failed = next(r for r in result.repositories if r.status == FAILED)
        assert failed.error is not None
        assert "does not exist" in failed.error
        row = conn.execute(
            "SELECT last_status FROM repositories WHERE name = 'missing'"
        ).fetchone()
        assert row["last_status"] == "failed"

    def test_all_failed_raises(self, conn: sqlite3.Connection, tmp_path: Path) -> None:
        with pytest.raises(SynchronizationError, match="all repositories failed"):
            Synchronizer(conn).run([tmp_path / "a", tmp_path / "b"])

    def test_unparseable_file_is_skipped(
        self, conn: sqlite3.Connection, make_repo: MakeRepo
    ) -> None:
        repo = make_repo("shop", {**SHOP_FILES, "Broken.cs": "class {{{ ((("})
        result = Synchronizer(conn).run([repo])
        (shop,) = result.repositories
        assert shop.status == SUCCESS
        assert shop.queries_count == 1

    def test_cancel_before_commit(self, conn: sqlite3.Connection, make_repo: MakeRepo) -> None:
        repo = make_repo("shop", SHOP_FILES)
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(SynchronizationError, match="cancelled"):
            Synchronizer(conn).run([repo], cancel=cancel)
        assert _count(conn, "code_types") == 0

    @pytest.mark.parametrize("scan_type", ["partial", "FULL", ""])
    def test_invalid_scan_type(
        self, conn: sqlite3.Connection, make_repo: MakeRepo, scan_type: str
    ) -> None:
        repo = make_repo("shop", SHOP_FILES)
        with pytest.raises(ConfigurationError, match="invalid scan type"):
            Synchronizer(conn).run([repo], scan_type)

    def test_no_repositories(self, conn: sqlite3.Connection) -> None:
        with pytest.raises(ConfigurationError, match="no repositories"):
            Synchronizer(conn).run([])


class TestIncremental:
    def test_only_changed_files_are_analyzed(
        self, conn: sqlite3.Connection, make_repo: MakeRepo
    ) -> None:
        repo = make_repo("shop", SHOP_FILES)
        sync = Synchronizer(conn)
        full = sync.run([repo])

        service = repo / "Services" / "OrderService.cs"
        service.write_text(SERVICE + "\n// touched\n", encoding="utf-8")
        result = sync.run([repo], "incremental")

        (shop,) = result.repositories
        assert shop.files_processed == 1
        assert shop.types_count == full.repositories[0].types_count
        assert shop.queries_count == 1
        names = {row["name"] for row in conn.execute("SELECT name FROM code_types")}
        assert {"User", "Order"} <= names

    def test_deleted_file_deactivates_entries(
        self, conn: sqlite3.Connection, make_repo: MakeRepo
    ) -> None:
        repo = make_repo("shop", SHOP_FILES)
        sync = Synchronizer(conn)
        sync.run([repo])

        (repo / "Models" / "Entities.cs").unlink()
        result = sync.run([repo], "incremental")

        (shop,) = result.repositories
        assert shop.files_processed == 0
        assert shop.files_deleted == 1
        assert shop.entries_deactivated > 0
        names = {row["name"] for row in conn.execute("SELECT name FROM code_types")}
        assert "User" not in names
        assert _count(conn, "file_index") == 1

    def test_first_incremental_run_is_full(
        self, conn: sqlite3.Connection, make_repo: MakeRepo
    ) -> None:
        repo = make_repo("shop", SHOP_FILES)
        result = Synchronizer(conn).run([repo], "incremental")
        assert result.repositories[0].files_processed == 2


class TestIntegrity:
    def test_integrity_run_skips_analysis(
        self, conn: sqlite3.Connection, make_repo: MakeRepo
    ) -> None:
        repo = make_repo("shop", SHOP_FILES)
        result = Synchronizer(conn).run([repo], "integrity")
        assert [r.status for r in result.repositories] == [SKIPPED]
        assert result.status is RunStatus.COMPLETED
        assert RunStatus.SCANNING not in result.transitions
        assert result.health is not None
        assert _count(conn, "code_types") == 0
        assert _count(conn, "health_snapshots") == 1


class _Collection:
    def __init__(self, documents: list[dict[str, Any]]) -> None:
        self.documents = documents

    def aggregate(self, pipeline: list[dict[str, Any]], **kwargs: Any) -> list[dict[str, Any]]:
        return self.documents


class _Database:
    name = "shop"

    def __init__(self, collections: dict[str, list[dict[str, Any]]]) -> None:
        self.collections = collections

    def __getitem__(self, name: str) -> _Collection:
        return _Collection(self.collections.get(name, []))


class _Client:
    def __init__(self, database: _Database) -> None:
        self.database = database

    def get_default_database(self) -> _Database:
        return self.database

    def close(self) -> None:
        pass


class TestSampling:
    def test_observed_schemas_are_stored_redacted(
        self, conn: sqlite3.Connection, make_repo: MakeRepo
    ) -> None:
        repo = make_repo("shop", SHOP_FILES)
        database = _Database(
            {
                "users": [
                    {"_id": 1, "email": "ada@example.com"},
                    {"_id": 2, "email": "alan@example.com"},
                ],
                "orders": [{"_id": 10, "userId": 1, "total": 9.5}],
            }
        )
        config = SamplingConfig(enabled=True, connection_string="mongodb://localhost/shop")
        sampler = MongoSampler(config, client_factory=lambda *a, **k: _Client(database))

        result = Synchronizer(conn, CatalogerConfig(sampling=config), sampler=sampler).run(
            [repo]
        )

        (shop,) = result.repositories
        assert shop.schemas_observed >= 2
        assert shop.warnings == []
        row = conn.execute(
            "SELECT pii_redacted, body FROM observed_schemas WHERE collection_name = 'users'"
        ).fetchone()
        assert row["pii_redacted"] == 1
        assert "ada@example.com" not in row["body"]

    def test_same_collection_in_two_repositories(
        self, conn: sqlite3.Connection, make_repo: MakeRepo
    ) -> None:
        shop = make_repo("shop", SHOP_FILES)
        outlet = make_repo("outlet", SHOP_FILES)
        database = _Database({"users": [{"_id": 1, "status": "active"}]})
        config = SamplingConfig(enabled=True, connection_string="mongodb://localhost/shop")
        sampler = MongoSampler(config, client_factory=lambda *a, **k: _Client(database))

        Synchronizer(conn, CatalogerConfig(sampling=config), sampler=sampler).run([shop, outlet])

        rows = conn.execute(
            "SELECT repository FROM observed_schemas WHERE collection_name = 'users'"
        ).fetchall()
        assert sorted(r["repository"] for r in rows) == ["outlet", "shop"]

    def test_sampling_failure_is_a_warning(
        self, conn: sqlite3.Connection, make_repo: MakeRepo
    ) -> None:
        repo = make_repo("shop", SHOP_FILES)

        def refuse(*args: Any, **kwargs: Any) -> _Client:
            from pymongo.errors import ConfigurationError as MongoConfigurationError

            raise MongoConfigurationError("bad uri")

        config = SamplingConfig(enabled=True, connection_string="mongodb://bad")
        sampler = MongoSampler(config, client_factory=refuse)
        result = Synchronizer(conn, sampler=sampler).run([repo])

        (shop,) = result.repositories
        assert shop.status == SUCCESS
        assert shop.schemas_observed == 0
        assert any("sampling failed" in w for w in shop.warnings)
