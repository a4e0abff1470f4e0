"""Tests for cataloger.analysis.csharp: tree-sitter C# front end."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

pytest.importorskip("tree_sitter_c_sharp")

from cataloger.analysis.csharp import (  # noqa: E402
    get_lang_config,
    parse_file,
    parse_source,
    supported_extensions,
)
from cataloger.analysis.syntax import Call, Lambda, Literal  # noqa: E402
from cataloger.errors import ExtractionError  # noqa: E402

if TYPE_CHECKING:
    from pathlib import Path

MODELS = b"""
using MongoDB.Bson;
using MongoDB.Bson.Serialization.Attributes;

namespace Shop.Models
{
    /// <summary>A registered customer.</summary>
    [BsonIgnoreExtraElements]
    public class User
    {
        [BsonId]
        public string Id { get; set; }

        [BsonElement("email")]
        public string Email { get; set; }

        public string? Nickname { get; set; }

        public static int Count;
    }

    public class Order : EntityBase
    {
        public string UserId { get; set; }
    }
}
"""

SERVICE = b"""
using MongoDB.Driver;

namespace Shop.Services;

public class OrderService
{
    private const string OrdersName = "orders";
    private readonly IMongoCollection<Order> _orders;

    public OrderService(IMongoDatabase database)
    {
        _orders = database.GetCollection<Order>(OrdersName);
    }

    public Task<List<Order>> ForUser(string userId)
    {
        return _orders.Find(o => o.UserId == userId).Limit(10).ToListAsync();
    }
}
"""


class TestLanguage:
    def test_csharp_is_supported(self) -> None:
        assert ".cs" in supported_extensions()
        assert get_lang_config(".cs") is not None

    def test_unknown_extension(self) -> None:
        assert get_lang_config(".java") is None
        with pytest.raises(ExtractionError, match="unsupported language"):
            parse_source("Main.java", b"class Main {}", ".java")


class TestDeclarations:
    def test_classes_and_namespace(self) -> None:
        source = parse_source("Models/User.cs", MODELS)
        names = {d.name: d for d in source.declarations}
        assert set(names) == {"User", "Order"}
        assert source.namespace == "Shop.Models"
        assert names["User"].fqn == "Shop.Models.User"
        assert names["User"].kind == "class"
        assert names["Order"].base_types == ("EntityBase",)

    def test_attributes_and_members(self) -> None:
        source = parse_source("Models/User.cs", MODELS)
        user = next(d for d in source.declarations if d.name == "User")
        assert user.has_attribute("Bson")
        assert "customer" in user.doc

        members = {m.name: m for m in user.members}
        assert set(members) == {"Id", "Email", "Nickname", "Count"}
        assert [a.short_name for a in members["Id"].attributes] == ["BsonId"]
        assert members["Email"].attributes[0].first_value == "email"
        assert members["Nickname"].nullable is True
        assert members["Nickname"].type_text == "string"
        assert members["Email"].nullable is False
        assert members["Count"].is_static is True

    def test_line_range(self) -> None:
        source = parse_source("Models/User.cs", MODELS)
        user = next(d for d in source.declarations if d.name == "User")
        assert 0 < user.line_start < user.line_end

    def test_file_scoped_namespace(self) -> None:
        source = parse_source("Services/OrderService.cs", SERVICE)
        (service,) = source.declarations
        assert service.fqn == "Shop.Services.OrderService"


class TestSymbolsAndCalls:
    def test_constants_and_symbol_types(self) -> None:
        source = parse_source("Services/OrderService.cs", SERVICE)
        constant = source.constants["OrdersName"]
        assert constant.is_const is True
        assert isinstance(constant.value, Literal)
        assert constant.value.value == "orders"
        assert source.symbol_types["_orders"] == "IMongoCollection<Order>"
        assert source.symbol_types["database"] == "IMongoDatabase"

    def test_field_assignment_is_bound(self) -> None:
        source = parse_source("Services/OrderService.cs", SERVICE)
        bound = source.bindings["_orders"]
        assert isinstance(bound, Call)
        assert bound.method == "GetCollection"
        assert bound.type_args == ("Order",)

    def test_locals_are_bound_per_method(self) -> None:
        source = parse_source(
            "Services/Lookups.cs",
            b"""
            class Lookups {
                private IMongoDatabase _db;
                private IMongoCollection<User> _users;

                User LoadUser() {
                    var collection = _db.GetCollection<User>("users");
                    return collection.Find(u => u.Active).FirstOrDefault();
                }

                Order LoadOrder() {
                    IMongoCollection<Order> collection;
                    collection = _db.GetCollection<Order>("orders");
                    _users = _db.GetCollection<User>("people");
                    return collection.Find(o => o.Open).FirstOrDefault();
                }
            }
            """,
        )
        user_scope = source.local_bindings[("Lookups", "LoadUser")]
        order_scope = source.local_bindings[("Lookups", "LoadOrder")]
        assert user_scope["collection"].args[0].value == "users"  # type: ignore[attr-defined]
        assert order_scope["collection"].args[0].value == "orders"  # type: ignore[attr-defined]
        assert "collection" not in source.bindings
        assert "_users" in source.bindings
        scoped = source.scoped("Lookups", "LoadOrder")
        assert scoped.bindings["collection"] is order_scope["collection"]

    def test_call_sites_with_chain(self) -> None:
        source = parse_source("Services/OrderService.cs", SERVICE)
        sites = {s.call.method: s for s in source.calls}
        assert {"GetCollection", "Find", "Limit", "ToListAsync"} <= set(sites)

        find = sites["Find"]
        assert find.container == "OrderService"
        assert find.method_name == "ForUser"
        assert [c.method for c in find.chain] == ["Limit", "ToListAsync"]
        (predicate,) = find.call.args
        assert isinstance(predicate, Lambda)
        assert predicate.params == ("o",)

    def test_bson_document_creation(self) -> None:
        source = parse_source(
            "Jobs/Cleanup.cs",
            b"""
            class Cleanup {
                void Run(IMongoCollection<BsonDocument> users) {
                    users.DeleteMany(new BsonDocument("status", "inactive"));
                }
            }
            """,
        )
        (site,) = [s for s in source.calls if s.call.method == "DeleteMany"]
        (document,) = site.call.args
        status = document.get("status")  # type: ignore[union-attr]
        assert isinstance(status, Literal)
        assert status.value == "inactive"


class TestParseFile:
    def test_reads_from_disk(self, tmp_path: Path) -> None:
        path = tmp_path / "User.cs"
        path.write_bytes(MODELS)
        source = parse_file(path, "User.cs")
        assert source.path == "User.cs"
        assert len(source.declarations) == 2

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ExtractionError, match="cannot read file"):
            parse_file(tmp_path / "Gone.cs", "Gone.cs")
