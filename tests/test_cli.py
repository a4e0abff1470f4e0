"""Tests for the cataloger CLI."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

import pytest
from click.testing import CliRunner

from cataloger import __version__
from cataloger.cli import main

if TYPE_CHECKING:
    import sqlite3
    from collections.abc import Callable
    from pathlib import Path

MODEL = """\
using MongoDB.Bson.Serialization.Attributes;

namespace Shop.Models
{
    [BsonIgnoreExtraElements]
    public class User
    {
        [BsonId]
        public string Id { get; set; }

        public string Email { get; set; }
    }
}
"""


@pytest.fixture()
def kb(seeded: sqlite3.Connection, tmp_path: Path) -> Path:
    """Path of the seeded knowledge base."""
    return tmp_path / "kb" / "cataloger.db"


def _invoke(*args: str) -> tuple[int, str]:
    result = CliRunner().invoke(main, ["-q", *args])
    return result.exit_code, result.output


class TestMain:
    def test_version(self) -> None:
        result = CliRunner().invoke(main, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_help_lists_commands(self) -> None:
        result = CliRunner().invoke(main, ["--help"])
        assert result.exit_code == 0
        for command in ("scan", "search", "type", "diff", "health", "drift"):
            assert command in result.output


class TestScan:
    def test_csv_output_is_rejected(self, tmp_path: Path) -> None:
        code, output = _invoke("scan", str(tmp_path), "--output-format", "csv")
        assert code == 1
        assert "csv" in output
        assert "not implemented" in output

    def test_unknown_scan_type(self, tmp_path: Path) -> None:
        code, _ = _invoke("scan", str(tmp_path), "--scan-type", "partial")
        assert code == 2

    def test_summary_written_to_file(
        self, tmp_path: Path, make_repo: Callable[[str, dict[str, str]], Path]
    ) -> None:
        pytest.importorskip("tree_sitter_c_sharp")
        repo = make_repo("shop", {"Models/User.cs": MODEL})
        kb_path = tmp_path / "out" / "kb.db"
        summary = tmp_path / "summary.json"

        code, output = _invoke(
            "scan", str(repo), "--kb", str(kb_path), "--output-file", str(summary)
        )

        assert code == 0, output
        data = json.loads(summary.read_text(encoding="utf-8"))
        assert data["status"] == "completed"
        assert data["scan_type"] == "full"
        (shop,) = data["repositories"]
        assert shop["repository"] == "shop"
        assert shop["types_discovered"] == 1
        assert kb_path.exists()

    def test_yaml_summary(
        self, tmp_path: Path, make_repo: Callable[[str, dict[str, str]], Path]
    ) -> None:
        pytest.importorskip("tree_sitter_c_sharp")
        import yaml

        repo = make_repo("shop", {"Models/User.cs": MODEL})
        summary = tmp_path / "summary.yml"
        code, output = _invoke(
            "scan",
            str(repo),
            "--kb",
            str(tmp_path / "kb.db"),
            "--output-format",
            "yaml",
            "--output-file",
            str(summary),
        )
        assert code == 0, output
        data = yaml.safe_load(summary.read_text(encoding="utf-8"))
        assert data["repositories"][0]["status"] == "success"


class TestReadCommands:
    def test_missing_knowledge_base(self, tmp_path: Path) -> None:
        code, output = _invoke("health", "--kb", str(tmp_path / "none.db"))
        assert code == 1
        assert "knowledge base not found" in output

    def test_health(self, kb: Path) -> None:
        code, output = _invoke("health", "--kb", str(kb))
        assert code == 0, output
        assert "Healthy" in output
        assert "Types:         2" in output

    def test_health_json(self, kb: Path) -> None:
        code, output = _invoke("health", "--json", "--kb", str(kb))
        assert code == 0, output
        assert json.loads(output)["status"] == "Healthy"

    def test_search(self, kb: Path) -> None:
        code, output = _invoke("search", "Nickname", "--json", "--kb", str(kb))
        assert code == 0, output
        (hit,) = json.loads(output)
        assert hit["title"] == "Shop.Models.User"

    def test_search_without_results(self, kb: Path) -> None:
        code, output = _invoke("search", "invoice", "--kb", str(kb))
        assert code == 0
        assert "No results found." in output

    def test_type(self, kb: Path) -> None:
        code, output = _invoke("type", "Order", "--json", "--kb", str(kb))
        assert code == 0, output
        info = json.loads(output)
        assert info["type"]["fqn"] == "Shop.Models.Order"
        assert info["mappings"][0]["collection_name"] == "orders"

    def test_type_table(self, kb: Path) -> None:
        code, output = _invoke("type", "User", "--kb", str(kb))
        assert code == 0, output
        assert "Shop.Models.User" in output
        assert "collection users" in output

    def test_unknown_type(self, kb: Path) -> None:
        code, output = _invoke("type", "Invoice", "--kb", str(kb))
        assert code == 1
        assert "type not found" in output

    def test_diff_same_commit(self, kb: Path) -> None:
        code, output = _invoke(
            "diff", "Shop.Models.User", "--from", "abc123", "--to", "abc123", "--kb", str(kb)
        )
        assert code == 0, output
        assert "No changes" in output

    def test_diff_unknown_commit(self, kb: Path) -> None:
        code, output = _invoke(
            "diff", "Shop.Models.User", "--from", "abc123", "--to", "fff", "--kb", str(kb)
        )
        assert code == 1
        assert "no recorded version" in output

    def test_drift(self, kb: Path) -> None:
        code, output = _invoke("drift", "users", "--json", "--kb", str(kb))
        assert code == 0, output
        assert json.loads(output)["observed_only"] == ["lastLogin"]

    def test_drift_text(self, kb: Path) -> None:
        code, output = _invoke("drift", "users", "--kb", str(kb))
        assert code == 0, output
        assert "+ lastLogin (observed, not declared)" in output
        assert "- Nickname (declared, never observed)" in output

    def test_drift_needs_sample(self, kb: Path) -> None:
        code, output = _invoke("drift", "orders", "--kb", str(kb))
        assert code == 1
        assert "has not been sampled" in output
