"""Tests for cataloger.infrastructure.git: commits and changed files."""

from __future__ import annotations

import shutil
import subprocess
from typing import TYPE_CHECKING

import pytest

from cataloger.infrastructure.git import (
    UNCOMMITTED,
    changed_files_since,
    head_commit,
    validate_git_ref,
)

if TYPE_CHECKING:
    from pathlib import Path

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def _run(repo: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", *args],  # noqa: S607
        cwd=str(repo),
        capture_output=True,
        text=True,
        check=True,
    )
    return result.stdout.strip()


def _commit(repo: Path, files: dict[str, str], message: str) -> str:
    for rel, text in files.items():
        path = repo / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
    _run(repo, "add", "-A")
    _run(repo, "commit", "-q", "-m", message)
    return _run(repo, "rev-parse", "HEAD")


@pytest.fixture()
def git_repo(tmp_path: Path) -> Path:
    """Create a real temporary git repository with one commit."""
    repo = tmp_path / "shop"
    repo.mkdir()
    _run(repo, "init", "-q")
    _run(repo, "config", "user.email", "test@example.com")
    _run(repo, "config", "user.name", "Test User")
    _commit(repo, {"Models/User.cs": "class User {}", "Models/Order.cs": "class Order {}"}, "init")
    return repo


class TestHeadCommit:
    def test_inside_repository(self, git_repo: Path) -> None:
        sha = head_commit(git_repo)
        assert len(sha) == 40
        assert validate_git_ref(git_repo, sha)

    def test_outside_repository(self, tmp_path: Path) -> None:
        plain = tmp_path / "plain"
        plain.mkdir()
        assert head_commit(plain) == UNCOMMITTED


class TestChangedFiles:
    def test_committed_and_untracked_changes(self, git_repo: Path) -> None:
        base = head_commit(git_repo)
        _commit(git_repo, {"Models/User.cs": "class User { int Age; }"}, "edit")
        (git_repo / "Models" / "Order.cs").unlink()
        (git_repo / "Models" / "Invoice.cs").write_text("class Invoice {}")

        changed = changed_files_since(git_repo, base)
        assert changed == {"Models/User.cs", "Models/Order.cs", "Models/Invoice.cs"}

    def test_paths_relative_to_subdirectory(self, git_repo: Path) -> None:
        base = head_commit(git_repo)
        _commit(git_repo, {"Models/User.cs": "class User { int Age; }"}, "edit")
        assert changed_files_since(git_repo / "Models", base) == {"User.cs"}

    def test_unknown_commit(self, git_repo: Path) -> None:
        assert changed_files_since(git_repo, "0" * 40) is None
        assert changed_files_since(git_repo, UNCOMMITTED) is None
        assert not validate_git_ref(git_repo, "not-a-ref")
