"""Tests for cataloger.infrastructure.files: discovery and change detection."""

from __future__ import annotations

import hashlib
from typing import TYPE_CHECKING

from cataloger.infrastructure.config import ScanningConfig
from cataloger.infrastructure.files import compute_file_hash, diff_files, scan_source_files

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path


class TestScanSourceFiles:
    def test_only_source_files_outside_excluded_dirs(
        self, make_repo: Callable[[str, dict[str, str]], Path]
    ) -> None:
        repo = make_repo(
            "shop",
            {
                "Models/User.cs": "class User {}",
                "Services/UserService.cs": "class UserService {}",
                "README.md": "# shop",
                "bin/Debug/Generated.cs": "class Generated {}",
                "src/obj/Temp.cs": "class Temp {}",
            },
        )
        files = scan_source_files(repo, ScanningConfig())
        assert sorted(files) == ["Models/User.cs", "Services/UserService.cs"]
        expected = hashlib.sha256(b"class User {}").hexdigest()
        assert files["Models/User.cs"] == expected

    def test_size_cap(self, make_repo: Callable[[str, dict[str, str]], Path]) -> None:
        repo = make_repo("shop", {"Big.cs": "x" * 2048, "Small.cs": "x"})
        config = ScanningConfig(max_file_size_mb=0)
        assert scan_source_files(repo, config) == {}
        assert "Big.cs" in scan_source_files(repo, ScanningConfig())

    def test_custom_extensions(self, make_repo: Callable[[str, dict[str, str]], Path]) -> None:
        repo = make_repo("shop", {"a.cs": "", "b.csx": ""})
        files = scan_source_files(repo, ScanningConfig(included_extensions=(".csx",)))
        assert list(files) == ["b.csx"]


class TestDiffFiles:
    def test_changed_added_deleted(self) -> None:
        stored = {"a.cs": "1", "b.cs": "2", "c.cs": "3"}
        current = {"a.cs": "1", "b.cs": "changed", "d.cs": "4"}
        changed, added, deleted = diff_files(current, stored)
        assert changed == {"b.cs"}
        assert added == {"d.cs"}
        assert deleted == {"c.cs"}

    def test_hash_is_content_based(self, tmp_path: Path) -> None:
        first = tmp_path / "a.cs"
        second = tmp_path / "b.cs"
        first.write_text("same")
        second.write_text("same")
        assert compute_file_hash(first) == compute_file_hash(second)
