"""Source file discovery and content hashing for change detection."""

from __future__ import annotations

import hashlib
import os
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from cataloger.infrastructure.config import ScanningConfig


def compute_file_hash(path: Path) -> str:
    """Compute SHA-256 hash of a file."""
    return hashlib.sha256(path.read_bytes()).hexdigest()


def scan_source_files(repo_path: Path, scanning: ScanningConfig) -> dict[str, str]:
    """Return ``{relative_posix_path: sha256}`` for every analyzable file.

    Excluded directories are pruned by name at any depth; files over the size
    cap or with another extension are ignored.
    """
    excluded = set(scanning.excluded_directories)
    extensions = set(scanning.included_extensions)
    max_bytes = scanning.max_file_size_mb * 1024 * 1024
    files: dict[str, str] = {}

    for dirpath, dirnames, filenames in os.walk(repo_path):
        dirnames[:] = sorted(d for d in dirnames if d not in excluded)
        for filename in sorted(filenames):
            path = Path(dirpath) / filename
            if path.suffix not in extensions:
                continue
            try:
                if path.stat().st_size > max_bytes:
                    continue
            except OSError:
                continue
            rel = path.relative_to(repo_path).as_posix()
            files[rel] = compute_file_hash(path)
    return files


def diff_files(
    current: dict[str, str],
    stored: dict[str, str],
) -> tuple[set[str], set[str], set[str]]:
    """Compare current vs stored files. Returns ``(changed, added, deleted)``."""
    changed: set[str] = set()
    added: set[str] = set()

    for path, hash_ in current.items():
        if path not in stored:
            added.add(path)
        elif stored[path] != hash_:
            changed.add(path)

    deleted = set(stored.keys() - current.keys())
    return changed, added, deleted
