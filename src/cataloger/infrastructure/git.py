"""Git helpers: current commit and files changed since a commit."""

from __future__ import annotations

import logging
import subprocess
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

UNCOMMITTED = "uncommitted"


def _git(repo_path: Path, *args: str) -> subprocess.CompletedProcess[str] | None:
    try:
        return subprocess.run(  # noqa: S603
            ["git", *args],  # noqa: S607
            cwd=repo_path,
            capture_output=True,
            text=True,
            timeout=30,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired):
        return None


def validate_git_ref(repo_path: Path, ref: str) -> bool:
    """Check if the git ref is valid using ``git rev-parse --verify``."""
    result = _git(repo_path, "rev-parse", "--verify", f"{ref}^{{commit}}")
    return result is not None and result.returncode == 0


def head_commit(repo_path: Path) -> str:
    """SHA of ``HEAD``, or ``"uncommitted"`` outside a git work tree."""
    result = _git(repo_path, "rev-parse", "HEAD")
    if result is None or result.returncode != 0:
        return UNCOMMITTED
    return result.stdout.strip() or UNCOMMITTED


def changed_files_since(repo_path: Path, since: str) -> set[str] | None:
    """Repository-relative paths changed since commit *since*.

    Includes committed and working-tree changes (renames count as a deletion
    plus an addition) and untracked files.  Returns ``None`` when *since* is
    not a valid commit, so callers can fall back to hash comparison.
    """
    if since == UNCOMMITTED or not validate_git_ref(repo_path, since):
        return None
    result = _git(repo_path, "diff", "--name-status", "--no-renames", "--relative", since)
    if result is None or result.returncode != 0:
        return None

    changed: set[str] = set()
    for line in result.stdout.splitlines():
        parts = line.split("\t")
        if len(parts) >= 2:
            changed.add(parts[-1].strip())

    untracked = _git(repo_path, "ls-files", "--others", "--exclude-standard")
    if untracked is not None and untracked.returncode == 0:
        changed.update(p.strip() for p in untracked.stdout.splitlines() if p.strip())
    logger.debug("%d files changed since %s", len(changed), since)
    return changed
