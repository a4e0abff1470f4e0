"""Knowledge domain: synchronization, persistence, diffs, drift and search."""

from cataloger.knowledge.diff import TypeDiff, compare_types, diff_type, render_type_diff
from cataloger.knowledge.drift import SchemaDrift, compute_drift
from cataloger.knowledge.queries import find_types, get_type, primary_type_for
from cataloger.knowledge.search import search_entries
from cataloger.knowledge.store import RepositorySnapshot, write_repository
from cataloger.knowledge.sync import RepositoryResult, ScanResult, Synchronizer

__all__ = [
    "RepositoryResult",
    "RepositorySnapshot",
    "ScanResult",
    "SchemaDrift",
    "Synchronizer",
    "TypeDiff",
    "compare_types",
    "compute_drift",
    "diff_type",
    "find_types",
    "get_type",
    "primary_type_for",
    "render_type_diff",
    "search_entries",
    "write_repository",
]
