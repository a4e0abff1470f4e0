"""Synchronizer: drives analysis per repository and commits the results.

One run moves through ``Started -> Scanning -> Reconciling`` and ends in
``Completed`` or ``PartialFailure``.  Repositories are analyzed in a bounded
thread pool and the files of one repository in a nested pool; analysis
workers never touch the database.  Sampling runs afterwards in its own
executor with a wall-clock limit.  Every write happens on the calling thread
in one transaction per repository.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

from cataloger.analysis.collection_resolver import CollectionResolver, primary_collections
from cataloger.analysis.csharp import parse_file
from cataloger.analysis.operation_extractor import OperationExtractor
from cataloger.analysis.relationships import RelationshipInferencer
from cataloger.analysis.type_analyzer import TypeAnalyzer
from cataloger.errors import (
    ConfigurationError,
    SamplingError,
    SynchronizationError,
)
from cataloger.infrastructure.config import CatalogerConfig
from cataloger.infrastructure.db import create_schema, set_meta
from cataloger.infrastructure.files import diff_files, scan_source_files
from cataloger.infrastructure.git import changed_files_since, head_commit
from cataloger.infrastructure.health import HealthReport, check_integrity, take_snapshot
from cataloger.knowledge.store import (
    RepositorySnapshot,
    load_file_index,
    load_last_commit,
    load_operations,
    load_sites,
    load_types,
    record_failure,
    write_repository,
)
from cataloger.models import RunStatus, ScanContext, ScanType
from cataloger.sampling.pii import PiiDetector
from cataloger.sampling.sampler import MongoSampler

if TYPE_CHECKING:
    import sqlite3
    from collections.abc import Callable, Iterable, Sequence

    from cataloger.analysis.syntax import SourceFile
    from cataloger.models import AccessorSite, CodeType, ObservedSchema, QueryOperation

logger = logging.getLogger(__name__)

_T = TypeVar("_T")

SUCCESS = "success"
FAILED = "failed"
SKIPPED = "skipped"


def utc_now() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


@dataclass
class RepositoryResult:
    """Outcome of one repository within a run."""

    name: str
    path: str
    status: str = SUCCESS
    commit_sha: str = ""
    types_count: int = 0
    collections_count: int = 0
    queries_count: int = 0
    relationships_count: int = 0
    schemas_observed: int = 0
    files_processed: int = 0
    files_deleted: int = 0
    failed_files: list[str] = field(default_factory=list)
    entries_added: int = 0
    entries_updated: int = 0
    entries_deactivated: int = 0
    error: str | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "repository": self.name,
            "path": self.path,
            "status": self.status,
            "commit_sha": self.commit_sha,
            "types_discovered": self.types_count,
            "collections_discovered": self.collections_count,
            "queries_discovered": self.queries_count,
            "relationships_discovered": self.relationships_count,
            "schemas_observed": self.schemas_observed,
            "files_processed": self.files_processed,
            "files_deleted": self.files_deleted,
            "failed_files": list(self.failed_files),
            "entries": {
                "added": self.entries_added,
                "updated": self.entries_updated,
                "deactivated": self.entries_deactivated,
            },
            "error": self.error,
            "warnings": list(self.warnings),
        }


@dataclass
class ScanResult:
    """Summary record of a synchronization run."""

    scan_id: str
    scan_type: ScanType
    status: RunStatus = RunStatus.STARTED
    started_at: str = ""
    duration_seconds: float = 0.0
    repositories: list[RepositoryResult] = field(default_factory=list)
    health: HealthReport | None = None
    transitions: list[RunStatus] = field(default_factory=list)

    @property
    def status_label(self) -> str:
        return "completed" if self.status is RunStatus.COMPLETED else "partial"

    def to_dict(self) -> dict[str, Any]:
        return {
            "scan_id": self.scan_id,
            "scan_type": self.scan_type.value,
            "status": self.status_label,
            "started_at": self.started_at,
            "duration_seconds": round(self.duration_seconds, 3),
            "repositories": [r.to_dict() for r in self.repositories],
            "health": self.health.to_dict() if self.health else None,
        }


@dataclass
class _Plan:
    """What one repository's analysis has to do; built on the calling thread."""

    result: RepositoryResult
    root: Path
    context: ScanContext
    current: dict[str, str]
    to_process: set[str]
    deleted: set[str]
    stored_types: list[CodeType]
    stored_sites: list[AccessorSite]
    stored_operations: list[QueryOperation]


class Synchronizer:
    """The only writer of the knowledge base."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        config: CatalogerConfig | None = None,
        *,
        sampler: MongoSampler | None = None,
        logger: logging.Logger | None = None,
        clock: Callable[[], str] = utc_now,
    ) -> None:
        self.conn = conn
        self.config = config or CatalogerConfig()
        self.logger = logger or logging.getLogger(__name__)
        self.clock = clock
        self.analyzer = TypeAnalyzer(self.config.analysis, self.logger)
        self.resolver = CollectionResolver(
            self.config.analysis, self.config.collections, self.logger
        )
        self.extractor = OperationExtractor(self.resolver, self.logger)
        self.inferencer = RelationshipInferencer(self.logger)
        self.sampler = sampler or MongoSampler(
            self.config.sampling, PiiDetector(self.config.pii), logger=self.logger
        )

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(
        self,
        repo_paths: Sequence[Path | str],
        scan_type: ScanType | str = ScanType.FULL,
        *,
        last_commit_sha: str | None = None,
        cancel: threading.Event | None = None,
    ) -> ScanResult:
        """Synchronize *repo_paths* and return the run summary.

        Raises :class:`ConfigurationError` for an invalid scan type or an empty
        repository list, and :class:`SynchronizationError` when every
        repository failed.
        """
        try:
            kind = ScanType(scan_type)
        except ValueError:
            raise ConfigurationError(
                f"invalid scan type {scan_type!r}; expected one of "
                + ", ".join(t.value for t in ScanType)
            ) from None
        if not repo_paths:
            raise ConfigurationError("no repositories given")

        started = time.monotonic()
        result = ScanResult(scan_id=uuid.uuid4().hex, scan_type=kind, started_at=self.clock())
        self._transition(result, RunStatus.STARTED)
        create_schema(self.conn)

        if kind is ScanType.INTEGRITY:
            for path in repo_paths:
                root = Path(path).resolve()
                result.repositories.append(RepositoryResult(root.name, str(root), SKIPPED))
            self._transition(result, RunStatus.RECONCILING)
            return self._finish(result, started)

        self._transition(result, RunStatus.SCANNING)
        plans: list[_Plan] = []
        for path in repo_paths:
            try:
                plans.append(self._plan(Path(path), kind, last_commit_sha))
            except Exception as exc:
                root = Path(path).resolve()
                result.repositories.append(self._failed(root.name, str(root), exc))

        snapshots = self._analyze_all(plans, result)

        self._transition(result, RunStatus.RECONCILING)
        for plan in plans:
            snapshot = snapshots.get(plan.result.name)
            if snapshot is None:
                continue
            repo = plan.result
            if cancel is not None and cancel.is_set():
                repo.status = FAILED
                repo.error = "synchronization cancelled before commit"
                self.logger.warning("%s: %s", repo.name, repo.error)
                continue
            snapshot.schemas = self._sample(snapshot, repo, cancel)
            repo.schemas_observed = len(snapshot.schemas)
            try:
                stats = write_repository(self.conn, snapshot)
            except Exception as exc:
                self.logger.error("Commit failed for %s: %s", repo.name, exc)
                repo.status = FAILED
                repo.error = str(exc)
                record_failure(self.conn, repo.name, repo.path, plan.context.timestamp)
                continue
            repo.entries_added = stats.entries_added
            repo.entries_updated = stats.entries_updated
            repo.entries_deactivated = stats.entries_deactivated

        failed = [r for r in result.repositories if r.status == FAILED]
        if failed and len(failed) == len(result.repositories):
            raise SynchronizationError(
                "all repositories failed: "
                + "; ".join(f"{r.name}: {r.error}" for r in failed)
            )
        set_meta(self.conn, "last_scan_at", result.started_at)
        return self._finish(result, started)

    def _finish(self, result: ScanResult, started: float) -> ScanResult:
        report = check_integrity(self.conn)
        take_snapshot(self.conn, report)
        result.health = report
        if any(r.status == FAILED for r in result.repositories):
            self._transition(result, RunStatus.PARTIAL_FAILURE)
        else:
            self._transition(result, RunStatus.COMPLETED)
        result.duration_seconds = time.monotonic() - started
        self.logger.info(
            "Scan %s %s in %.2fs (health: %s)",
            result.scan_id,
            result.status_label,
            result.duration_seconds,
            report.status.value,
        )
        return result

    def _transition(self, result: ScanResult, status: RunStatus) -> None:
        result.status = status
        result.transitions.append(status)
        self.logger.debug("Scan %s -> %s", result.scan_id, status.value)

    def _failed(self, name: str, path: str, exc: BaseException) -> RepositoryResult:
        self.logger.error("Repository %s failed: %s", name, exc)
        record_failure(self.conn, name, path, self.clock())
        return RepositoryResult(name, path, FAILED, error=str(exc))

    # ------------------------------------------------------------------
    # Planning (calling thread, reads the knowledge base)
    # ------------------------------------------------------------------

    def _plan(self, path: Path, kind: ScanType, last_commit_sha: str | None) -> _Plan:
        root = path.resolve()
        if not root.is_dir():
            raise SynchronizationError(f"repository path does not exist: {path}")
        name = root.name
        context = ScanContext(name, head_commit(root), self.clock())
        current = scan_source_files(root, self.config.scanning)
        stored = load_file_index(self.conn, name)

        if kind is ScanType.FULL or not stored:
            to_process = set(current)
            deleted = set(stored) - set(current)
        else:
            since = last_commit_sha or load_last_commit(self.conn, name)
            git_changed = changed_files_since(root, since) if since else None
            if git_changed is not None:
                to_process = (git_changed & set(current)) | (set(current) - set(stored))
                deleted = set(stored) - set(current)
            else:
                changed, added, deleted = diff_files(current, stored)
                to_process = changed | added

        unchanged = set(current) - to_process
        self.logger.info(
            "%s: %d file(s) to analyze, %d unchanged, %d deleted",
            name,
            len(to_process),
            len(unchanged),
            len(deleted),
        )
        return _Plan(
            result=RepositoryResult(name, str(root), commit_sha=context.commit_sha),
            root=root,
            context=context,
            current=current,
            to_process=to_process,
            deleted=deleted,
            stored_types=load_types(self.conn, name, unchanged),
            stored_sites=load_sites(self.conn, name, unchanged),
            stored_operations=load_operations(self.conn, name, unchanged),
        )

    # ------------------------------------------------------------------
    # Analysis (worker threads, no database access)
    # ------------------------------------------------------------------

    def _analyze_all(
        self, plans: list[_Plan], result: ScanResult
    ) -> dict[str, RepositorySnapshot]:
        snapshots: dict[str, RepositorySnapshot] = {}
        workers = max(1, self.config.scanning.max_concurrent_repositories)
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {executor.submit(self._analyze, plan): plan for plan in plans}
            for future in as_completed(futures):
                plan = futures[future]
                try:
                    snapshots[plan.result.name] = future.result()
                except Exception as exc:
                    self.logger.error("Repository %s failed: %s", plan.result.name, exc)
                    plan.result.status = FAILED
                    plan.result.error = str(exc)
                    record_failure(
                        self.conn, plan.result.name, plan.result.path, plan.context.timestamp
                    )
        # Keep the order the caller gave.
        result.repositories.extend(plan.result for plan in plans)
        return snapshots

    def _per_file(
        self,
        files: Iterable[str],
        task: Callable[[str], _T],
        failed: list[str],
    ) -> dict[str, _T]:
        """Run *task* for every file in the file pool; failures go to *failed*."""
        outputs: dict[str, _T] = {}
        workers = max(1, self.config.scanning.max_concurrent_files)
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {executor.submit(task, rel): rel for rel in files}
            for future in as_completed(futures):
                rel = futures[future]
                try:
                    outputs[rel] = future.result()
                except Exception as exc:
                    self.logger.warning("Skipping %s: %s", rel, exc)
                    failed.append(rel)
        return outputs

    def _analyze(self, plan: _Plan) -> RepositorySnapshot:
        ctx = plan.context
        repo = plan.result
        failed: list[str] = []

        parsed: dict[str, SourceFile] = self._per_file(
            sorted(plan.to_process), lambda rel: parse_file(plan.root / rel, rel), failed
        )

        # Types in one file may qualify only through a base type declared in
        # another, so repeat until the set of known names stops growing.
        known = frozenset(t.name for t in plan.stored_types)
        while True:
            analysis_failed: list[str] = []
            new_types = self._per_file(
                sorted(parsed),
                lambda rel, names=known: self.analyzer.analyze(parsed[rel], ctx, names),
                analysis_failed,
            )
            grown = {t.name for types in new_types.values() for t in types} - known
            if not grown:
                break
            known |= grown
        failed.extend(analysis_failed)

        sites_by_file = self._per_file(
            sorted(new_types), lambda rel: self.resolver.find_accessor_sites(parsed[rel]), failed
        )
        ok_files = set(new_types) & set(sites_by_file)

        types = plan.stored_types + [t for rel in sorted(ok_files) for t in new_types[rel]]
        sites = plan.stored_sites + [s for rel in sorted(ok_files) for s in sites_by_file[rel]]
        mappings = [m for t in types for m in self.resolver.resolve(t, sites, ctx)]
        type_collections = primary_collections(mappings)

        ops_by_file = self._per_file(
            sorted(ok_files),
            lambda rel: self.extractor.extract(parsed[rel], type_collections, ctx),
            failed,
        )
        ok_files &= set(ops_by_file)
        new_operations = [op for rel in sorted(ok_files) for op in ops_by_file[rel]]
        operations = plan.stored_operations + new_operations
        relationships = self.inferencer.infer(types, operations, mappings)

        failed_set = set(failed) | (plan.to_process - ok_files)
        repo.failed_files = sorted(failed_set)
        for rel in repo.failed_files:
            repo.warnings.append(f"{rel}: analysis failed")
        repo.files_processed = len(ok_files)
        repo.files_deleted = len(plan.deleted)
        repo.types_count = len(types)
        repo.collections_count = len(
            {m.collection_name for m in mappings if m.is_primary}
            | {op.collection_name for op in operations}
        )
        repo.queries_count = len(operations)
        repo.relationships_count = len(relationships)

        # Failed files lose their old facts and their hash, so the next
        # incremental run retries them.
        return RepositorySnapshot(
            name=repo.name,
            path=repo.path,
            context=ctx,
            processed_files=set(ok_files),
            deleted_files=plan.deleted | failed_set,
            file_hashes={rel: plan.current[rel] for rel in ok_files},
            new_types=[t for rel in sorted(ok_files) for t in new_types[rel]],
            new_sites=[s for rel in sorted(ok_files) for s in sites_by_file[rel]],
            new_operations=new_operations,
            types=types,
            operations=operations,
            mappings=mappings,
            relationships=relationships,
        )

    # ------------------------------------------------------------------
    # Sampling (own executor, wall-clock limit)
    # ------------------------------------------------------------------

    def _sample(
        self,
        snapshot: RepositorySnapshot,
        repo: RepositoryResult,
        cancel: threading.Event | None,
    ) -> list[ObservedSchema]:
        if not self.sampler.active:
            return []
        names = sorted(
            {m.collection_name for m in snapshot.mappings if m.is_primary}
            | {op.collection_name for op in snapshot.operations}
        )
        if not names:
            return []

        stop = threading.Event()
        timeout_s = self.config.sampling.connection_timeout_ms / 1000
        limit = timeout_s * (len(names) + 1)
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="sampler")
        future = executor.submit(self.sampler.sample, names, snapshot.context, stop)
        try:
            while True:
                try:
                    return future.result(timeout=min(limit, 0.5))
                except FutureTimeoutError:
                    limit -= 0.5
                    if limit <= 0 or (cancel is not None and cancel.is_set()):
                        raise
        except FutureTimeoutError:
            stop.set()
            message = "sampling timed out or was cancelled; no observed schemas this run"
        except SamplingError as exc:
            message = f"sampling failed: {exc}"
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
        self.logger.warning("%s: %s", repo.name, message)
        repo.warnings.append(message)
        return []
