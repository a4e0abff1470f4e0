"""Cataloger CLI entry point."""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any, NoReturn

import click

from cataloger import __version__
from cataloger.infrastructure.db import ENTITY_TABLES

if TYPE_CHECKING:
    import sqlite3
    from collections.abc import Callable

    from cataloger.infrastructure.config import CatalogerConfig

_OUTPUT_FORMATS = ("json", "yaml", "csv")


def _configure_logging(*, verbose: bool, quiet: bool) -> None:
    from rich.console import Console
    from rich.logging import RichHandler

    level = logging.DEBUG if verbose else logging.ERROR if quiet else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


@click.group()
@click.version_option(version=__version__, prog_name="cataloger")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Minimal output (errors only).")
@click.pass_context
def main(ctx: click.Context, *, verbose: bool, quiet: bool) -> None:
    """Cataloger - static catalog of document-database usage."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    _configure_logging(verbose=verbose, quiet=quiet)


def _fail(message: str) -> NoReturn:
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


def _kb_option(func: Callable[..., Any]) -> Callable[..., Any]:
    return click.option(
        "--kb",
        "kb_path",
        type=click.Path(dir_okay=False, path_type=Path),
        default=None,
        help="Knowledge base file (default: from config or .cataloger/cataloger.db).",
    )(func)


def _load_config(config_path: Path | None = None) -> CatalogerConfig:
    from cataloger.errors import ConfigurationError
    from cataloger.infrastructure.config import load_config

    try:
        return load_config(Path.cwd(), config_path)
    except ConfigurationError as exc:
        _fail(str(exc))


def _resolve_kb(kb_path: Path | None, config: CatalogerConfig) -> Path:
    return kb_path or Path.cwd() / config.knowledge_base_path


def _open_existing(kb_path: Path | None) -> sqlite3.Connection:
    from cataloger.infrastructure.db import open_db

    db_path = _resolve_kb(kb_path, _load_config())
    if not db_path.exists():
        _fail("knowledge base not found. Run `cataloger scan` first.")
    return open_db(db_path)


# ---------------------------------------------------------------------------
# scan
# ---------------------------------------------------------------------------


def _render(summary: dict[str, Any], output_format: str) -> str:
    if output_format == "json":
        return json.dumps(summary, ensure_ascii=False, indent=2)
    import yaml

    return yaml.safe_dump(summary, sort_keys=False, allow_unicode=True)


@main.command()
@click.argument(
    "repositories",
    nargs=-1,
    required=True,
    type=click.Path(exists=True, file_okay=False, path_type=Path),
)
@click.option(
    "--scan-type",
    default="full",
    type=click.Choice(["full", "incremental", "integrity"]),
    help="Full scan, only changed files, or integrity checks only.",
)
@click.option("--enable-sampling", is_flag=True, help="Sample the live database.")
@click.option(
    "--sampling-uri",
    envvar="CATALOGER_SAMPLING_URI",
    default=None,
    help="Read-only connection string for sampling.",
)
@click.option("--max-documents", type=int, default=None, help="Documents per collection.")
@click.option(
    "--pii-detection/--no-pii-detection",
    default=None,
    help="Redact PII while sampling (default: from config).",
)
@click.option("--connection-timeout", type=int, default=None, help="Timeout in milliseconds.")
@click.option("--last-commit-sha", default=None, help="Base commit for incremental scans.")
@click.option(
    "--output-format",
    default="json",
    type=click.Choice(_OUTPUT_FORMATS),
    help="Summary format.",
)
@click.option(
    "--output-file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Write the summary to a file instead of stdout.",
)
@_kb_option
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Configuration file (default: .cataloger/config.yml).",
)
def scan(
    repositories: tuple[Path, ...],
    *,
    scan_type: str,
    enable_sampling: bool,
    sampling_uri: str | None,
    max_documents: int | None,
    pii_detection: bool | None,
    connection_timeout: int | None,
    last_commit_sha: str | None,
    output_format: str,
    output_file: Path | None,
    kb_path: Path | None,
    config_path: Path | None,
) -> None:
    """Scan repositories and synchronize the knowledge base."""
    from cataloger.errors import CatalogerError, ConfigurationError
    from cataloger.infrastructure.config import with_sampling
    from cataloger.infrastructure.db import open_db
    from cataloger.knowledge.sync import Synchronizer

    if output_format == "csv":
        _fail(str(ConfigurationError("output format 'csv' is not implemented")))

    config = with_sampling(
        _load_config(config_path),
        enabled=True if enable_sampling else None,
        connection_string=sampling_uri,
        max_documents_per_collection=max_documents,
        connection_timeout_ms=connection_timeout,
        pii_enabled=pii_detection,
    )
    conn = open_db(_resolve_kb(kb_path, config))
    try:
        result = Synchronizer(conn, config).run(
            list(repositories), scan_type, last_commit_sha=last_commit_sha
        )
    except CatalogerError as exc:
        _fail(str(exc))
    finally:
        conn.close()

    text = _render(result.to_dict(), output_format)
    if output_file is not None:
        output_file.write_text(text, encoding="utf-8")
        click.echo(f"Summary written to {output_file}", err=True)
    else:
        click.echo(text)


# ---------------------------------------------------------------------------
# Read commands
# ---------------------------------------------------------------------------


@main.command("diff")
@click.argument("fqn")
@click.option("--from", "from_sha", required=True, help="Older commit SHA.")
@click.option("--to", "to_sha", required=True, help="Newer commit SHA.")
@click.option("--json", "as_json", is_flag=True, help="JSON output.")
@_kb_option
def diff_cmd(fqn: str, *, from_sha: str, to_sha: str, as_json: bool, kb_path: Path | None) -> None:
    """Show how a type changed between two scanned commits."""
    from cataloger.knowledge.diff import diff_type, render_type_diff, type_diff_to_dict

    conn = _open_existing(kb_path)
    try:
        result = diff_type(conn, fqn, from_sha, to_sha)
    finally:
        conn.close()
    if result is None:
        _fail(f"no recorded version of {fqn} at {from_sha} and {to_sha}")

    if as_json:
        click.echo(json.dumps(type_diff_to_dict(result), ensure_ascii=False, indent=2))
    else:
        from rich.console import Console

        render_type_diff(result, Console())


@main.command()
@click.argument("query")
@click.option(
    "--kind",
    type=click.Choice(sorted(ENTITY_TABLES)),
    default=None,
    help="Filter results by entity type.",
)
@click.option("--limit", default=10, type=int, help="Max results.")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON.")
@_kb_option
def search(
    query: str, *, kind: str | None, limit: int, output_json: bool, kb_path: Path | None
) -> None:
    """Search the knowledge base by keyword."""
    from cataloger.knowledge.search import search_entries

    conn = _open_existing(kb_path)
    try:
        results = search_entries(conn, query, kind=kind, limit=limit)
    finally:
        conn.close()

    if output_json:
        click.echo(json.dumps(results, ensure_ascii=False, indent=2))
    elif not results:
        click.echo("No results found.")
    else:
        for r in results:
            click.echo(f"  [{r['entity_type']}] {r['title']}  ({r['file_path']}:{r['line']})")
            if r["snippet"]:
                click.echo(f"    {r['snippet']}")


@main.command("type")
@click.argument("fqn")
@click.option("--json", "as_json", is_flag=True, help="JSON output.")
@_kb_option
def type_cmd(fqn: str, *, as_json: bool, kb_path: Path | None) -> None:
    """Show a type, its collections, queries and relationships."""
    from cataloger.knowledge.queries import get_type

    conn = _open_existing(kb_path)
    try:
        info = get_type(conn, fqn)
    finally:
        conn.close()
    if info is None:
        _fail(f"type not found (or ambiguous): {fqn}")

    if as_json:
        click.echo(json.dumps(info, ensure_ascii=False, indent=2))
        return

    from rich.console import Console
    from rich.table import Table

    console = Console()
    t = info["type"]
    prov = t["provenance"]
    console.print(f"[bold]{t['fqn']}[/bold]  {prov['file_path']}:{prov['line_start']}")
    table = Table(show_header=True, header_style="bold")
    table.add_column("Field")
    table.add_column("Type")
    table.add_column("Element")
    table.add_column("Nullable")
    for f in t["fields"]:
        element = next(
            (tag["value"] for tag in f["tags"] if tag["name"] == "BsonElement"), f["name"]
        )
        table.add_row(f["name"], f["declared_type"], element, "yes" if f["nullable"] else "")
    console.print(table)
    for m in info["mappings"]:
        marker = "*" if m["is_primary"] else " "
        console.print(
            f" {marker} collection {m['collection_name']} "
            f"({m['method']}, {m['confidence']:.2f})"
        )
    for direction in ("outgoing", "incoming"):
        for r in info["relationships"][direction]:
            console.print(
                f"   {r['source_fqn']} -[{r['kind']} {r['field_path']}]-> {r['target_fqn']} "
                f"({r['confidence']:.2f})"
            )
    console.print(f"   {len(info['operations'])} operation(s) on its collections")


@main.command()
@click.option("--json", "as_json", is_flag=True, help="JSON output.")
@_kb_option
def health(*, as_json: bool, kb_path: Path | None) -> None:
    """Run the integrity checks on the knowledge base."""
    from cataloger.infrastructure.db import create_schema
    from cataloger.infrastructure.health import (
        check_integrity,
        get_latest_snapshots,
        take_snapshot,
    )

    conn = _open_existing(kb_path)
    try:
        create_schema(conn)
        report = check_integrity(conn)
        take_snapshot(conn, report)
        history = get_latest_snapshots(conn, 2)
    finally:
        conn.close()

    if as_json:
        click.echo(json.dumps(report.to_dict(), ensure_ascii=False, indent=2))
        return
    click.echo(f"Status:        {report.status.value}")
    click.echo(f"Types:         {report.types_count}")
    click.echo(f"Mappings:      {report.mappings_count}")
    click.echo(f"Relationships: {report.relationships_count}")
    if len(history) == 2:
        previous = history[1]
        click.echo(f"Previous:      {previous.status} ({previous.taken_at})")
    for issue in report.issues:
        click.echo(f"  [warn] {issue}")


@main.command()
@click.argument("collection")
@click.option("--json", "as_json", is_flag=True, help="JSON output.")
@_kb_option
def drift(collection: str, *, as_json: bool, kb_path: Path | None) -> None:
    """Compare a collection's declared type with its observed schema."""
    from cataloger.knowledge.drift import compute_drift
    from cataloger.knowledge.queries import primary_type_for
    from cataloger.knowledge.store import load_observed_schema

    conn = _open_existing(kb_path)
    try:
        code_type = primary_type_for(conn, collection)
        observed = load_observed_schema(conn, collection)
    finally:
        conn.close()
    if code_type is None:
        _fail(f"no type is mapped to collection {collection!r}")
    if observed is None:
        _fail(f"collection {collection!r} has not been sampled; scan with --enable-sampling")

    result = compute_drift(code_type, observed)
    if as_json:
        click.echo(json.dumps(result.to_dict(), ensure_ascii=False, indent=2))
        return
    if not result.has_drift:
        click.echo(f"No drift between {code_type.fqn} and {collection}.")
        return
    click.echo(f"Drift between {code_type.fqn} and {collection}:")
    for name in result.declared_only:
        click.echo(f"  - {name} (declared, never observed)")
    for name in result.observed_only:
        click.echo(f"  + {name} (observed, not declared)")
    for m in result.type_mismatches:
        click.echo(f"  ~ {m.field}: {m.declared} stored as {', '.join(m.observed)}")
    for message in result.requirement_mismatches:
        click.echo(f"  ! {message}")
