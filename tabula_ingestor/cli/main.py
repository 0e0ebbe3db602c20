"""Command line entry points for the ingestor."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any
from uuid import uuid4

import click
from pydantic import ValidationError as PydanticValidationError

from ..deadletter.sink import DeadLetterSink, describe_entry
from ..exceptions import TabulaIngestorError
from ..ingestion.pipeline import ingest, process_dead_letter_queue
from ..schemas.rows import IngestionSummary
from ..schemas.storage import SchemaColumn, SchemaComparison
from ..storage.schema_versions import compare_schemas, generate_change_script
from ..utils.config import get_settings


def print_summary(summary: IngestionSummary) -> None:
    """Print a human readable ingestion summary."""

    click.echo("\n" + "=" * 60)
    click.echo("INGESTION SUMMARY")
    click.echo("=" * 60)
    click.echo(f"  File ID:          {summary.file_id}")
    click.echo(f"  Source ID:        {summary.source_id}")
    click.echo(f"  Status:           {summary.status}")
    click.echo(f"  Headers:          {', '.join(summary.headers) or 'N/A'}")
    click.echo(f"  Rows read:        {summary.row_count:,}")
    click.echo(f"  Rows written:     {summary.rows_written:,}")
    click.echo(f"  Rows failed:      {summary.rows_failed:,}")
    click.echo(f"  Batches:          {summary.batch_count} x {summary.batch_size}")
    click.echo(f"  Dead-lettered:    {summary.dead_lettered_batches}")
    click.echo(f"  Duration:         {summary.duration_ms} ms")

    if summary.errors:
        click.echo("\n  Row errors:")
        for error in summary.errors[:20]:
            click.echo(f"    - row {error.get('row_number')}: {error.get('message')}")
        if len(summary.errors) > 20:
            click.echo(f"    ... {len(summary.errors) - 20} more")
    click.echo("=" * 60 + "\n")


def load_columns(path: str) -> list[SchemaColumn]:
    """Read a column list from a JSON file.

    The file holds either a list of columns or an object with a ``columns`` key.
    """

    document: Any = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(document, dict):
        document = document.get("columns", [])
    if not isinstance(document, list):
        raise click.BadParameter(f"{path} does not contain a column list")
    try:
        return [SchemaColumn.model_validate(item) for item in document]
    except PydanticValidationError as exc:
        raise click.BadParameter(f"{path}: {exc}") from exc


@click.group()
@click.option("--log-level", default=None, help="Override the configured log level")
@click.pass_context
def cli(ctx: click.Context, log_level: str | None) -> None:
    """Stream tabular files into the row store and manage their aftermath."""

    ctx.ensure_object(dict)
    if log_level:
        level = getattr(logging, log_level.upper(), logging.INFO)
        root_logger = logging.getLogger()
        root_logger.setLevel(level)
        for handler in root_logger.handlers:
            handler.setLevel(level)
    ctx.obj["settings"] = get_settings()


@cli.command("ingest")
@click.argument("locator")
@click.option("--file-id", default=None, help="File identifier (defaults to a random id)")
@click.option("--source-id", default=None, help="Provenance id stamped on rows (defaults to file name)")
@click.option(
    "--format",
    "format_tag",
    type=click.Choice(["csv", "xlsx"]),
    default=None,
    help="Source format (inferred from the extension when omitted)",
)
@click.option("--sheet", default=None, help="Worksheet to read from an XLSX workbook")
@click.option("--delimiter", default=None, help="Field delimiter for CSV sources")
@click.option("--json", "output_json", is_flag=True, help="Output the summary as JSON")
@click.pass_context
def ingest_command(
    ctx: click.Context,
    locator: str,
    file_id: str | None,
    source_id: str | None,
    format_tag: str | None,
    sheet: str | None,
    delimiter: str | None,
    output_json: bool,
) -> None:
    """
    Ingest a local path or HTTP(S) URL.

    Examples:

        tabula-ingestor ingest data/customers.csv

        tabula-ingestor ingest https://example.com/export.xlsx --sheet Orders --json
    """
    source_options: dict[str, Any] = {}
    if sheet:
        source_options["sheet_name"] = sheet
    if delimiter:
        source_options["delimiter"] = delimiter

    file_id = file_id or uuid4().hex
    source_id = source_id or Path(locator.split("?", 1)[0]).stem or file_id

    try:
        summary = asyncio.run(
            ingest(
                locator,
                file_id,
                source_id,
                format_tag=format_tag,
                settings=ctx.obj["settings"],
                source_options=source_options or None,
            )
        )
    except TabulaIngestorError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise click.exceptions.Exit(1) from exc

    if output_json:
        click.echo(summary.model_dump_json(indent=2))
    else:
        print_summary(summary)
    if summary.status == "error":
        raise click.exceptions.Exit(2)


@cli.command("replay-dead-letters")
@click.option("--max-items", type=int, default=None, help="Entries to replay in this pass")
@click.option("--max-retries", type=int, default=None, help="Skip entries retried this many times")
@click.option("--json", "output_json", is_flag=True, help="Output the report as JSON")
@click.pass_context
def replay_command(
    ctx: click.Context, max_items: int | None, max_retries: int | None, output_json: bool
) -> None:
    """Replay queued dead-letter entries once (run from a scheduler)."""

    report = asyncio.run(
        process_dead_letter_queue(max_items, max_retries, settings=ctx.obj["settings"])
    )
    payload = {
        "selected": report.selected,
        "replayed": report.replayed,
        "failed": report.failed,
        "skipped": report.skipped,
        "errors": report.errors,
    }
    if output_json:
        click.echo(json.dumps(payload, indent=2))
        return
    click.echo(
        f"Selected {report.selected}, replayed {report.replayed}, "
        f"failed {report.failed}, skipped {report.skipped}"
    )
    for error in report.errors:
        click.echo(f"  entry {error['id']}: {error['error']}", err=True)


@cli.command("list-dead-letters")
@click.option("--file-id", default=None, help="Only entries for this file")
@click.option("--operation", default=None, help="Only entries for this operation")
@click.option("--limit", type=int, default=None, help="Maximum entries to list")
@click.option("--json", "output_json", is_flag=True, help="Output the entries as JSON")
def list_dead_letters_command(
    file_id: str | None, operation: str | None, limit: int | None, output_json: bool
) -> None:
    """List queued dead-letter entries, oldest first."""

    entries = asyncio.run(
        DeadLetterSink().list_entries(file_id=file_id, operation=operation, limit=limit)
    )
    described = [describe_entry(entry) for entry in entries]
    if output_json:
        click.echo(json.dumps(described, indent=2))
        return
    if not described:
        click.echo("No dead-letter entries")
        return
    for item in described:
        click.echo(
            f"{item['id']:>6}  {item['timestamp']}  {item['file_id']}  {item['operation']}  "
            f"retries={item['retry_count']}  {item['error']}"
        )


def _comparison_json(comparison: SchemaComparison) -> str:
    return json.dumps(
        {
            "added": [column.name for column in comparison.added],
            "removed": [column.name for column in comparison.removed],
            "modified": [change.column_name for change in comparison.modified],
            "unchanged": [column.name for column in comparison.unchanged],
        },
        indent=2,
    )


@cli.command("schema-diff")
@click.argument("old_schema", type=click.Path(exists=True, dir_okay=False))
@click.argument("new_schema", type=click.Path(exists=True, dir_okay=False))
@click.option("--table", default="data", help="Table name substituted into the script")
@click.option("--json", "output_json", is_flag=True, help="Print the comparison instead of SQL")
def schema_diff_command(old_schema: str, new_schema: str, table: str, output_json: bool) -> None:
    """Compare two JSON column lists and print the migration script."""

    comparison = compare_schemas(load_columns(old_schema), load_columns(new_schema))
    if output_json:
        click.echo(_comparison_json(comparison))
        return
    if not comparison.has_changes:
        click.echo("-- No schema changes")
        return
    click.echo(generate_change_script(comparison, table), nl=False)


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
