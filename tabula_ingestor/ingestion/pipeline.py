"""Top-level streaming ingestion entry point and dead-letter replay."""

from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import datetime
from pathlib import Path
from typing import Any

import httpx

from ..deadletter.sink import DeadLetterSink, ReplayReport
from ..exceptions import (
    ConversionError,
    DatabaseError,
    ParsingError,
    TabulaIngestorError,
    ValidationError,
)
from ..models.dead_letter import DeadLetterEntry
from ..models.files import FileStatus
from ..models.repository import IngestedFileCreate, register_file, set_file_status
from ..monitoring.metrics import (
    decrement_active_ingestions,
    increment_active_ingestions,
    record_ingestion_run,
)
from ..schemas.rows import Batch, IngestionSummary, TaggedRow
from ..sources import infer_format, open_source
from ..storage.backend import RowBackend, SQLAlchemyRowBackend
from ..utils.config import GlobalSettings, get_settings
from ..utils.logging import setup_logger
from ..utils.retry import SleepFn
from .batch_processor import INSERT_ROWS_OPERATION, BatchProcessor
from .batcher import AdaptiveBatcher
from .error_handling import ErrorSeverity, ErrorType, handle_file_error
from .provenance import ProvenanceTagger

logger = setup_logger(__name__)

CONVERT_OPERATION = "convert"

ProgressCallback = Callable[[int, int], Awaitable[None] | None]
HeadersCallback = Callable[[list[str]], Awaitable[None] | None]
ConversionSink = Callable[[str, list[str], AsyncIterator[dict[str, Any]]], Awaitable[None]]


async def _maybe_await(result: Any) -> None:
    if inspect.isawaitable(result):
        await result


def _require(value: str, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} must be a non-empty string")
    return value.strip()


async def _set_status(file_id: str, status: FileStatus, **fields: Any) -> None:
    await asyncio.to_thread(set_file_status, file_id, status, **fields)


async def run_conversion(
    file_id: str,
    headers: list[str],
    backend: RowBackend,
    conversion_sink: ConversionSink,
) -> None:
    """Hand the stored rows of a file to the conversion sink."""

    try:
        await conversion_sink(file_id, headers, backend.stream_rows(file_id))
    except ConversionError:
        raise
    except Exception as exc:
        raise ConversionError(f"Conversion of file {file_id} failed: {exc}") from exc


async def ingest(
    file_locator: str | Path,
    file_id: str,
    source_id: str,
    *,
    format_tag: str | None = None,
    on_progress: ProgressCallback | None = None,
    on_headers: HeadersCallback | None = None,
    backend: RowBackend | None = None,
    processor: BatchProcessor | None = None,
    dead_letters: DeadLetterSink | None = None,
    conversion_sink: ConversionSink | None = None,
    settings: GlobalSettings | None = None,
    source_options: dict[str, Any] | None = None,
    client: httpx.AsyncClient | None = None,
    sleep: SleepFn | None = None,
) -> IngestionSummary:
    """Stream a tabular file into row storage.

    Args:
        file_locator: Local path or HTTP(S) URL of the file.
        file_id: Identifier the rows are stored under.
        source_id: Provenance identifier stamped on every row.
        format_tag: ``csv`` or ``xlsx``; inferred from the locator when omitted.
        on_progress: Called with ``(rows_processed, estimated_rows)`` after each batch.
        on_headers: Awaited with the captured headers before the first batch is
            written. Its failures are logged and do not stop ingestion.
        backend: Row backend; defaults to the SQLAlchemy backend.
        processor: Batch processor; built from settings when omitted.
        dead_letters: Sink receiving rows that exhaust every recovery path.
        conversion_sink: Optional downstream converter fed with the stored rows.
        settings: Settings override.
        source_options: Format-specific reader options.
        client: HTTP client used for remote locators.
        sleep: Backoff sleep override.

    Returns:
        Summary with headers, counts and per-row failures.

    Raises:
        ValidationError: Invalid arguments.
        ParsingError: The source could not be opened or decoded before any row was written.
    """

    file_id = _require(file_id, "file_id")
    source_id = _require(source_id, "source_id")
    locator = str(file_locator)
    if not locator.strip():
        raise ValidationError("file_locator must be a non-empty string")
    resolved_format = (format_tag or infer_format(locator)).lower()

    settings = settings or get_settings()
    backend = backend or SQLAlchemyRowBackend()
    dead_letters = dead_letters if dead_letters is not None else DeadLetterSink()
    processor = processor or BatchProcessor.from_settings(
        backend, settings, dead_letters=dead_letters, sleep=sleep
    )

    started = time.perf_counter()
    file_flagged = False
    summary = IngestionSummary(file_id=file_id, source_id=source_id, status=FileStatus.PROCESSING.value)
    log = logger.bind(file_id=file_id, source_id=source_id)

    await asyncio.to_thread(
        register_file,
        IngestedFileCreate(
            id=file_id,
            source_locator=locator,
            format=resolved_format,
            source_id=source_id,
            status=FileStatus.PROCESSING,
        ),
    )
    increment_active_ingestions()
    log.info("Starting ingestion of %s", locator, extra={"status": "processing"})

    try:
        try:
            async with open_source(
                locator, resolved_format, options=source_options, client=client
            ) as source:
                estimated = await source.estimate_rows()
                batcher = AdaptiveBatcher.for_run(file_id, estimated, processor.mode)
                summary.batch_size = batcher.target_size
                tagger = ProvenanceTagger(source_id)
                headers_reported = False

                async def tagged_rows() -> AsyncIterator[TaggedRow]:
                    nonlocal headers_reported
                    async for row in source.rows():
                        if not headers_reported:
                            headers_reported = True
                            await _report_headers(file_id, list(source.headers or []), on_headers, summary)
                        summary.row_count += 1
                        yield tagger.tag(row)

                async for batch in batcher.batches(tagged_rows()):
                    if await _process_batch(processor, file_id, batch, summary):
                        file_flagged = True
                    if on_progress is not None:
                        try:
                            await _maybe_await(on_progress(summary.row_count, max(estimated, summary.row_count)))
                        except Exception as exc:  # progress reporting is advisory
                            log.warning("Progress callback failed: %s", exc)

                summary.batch_count = batcher.emitted
                if not summary.headers:
                    summary.headers = list(source.headers or [])
        except ParsingError as exc:
            if summary.rows_written == 0:
                await handle_file_error(file_id, exc, severity=ErrorSeverity.CRITICAL)
                raise
            await handle_file_error(file_id, exc, severity=ErrorSeverity.HIGH)
            summary.status = FileStatus.ERROR.value

        if summary.status != FileStatus.ERROR.value:
            summary.status = await _finalize_status(file_id, summary, file_flagged)

        if conversion_sink is not None and summary.status == FileStatus.ACTIVE.value:
            try:
                await run_conversion(file_id, summary.headers, backend, conversion_sink)
            except ConversionError as exc:
                await handle_file_error(
                    file_id, exc, error_type=ErrorType.CONVERSION, severity=ErrorSeverity.LOW
                )
                await dead_letters.enqueue(
                    file_id,
                    CONVERT_OPERATION,
                    {"file_id": file_id, "headers": summary.headers},
                    exc,
                )
    except TabulaIngestorError:
        record_ingestion_run(resolved_format, FileStatus.ERROR.value)
        raise
    finally:
        decrement_active_ingestions()

    summary.duration_ms = int((time.perf_counter() - started) * 1000)
    record_ingestion_run(resolved_format, summary.status)
    log.info(
        "Ingestion finished: %d rows read, %d written, %d failed in %d batches",
        summary.row_count,
        summary.rows_written,
        summary.rows_failed,
        summary.batch_count,
        extra={"status": summary.status, "duration_ms": summary.duration_ms},
    )
    return summary


async def _report_headers(
    file_id: str,
    headers: list[str],
    on_headers: HeadersCallback | None,
    summary: IngestionSummary,
) -> None:
    summary.headers = headers
    await _set_status(file_id, FileStatus.HEADERS_EXTRACTED, headers=headers)
    logger.info(
        "Extracted %d headers",
        len(headers),
        extra={"file_id": file_id, "status": FileStatus.HEADERS_EXTRACTED.value},
    )
    if on_headers is None:
        return
    try:
        await _maybe_await(on_headers(headers))
    except Exception as exc:  # header provisioning failures do not stop ingestion
        logger.error(
            "Header callback failed: %s",
            exc,
            extra={"file_id": file_id, "status": "headers_callback_failed"},
        )


async def _process_batch(
    processor: BatchProcessor,
    file_id: str,
    batch: Batch,
    summary: IngestionSummary,
) -> bool:
    """Process one batch and fold its outcome into the summary; True when the file is flagged."""

    outcome = await processor.process(file_id, batch)
    summary.rows_written += outcome.succeeded
    summary.rows_failed += outcome.failed
    summary.errors.extend(failure.as_dict() for failure in outcome.failures)
    if outcome.dead_lettered:
        summary.dead_lettered_batches += 1

    if outcome.failed and outcome.succeeded == 0:
        await handle_file_error(
            file_id,
            f"Batch {batch.sequence} lost all {outcome.failed} rows",
            error_type=ErrorType.DATABASE,
            severity=ErrorSeverity.HIGH,
            extra_details={"batch": batch.sequence, "dead_lettered": outcome.dead_lettered},
        )
        return True
    if outcome.failed:
        await handle_file_error(
            file_id,
            f"Batch {batch.sequence} stored {outcome.succeeded} rows; {outcome.failed} failed",
            error_type=ErrorType.DATABASE,
            severity=ErrorSeverity.LOW,
            extra_details={"batch": batch.sequence, "dead_lettered": outcome.dead_lettered},
        )
    return False


async def _finalize_status(file_id: str, summary: IngestionSummary, flagged: bool) -> str:
    if flagged:
        await _set_status(file_id, FileStatus.ERROR, row_count=summary.row_count)
        return FileStatus.ERROR.value
    await _set_status(file_id, FileStatus.ACTIVE, row_count=summary.row_count, error_message=None)
    return FileStatus.ACTIVE.value


def _rows_from_payload(payload: dict[str, Any]) -> list[TaggedRow]:
    return [
        TaggedRow(
            row_number=int(item["row_number"]),
            values=dict(item.get("values") or {}),
            source_id=str(item["source_id"]),
            ingested_at=datetime.fromisoformat(item["ingested_at"]),
        )
        for item in payload.get("rows", [])
    ]


def build_replay_handlers(
    processor: BatchProcessor,
    backend: RowBackend,
    conversion_sink: ConversionSink | None = None,
) -> dict[str, Callable[[DeadLetterEntry], Awaitable[None]]]:
    """Return the replay handlers for every operation the pipeline dead-letters."""

    async def replay_insert(entry: DeadLetterEntry) -> None:
        payload = entry.payload or {}
        rows = _rows_from_payload(payload)
        if not rows:
            return
        batch = Batch(
            file_id=entry.file_id,
            sequence=int(payload.get("batch_sequence", 0)),
            target_size=int(payload.get("target_size", len(rows))),
            rows=tuple(rows),
        )
        outcome = await processor.process(entry.file_id, batch, escalate=False)
        if outcome.failed:
            raise DatabaseError(
                f"{outcome.failed} of {len(rows)} rows still failing for file {entry.file_id}"
            )

    async def replay_convert(entry: DeadLetterEntry) -> None:
        if conversion_sink is None:
            raise ConversionError("No conversion sink configured for replay")
        headers = list((entry.payload or {}).get("headers") or [])
        await run_conversion(entry.file_id, headers, backend, conversion_sink)

    return {INSERT_ROWS_OPERATION: replay_insert, CONVERT_OPERATION: replay_convert}


async def process_dead_letter_queue(
    max_items: int | None = None,
    max_retries: int | None = None,
    *,
    sink: DeadLetterSink | None = None,
    backend: RowBackend | None = None,
    processor: BatchProcessor | None = None,
    conversion_sink: ConversionSink | None = None,
    settings: GlobalSettings | None = None,
    sleep: SleepFn | None = None,
) -> ReplayReport:
    """Replay queued work; intended to be invoked by an external scheduler.

    Defaults for ``max_items`` and ``max_retries`` come from the dead-letter settings.
    """

    settings = settings or get_settings()
    sink = sink or DeadLetterSink()
    backend = backend or SQLAlchemyRowBackend()
    processor = processor or BatchProcessor.from_settings(backend, settings, sleep=sleep)

    for operation, handler in build_replay_handlers(processor, backend, conversion_sink).items():
        sink.register_handler(operation, handler)

    report = await sink.dequeue(
        max_items=max_items or settings.dead_letter.max_items,
        max_retries=max_retries or settings.dead_letter.max_retries,
    )
    logger.info(
        "Dead-letter replay: %d selected, %d replayed, %d failed, %d skipped",
        report.selected,
        report.replayed,
        report.failed,
        report.skipped,
        extra={"status": "replay"},
    )
    return report
