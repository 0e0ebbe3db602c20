"""Prometheus metrics definitions for Tabula_Ingestor."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

INGESTION_RUNS = Counter(
    "tabula_ingestion_runs_total",
    "Total ingestion runs by source format and final status.",
    labelnames=("format", "status"),
)

ROWS_INGESTED = Counter(
    "tabula_rows_ingested_total",
    "Rows read from sources and handed to the batcher.",
    labelnames=("format",),
)

MALFORMED_ROWS = Counter(
    "tabula_malformed_rows_total",
    "Source rows dropped because they could not be decoded.",
    labelnames=("format",),
)

BATCHES_PROCESSED = Counter(
    "tabula_batches_processed_total",
    "Batches processed by terminal status.",
    labelnames=("status",),
)

BATCH_STRATEGY_USED = Counter(
    "tabula_batch_strategy_total",
    "Insert strategies exercised while processing batches.",
    labelnames=("strategy",),
)

BATCH_FAILURES = Counter(
    "tabula_batch_failures_total",
    "Insert failures grouped by classification.",
    labelnames=("kind",),
)

ROWS_WRITTEN = Counter(
    "tabula_rows_written_total",
    "Rows written or skipped as already present.",
    labelnames=("outcome",),
)

DEAD_LETTER_EVENTS = Counter(
    "tabula_dead_letter_events_total",
    "Dead-letter queue activity by event.",
    labelnames=("operation", "event"),
)

BATCH_DURATION = Histogram(
    "tabula_batch_duration_seconds",
    "Distribution of batch processing durations in seconds.",
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60),
)

ACTIVE_INGESTIONS = Gauge(
    "tabula_active_ingestions",
    "Number of ingestion runs currently in progress.",
)

NORMALIZED_WRITES = Counter(
    "tabula_normalized_writes_total",
    "Normalized record writes by architecture pattern and operation.",
    labelnames=("pattern", "operation"),
)


def record_ingestion_run(format_tag: str, status: str) -> None:
    """Increment the ingestion run counter with the supplied labels."""

    INGESTION_RUNS.labels(format=format_tag, status=status).inc()


def record_rows_ingested(format_tag: str, count: int = 1) -> None:
    ROWS_INGESTED.labels(format=format_tag).inc(max(count, 0))


def record_malformed_row(format_tag: str) -> None:
    MALFORMED_ROWS.labels(format=format_tag).inc()


def record_batch_processed(status: str, duration_seconds: float) -> None:
    """Record the terminal status and duration of one batch."""

    BATCHES_PROCESSED.labels(status=status).inc()
    BATCH_DURATION.observe(max(duration_seconds, 0.0))


def record_strategy(strategy: str) -> None:
    BATCH_STRATEGY_USED.labels(strategy=strategy).inc()


def record_batch_failure(kind: str) -> None:
    BATCH_FAILURES.labels(kind=kind).inc()


def record_rows_written(succeeded: int, duplicates: int, failed: int) -> None:
    """Record row-level write outcomes for a processed batch."""

    if succeeded - duplicates > 0:
        ROWS_WRITTEN.labels(outcome="inserted").inc(succeeded - duplicates)
    if duplicates > 0:
        ROWS_WRITTEN.labels(outcome="duplicate").inc(duplicates)
    if failed > 0:
        ROWS_WRITTEN.labels(outcome="failed").inc(failed)


def record_dead_letter_event(operation: str, event: str) -> None:
    """Increment the dead-letter counter (events: enqueued, replayed, retry_failed, skipped)."""

    DEAD_LETTER_EVENTS.labels(operation=operation, event=event).inc()


def increment_active_ingestions() -> None:
    ACTIVE_INGESTIONS.inc()


def decrement_active_ingestions() -> None:
    ACTIVE_INGESTIONS.dec()


def record_normalized_write(pattern: str, operation: str) -> None:
    NORMALIZED_WRITES.labels(pattern=pattern, operation=operation).inc()
