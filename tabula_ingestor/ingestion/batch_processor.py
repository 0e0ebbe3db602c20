"""Adaptive batch processor: strategy selection, retries, splitting and per-row fallback."""

from __future__ import annotations

import time
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from ..deadletter.sink import DeadLetterSink
from ..exceptions import BatchExhaustedError
from ..monitoring.metrics import (
    record_batch_failure,
    record_batch_processed,
    record_rows_written,
    record_strategy,
)
from ..schemas.rows import Batch, BatchOutcome, RowFailure, TaggedRow, to_json_value
from ..storage.backend import RowBackend
from ..utils.config import BatchSettings, GlobalSettings, get_settings
from ..utils.logging import log_batch_outcome, setup_logger
from ..utils.retry import RetryConfig, RetryContext, SleepFn, retry_with_backoff
from .batcher import BackendMode
from .failures import FailureKind, classify_failure

logger = setup_logger(__name__)

INSERT_ROWS_OPERATION = "insert_rows"

_RETRYABLE_KINDS = frozenset({FailureKind.OTHER, FailureKind.CONNECTION})


@dataclass(slots=True)
class _WorkItem:
    batch: Batch
    depth: int


def serialize_rows(rows: Sequence[TaggedRow]) -> list[dict[str, Any]]:
    """Return a JSON-ready representation of rows for dead-letter payloads."""

    return [
        {
            "row_number": row.row_number,
            "source_id": row.source_id,
            "ingested_at": row.ingested_at.isoformat(),
            "values": {str(key): to_json_value(value) for key, value in row.values.items()},
        }
        for row in rows
    ]


class BatchProcessor:
    """Writes batches through a :class:`RowBackend`, recovering from partial failure.

    Strategy per batch (or sub-batch):

    * accelerated mode or small batches use the non-transactional,
      duplicate-skipping insert; oversized ones are first cut into fixed chunks;
    * everything else uses a single transactional insert with a time budget;
    * timeouts split the batch, permission errors go straight to per-row
      inserts, connection and other errors are retried with backoff before
      splitting, and only rows that still fail one at a time are escalated.

    Splitting is driven by an explicit work stack rather than recursion.
    """

    def __init__(
        self,
        backend: RowBackend,
        *,
        mode: BackendMode | str = BackendMode.DIRECT,
        batch_settings: BatchSettings | None = None,
        transaction_timeout_ms: int = 10_000,
        transaction_max_wait_ms: int = 2_000,
        dead_letters: DeadLetterSink | None = None,
        retry_context: RetryContext | None = None,
        sleep: SleepFn | None = None,
    ) -> None:
        self.backend = backend
        self.mode = BackendMode(mode)
        self.settings = batch_settings or BatchSettings()
        self.transaction_timeout_ms = transaction_timeout_ms
        self.transaction_max_wait_ms = transaction_max_wait_ms
        self.dead_letters = dead_letters
        self.retry_context = retry_context or RetryContext()
        self._sleep = sleep
        self._retry_config = RetryConfig(
            max_attempts=self.settings.max_retries,
            base_delay=self.settings.base_delay_seconds,
        )

    @classmethod
    def from_settings(
        cls,
        backend: RowBackend,
        settings: GlobalSettings | None = None,
        **kwargs: Any,
    ) -> BatchProcessor:
        """Build a processor from global settings; keyword arguments take precedence."""

        settings = settings or get_settings()
        kwargs.setdefault("mode", settings.backend_mode)
        kwargs.setdefault("batch_settings", settings.batch)
        kwargs.setdefault("transaction_timeout_ms", settings.transaction_timeout_ms)
        kwargs.setdefault("transaction_max_wait_ms", settings.transaction_max_wait_ms)
        return cls(backend, **kwargs)

    def uses_transaction(self, size: int) -> bool:
        """Return True when a batch of ``size`` rows takes the transactional path."""

        return self.mode is BackendMode.DIRECT and size > self.settings.non_transactional_max

    def _max_split_depth(self, size: int) -> int:
        depth = 1
        while size > self.settings.split_floor:
            size = -(-size // 4)
            depth += 1
        return depth

    def split(self, batch: Batch) -> list[Batch] | None:
        """Return sub-batches for a split, or None when the batch should go per-row."""

        size = len(batch)
        if self.mode is BackendMode.ACCELERATED:
            if size > self.settings.chunk_threshold:
                return batch.split(8)
            if size > self.settings.non_transactional_max:
                return batch.split(4)
            return None
        return batch.split(4)

    async def process(self, file_id: str, batch: Batch, *, escalate: bool = True) -> BatchOutcome:
        """Write one batch to completion.

        Args:
            file_id: File the batch belongs to.
            batch: Rows to write.
            escalate: Queue rows that fail every strategy to the dead-letter sink.

        Returns:
            Aggregated counts for the batch. Duplicates count as successes.

        Raises:
            BatchExhaustedError: Only when ``escalate`` is set and no dead-letter
                sink is configured to receive rows lost to backend unavailability.
        """

        started = time.perf_counter()
        outcome = BatchOutcome()
        max_depth = self._max_split_depth(len(batch))
        stack: list[_WorkItem] = [_WorkItem(batch, 0)]
        outages: list[BaseException] = []

        while stack:
            item = stack.pop()
            current = item.batch
            if not current.rows:
                continue

            if not self.uses_transaction(len(current)) and len(current) > self.settings.chunk_threshold:
                outcome.note("chunked")
                record_strategy("chunked")
                chunks = current.chunks(self.settings.chunk_size)
                stack.extend(_WorkItem(chunk, item.depth) for chunk in reversed(chunks))
                continue

            try:
                outcome.merge(await self._bulk_insert(file_id, current))
                continue
            except Exception as exc:  # classified below
                kind = classify_failure(exc)
                record_batch_failure(kind.value)
                error = exc

            if kind is FailureKind.CONNECTION:
                logger.warning(
                    "Backend unreachable after %s attempts: %s",
                    self.settings.max_retries,
                    error,
                    extra={"file_id": file_id, "batch": current.sequence, "status": "connection"},
                )

            if kind is FailureKind.PERMISSION or kind is FailureKind.DUPLICATE:
                outcome.merge(await self.insert_individually(file_id, current, outages))
                continue

            # Timeouts and exhausted retries split large batches.
            sub_batches = None
            if len(current) > self.settings.split_floor and item.depth < max_depth:
                sub_batches = self.split(current)
            if sub_batches:
                logger.warning(
                    "%s on %d-row batch; splitting into %d",
                    kind.value,
                    len(current),
                    len(sub_batches),
                    extra={"file_id": file_id, "batch": current.sequence, "status": "split"},
                )
                outcome.note("split")
                record_strategy("split")
                stack.extend(_WorkItem(sub, item.depth + 1) for sub in reversed(sub_batches))
            else:
                outcome.merge(await self.insert_individually(file_id, current, outages))

        if outcome.failures and escalate:
            await self._escalate(file_id, batch, outcome, outages[-1] if outages else None)

        duration = time.perf_counter() - started
        record_batch_processed(outcome.status, duration)
        record_rows_written(outcome.succeeded, outcome.duplicates, outcome.failed)
        log_batch_outcome(
            logger,
            file_id,
            batch.sequence,
            int(duration * 1000),
            outcome.status,
            rows=len(batch),
            succeeded=outcome.succeeded,
            failed=outcome.failed,
            strategies="/".join(outcome.strategies) or "-",
        )
        return outcome

    async def _insert_attempt(self, file_id: str, batch: Batch, transactional: bool) -> int:
        async with self.backend.acquire() as handle:
            return await self.backend.insert_many(
                handle,
                file_id,
                batch.rows,
                transactional=transactional,
                timeout_ms=self.transaction_timeout_ms if transactional else None,
                max_wait_ms=self.transaction_max_wait_ms if transactional else None,
            )

    async def _bulk_insert(self, file_id: str, batch: Batch) -> BatchOutcome:
        transactional = self.uses_transaction(len(batch))
        strategy = "transactional" if transactional else "insert_many"
        first_row = batch.rows[0].row_number
        inserted = await retry_with_backoff(
            lambda: self._insert_attempt(file_id, batch, transactional),
            config=self._retry_config,
            should_retry=lambda exc: classify_failure(exc) in _RETRYABLE_KINDS,
            context=self.retry_context,
            key=f"{file_id}:{batch.sequence}:{first_row}:{len(batch)}",
            sleep=self._sleep,
            log=logger,
        )
        record_strategy(strategy)
        return BatchOutcome(
            succeeded=len(batch),
            duplicates=len(batch) - inserted,
            strategies=[strategy],
        )

    async def _insert_row(
        self,
        file_id: str,
        row: TaggedRow,
        outcome: BatchOutcome,
        outages: list[BaseException] | None = None,
    ) -> None:
        try:
            async with self.backend.acquire() as handle:
                await self.backend.insert_one(handle, file_id, row)
        except Exception as exc:  # classified below
            kind = classify_failure(exc)
            if kind is FailureKind.DUPLICATE:
                outcome.succeeded += 1
                outcome.duplicates += 1
                return
            if kind is FailureKind.CONNECTION and outages is not None:
                outages.append(exc)
            outcome.failed += 1
            outcome.failures.append(
                RowFailure(row.row_number, type(exc).__name__, str(exc) or type(exc).__name__)
            )
            logger.warning(
                "Row %d could not be inserted: %s",
                row.row_number,
                exc,
                extra={"file_id": file_id, "status": "row_failed"},
            )
            return
        outcome.succeeded += 1

    async def insert_individually(
        self,
        file_id: str,
        batch: Batch,
        outages: list[BaseException] | None = None,
    ) -> BatchOutcome:
        """Insert in mini-batches, falling back to single rows when a mini-batch fails.

        Uniqueness violations count as successes; any other row failure is
        recorded and the remaining rows are still attempted. Rows lost to an
        unreachable backend also append their error to ``outages``.
        """

        outcome = BatchOutcome(strategies=["per_row"])
        record_strategy("per_row")
        for mini_batch in batch.chunks(self.settings.mini_batch_size):
            try:
                inserted = await self._insert_attempt(file_id, mini_batch, False)
            except Exception as exc:  # falls back to single rows
                logger.debug(
                    "Mini-batch of %d rows failed (%s); inserting rows one by one",
                    len(mini_batch),
                    exc,
                    extra={"file_id": file_id, "batch": batch.sequence},
                )
                for row in mini_batch.rows:
                    await self._insert_row(file_id, row, outcome, outages)
                continue
            outcome.succeeded += len(mini_batch)
            outcome.duplicates += len(mini_batch) - inserted
        return outcome

    async def _escalate(
        self,
        file_id: str,
        batch: Batch,
        outcome: BatchOutcome,
        outage: BaseException | None,
    ) -> None:
        failed_numbers = {failure.row_number for failure in outcome.failures}
        failed_rows = [row for row in batch.rows if row.row_number in failed_numbers]
        summary = "; ".join(
            sorted({f"{failure.error_type}: {failure.message}" for failure in outcome.failures})
        )

        if self.dead_letters is None:
            if outage is not None:
                raise BatchExhaustedError(file_id, batch.sequence, original_error=outage)
            return

        payload = {
            "file_id": file_id,
            "batch_sequence": batch.sequence,
            "target_size": batch.target_size,
            "rows": serialize_rows(failed_rows),
            "failures": [failure.as_dict() for failure in outcome.failures],
        }
        entry_id = await self.dead_letters.enqueue(file_id, INSERT_ROWS_OPERATION, payload, summary)
        outcome.dead_lettered = entry_id is not None
