"""Fault injection utilities for exercising the batch failure paths.

This module provides an in-memory :class:`RowBackend` whose writes can be
made to fail on demand:

- queued failures consumed by the next bulk inserts
- rules that fire for bulk inserts matching a predicate
- rows that always (or a bounded number of times) fail to insert
"""

from __future__ import annotations

import asyncio
import random
from collections import deque
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

from ..exceptions import BackendUnavailableError, DuplicateRowError
from ..schemas.rows import TaggedRow
from ..storage.backend import RowBackend, row_params
from ..utils.logging import setup_logger

logger = setup_logger(__name__, context={"source_id": "fault_backend"})

RowsPredicate = Callable[[Sequence[TaggedRow]], bool]


@dataclass(slots=True)
class FaultRule:
    """Raise ``error`` for bulk inserts accepted by ``predicate``."""

    error: BaseException
    predicate: RowsPredicate
    remaining: int | None = None
    probability: float = 1.0
    fired: int = 0

    def should_fire(self, rows: Sequence[TaggedRow], rng: random.Random) -> bool:
        if self.remaining is not None and self.remaining <= 0:
            return False
        if not self.predicate(rows):
            return False
        if self.probability < 1.0 and rng.random() >= self.probability:
            return False
        if self.remaining is not None:
            self.remaining -= 1
        self.fired += 1
        return True


@dataclass(slots=True)
class BulkCall:
    """One recorded ``insert_many`` invocation."""

    size: int
    first_row: int
    transactional: bool
    timeout_ms: int | None
    max_wait_ms: int | None
    failed: bool = False


@dataclass(slots=True)
class _RowFault:
    error: BaseException
    remaining: int | None = None


@dataclass(slots=True)
class _Handle:
    number: int
    released: bool = field(default=False)


class FaultInjectingBackend(RowBackend):
    """In-memory row store with scripted failures.

    Stored rows are keyed by ``(file_id, row_number)``; bulk inserts skip
    existing keys while single inserts raise :class:`DuplicateRowError`.
    Every handle checked out with :meth:`acquire` is tracked so tests can
    assert it was released.
    """

    def __init__(self, *, latency_seconds: float = 0.0, seed: int | None = 0) -> None:
        self.rows: dict[tuple[str, int], dict[str, Any]] = {}
        self.bulk_calls: list[BulkCall] = []
        self.single_calls: list[int] = []
        self.acquired = 0
        self.released = 0
        self.max_in_use = 0
        self.available = True
        self._in_use = 0
        self._latency = latency_seconds
        self._rng = random.Random(seed)
        self._queued: deque[BaseException] = deque()
        self._rules: list[FaultRule] = []
        self._row_faults: dict[int, _RowFault] = {}

    # ------------------------------------------------------------------
    # Fault scripting
    # ------------------------------------------------------------------
    def queue_bulk_failures(self, *errors: BaseException) -> None:
        """Fail the next ``len(errors)`` bulk inserts with these errors, in order."""

        self._queued.extend(errors)

    def fail_bulk_when(
        self,
        predicate: RowsPredicate,
        error: BaseException,
        *,
        times: int | None = None,
        probability: float = 1.0,
    ) -> FaultRule:
        """Fail bulk inserts whose rows satisfy ``predicate``."""

        rule = FaultRule(error=error, predicate=predicate, remaining=times, probability=probability)
        self._rules.append(rule)
        return rule

    def fail_row(self, row_number: int, error: BaseException, *, times: int | None = None) -> None:
        """Make any write containing ``row_number`` fail.

        Bulk inserts that include the row fail as a whole; ``times`` bounds
        the number of single-row inserts that fail before the row succeeds.
        """

        self._row_faults[row_number] = _RowFault(error=error, remaining=times)

    def clear_faults(self) -> None:
        self._queued.clear()
        self._rules.clear()
        self._row_faults.clear()

    # ------------------------------------------------------------------
    # RowBackend
    # ------------------------------------------------------------------
    @property
    def in_use(self) -> int:
        return self._in_use

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[_Handle]:
        if not self.available:
            raise BackendUnavailableError("fault backend is offline")
        self.acquired += 1
        self._in_use += 1
        self.max_in_use = max(self.max_in_use, self._in_use)
        handle = _Handle(number=self.acquired)
        try:
            yield handle
        finally:
            handle.released = True
            self.released += 1
            self._in_use -= 1

    async def _pause(self) -> None:
        await asyncio.sleep(self._latency)

    def _bulk_fault(self, rows: Sequence[TaggedRow]) -> BaseException | None:
        if self._queued:
            return self._queued.popleft()
        for rule in self._rules:
            if rule.should_fire(rows, self._rng):
                return rule.error
        for row in rows:
            fault = self._row_faults.get(row.row_number)
            if fault is not None and (fault.remaining is None or fault.remaining > 0):
                return fault.error
        return None

    async def insert_many(
        self,
        handle: Any,
        file_id: str,
        rows: Sequence[TaggedRow],
        *,
        transactional: bool = False,
        timeout_ms: int | None = None,
        max_wait_ms: int | None = None,
    ) -> int:
        await self._pause()
        call = BulkCall(
            size=len(rows),
            first_row=rows[0].row_number if rows else 0,
            transactional=transactional,
            timeout_ms=timeout_ms,
            max_wait_ms=max_wait_ms,
        )
        self.bulk_calls.append(call)
        error = self._bulk_fault(rows)
        if error is not None:
            call.failed = True
            raise error

        inserted = 0
        for row in rows:
            key = (file_id, row.row_number)
            if key in self.rows:
                continue
            self.rows[key] = row_params(file_id, row)
            inserted += 1
        return inserted

    async def insert_one(self, handle: Any, file_id: str, row: TaggedRow) -> None:
        await self._pause()
        self.single_calls.append(row.row_number)
        fault = self._row_faults.get(row.row_number)
        if fault is not None and (fault.remaining is None or fault.remaining > 0):
            if fault.remaining is not None:
                fault.remaining -= 1
            raise fault.error
        key = (file_id, row.row_number)
        if key in self.rows:
            raise DuplicateRowError(f"row {row.row_number} of {file_id} already exists")
        self.rows[key] = row_params(file_id, row)

    async def count_rows(self, file_id: str) -> int:
        return sum(1 for stored_file, _ in self.rows if stored_file == file_id)

    async def stream_rows(self, file_id: str, *, page_size: int = 1000) -> AsyncIterator[dict[str, Any]]:
        numbers = sorted(number for stored_file, number in self.rows if stored_file == file_id)
        for number in numbers:
            yield self.rows[(file_id, number)]["data"]
