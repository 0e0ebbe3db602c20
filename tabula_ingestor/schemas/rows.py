"""Row, batch and outcome types shared by the ingestion pipeline."""

from __future__ import annotations

import math
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class ValueKind(str, Enum):
    """Declared kind of a single cell value."""

    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    TIMESTAMP = "timestamp"
    JSON = "json"
    NULL = "null"


def value_kind(value: Any) -> ValueKind:
    """Classify a decoded cell value."""

    if value is None:
        return ValueKind.NULL
    if isinstance(value, float) and math.isnan(value):
        return ValueKind.NULL
    # bool is an int subclass, so check it first
    if isinstance(value, bool):
        return ValueKind.BOOLEAN
    if isinstance(value, (int, float, Decimal)):
        return ValueKind.NUMBER
    if isinstance(value, (datetime, date)):
        return ValueKind.TIMESTAMP
    if isinstance(value, (dict, list, tuple)):
        return ValueKind.JSON
    return ValueKind.STRING


def to_json_value(value: Any) -> Any:
    """Return a JSON-serialisable representation of a cell value."""

    kind = value_kind(value)
    if kind is ValueKind.NULL:
        return None
    if kind is ValueKind.TIMESTAMP:
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, tuple):
        return [to_json_value(item) for item in value]
    if isinstance(value, dict):
        return {str(key): to_json_value(item) for key, item in value.items()}
    if isinstance(value, list):
        return [to_json_value(item) for item in value]
    return value


@dataclass(frozen=True, slots=True)
class RawRow:
    """One decoded source record.

    ``row_number`` is the 1-based ordinal of the record within its source
    (header excluded) and doubles as the row identity for idempotent writes.
    """

    row_number: int
    values: Mapping[str, Any]


@dataclass(frozen=True, slots=True)
class TaggedRow:
    """A raw row stamped with its provenance."""

    row_number: int
    values: Mapping[str, Any]
    source_id: str
    ingested_at: datetime

    def as_record(self) -> dict[str, Any]:
        """Return the JSON-ready payload persisted for this row."""

        record = {str(column): to_json_value(value) for column, value in self.values.items()}
        record["source_id"] = self.source_id
        record["ingested_at"] = self.ingested_at.isoformat()
        return record


@dataclass(frozen=True, slots=True)
class Batch:
    """An ordered run of tagged rows belonging to one file."""

    file_id: str
    sequence: int
    target_size: int
    rows: tuple[TaggedRow, ...]

    def __len__(self) -> int:
        return len(self.rows)

    def __iter__(self) -> Iterator[TaggedRow]:
        return iter(self.rows)

    def with_rows(self, rows: Sequence[TaggedRow]) -> Batch:
        """Return a sub-batch carrying the same file and sequence metadata."""

        return Batch(
            file_id=self.file_id,
            sequence=self.sequence,
            target_size=self.target_size,
            rows=tuple(rows),
        )

    def chunks(self, size: int) -> list[Batch]:
        """Slice the batch into consecutive sub-batches of at most ``size`` rows."""

        if size <= 0:
            raise ValueError("chunk size must be positive")
        return [self.with_rows(self.rows[i : i + size]) for i in range(0, len(self.rows), size)]

    def split(self, parts: int) -> list[Batch]:
        """Split into ``parts`` near-equal contiguous sub-batches, dropping empty ones."""

        if parts <= 0:
            raise ValueError("parts must be positive")
        size = math.ceil(len(self.rows) / parts) if self.rows else 0
        if size == 0:
            return []
        return self.chunks(size)


@dataclass(slots=True)
class RowFailure:
    """A row that could not be written after every recovery path was tried."""

    row_number: int
    error_type: str
    message: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "row_number": self.row_number,
            "error_type": self.error_type,
            "message": self.message,
        }


@dataclass(slots=True)
class BatchOutcome:
    """Counts produced by processing one batch (or sub-batch).

    ``succeeded`` includes rows skipped because they already existed.
    """

    succeeded: int = 0
    duplicates: int = 0
    failed: int = 0
    failures: list[RowFailure] = field(default_factory=list)
    strategies: list[str] = field(default_factory=list)
    dead_lettered: bool = False

    def merge(self, other: BatchOutcome) -> BatchOutcome:
        self.succeeded += other.succeeded
        self.duplicates += other.duplicates
        self.failed += other.failed
        self.failures.extend(other.failures)
        for strategy in other.strategies:
            if strategy not in self.strategies:
                self.strategies.append(strategy)
        self.dead_lettered = self.dead_lettered or other.dead_lettered
        return self

    def note(self, strategy: str) -> None:
        if strategy not in self.strategies:
            self.strategies.append(strategy)

    @property
    def total(self) -> int:
        return self.succeeded + self.failed

    @property
    def status(self) -> str:
        if self.failed == 0:
            return "success"
        if self.succeeded == 0:
            return "error"
        return "partial"


class IngestionSummary(BaseModel):
    """Result returned by the top-level ingestion call."""

    file_id: str = Field(..., description="Identifier of the ingested file")
    source_id: str = Field(..., description="Provenance identifier stamped on every row")
    headers: list[str] = Field(default_factory=list, description="Captured column headers")
    row_count: int = Field(0, description="Rows read from the source")
    rows_written: int = Field(0, description="Rows durably stored, duplicates included")
    rows_failed: int = Field(0, description="Rows that could not be stored")
    batch_count: int = Field(0, description="Batches emitted by the batcher")
    batch_size: int = Field(0, description="Target batch size chosen for the run")
    dead_lettered_batches: int = Field(0, description="Batches escalated to the dead-letter sink")
    errors: list[dict[str, Any]] = Field(default_factory=list, description="Per-row failures")
    status: str = Field("active", description="Final file status")
    duration_ms: int = Field(0, description="Wall-clock duration in milliseconds")
