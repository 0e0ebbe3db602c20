"""Schemas package initialization."""
from .rows import (
    Batch,
    BatchOutcome,
    IngestionSummary,
    RawRow,
    RowFailure,
    TaggedRow,
    ValueKind,
    value_kind,
)
from .storage import (
    ArchitecturePattern,
    ColumnChange,
    HistoryEntry,
    HistoryOperation,
    NormalizedRecordView,
    PartitionStrategy,
    QueryOptions,
    RetentionPolicy,
    RollbackResult,
    SchemaColumn,
    SchemaComparison,
    SchemaDefinition,
    SchemaVersionInfo,
    StorageIssue,
    StorageOptions,
    StorageResult,
)

__all__ = [
    "ArchitecturePattern",
    "Batch",
    "BatchOutcome",
    "ColumnChange",
    "HistoryEntry",
    "HistoryOperation",
    "IngestionSummary",
    "NormalizedRecordView",
    "PartitionStrategy",
    "QueryOptions",
    "RawRow",
    "RetentionPolicy",
    "RollbackResult",
    "RowFailure",
    "SchemaColumn",
    "SchemaComparison",
    "SchemaDefinition",
    "SchemaVersionInfo",
    "StorageIssue",
    "StorageOptions",
    "StorageResult",
    "TaggedRow",
    "ValueKind",
    "value_kind",
]
