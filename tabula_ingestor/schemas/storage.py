"""Pydantic schemas for normalized storage options, queries and schema versions."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class ArchitecturePattern(str, Enum):
    """Physical layout used for normalized records."""

    CENTRALIZED = "centralized"
    DECENTRALIZED = "decentralized"
    POLYGLOT = "polyglot"


class HistoryOperation(str, Enum):
    """Operation tag recorded on history entries."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class RangeBucket(BaseModel):
    """Inclusive ``[min, max]`` bucket for range partitioning."""

    min: Any
    max: Any


class PartitionStrategy(BaseModel):
    """How a record's partition key is derived from one of its fields."""

    model_config = ConfigDict(extra="forbid")

    type: Literal["time", "hash", "range", "list"]
    field: str = Field(..., min_length=1)
    interval: Literal["day", "week", "month", "year"] = "day"
    ranges: list[RangeBucket] = Field(default_factory=list)
    values: list[Any] = Field(default_factory=list)


class RetentionPolicy(BaseModel):
    """Limits on how many inactive record versions are kept."""

    model_config = ConfigDict(extra="forbid")

    type: Literal["time", "version"]
    value: int = Field(..., ge=0)
    unit: Literal["day", "week", "month", "year"] = "day"

    @field_validator("unit", mode="before")
    @classmethod
    def _singular_unit(cls, value: Any) -> Any:
        if isinstance(value, str) and value.endswith("s"):
            return value[:-1]
        return value


class StorageOptions(BaseModel):
    """Options fixed for the lifetime of one storage service instance."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    architecture_pattern: ArchitecturePattern = ArchitecturePattern.CENTRALIZED
    enable_versioning: bool = True
    enable_historization: bool = True
    partition_strategy: PartitionStrategy | None = None
    retention_policy: RetentionPolicy | None = None


FILTER_OPERATORS: tuple[str, ...] = (
    "eq",
    "neq",
    "gt",
    "gte",
    "lt",
    "lte",
    "contains",
    "startsWith",
    "endsWith",
    "in",
)


class QueryOptions(BaseModel):
    """Filtering, ordering and pagination for normalized record reads.

    ``filters`` maps a data field to either a plain value (equality), ``None``
    (field missing or null) or a mapping of operator to operand.
    """

    model_config = ConfigDict(extra="forbid")

    limit: int | None = Field(default=None, ge=1)
    offset: int | None = Field(default=None, ge=0)
    order_by: str | None = None
    order_direction: Literal["asc", "desc"] = "asc"
    filters: dict[str, Any] = Field(default_factory=dict)
    include_inactive: bool = False
    include_history: bool = False
    version: int | None = Field(default=None, ge=1)
    as_of_date: datetime | None = None

    @field_validator("order_direction", mode="before")
    @classmethod
    def _lower_direction(cls, value: Any) -> Any:
        return value.lower() if isinstance(value, str) else value

    @field_validator("filters")
    @classmethod
    def _known_operators(cls, value: dict[str, Any]) -> dict[str, Any]:
        for field_name, condition in value.items():
            if isinstance(condition, dict):
                unknown = sorted(set(condition) - set(FILTER_OPERATORS))
                if unknown:
                    raise ValueError(
                        f"Unsupported filter operator(s) for '{field_name}': {', '.join(unknown)}"
                    )
                if "in" in condition and not isinstance(condition["in"], (list, tuple)):
                    raise ValueError(f"'in' filter for '{field_name}' must be a list")
        return value


class StorageIssue(BaseModel):
    """One record-level error or warning raised while storing."""

    row_index: int
    column: str = ""
    value: Any = None
    message: str


class StorageResult(BaseModel):
    """Outcome of ``store_normalized_data``."""

    success: bool
    normalized_count: int = 0
    error_count: int = 0
    errors: list[StorageIssue] = Field(default_factory=list)
    warnings: list[StorageIssue] = Field(default_factory=list)


class SchemaColumn(BaseModel):
    """One column of a target schema."""

    model_config = ConfigDict(populate_by_name=True)

    id: str | None = None
    name: str = Field(..., min_length=1)
    type: str = "text"
    description: str | None = None
    is_required: bool = False
    is_primary_key: bool = False
    is_foreign_key: bool = False
    references_table: str | None = None
    references_column: str | None = None
    default_value: Any = None
    validation_rules: Any = None

    def comparable(self) -> dict[str, Any]:
        """Return every property that participates in schema comparison."""

        return self.model_dump(exclude={"id", "name"})


class SchemaDefinition(BaseModel):
    """A target schema as resolved by the schema lookup."""

    id: str
    name: str | None = None
    version: int = Field(default=1, ge=1)
    columns: list[SchemaColumn] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_column_names(self) -> SchemaDefinition:
        names = [column.name for column in self.columns]
        if len(names) != len(set(names)):
            raise ValueError(f"Schema {self.id} declares duplicate column names")
        return self

    @property
    def primary_key_columns(self) -> list[str]:
        return [column.name for column in self.columns if column.is_primary_key]


class HistoryEntry(BaseModel):
    """Immutable snapshot appended on every record write."""

    id: str
    record_id: str
    project_id: str
    file_id: str
    schema_id: str
    data: Any
    version: int
    created_at: datetime
    operation: HistoryOperation
    changed_by: str | None = None
    change_reason: str | None = None


class NormalizedRecordView(BaseModel):
    """A normalized record as returned by queries."""

    id: str
    project_id: str
    file_id: str
    schema_id: str
    data: Any
    version: int
    created_at: datetime
    updated_at: datetime
    is_active: bool
    previous_version_id: str | None = None
    partition_key: str | None = None
    metadata: dict[str, Any] | None = None
    history: list[HistoryEntry] | None = None


class ColumnChange(BaseModel):
    """A column present in both versions whose properties differ."""

    column_name: str
    before: SchemaColumn
    after: SchemaColumn


class SchemaComparison(BaseModel):
    """Differences between two column lists keyed by column name."""

    added: list[SchemaColumn] = Field(default_factory=list)
    removed: list[SchemaColumn] = Field(default_factory=list)
    modified: list[ColumnChange] = Field(default_factory=list)
    unchanged: list[SchemaColumn] = Field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.added or self.removed or self.modified)


class SchemaVersionInfo(BaseModel):
    """One stored version of a schema's column list."""

    id: str
    schema_id: str
    version: int
    columns: list[SchemaColumn]
    created_at: datetime
    created_by: str | None = None
    comment: str | None = None
    change_log: SchemaComparison | None = None


class RollbackResult(BaseModel):
    """Outcome of a schema rollback."""

    success: bool
    message: str
    schema_definition: SchemaDefinition | None = None
