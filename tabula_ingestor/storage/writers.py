"""Record writers for the centralized, decentralized and polyglot layouts."""

from __future__ import annotations

import hashlib
import json
import re
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Engine,
    Insert,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
    delete,
    insert,
    inspect,
    select,
    text,
    update,
)
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from ..exceptions import ValidationError
from ..models.base import utcnow
from ..models.normalized import NormalizedRecord, NormalizedRecordMetadata
from ..schemas.rows import to_json_value
from ..schemas.storage import ArchitecturePattern, SchemaColumn, SchemaDefinition
from ..utils.logging import setup_logger

logger = setup_logger(__name__, context={"source_id": "record_writers"})

_IDENTIFIER = re.compile(r"[^a-zA-Z0-9_]")

_SYSTEM_COLUMNS = frozenset(
    {
        "id",
        "project_id",
        "file_id",
        "schema_id",
        "lineage_key",
        "data_digest",
        "version",
        "created_at",
        "updated_at",
        "is_active",
        "previous_version_id",
        "partition_key",
    }
)

_TRUE_STRINGS = frozenset({"true", "t", "yes", "y", "1"})
_FALSE_STRINGS = frozenset({"false", "f", "no", "n", "0"})


def sanitize_identifier(name: str) -> str:
    """Replace every character outside ``[a-zA-Z0-9_]`` with an underscore."""

    return _IDENTIFIER.sub("_", name)


def record_digest(data: Mapping[str, Any]) -> str:
    """Stable fingerprint of a record payload, insensitive to key order."""

    canonical = json.dumps(data, sort_keys=True, default=str, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass(frozen=True, slots=True)
class RecordVersion:
    """A record version ready to be persisted."""

    id: str
    project_id: str
    file_id: str
    schema_id: str
    lineage_key: str
    data: dict[str, Any]
    version: int
    partition_key: str | None = None
    previous_version_id: str | None = None

    @property
    def digest(self) -> str:
        return record_digest(self.data)


@dataclass(frozen=True, slots=True)
class LineageHead:
    """The newest stored version of a lineage, active or not."""

    id: str
    version: int
    digest: str
    is_active: bool


@dataclass(frozen=True, slots=True)
class RecordSnapshot:
    """A stored version as read back for history entries."""

    id: str
    project_id: str
    file_id: str
    version: int
    data: dict[str, Any]
    is_active: bool


@dataclass(frozen=True, slots=True)
class InactiveVersion:
    """A superseded version considered by retention."""

    id: str
    lineage_key: str
    version: int
    updated_at: datetime


class RecordWriter(ABC):
    """Persists record versions in one physical layout.

    Each call runs inside the caller's session; the writer never commits.
    """

    pattern: ArchitecturePattern

    def prepare(self, engine: Engine, schema: SchemaDefinition) -> None:
        """Create whatever storage ``schema`` needs before its first write."""

    @abstractmethod
    def find_head(
        self, session: Session, schema: SchemaDefinition, project_id: str, lineage_key: str
    ) -> LineageHead | None:
        """Return the newest version of a lineage, if any."""

    @abstractmethod
    def snapshot(
        self, session: Session, schema: SchemaDefinition, record_id: str
    ) -> RecordSnapshot | None:
        """Read one stored version back as a JSON-ready payload."""

    @abstractmethod
    def write(self, session: Session, schema: SchemaDefinition, record: RecordVersion) -> bool:
        """Insert ``record``; return False when an identical version already existed."""

    @abstractmethod
    def overwrite(
        self, session: Session, schema: SchemaDefinition, record_id: str, record: RecordVersion
    ) -> None:
        """Replace the payload of an existing version in place."""

    @abstractmethod
    def deactivate(self, session: Session, schema: SchemaDefinition, record_id: str) -> None:
        """Mark a version inactive."""

    @abstractmethod
    def inactive_versions(
        self, session: Session, schema: SchemaDefinition, project_id: str
    ) -> list[InactiveVersion]:
        """List inactive versions of ``schema`` within a project."""

    @abstractmethod
    def purge(self, session: Session, schema: SchemaDefinition, record_ids: Sequence[str]) -> int:
        """Delete the given versions; history is never touched."""


class CentralizedWriter(RecordWriter):
    """Stores every record as a JSON payload in the shared ``normalized_records`` table."""

    pattern = ArchitecturePattern.CENTRALIZED

    def find_head(
        self, session: Session, schema: SchemaDefinition, project_id: str, lineage_key: str
    ) -> LineageHead | None:
        statement = (
            select(NormalizedRecord)
            .where(
                NormalizedRecord.project_id == project_id,
                NormalizedRecord.schema_id == schema.id,
                NormalizedRecord.lineage_key == lineage_key,
            )
            .order_by(NormalizedRecord.version.desc())
            .limit(1)
        )
        row = session.scalars(statement).first()
        if row is None:
            return None
        return LineageHead(
            id=row.id,
            version=row.version,
            digest=record_digest(row.data),
            is_active=row.is_active,
        )

    def snapshot(
        self, session: Session, schema: SchemaDefinition, record_id: str
    ) -> RecordSnapshot | None:
        row = session.get(NormalizedRecord, record_id)
        if row is None or row.schema_id != schema.id:
            return None
        return RecordSnapshot(
            id=row.id,
            project_id=row.project_id,
            file_id=row.file_id,
            version=row.version,
            data=dict(row.data),
            is_active=row.is_active,
        )

    def write(self, session: Session, schema: SchemaDefinition, record: RecordVersion) -> bool:
        now = utcnow()
        session.add(
            NormalizedRecord(
                id=record.id,
                project_id=record.project_id,
                file_id=record.file_id,
                schema_id=record.schema_id,
                lineage_key=record.lineage_key,
                data=record.data,
                version=record.version,
                created_at=now,
                updated_at=now,
                is_active=True,
                previous_version_id=record.previous_version_id,
                partition_key=record.partition_key,
            )
        )
        session.flush()
        return True

    def overwrite(
        self, session: Session, schema: SchemaDefinition, record_id: str, record: RecordVersion
    ) -> None:
        session.execute(
            update(NormalizedRecord)
            .where(NormalizedRecord.id == record_id)
            .values(
                data=record.data,
                file_id=record.file_id,
                partition_key=record.partition_key,
                updated_at=utcnow(),
            )
        )

    def deactivate(self, session: Session, schema: SchemaDefinition, record_id: str) -> None:
        session.execute(
            update(NormalizedRecord)
            .where(NormalizedRecord.id == record_id)
            .values(is_active=False, updated_at=utcnow())
        )

    def inactive_versions(
        self, session: Session, schema: SchemaDefinition, project_id: str
    ) -> list[InactiveVersion]:
        statement = select(
            NormalizedRecord.id,
            NormalizedRecord.lineage_key,
            NormalizedRecord.version,
            NormalizedRecord.updated_at,
        ).where(
            NormalizedRecord.project_id == project_id,
            NormalizedRecord.schema_id == schema.id,
            NormalizedRecord.is_active.is_(False),
        )
        return [InactiveVersion(*row) for row in session.execute(statement)]

    def purge(self, session: Session, schema: SchemaDefinition, record_ids: Sequence[str]) -> int:
        if not record_ids:
            return 0
        result = session.execute(delete(NormalizedRecord).where(NormalizedRecord.id.in_(record_ids)))
        return int(result.rowcount or 0)


class PolyglotWriter(CentralizedWriter):
    """Centralized storage plus a side-record describing where the canonical copy lives."""

    pattern = ArchitecturePattern.POLYGLOT

    storage_type = "postgresql"
    storage_location = "normalized_records"

    def write(self, session: Session, schema: SchemaDefinition, record: RecordVersion) -> bool:
        super().write(session, schema, record)
        session.add(
            NormalizedRecordMetadata(
                id=f"metadata_{record.id}",
                record_id=record.id,
                storage_type=self.storage_type,
                storage_location=self.storage_location,
                details={
                    "version": record.version,
                    "schemaId": record.schema_id,
                    "projectId": record.project_id,
                    "fileId": record.file_id,
                },
            )
        )
        session.flush()
        return True

    def purge(self, session: Session, schema: SchemaDefinition, record_ids: Sequence[str]) -> int:
        if record_ids:
            session.execute(
                delete(NormalizedRecordMetadata).where(
                    NormalizedRecordMetadata.record_id.in_(record_ids)
                )
            )
        return super().purge(session, schema, record_ids)


def _coerce_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float, Decimal)):
        return bool(value)
    lowered = str(value).strip().lower()
    if lowered in _TRUE_STRINGS:
        return True
    if lowered in _FALSE_STRINGS:
        return False
    raise ValueError(f"'{value}' is not a boolean")


def _coerce_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        moment = value
    elif isinstance(value, date):
        moment = datetime(value.year, value.month, value.day)
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    else:
        stamp = str(value).strip()
        if stamp.endswith("Z"):
            stamp = f"{stamp[:-1]}+00:00"
        moment = datetime.fromisoformat(stamp)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def coerce_value(column: SchemaColumn, value: Any) -> Any:
    """Convert a payload value to the Python type of ``column``'s declared type."""

    if value is None:
        return None
    column_type = (column.type or "text").lower()
    try:
        if column_type == "integer":
            number = Decimal(str(value).strip())
            if number != number.to_integral_value():
                raise ValueError(f"'{value}' is not an integer")
            return int(number)
        if column_type == "numeric":
            return Decimal(str(value).strip())
        if column_type == "boolean":
            return _coerce_boolean(value)
        if column_type == "timestamp":
            return _coerce_timestamp(value)
        if column_type == "json":
            return value
    except (ValueError, InvalidOperation, OverflowError) as exc:
        raise ValidationError(
            f"Column '{column.name}' expects {column_type}: {exc}"
        ) from exc
    return value if isinstance(value, str) else str(value)


def _column_type(column: SchemaColumn) -> Any:
    column_type = (column.type or "text").lower()
    if column_type == "integer":
        return Integer()
    if column_type == "numeric":
        return Numeric()
    if column_type == "boolean":
        return Boolean()
    if column_type == "timestamp":
        return DateTime(timezone=True)
    if column_type == "json":
        return JSON()
    return Text()


class DecentralizedWriter(RecordWriter):
    """One physical table per schema with one typed column per schema column.

    Tables are named ``normalized_data_<schema id>`` and created on first use.
    A UNIQUE(project_id, lineage_key, version) constraint makes repeated
    inserts of the same version a no-op.
    """

    pattern = ArchitecturePattern.DECENTRALIZED

    def __init__(self) -> None:
        self._tables: dict[tuple[str, int], Table] = {}

    @staticmethod
    def table_name(schema_id: str) -> str:
        return f"normalized_data_{sanitize_identifier(schema_id)}"

    @staticmethod
    def physical_name(column_name: str) -> str:
        name = sanitize_identifier(column_name)
        return f"col_{name}" if name in _SYSTEM_COLUMNS else name

    def table_for(self, schema: SchemaDefinition) -> Table:
        key = (schema.id, schema.version)
        table = self._tables.get(key)
        if table is not None:
            return table

        name = self.table_name(schema.id)
        physical = [self.physical_name(column.name) for column in schema.columns]
        if len(set(physical)) != len(physical):
            raise ValidationError(
                f"Schema {schema.id} has column names that collide once sanitized"
            )

        table = Table(
            name,
            MetaData(),
            Column("id", String(64), primary_key=True),
            Column("project_id", String(64), nullable=False, index=True),
            Column("file_id", String(64), nullable=False, index=True),
            Column("schema_id", String(64), nullable=False),
            Column("lineage_key", Text, nullable=False),
            Column("data_digest", String(64), nullable=False),
            Column("version", Integer, nullable=False, index=True),
            Column("created_at", DateTime(timezone=True), nullable=False),
            Column("updated_at", DateTime(timezone=True), nullable=False),
            Column("is_active", Boolean, nullable=False, default=True, index=True),
            Column("previous_version_id", String(64), nullable=True),
            Column("partition_key", String(255), nullable=True, index=True),
            *(
                Column(column_name, _column_type(column), nullable=not column.is_required)
                for column_name, column in zip(physical, schema.columns)
            ),
            UniqueConstraint("project_id", "lineage_key", "version", name=f"uq_{name}_version"),
        )
        self._tables[key] = table
        return table

    def prepare(self, engine: Engine, schema: SchemaDefinition) -> None:
        """Create the schema's table, or add columns a newer version introduced.

        Added columns are always nullable so rows stored under earlier
        versions stay valid.
        """

        if not schema.columns:
            raise ValidationError(f"Schema {schema.id} has no columns to lay out")
        table = self.table_for(schema)
        table.create(bind=engine, checkfirst=True)

        existing = {column["name"] for column in inspect(engine).get_columns(table.name)}
        missing = [column for column in table.columns if column.name not in existing]
        if not missing:
            return
        quote = engine.dialect.identifier_preparer.quote
        with engine.begin() as connection:
            for column in missing:
                column_type = column.type.compile(dialect=engine.dialect)
                connection.execute(
                    text(
                        f"ALTER TABLE {quote(table.name)} "
                        f"ADD COLUMN {quote(column.name)} {column_type}"
                    )
                )
        logger.info(
            "Added %d column(s) to %s for schema version %s: %s",
            len(missing),
            table.name,
            schema.version,
            ", ".join(column.name for column in missing),
            extra={"status": "schema_migrated"},
        )

    def _skip_conflicts(self, session: Session, table: Table) -> Insert:
        dialect = session.get_bind().dialect.name
        conflict = ["project_id", "lineage_key", "version"]
        if dialect == "postgresql":
            return pg_insert(table).on_conflict_do_nothing(index_elements=conflict)
        if dialect == "sqlite":
            return sqlite_insert(table).on_conflict_do_nothing(index_elements=conflict)
        if dialect in {"mysql", "mariadb"}:
            return insert(table).prefix_with("IGNORE")
        return insert(table)

    def _typed_values(self, schema: SchemaDefinition, data: Mapping[str, Any]) -> dict[str, Any]:
        return {
            self.physical_name(column.name): coerce_value(column, data.get(column.name))
            for column in schema.columns
        }

    def find_head(
        self, session: Session, schema: SchemaDefinition, project_id: str, lineage_key: str
    ) -> LineageHead | None:
        table = self.table_for(schema)
        statement = (
            select(table.c.id, table.c.version, table.c.data_digest, table.c.is_active)
            .where(table.c.project_id == project_id, table.c.lineage_key == lineage_key)
            .order_by(table.c.version.desc())
            .limit(1)
        )
        row = session.execute(statement).first()
        if row is None:
            return None
        return LineageHead(
            id=row.id, version=row.version, digest=row.data_digest, is_active=row.is_active
        )

    def snapshot(
        self, session: Session, schema: SchemaDefinition, record_id: str
    ) -> RecordSnapshot | None:
        table = self.table_for(schema)
        row = session.execute(select(table).where(table.c.id == record_id)).mappings().first()
        if row is None:
            return None
        data = {
            column.name: to_json_value(row[self.physical_name(column.name)])
            for column in schema.columns
        }
        return RecordSnapshot(
            id=row["id"],
            project_id=row["project_id"],
            file_id=row["file_id"],
            version=row["version"],
            data=data,
            is_active=row["is_active"],
        )

    def write(self, session: Session, schema: SchemaDefinition, record: RecordVersion) -> bool:
        table = self.table_for(schema)
        now = utcnow()
        values = {
            "id": record.id,
            "project_id": record.project_id,
            "file_id": record.file_id,
            "schema_id": record.schema_id,
            "lineage_key": record.lineage_key,
            "data_digest": record.digest,
            "version": record.version,
            "created_at": now,
            "updated_at": now,
            "is_active": True,
            "previous_version_id": record.previous_version_id,
            "partition_key": record.partition_key,
            **self._typed_values(schema, record.data),
        }
        result = session.execute(self._skip_conflicts(session, table).values(**values))
        inserted = result.rowcount
        if inserted == 0:
            logger.info(
                "Version %s of lineage %s already stored in %s",
                record.version,
                record.lineage_key,
                table.name,
                extra={"status": "duplicate"},
            )
            return False
        return True

    def overwrite(
        self, session: Session, schema: SchemaDefinition, record_id: str, record: RecordVersion
    ) -> None:
        table = self.table_for(schema)
        session.execute(
            update(table)
            .where(table.c.id == record_id)
            .values(
                file_id=record.file_id,
                data_digest=record.digest,
                partition_key=record.partition_key,
                updated_at=utcnow(),
                **self._typed_values(schema, record.data),
            )
        )

    def deactivate(self, session: Session, schema: SchemaDefinition, record_id: str) -> None:
        table = self.table_for(schema)
        session.execute(
            update(table).where(table.c.id == record_id).values(is_active=False, updated_at=utcnow())
        )

    def inactive_versions(
        self, session: Session, schema: SchemaDefinition, project_id: str
    ) -> list[InactiveVersion]:
        table = self.table_for(schema)
        statement = select(
            table.c.id, table.c.lineage_key, table.c.version, table.c.updated_at
        ).where(table.c.project_id == project_id, table.c.is_active.is_(False))
        return [InactiveVersion(*row) for row in session.execute(statement)]

    def purge(self, session: Session, schema: SchemaDefinition, record_ids: Sequence[str]) -> int:
        if not record_ids:
            return 0
        table = self.table_for(schema)
        result = session.execute(delete(table).where(table.c.id.in_(record_ids)))
        return int(result.rowcount or 0)


_WRITERS: dict[ArchitecturePattern, type[RecordWriter]] = {
    ArchitecturePattern.CENTRALIZED: CentralizedWriter,
    ArchitecturePattern.DECENTRALIZED: DecentralizedWriter,
    ArchitecturePattern.POLYGLOT: PolyglotWriter,
}


def writer_for(pattern: ArchitecturePattern | str) -> RecordWriter:
    """Instantiate the writer for an architecture pattern."""

    return _WRITERS[ArchitecturePattern(pattern)]()
