"""Versioned, historized storage of normalized records."""

from __future__ import annotations

import asyncio
import json
from collections import defaultdict
from collections.abc import Awaitable, Callable, Mapping, Sequence
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any
from uuid import uuid4

from sqlalchemy import ColumnElement, Engine, Float, String, and_, cast, false, select, true
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..exceptions import SchemaNotFoundError, TabulaIngestorError, ValidationError
from ..models.base import get_engine, utcnow
from ..models.normalized import (
    NormalizedRecord,
    NormalizedRecordHistory,
    NormalizedRecordMetadata,
)
from ..monitoring.metrics import record_normalized_write
from ..schemas.rows import to_json_value
from ..schemas.storage import (
    HistoryEntry,
    HistoryOperation,
    NormalizedRecordView,
    QueryOptions,
    RetentionPolicy,
    SchemaDefinition,
    StorageIssue,
    StorageOptions,
    StorageResult,
)
from ..utils.config import get_service_configuration
from ..utils.logging import setup_logger
from .partitioning import generate_partition_key
from .schema_versions import SchemaVersionService
from .writers import RecordVersion, RecordWriter, record_digest, writer_for

logger = setup_logger(__name__, context={"source_id": "normalized_storage"})

SchemaLookup = Callable[[str], Awaitable[SchemaDefinition | None]]

_UNIT_DAYS = {"day": 1, "week": 7, "month": 30, "year": 365}


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _as_text(value: Any) -> str | None:
    """Render a payload value the way a JSON ``->>`` extraction would."""

    if value is None:
        return None
    if isinstance(value, str):
        return value
    return json.dumps(to_json_value(value))


def _as_number(value: Any) -> Decimal | None:
    text = _as_text(value)
    if text is None:
        return None
    try:
        return Decimal(text)
    except InvalidOperation:
        return None


_RANGE_METHODS = {"gt": "__gt__", "gte": "__ge__", "lt": "__lt__", "lte": "__le__"}


def _json_text(field: str) -> ColumnElement[Any]:
    """Text of a payload field; NULL when the field is missing or JSON null."""

    return cast(NormalizedRecord.data[field].as_string(), String)


def _text_literals(operand: Any) -> list[str]:
    if operand is None:
        return []
    # SQLite extracts JSON booleans as 1 and 0.
    if isinstance(operand, bool):
        return [json.dumps(operand), str(int(operand))]
    if isinstance(operand, str):
        return [operand]
    return [json.dumps(to_json_value(operand))]


def _field_condition(field: str, condition: Any) -> ColumnElement[bool]:
    text = _json_text(field)
    if condition is None:
        return text.is_(None)
    if not isinstance(condition, Mapping):
        return text.in_(_text_literals(condition))

    clauses: list[ColumnElement[bool]] = []
    for name, operand in condition.items():
        if name == "eq":
            clauses.append(text.in_(_text_literals(operand)))
        elif name == "neq":
            clauses.append(and_(text.is_not(None), text.not_in(_text_literals(operand))))
        elif name in _RANGE_METHODS:
            number = _as_number(operand)
            if number is None:
                return false()
            clauses.append(getattr(cast(text, Float), _RANGE_METHODS[name])(float(number)))
        elif name == "contains":
            clauses.append(text.contains(str(operand), autoescape=True))
        elif name == "startsWith":
            clauses.append(text.startswith(str(operand), autoescape=True))
        elif name == "endsWith":
            clauses.append(text.endswith(str(operand), autoescape=True))
        elif name == "in":
            clauses.append(text.in_([literal for item in operand for literal in _text_literals(item)]))
        else:
            return false()
    return and_(true(), *clauses)


def filter_conditions(filters: Mapping[str, Any]) -> list[ColumnElement[bool]]:
    """Translate field filters into SQL conditions on the record payload.

    Equality, membership and the string operators compare the text of the
    field; range operators compare it as a number.
    """

    return [_field_condition(field, condition) for field, condition in filters.items()]


def _history_entry(row: NormalizedRecordHistory) -> HistoryEntry:
    return HistoryEntry(
        id=row.id,
        record_id=row.record_id,
        project_id=row.project_id,
        file_id=row.file_id,
        schema_id=row.schema_id,
        data=row.data,
        version=row.version,
        created_at=row.created_at,
        operation=HistoryOperation(row.operation),
        changed_by=row.changed_by,
        change_reason=row.change_reason,
    )


def _record_view(row: NormalizedRecord, history: list[HistoryEntry] | None = None) -> NormalizedRecordView:
    return NormalizedRecordView(
        id=row.id,
        project_id=row.project_id,
        file_id=row.file_id,
        schema_id=row.schema_id,
        data=row.data,
        version=row.version,
        created_at=row.created_at,
        updated_at=row.updated_at,
        is_active=row.is_active,
        previous_version_id=row.previous_version_id,
        partition_key=row.partition_key,
        metadata=row.record_metadata,
        history=history,
    )


class NormalizedStorageService:
    """Stores records against a target schema and maintains version lineage.

    The architecture pattern is fixed when the service is built. Records in a
    lineage are identified by the schema's primary-key values, or by their
    position within the file when the schema declares none. Every write that
    changes a lineage appends a history entry when historization is enabled.
    """

    def __init__(
        self,
        options: StorageOptions | None = None,
        *,
        schemas: SchemaVersionService | None = None,
        schema_lookup: SchemaLookup | None = None,
        engine: Engine | None = None,
    ) -> None:
        self.options = options or get_service_configuration().storage
        self._engine = engine
        self._session_factory: sessionmaker[Session] | None = None
        self._schemas = schemas or SchemaVersionService(engine)
        self._schema_lookup = schema_lookup or self._schemas.get_schema
        self._writer: RecordWriter = writer_for(self.options.architecture_pattern)

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            self._engine = get_engine()
        return self._engine

    @property
    def writer(self) -> RecordWriter:
        return self._writer

    def _session(self) -> Session:
        if self._session_factory is None:
            for model in (NormalizedRecord, NormalizedRecordHistory, NormalizedRecordMetadata):
                model.__table__.create(bind=self.engine, checkfirst=True)
            self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        return self._session_factory()

    async def _resolve_schema(self, schema_id: str) -> SchemaDefinition:
        schema = await self._schema_lookup(schema_id)
        if schema is None:
            raise SchemaNotFoundError(schema_id)
        return schema

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    @staticmethod
    def lineage_key(schema: SchemaDefinition, file_id: str, position: int, data: Mapping[str, Any]) -> str:
        """Return the identity shared by every version of a logical record."""

        keys = schema.primary_key_columns
        if keys:
            values = [to_json_value(data.get(name)) for name in keys]
            return "pk:" + json.dumps(values, sort_keys=True, default=str)
        return f"row:{file_id}:{position}"

    @staticmethod
    def _validate(
        schema: SchemaDefinition, position: int, data: Mapping[str, Any]
    ) -> tuple[list[StorageIssue], list[StorageIssue]]:
        errors: list[StorageIssue] = []
        warnings: list[StorageIssue] = []
        declared = {column.name for column in schema.columns}
        for column in schema.columns:
            if (column.is_required or column.is_primary_key) and data.get(column.name) is None:
                errors.append(
                    StorageIssue(
                        row_index=position,
                        column=column.name,
                        value=None,
                        message=f"Required column '{column.name}' is missing",
                    )
                )
        for field in data:
            if declared and field not in declared:
                warnings.append(
                    StorageIssue(
                        row_index=position,
                        column=str(field),
                        value=data[field],
                        message=f"Field '{field}' is not declared by schema {schema.id}",
                    )
                )
        return errors, warnings

    def _append_history(
        self,
        session: Session,
        record: RecordVersion,
        operation: HistoryOperation,
        *,
        record_id: str | None = None,
        changed_by: str | None = None,
        reason: str | None = None,
    ) -> None:
        session.add(
            NormalizedRecordHistory(
                id=f"history_{uuid4().hex}",
                record_id=record_id or record.id,
                project_id=record.project_id,
                file_id=record.file_id,
                schema_id=record.schema_id,
                data=record.data,
                version=record.version,
                created_at=utcnow(),
                operation=operation.value,
                changed_by=changed_by,
                change_reason=reason,
            )
        )

    def _store_record(
        self,
        session: Session,
        schema: SchemaDefinition,
        options: StorageOptions,
        project_id: str,
        file_id: str,
        position: int,
        data: dict[str, Any],
    ) -> HistoryOperation | None:
        lineage_key = self.lineage_key(schema, file_id, position, data)
        partition_key = (
            generate_partition_key(data, options.partition_strategy)
            if options.partition_strategy is not None
            else None
        )
        head = self._writer.find_head(session, schema, project_id, lineage_key)

        if head is not None and head.is_active and head.digest == record_digest(data):
            return None

        record = RecordVersion(
            id=f"record_{uuid4().hex}",
            project_id=project_id,
            file_id=file_id,
            schema_id=schema.id,
            lineage_key=lineage_key,
            data=data,
            version=schema.version,
            partition_key=partition_key,
        )

        if head is None:
            operation = HistoryOperation.INSERT
        elif head.is_active and not options.enable_versioning:
            record = RecordVersion(
                id=head.id,
                project_id=project_id,
                file_id=file_id,
                schema_id=schema.id,
                lineage_key=lineage_key,
                data=data,
                version=head.version,
                partition_key=partition_key,
                previous_version_id=None,
            )
            self._writer.overwrite(session, schema, head.id, record)
            if options.enable_historization:
                self._append_history(session, record, HistoryOperation.UPDATE)
            return HistoryOperation.UPDATE
        else:
            if head.is_active:
                self._writer.deactivate(session, schema, head.id)
                operation = HistoryOperation.UPDATE
            else:
                # The lineage was deactivated; writing it again revives it.
                operation = HistoryOperation.INSERT
            record = RecordVersion(
                id=record.id,
                project_id=project_id,
                file_id=file_id,
                schema_id=schema.id,
                lineage_key=lineage_key,
                data=data,
                version=max(head.version + 1, schema.version),
                partition_key=partition_key,
                previous_version_id=head.id,
            )

        if not self._writer.write(session, schema, record):
            return None
        if options.enable_historization:
            self._append_history(session, record, operation)
        return operation

    def _store_sync(
        self,
        project_id: str,
        file_id: str,
        schema: SchemaDefinition,
        rows: Sequence[Mapping[str, Any]],
        options: StorageOptions,
    ) -> StorageResult:
        self._writer.prepare(self.engine, schema)
        pattern = self._writer.pattern.value
        stored = 0
        errors: list[StorageIssue] = []
        warnings: list[StorageIssue] = []

        for position, row in enumerate(rows):
            data = {str(key): to_json_value(value) for key, value in row.items()}
            row_errors, row_warnings = self._validate(schema, position, data)
            warnings.extend(row_warnings)
            if row_errors:
                errors.extend(row_errors)
                continue
            try:
                with self._session() as session, session.begin():
                    operation = self._store_record(
                        session, schema, options, project_id, file_id, position, data
                    )
            except (SQLAlchemyError, ValidationError) as exc:
                logger.warning(
                    "Failed to store record %s: %s",
                    position,
                    exc,
                    extra={"file_id": file_id, "status": "record_failed"},
                )
                errors.append(
                    StorageIssue(row_index=position, value=data, message=str(exc))
                )
                continue
            stored += 1
            record_normalized_write(pattern, operation.value if operation else "unchanged")

        return StorageResult(
            success=not errors,
            normalized_count=stored,
            error_count=len(errors),
            errors=errors,
            warnings=warnings,
        )

    def _effective_options(self, overrides: Mapping[str, Any] | None) -> StorageOptions:
        if not overrides:
            return self.options
        effective = self.options.model_validate({**self.options.model_dump(), **dict(overrides)})
        if effective.architecture_pattern != self.options.architecture_pattern:
            raise ValidationError(
                "The architecture pattern is fixed for a storage service; "
                f"configured {self.options.architecture_pattern.value}, "
                f"requested {effective.architecture_pattern.value}"
            )
        return effective

    async def store_normalized_data(
        self,
        project_id: str,
        file_id: str,
        schema_id: str,
        rows: Sequence[Mapping[str, Any]],
        options: Mapping[str, Any] | None = None,
    ) -> StorageResult:
        """Persist ``rows`` as normalized records of ``schema_id``.

        Args:
            project_id: Owning project.
            file_id: File the rows were derived from.
            schema_id: Target schema, resolved through the schema lookup.
            rows: Record payloads keyed by schema column name.
            options: Per-call overrides for versioning, historization or
                partitioning. The architecture pattern cannot be overridden.

        Returns:
            A ``StorageResult``. Record-level failures are reported in
            ``errors`` with their position; a failure that prevents any write
            (unknown schema, table creation) is reported with ``row_index`` -1.
        """

        logger.info(
            "Storing %s normalized records for schema %s in project %s",
            len(rows),
            schema_id,
            project_id,
            extra={"file_id": file_id, "status": "storing"},
        )
        try:
            effective = self._effective_options(options)
            schema = await self._resolve_schema(schema_id)
            result = await asyncio.to_thread(
                self._store_sync, project_id, file_id, schema, list(rows), effective
            )
        except (TabulaIngestorError, SQLAlchemyError, ValueError) as exc:
            logger.error(
                "Error storing normalized data: %s",
                exc,
                extra={"file_id": file_id, "status": "error"},
            )
            return StorageResult(
                success=False,
                normalized_count=0,
                error_count=1,
                errors=[StorageIssue(row_index=-1, message=str(exc))],
            )

        logger.info(
            "Stored %s of %s records",
            result.normalized_count,
            len(rows),
            extra={"file_id": file_id, "status": "success" if result.success else "partial"},
        )
        return result

    def _deactivate_sync(
        self,
        schema: SchemaDefinition,
        record_id: str,
        changed_by: str | None,
        reason: str | None,
    ) -> bool:
        with self._session() as session, session.begin():
            snapshot = self._writer.snapshot(session, schema, record_id)
            if snapshot is None or not snapshot.is_active:
                return False
            self._writer.deactivate(session, schema, record_id)
            if self.options.enable_historization:
                record = RecordVersion(
                    id=snapshot.id,
                    project_id=snapshot.project_id,
                    file_id=snapshot.file_id,
                    schema_id=schema.id,
                    lineage_key="",
                    data=snapshot.data,
                    version=snapshot.version,
                )
                self._append_history(
                    session,
                    record,
                    HistoryOperation.DELETE,
                    changed_by=changed_by,
                    reason=reason,
                )
        record_normalized_write(self._writer.pattern.value, HistoryOperation.DELETE.value)
        return True

    async def deactivate_record(
        self,
        schema_id: str,
        record_id: str,
        *,
        changed_by: str | None = None,
        reason: str | None = None,
    ) -> bool:
        """Mark an active record inactive and append a DELETE history entry.

        Returns False when the record does not exist or is already inactive.
        """

        schema = await self._resolve_schema(schema_id)
        return await asyncio.to_thread(self._deactivate_sync, schema, record_id, changed_by, reason)

    def _retention_sync(
        self,
        schema: SchemaDefinition,
        project_id: str,
        policy: RetentionPolicy,
        now: datetime,
    ) -> int:
        with self._session() as session, session.begin():
            inactive = self._writer.inactive_versions(session, schema, project_id)
            if policy.type == "version":
                by_lineage: dict[str, list] = defaultdict(list)
                for version in inactive:
                    by_lineage[version.lineage_key].append(version)
                expired = [
                    version.id
                    for versions in by_lineage.values()
                    for version in sorted(versions, key=lambda item: item.version, reverse=True)[
                        policy.value :
                    ]
                ]
            else:
                cutoff = _as_utc(now) - timedelta(days=policy.value * _UNIT_DAYS[policy.unit])
                expired = [
                    version.id for version in inactive if _as_utc(version.updated_at) < cutoff
                ]
            return self._writer.purge(session, schema, expired)

    async def apply_retention(
        self,
        project_id: str,
        schema_id: str,
        policy: RetentionPolicy | None = None,
        *,
        now: datetime | None = None,
    ) -> int:
        """Delete inactive versions beyond the retention policy; return how many.

        Active versions and history entries are never removed.
        """

        policy = policy or self.options.retention_policy
        if policy is None:
            return 0
        schema = await self._resolve_schema(schema_id)
        removed = await asyncio.to_thread(
            self._retention_sync, schema, project_id, policy, now or utcnow()
        )
        logger.info(
            "Retention removed %s inactive versions of schema %s",
            removed,
            schema_id,
            extra={"status": "retention"},
        )
        return removed

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def _query_sync(self, criterion: Any, options: QueryOptions) -> list[NormalizedRecordView]:
        statement = select(NormalizedRecord).where(criterion)
        if not options.include_inactive:
            statement = statement.where(NormalizedRecord.is_active.is_(True))
        if options.version is not None:
            statement = statement.where(NormalizedRecord.version == options.version)
        if options.as_of_date is not None:
            statement = statement.where(NormalizedRecord.created_at <= _as_utc(options.as_of_date))

        if options.filters:
            statement = statement.where(*filter_conditions(options.filters))
        if options.order_by:
            field_text = _json_text(options.order_by)
            if options.order_direction == "desc":
                statement = statement.order_by(field_text.desc().nulls_first())
            else:
                statement = statement.order_by(field_text.asc().nulls_last())
        statement = statement.order_by(
            NormalizedRecord.created_at.desc(), NormalizedRecord.version.desc()
        )
        if options.offset:
            statement = statement.offset(options.offset)
        if options.limit:
            statement = statement.limit(options.limit)

        with self._session() as session:
            rows = list(session.scalars(statement))
            views = []
            for row in rows:
                history = None
                if options.include_history:
                    history_statement = (
                        select(NormalizedRecordHistory)
                        .where(NormalizedRecordHistory.record_id == row.id)
                        .order_by(NormalizedRecordHistory.created_at.desc())
                    )
                    history = [_history_entry(item) for item in session.scalars(history_statement)]
                views.append(_record_view(row, history))
            return views

    async def get_normalized_records(
        self, project_id: str, options: QueryOptions | None = None
    ) -> list[NormalizedRecordView]:
        """Query records of a project stored in the shared records table.

        Field filters, ordering by a payload field and the pagination that
        follows them are evaluated on the decoded payloads; everything else is
        pushed down as bound parameters.
        """

        return await asyncio.to_thread(
            self._query_sync, NormalizedRecord.project_id == project_id, options or QueryOptions()
        )

    async def get_normalized_records_for_file(
        self, file_id: str, options: QueryOptions | None = None
    ) -> list[NormalizedRecordView]:
        return await asyncio.to_thread(
            self._query_sync, NormalizedRecord.file_id == file_id, options or QueryOptions()
        )

    def _history_sync(self, record_ids: Sequence[str]) -> list[HistoryEntry]:
        with self._session() as session:
            statement = (
                select(NormalizedRecordHistory)
                .where(NormalizedRecordHistory.record_id.in_(record_ids))
                .order_by(NormalizedRecordHistory.created_at.asc())
            )
            return [_history_entry(row) for row in session.scalars(statement)]

    async def get_history(self, record_ids: Sequence[str]) -> list[HistoryEntry]:
        """Return the history entries of the given record versions, oldest first."""

        return await asyncio.to_thread(self._history_sync, list(record_ids))
