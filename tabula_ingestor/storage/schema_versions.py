"""Schema registry with immutable version history, diffing and rollback."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from uuid import uuid4

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session, sessionmaker

from ..exceptions import SchemaNotFoundError
from ..models.base import get_engine, utcnow
from ..models.schemas import DataSchema, SchemaVersionRecord
from ..schemas.storage import (
    ColumnChange,
    RollbackResult,
    SchemaColumn,
    SchemaComparison,
    SchemaDefinition,
    SchemaVersionInfo,
)
from ..utils.logging import setup_logger

logger = setup_logger(__name__, context={"source_id": "schema_versions"})

PLACEHOLDER_TABLE = "data"

_SQL_TYPES = {
    "text": "TEXT",
    "integer": "INTEGER",
    "numeric": "NUMERIC",
    "boolean": "BOOLEAN",
    "timestamp": "TIMESTAMP",
}


def sql_type(column_type: str | None) -> str:
    """Map a declared column type to the SQL type used in change scripts."""

    return _SQL_TYPES.get((column_type or "text").lower(), "TEXT")


def compare_schemas(
    old_columns: Sequence[SchemaColumn], new_columns: Sequence[SchemaColumn]
) -> SchemaComparison:
    """Diff two column lists by column name.

    A column present in both lists is modified when any property other than
    its id differs; added and modified columns keep the order of
    ``new_columns`` and removed ones the order of ``old_columns``.
    """

    old_by_name = {column.name: column for column in old_columns}
    new_names = {column.name for column in new_columns}
    comparison = SchemaComparison()

    for column in new_columns:
        previous = old_by_name.get(column.name)
        if previous is None:
            comparison.added.append(column)
        elif previous.comparable() != column.comparable():
            comparison.modified.append(
                ColumnChange(column_name=column.name, before=previous, after=column)
            )
        else:
            comparison.unchanged.append(column)

    comparison.removed.extend(column for column in old_columns if column.name not in new_names)
    return comparison


def _render_default(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def generate_change_script(comparison: SchemaComparison, table: str = PLACEHOLDER_TABLE) -> str:
    """Render a comparison as SQL statements against a placeholder table.

    Callers substitute the real table name for ``data``. Added columns come
    first, then modified ones, then removed ones.
    """

    script = ""

    for column in comparison.added:
        script += f"-- Add column {column.name}\n"
        script += f"ALTER TABLE {table} ADD COLUMN {column.name} {sql_type(column.type)}"
        if column.is_required:
            script += " NOT NULL"
        if column.default_value:
            script += f" DEFAULT {_render_default(column.default_value)}"
        script += ";\n\n"

    for change in comparison.modified:
        name = change.column_name
        before, after = change.before, change.after
        script += f"-- Modify column {name}\n"
        if after.type != before.type:
            script += f"ALTER TABLE {table} ALTER COLUMN {name} TYPE {sql_type(after.type)};\n"
        if after.is_required != before.is_required:
            action = "SET NOT NULL" if after.is_required else "DROP NOT NULL"
            script += f"ALTER TABLE {table} ALTER COLUMN {name} {action};\n"
        if after.default_value != before.default_value:
            if after.default_value:
                script += (
                    f"ALTER TABLE {table} ALTER COLUMN {name} "
                    f"SET DEFAULT {_render_default(after.default_value)};\n"
                )
            else:
                script += f"ALTER TABLE {table} ALTER COLUMN {name} DROP DEFAULT;\n"
        script += "\n"

    for column in comparison.removed:
        script += f"-- Remove column {column.name}\n"
        script += f"ALTER TABLE {table} DROP COLUMN {column.name};\n\n"

    return script


def _columns_payload(columns: Sequence[SchemaColumn]) -> list[dict]:
    return [column.model_dump(mode="json") for column in columns]


def _to_columns(payload: Sequence[dict] | None) -> list[SchemaColumn]:
    return [SchemaColumn.model_validate(item) for item in payload or []]


def _version_info(record: SchemaVersionRecord) -> SchemaVersionInfo:
    change_log = (
        SchemaComparison.model_validate(record.change_log) if record.change_log is not None else None
    )
    return SchemaVersionInfo(
        id=record.id,
        schema_id=record.schema_id,
        version=record.version,
        columns=_to_columns(record.columns),
        created_at=record.created_at,
        created_by=record.created_by,
        comment=record.comment,
        change_log=change_log,
    )


def _definition(row: DataSchema) -> SchemaDefinition:
    return SchemaDefinition(
        id=row.id,
        name=row.name,
        version=row.version,
        columns=_to_columns(row.columns),
    )


class SchemaVersionService:
    """Keeps the current definition of every schema plus its version history.

    Versions are append-only: saving a changed column list or rolling back
    always creates a new version and never rewrites an old one.
    """

    def __init__(self, engine: Engine | None = None) -> None:
        self._engine = engine
        self._session_factory: sessionmaker[Session] | None = None

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            self._engine = get_engine()
        return self._engine

    def _session(self) -> Session:
        if self._session_factory is None:
            for model in (DataSchema, SchemaVersionRecord):
                model.__table__.create(bind=self.engine, checkfirst=True)
            self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        return self._session_factory()

    # ------------------------------------------------------------------
    # Synchronous primitives (run in a worker thread)
    # ------------------------------------------------------------------
    def _latest_record(self, session: Session, schema_id: str) -> SchemaVersionRecord | None:
        statement = (
            select(SchemaVersionRecord)
            .where(SchemaVersionRecord.schema_id == schema_id)
            .order_by(SchemaVersionRecord.version.desc())
            .limit(1)
        )
        return session.scalars(statement).first()

    def _append_version(
        self,
        session: Session,
        schema_id: str,
        columns: Sequence[SchemaColumn],
        user_id: str | None,
        comment: str | None,
    ) -> SchemaVersionRecord:
        previous = self._latest_record(session, schema_id)
        change_log = None
        version = 1
        if previous is not None:
            version = previous.version + 1
            comparison = compare_schemas(_to_columns(previous.columns), columns)
            change_log = comparison.model_dump(mode="json")

        record = SchemaVersionRecord(
            id=f"version_{uuid4().hex}",
            schema_id=schema_id,
            version=version,
            columns=_columns_payload(columns),
            created_at=utcnow(),
            created_by=user_id,
            comment=comment,
            change_log=change_log,
        )
        session.add(record)
        session.flush()
        return record

    def _save_schema_sync(
        self,
        definition: SchemaDefinition,
        project_id: str | None,
        user_id: str | None,
        comment: str | None,
    ) -> SchemaDefinition:
        with self._session() as session, session.begin():
            row = session.get(DataSchema, definition.id)
            if row is not None and _to_columns(row.columns) == list(definition.columns):
                return _definition(row)

            record = self._append_version(
                session, definition.id, definition.columns, user_id, comment
            )
            if row is None:
                row = DataSchema(
                    id=definition.id,
                    name=definition.name,
                    project_id=project_id,
                    version=record.version,
                    columns=record.columns,
                )
                session.add(row)
            else:
                row.name = definition.name or row.name
                row.columns = record.columns
                row.version = record.version
            session.flush()
            return _definition(row)

    def _get_schema_sync(self, schema_id: str) -> SchemaDefinition | None:
        with self._session() as session:
            row = session.get(DataSchema, schema_id)
            return _definition(row) if row is not None else None

    def _create_version_sync(
        self,
        schema_id: str,
        columns: Sequence[SchemaColumn],
        user_id: str | None,
        comment: str | None,
    ) -> SchemaVersionInfo:
        with self._session() as session, session.begin():
            record = self._append_version(session, schema_id, columns, user_id, comment)
            return _version_info(record)

    def _versions_sync(self, schema_id: str) -> list[SchemaVersionInfo]:
        with self._session() as session:
            statement = (
                select(SchemaVersionRecord)
                .where(SchemaVersionRecord.schema_id == schema_id)
                .order_by(SchemaVersionRecord.version.desc())
            )
            return [_version_info(record) for record in session.scalars(statement)]

    def _version_sync(self, schema_id: str, version: int) -> SchemaVersionInfo | None:
        with self._session() as session:
            statement = select(SchemaVersionRecord).where(
                SchemaVersionRecord.schema_id == schema_id,
                SchemaVersionRecord.version == version,
            )
            record = session.scalars(statement).first()
            return _version_info(record) if record is not None else None

    def _latest_sync(self, schema_id: str) -> SchemaVersionInfo | None:
        with self._session() as session:
            record = self._latest_record(session, schema_id)
            return _version_info(record) if record is not None else None

    def _rollback_sync(self, schema_id: str, version: int, user_id: str | None) -> RollbackResult:
        with self._session() as session, session.begin():
            target = session.scalars(
                select(SchemaVersionRecord).where(
                    SchemaVersionRecord.schema_id == schema_id,
                    SchemaVersionRecord.version == version,
                )
            ).first()
            if target is None:
                return RollbackResult(
                    success=False, message=f"Version {version} not found for schema {schema_id}"
                )

            row = session.get(DataSchema, schema_id)
            if row is None:
                return RollbackResult(success=False, message=f"Schema {schema_id} not found")

            columns = _to_columns(target.columns)
            record = self._append_version(
                session, schema_id, columns, user_id, f"Rollback to version {version}"
            )
            row.columns = record.columns
            row.version = record.version
            session.flush()
            return RollbackResult(
                success=True,
                message=f"Schema {schema_id} rolled back to version {version}",
                schema_definition=_definition(row),
            )

    # ------------------------------------------------------------------
    # Async API
    # ------------------------------------------------------------------
    async def save_schema(
        self,
        definition: SchemaDefinition,
        *,
        project_id: str | None = None,
        user_id: str | None = None,
        comment: str | None = None,
    ) -> SchemaDefinition:
        """Create or update a schema, appending a version when its columns change."""

        saved = await asyncio.to_thread(
            self._save_schema_sync, definition, project_id, user_id, comment
        )
        logger.info(
            "Schema %s saved at version %s",
            saved.id,
            saved.version,
            extra={"status": "schema_saved"},
        )
        return saved

    async def get_schema(self, schema_id: str) -> SchemaDefinition | None:
        """Return the current definition of ``schema_id`` or ``None``."""

        return await asyncio.to_thread(self._get_schema_sync, schema_id)

    async def require_schema(self, schema_id: str) -> SchemaDefinition:
        schema = await self.get_schema(schema_id)
        if schema is None:
            raise SchemaNotFoundError(schema_id)
        return schema

    async def create_schema_version(
        self,
        schema_id: str,
        columns: Sequence[SchemaColumn],
        *,
        user_id: str | None = None,
        comment: str | None = None,
    ) -> SchemaVersionInfo:
        """Append a version numbered one past the latest, with its change-log."""

        return await asyncio.to_thread(
            self._create_version_sync, schema_id, list(columns), user_id, comment
        )

    async def get_schema_versions(self, schema_id: str) -> list[SchemaVersionInfo]:
        """Return every version of ``schema_id``, newest first."""

        return await asyncio.to_thread(self._versions_sync, schema_id)

    async def get_schema_version(self, schema_id: str, version: int) -> SchemaVersionInfo | None:
        return await asyncio.to_thread(self._version_sync, schema_id, version)

    async def get_latest_schema_version(self, schema_id: str) -> SchemaVersionInfo | None:
        return await asyncio.to_thread(self._latest_sync, schema_id)

    def compare_schemas(
        self, old_columns: Sequence[SchemaColumn], new_columns: Sequence[SchemaColumn]
    ) -> SchemaComparison:
        return compare_schemas(old_columns, new_columns)

    def generate_change_script(self, comparison: SchemaComparison) -> str:
        return generate_change_script(comparison)

    async def rollback_schema(
        self, schema_id: str, version: int, user_id: str | None = None
    ) -> RollbackResult:
        """Restore the column list of ``version`` as a brand-new version.

        Existing versions are left untouched, so the full lineage remains
        visible in :meth:`get_schema_versions`.
        """

        result = await asyncio.to_thread(self._rollback_sync, schema_id, version, user_id)
        if result.success:
            logger.info(result.message, extra={"status": "schema_rolled_back"})
        else:
            logger.warning(result.message, extra={"status": "schema_rollback_failed"})
        return result
