"""Create file, row, dead-letter, normalized record and schema tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op as alembic_op  # type: ignore[import-untyped]

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
    ]


def upgrade() -> None:
    """Create every table used by ingestion and normalized storage."""

    alembic_op.create_table(
        "ingested_files",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("source_locator", sa.Text(), nullable=False),
        sa.Column("format", sa.String(length=16), nullable=False),
        sa.Column("source_id", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("row_count", sa.Integer(), nullable=True),
        sa.Column("headers", sa.JSON(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        *_timestamps(),
    )
    alembic_op.create_index("ix_ingested_files_source_id", "ingested_files", ["source_id"])
    alembic_op.create_index("ix_ingested_files_status", "ingested_files", ["status"])

    alembic_op.create_table(
        "file_rows",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("file_id", sa.String(length=64), nullable=False),
        sa.Column("row_number", sa.Integer(), nullable=False),
        sa.Column("source_id", sa.String(length=255), nullable=False),
        sa.Column("ingested_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.UniqueConstraint("file_id", "row_number", name="uq_file_rows_file_row"),
    )
    alembic_op.create_index("ix_file_rows_file_id", "file_rows", ["file_id"])

    alembic_op.create_table(
        "file_errors",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("file_id", sa.String(length=64), nullable=False),
        sa.Column("error_type", sa.String(length=32), nullable=False),
        sa.Column("severity", sa.String(length=16), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
    )
    alembic_op.create_index("ix_file_errors_file_id", "file_errors", ["file_id"])

    alembic_op.create_table(
        "dead_letter_queue",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("file_id", sa.String(length=64), nullable=False),
        sa.Column("operation", sa.String(length=64), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("error", sa.Text(), nullable=False),
        sa.Column(
            "timestamp", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_retry_at", sa.DateTime(timezone=True), nullable=True),
    )
    alembic_op.create_index("ix_dead_letter_queue_file_id", "dead_letter_queue", ["file_id"])
    alembic_op.create_index("ix_dead_letter_queue_timestamp", "dead_letter_queue", ["timestamp"])

    alembic_op.create_table(
        "normalized_records",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("project_id", sa.String(length=64), nullable=False),
        sa.Column("file_id", sa.String(length=64), nullable=False),
        sa.Column("schema_id", sa.String(length=64), nullable=False),
        sa.Column("lineage_key", sa.Text(), nullable=False),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        *_timestamps(),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("previous_version_id", sa.String(length=64), nullable=True),
        sa.Column("partition_key", sa.String(length=255), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
    )
    for column in ("project_id", "file_id", "schema_id", "lineage_key", "version", "is_active", "partition_key"):
        alembic_op.create_index(f"ix_normalized_records_{column}", "normalized_records", [column])

    alembic_op.create_table(
        "normalized_record_history",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("record_id", sa.String(length=64), nullable=False),
        sa.Column("project_id", sa.String(length=64), nullable=False),
        sa.Column("file_id", sa.String(length=64), nullable=False),
        sa.Column("schema_id", sa.String(length=64), nullable=False),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.Column("operation", sa.String(length=16), nullable=False),
        sa.Column("changed_by", sa.String(length=255), nullable=True),
        sa.Column("change_reason", sa.Text(), nullable=True),
    )
    for column in ("record_id", "project_id", "file_id", "schema_id", "version"):
        alembic_op.create_index(
            f"ix_normalized_record_history_{column}", "normalized_record_history", [column]
        )

    alembic_op.create_table(
        "normalized_record_metadata",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("record_id", sa.String(length=64), nullable=False),
        sa.Column("storage_type", sa.String(length=64), nullable=False),
        sa.Column("storage_location", sa.String(length=255), nullable=False),
        *_timestamps(),
        sa.Column("metadata", sa.JSON(), nullable=True),
    )
    alembic_op.create_index(
        "ix_normalized_record_metadata_record_id", "normalized_record_metadata", ["record_id"]
    )

    alembic_op.create_table(
        "data_schemas",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("project_id", sa.String(length=64), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("columns", sa.JSON(), nullable=False),
        *_timestamps(),
    )
    alembic_op.create_index("ix_data_schemas_project_id", "data_schemas", ["project_id"])

    alembic_op.create_table(
        "schema_versions",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("schema_id", sa.String(length=64), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("columns", sa.JSON(), nullable=False),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.Column("created_by", sa.String(length=255), nullable=True),
        sa.Column("comment", sa.Text(), nullable=True),
        sa.Column("change_log", sa.JSON(), nullable=True),
        sa.UniqueConstraint("schema_id", "version", name="uq_schema_versions_version"),
    )
    alembic_op.create_index("ix_schema_versions_schema_id", "schema_versions", ["schema_id"])


def downgrade() -> None:
    """Drop every table created by :func:`upgrade`."""

    for table in (
        "schema_versions",
        "data_schemas",
        "normalized_record_metadata",
        "normalized_record_history",
        "normalized_records",
        "dead_letter_queue",
        "file_errors",
        "file_rows",
        "ingested_files",
    ):
        alembic_op.drop_table(table)
