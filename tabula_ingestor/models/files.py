"""SQLAlchemy models describing ingested files, their rows and their errors."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import JSON, DateTime, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, utcnow


class FileStatus(str, Enum):
    """Lifecycle states of an ingested file."""

    PENDING = "pending"
    PROCESSING = "processing"
    HEADERS_EXTRACTED = "headers_extracted"
    ACTIVE = "active"
    ERROR = "error"


class IngestedFile(Base):
    """One source file registered for ingestion."""

    __tablename__ = "ingested_files"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    source_locator: Mapped[str] = mapped_column(Text, nullable=False)
    format: Mapped[str] = mapped_column(String(16), nullable=False)
    source_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=FileStatus.PENDING.value, index=True
    )
    row_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    headers: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<IngestedFile id={self.id} status={self.status} format={self.format}>"


class FileRow(Base):
    """A single ingested row. ``(file_id, row_number)`` is the idempotency key."""

    __tablename__ = "file_rows"
    __table_args__ = (UniqueConstraint("file_id", "row_number", name="uq_file_rows_file_row"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    file_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    row_number: Mapped[int] = mapped_column(Integer, nullable=False)
    source_id: Mapped[str] = mapped_column(String(255), nullable=False)
    ingested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)


class FileErrorRecord(Base):
    """A persisted error report attached to a file."""

    __tablename__ = "file_errors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    file_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    error_type: Mapped[str] = mapped_column(String(32), nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
