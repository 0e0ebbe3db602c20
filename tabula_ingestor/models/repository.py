"""Repository helpers for persistence models."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from .base import session_scope
from .files import FileErrorRecord, FileStatus, IngestedFile


@dataclass(slots=True)
class IngestedFileCreate:
    """Value object capturing required fields to register an ingested file."""

    id: str
    source_locator: str
    format: str
    source_id: str | None = None
    status: FileStatus = FileStatus.PENDING


class IngestedFileRepository:
    """Data access helpers for :class:`IngestedFile`."""

    def __init__(self, session: Session):
        self._session = session

    def get(self, file_id: str) -> IngestedFile | None:
        return self._session.get(IngestedFile, file_id)

    def upsert(self, file_data: IngestedFileCreate) -> IngestedFile:
        """Register the file, or reset an existing registration for a new run."""

        record = self.get(file_data.id)
        if record is None:
            record = IngestedFile(
                id=file_data.id,
                source_locator=file_data.source_locator,
                format=file_data.format,
                source_id=file_data.source_id,
                status=file_data.status.value,
            )
            self._session.add(record)
        else:
            record.source_locator = file_data.source_locator
            record.format = file_data.format
            record.source_id = file_data.source_id
            record.status = file_data.status.value
            record.error_message = None
        self._session.flush()
        return record

    def update(self, file_id: str, **fields: Any) -> IngestedFile | None:
        record = self.get(file_id)
        if record is None:
            return None
        for name, value in fields.items():
            if isinstance(value, FileStatus):
                value = value.value
            setattr(record, name, value)
        self._session.flush()
        return record

    def errors_for(self, file_id: str) -> list[FileErrorRecord]:
        statement = (
            select(FileErrorRecord)
            .where(FileErrorRecord.file_id == file_id)
            .order_by(FileErrorRecord.id)
        )
        return list(self._session.scalars(statement))


def register_file(file_data: IngestedFileCreate) -> None:
    """Create or reset the registration of a file using a managed session."""

    with session_scope() as session:
        IngestedFileRepository(session).upsert(file_data)


def set_file_status(file_id: str, status: FileStatus, **fields: Any) -> bool:
    """Update a file's status (and any extra columns). Returns False for unknown files."""

    with session_scope() as session:
        return IngestedFileRepository(session).update(file_id, status=status, **fields) is not None


def get_file(file_id: str) -> IngestedFile | None:
    """Return a detached snapshot of the file registration."""

    with session_scope() as session:
        return IngestedFileRepository(session).get(file_id)
