"""Structured error reports for ingested files."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from ..exceptions import (
    ConversionError,
    DatabaseError,
    ParsingError,
    ValidationError,
)
from ..models.base import session_scope
from ..models.files import FileErrorRecord, FileStatus
from ..models.repository import IngestedFileRepository
from ..utils.logging import setup_logger

logger = setup_logger(__name__)


class ErrorType(str, Enum):
    """Taxonomy of errors attached to a file."""

    VALIDATION = "validation"
    PARSING = "parsing"
    CONVERSION = "conversion"
    DATABASE = "database"
    SYSTEM = "system"


class ErrorSeverity(str, Enum):
    """How badly an error affects the owning file."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def flags_file(self) -> bool:
        """Return True when the error should move the file into the error state."""

        return self is not ErrorSeverity.LOW


@dataclass(slots=True)
class FileError:
    """Structured payload describing an error raised while handling a file."""

    file_id: str
    error_type: ErrorType
    severity: ErrorSeverity
    message: str
    timestamp: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Return a serializable dictionary representation of the error report."""

        payload: dict[str, Any] = {
            "file_id": self.file_id,
            "error_type": self.error_type.value,
            "severity": self.severity.value,
            "message": self.message,
            "timestamp": self.timestamp,
        }
        if self.details:
            payload["details"] = self.details
        return payload


def classify_exception(exc: BaseException) -> ErrorType:
    """Map an exception onto the file error taxonomy."""

    if isinstance(exc, ValidationError):
        return ErrorType.VALIDATION
    if isinstance(exc, ParsingError):
        return ErrorType.PARSING
    if isinstance(exc, ConversionError):
        return ErrorType.CONVERSION
    if isinstance(exc, (DatabaseError, SQLAlchemyError)):
        return ErrorType.DATABASE
    return ErrorType.SYSTEM


def build_file_error(
    file_id: str,
    error: BaseException | str,
    *,
    error_type: ErrorType | None = None,
    severity: ErrorSeverity = ErrorSeverity.MEDIUM,
    extra_details: dict[str, Any] | None = None,
) -> FileError:
    """Construct a :class:`FileError` from an exception or message."""

    details: dict[str, Any] = {}
    if isinstance(error, BaseException):
        resolved_type = error_type or classify_exception(error)
        message = str(error) if str(error) else error.__class__.__name__
        details["exception"] = error.__class__.__name__
        details["exception_module"] = error.__class__.__module__
    else:
        resolved_type = error_type or ErrorType.SYSTEM
        message = error
    if extra_details:
        details.update(extra_details)

    return FileError(
        file_id=file_id,
        error_type=resolved_type,
        severity=severity,
        message=message,
        timestamp=datetime.now(timezone.utc).isoformat(),
        details=details,
    )


def _persist_file_error(report: FileError) -> None:
    with session_scope() as session:
        session.add(
            FileErrorRecord(
                file_id=report.file_id,
                error_type=report.error_type.value,
                severity=report.severity.value,
                message=report.message,
                details=report.details or None,
            )
        )
        if report.severity.flags_file:
            IngestedFileRepository(session).update(
                report.file_id,
                status=FileStatus.ERROR,
                error_message=report.message,
            )


async def handle_file_error(
    file_id: str,
    error: BaseException | str,
    *,
    error_type: ErrorType | None = None,
    severity: ErrorSeverity = ErrorSeverity.MEDIUM,
    extra_details: dict[str, Any] | None = None,
) -> FileError:
    """Log an error, record it against the file and flag the file when severe.

    Persistence is best-effort: a failure to store the report is logged and
    never masks the original error.
    """

    report = build_file_error(
        file_id,
        error,
        error_type=error_type,
        severity=severity,
        extra_details=extra_details,
    )

    log_method = logger.warning if severity is ErrorSeverity.LOW else logger.error
    log_method(
        "[%s] %s",
        report.error_type.value,
        report.message,
        extra={"file_id": file_id, "status": f"error:{report.severity.value}"},
    )

    try:
        await asyncio.to_thread(_persist_file_error, report)
    except SQLAlchemyError as exc:
        logger.warning(
            "Could not persist error report: %s",
            exc,
            extra={"file_id": file_id, "status": "unpersisted"},
        )

    return report
