"""Tests for insert failure classification and file error reports."""

from __future__ import annotations

import pytest
from sqlalchemy import exc as sa_exc

from tabula_ingestor.exceptions import (
    BackendPermissionError,
    BackendTimeoutError,
    BackendUnavailableError,
    DuplicateRowError,
    ParsingError,
    ValidationError,
)
from tabula_ingestor.ingestion.error_handling import (
    ErrorSeverity,
    ErrorType,
    build_file_error,
    classify_exception,
    handle_file_error,
)
from tabula_ingestor.ingestion.failures import FailureKind, classify_failure, is_duplicate
from tabula_ingestor.models.base import session_scope
from tabula_ingestor.models.files import FileStatus
from tabula_ingestor.models.repository import (
    IngestedFileCreate,
    IngestedFileRepository,
    get_file,
    register_file,
)


class _PgError(Exception):
    def __init__(self, message: str, pgcode: str) -> None:
        super().__init__(message)
        self.pgcode = pgcode


class TestClassifyFailure:
    """Mapping of backend errors onto recovery categories."""

    @pytest.mark.parametrize(
        ("error", "kind"),
        [
            (BackendTimeoutError("budget exceeded"), FailureKind.TIMEOUT),
            (RuntimeError("Transaction already closed: timeout"), FailureKind.TIMEOUT),
            (RuntimeError("P6004 query exceeded"), FailureKind.TIMEOUT),
            (
                RuntimeError("canceling statement due to statement timeout"),
                FailureKind.TIMEOUT,
            ),
            (BackendPermissionError("nope"), FailureKind.PERMISSION),
            (RuntimeError("permission denied for table file_rows"), FailureKind.PERMISSION),
            (DuplicateRowError("exists"), FailureKind.DUPLICATE),
            (
                RuntimeError('duplicate key value violates unique constraint "uq"'),
                FailureKind.DUPLICATE,
            ),
            (RuntimeError("UNIQUE constraint failed: file_rows.file_id"), FailureKind.DUPLICATE),
            (BackendUnavailableError("offline"), FailureKind.CONNECTION),
            (ConnectionRefusedError("refused"), FailureKind.CONNECTION),
            (RuntimeError("server closed the connection unexpectedly"), FailureKind.CONNECTION),
            (RuntimeError("something else"), FailureKind.OTHER),
        ],
    )
    def test_classification(self, error, kind):
        """Errors are recognised by type and by message."""
        assert classify_failure(error) is kind

    def test_sqlstate_codes(self):
        """Driver SQLSTATE codes take precedence over messages."""
        wrapped = sa_exc.OperationalError("INSERT", {}, _PgError("x", "57014"))
        assert classify_failure(wrapped) is FailureKind.TIMEOUT

        denied = sa_exc.ProgrammingError("INSERT", {}, _PgError("x", "42501"))
        assert classify_failure(denied) is FailureKind.PERMISSION

        unique = sa_exc.IntegrityError("INSERT", {}, _PgError("x", "23505"))
        assert is_duplicate(unique)


class TestFileErrors:
    """Error reports attached to ingested files."""

    def test_classify_exception(self):
        """Exceptions map onto the file error taxonomy."""
        assert classify_exception(ValidationError("bad")) is ErrorType.VALIDATION
        assert classify_exception(ParsingError("bad")) is ErrorType.PARSING
        assert classify_exception(BackendTimeoutError("slow")) is ErrorType.DATABASE
        assert classify_exception(KeyError("x")) is ErrorType.SYSTEM

    def test_build_file_error(self):
        """Reports carry the exception class in their details."""
        report = build_file_error("f-1", ParsingError("broken header"))

        payload = report.to_dict()
        assert payload["error_type"] == "parsing"
        assert payload["severity"] == "medium"
        assert payload["details"]["exception"] == "ParsingError"

    def test_only_low_severity_leaves_file_untouched(self):
        """LOW never flags the file."""
        assert not ErrorSeverity.LOW.flags_file
        assert ErrorSeverity.HIGH.flags_file
        assert ErrorSeverity.CRITICAL.flags_file

    @pytest.mark.asyncio
    async def test_handle_file_error_persists_and_flags(self):
        """A severe report is stored and moves the file into the error state."""
        register_file(IngestedFileCreate(id="f-1", source_locator="a.csv", format="csv"))

        await handle_file_error("f-1", "minor hiccup", severity=ErrorSeverity.LOW)
        assert get_file("f-1").status == FileStatus.PENDING.value

        await handle_file_error("f-1", ParsingError("corrupt"), severity=ErrorSeverity.HIGH)

        stored = get_file("f-1")
        assert stored.status == FileStatus.ERROR.value
        assert stored.error_message == "corrupt"
        with session_scope() as session:
            errors = IngestedFileRepository(session).errors_for("f-1")
            assert [(error.error_type, error.severity) for error in errors] == [
                ("system", "low"),
                ("parsing", "high"),
            ]
