"""Custom exceptions for Tabula_Ingestor."""

from __future__ import annotations

from typing import Any


class TabulaIngestorError(Exception):
    """Base exception for all Tabula_Ingestor errors."""

    pass


class ValidationError(TabulaIngestorError):
    """Raised when input is rejected before any write is attempted."""

    pass


class ParsingError(TabulaIngestorError):
    """Raised when a source file cannot be decoded into rows."""

    pass


class SourceNotFoundError(ParsingError):
    """Raised when the file locator does not resolve to a readable source."""

    def __init__(self, locator: str, reason: str | None = None) -> None:
        message = f"Source not found: {locator}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)
        self.locator = locator


class TransferInterruptedError(ParsingError):
    """Raised when a remote transfer stops before the whole file arrived."""

    def __init__(self, locator: str, bytes_received: int, reason: str | None = None) -> None:
        message = f"Transfer of {locator} interrupted after {bytes_received} bytes"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.locator = locator
        self.bytes_received = bytes_received


class UnsupportedFormatError(ParsingError):
    """Raised when no row source is registered for a format tag."""

    pass


class ConversionError(TabulaIngestorError):
    """Raised when exporting ingested rows to a downstream format fails."""

    pass


class DatabaseError(TabulaIngestorError):
    """Raised when the storage backend rejects an operation."""

    pass


class BackendTimeoutError(DatabaseError):
    """Raised when the backend exceeds its execution or transaction budget."""

    pass


class BackendPermissionError(DatabaseError):
    """Raised when the backend reports insufficient privilege."""

    pass


class DuplicateRowError(DatabaseError):
    """Raised when an insert collides with an existing unique key."""

    pass


class BackendUnavailableError(DatabaseError):
    """Raised when the backend cannot be reached in the current context."""

    pass


class ConfigurationError(TabulaIngestorError):
    """Raised when configuration is invalid or missing."""

    pass


class SchemaNotFoundError(TabulaIngestorError):
    """Raised when a schema lookup does not resolve."""

    def __init__(self, schema_id: str) -> None:
        super().__init__(f"Schema {schema_id} not found")
        self.schema_id = schema_id


class BatchExhaustedError(DatabaseError):
    """Raised when every recovery strategy for a batch has been used up."""

    def __init__(
        self,
        file_id: str,
        batch_sequence: int,
        *,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(
            f"Batch {batch_sequence} of file {file_id} could not be written: {original_error}"
        )
        self.file_id = file_id
        self.batch_sequence = batch_sequence
        self.original_error = original_error

    def as_dict(self) -> dict[str, Any]:
        """Return a serializable representation for dead-letter payloads and logs."""

        return {
            "file_id": self.file_id,
            "batch_sequence": self.batch_sequence,
            "error_type": (
                self.original_error.__class__.__name__ if self.original_error else None
            ),
            "message": str(self.original_error) if self.original_error else None,
        }
