"""Persistence models and session helpers."""
from .base import Base, get_engine, get_session, reset_engine, session_scope
from .dead_letter import DeadLetterEntry
from .files import FileErrorRecord, FileRow, FileStatus, IngestedFile
from .normalized import NormalizedRecord, NormalizedRecordHistory, NormalizedRecordMetadata
from .schemas import DataSchema, SchemaVersionRecord

__all__ = [
    "Base",
    "DataSchema",
    "DeadLetterEntry",
    "FileErrorRecord",
    "FileRow",
    "FileStatus",
    "IngestedFile",
    "NormalizedRecord",
    "NormalizedRecordHistory",
    "NormalizedRecordMetadata",
    "SchemaVersionRecord",
    "get_engine",
    "get_session",
    "reset_engine",
    "session_scope",
]
