"""Row backends, normalized record storage and schema versioning."""

from .backend import RowBackend, SQLAlchemyRowBackend
from .normalized import NormalizedStorageService, filter_conditions
from .partitioning import DEFAULT_PARTITION, generate_partition_key
from .schema_versions import SchemaVersionService, compare_schemas, generate_change_script
from .writers import (
    CentralizedWriter,
    DecentralizedWriter,
    PolyglotWriter,
    RecordWriter,
    writer_for,
)

__all__ = [
    "CentralizedWriter",
    "DEFAULT_PARTITION",
    "DecentralizedWriter",
    "NormalizedStorageService",
    "PolyglotWriter",
    "RecordWriter",
    "RowBackend",
    "SQLAlchemyRowBackend",
    "SchemaVersionService",
    "compare_schemas",
    "generate_change_script",
    "generate_partition_key",
    "filter_conditions",
    "writer_for",
]
