"""Testing utilities for tabula_ingestor."""

from .faults import BulkCall, FaultInjectingBackend, FaultRule

__all__ = [
    "BulkCall",
    "FaultInjectingBackend",
    "FaultRule",
]
