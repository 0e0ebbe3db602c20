"""Row source registry for managing available tabular formats."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import httpx

from ..exceptions import UnsupportedFormatError
from ..utils.config import get_settings
from ..utils.file_readers import download_to_tempfile, is_remote_locator, resolve_local_path
from .base import RowSource
from .csv_source import CSVRowSource
from .xlsx_source import XLSXRowSource

# Source registry - register new formats here
_SOURCE_REGISTRY: dict[str, type[RowSource]] = {}

_SUFFIX_ALIASES = {
    "csv": "csv",
    "txt": "csv",
    "xlsx": "xlsx",
    "xlsm": "xlsx",
}


def register_source(name: str, source_class: type[RowSource]) -> None:
    """
    Register a new row source class.

    Args:
        name: Format tag handled by the source
        source_class: Source class to register
    """
    _SOURCE_REGISTRY[name] = source_class


def get_source(name: str) -> type[RowSource]:
    """
    Get a row source class by format tag.

    Args:
        name: Format tag

    Returns:
        Row source class

    Raises:
        UnsupportedFormatError: If no source is registered for the format
    """
    if name not in _SOURCE_REGISTRY:
        available = sorted(_SOURCE_REGISTRY.keys())
        available_display = ", ".join(available) if available else "none"
        raise UnsupportedFormatError(
            f"Format '{name}' is not supported. Available formats: {available_display}."
        )
    return _SOURCE_REGISTRY[name]


def list_sources() -> list[str]:
    """Return list of registered format tags."""
    return list(_SOURCE_REGISTRY.keys())


def infer_format(locator: str | Path) -> str:
    """Infer a format tag from the locator's file suffix."""

    raw = urlparse(locator).path if is_remote_locator(locator) else str(locator)
    suffix = Path(raw).suffix.lower().lstrip(".")
    if suffix not in _SUFFIX_ALIASES:
        raise UnsupportedFormatError(f"Cannot infer a format from '{locator}'")
    return _SUFFIX_ALIASES[suffix]


@asynccontextmanager
async def open_source(
    locator: str | Path,
    format_tag: str | None = None,
    *,
    options: dict[str, Any] | None = None,
    client: httpx.AsyncClient | None = None,
) -> AsyncIterator[RowSource]:
    """Open a local or remote file as a row source.

    Remote files are streamed to a temporary file first and removed when the
    context exits.
    """

    resolved_format = (format_tag or infer_format(locator)).lower()
    source_class = get_source(resolved_format)

    downloaded: Path | None = None
    if is_remote_locator(locator):
        settings = get_settings()
        downloaded = await download_to_tempfile(
            str(locator),
            chunk_size=settings.download_chunk_size,
            timeout=settings.http_timeout_seconds,
            client=client,
        )
        path = downloaded
    else:
        path = resolve_local_path(locator)

    source = source_class(path, locator=str(locator), options=options)
    try:
        yield source
    finally:
        await source.close()
        if downloaded is not None:
            downloaded.unlink(missing_ok=True)


register_source("csv", CSVRowSource)
register_source("xlsx", XLSXRowSource)

__all__ = [
    "CSVRowSource",
    "RowSource",
    "XLSXRowSource",
    "get_source",
    "infer_format",
    "list_sources",
    "open_source",
    "register_source",
]
