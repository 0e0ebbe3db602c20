"""Utility helpers for chunked file access across row sources."""

from __future__ import annotations

import os
import tempfile
from collections.abc import Iterator
from pathlib import Path
from urllib.parse import urlparse

import httpx

from ..exceptions import SourceNotFoundError, TransferInterruptedError
from .logging import setup_logger

DEFAULT_CHUNK_SIZE = 1024 * 1024  # 1MB
ESTIMATION_SAMPLE_BYTES = 64 * 1024
FALLBACK_BYTES_PER_ROW = 100

logger = setup_logger(__name__, context={"source_id": "file_readers"})


def is_remote_locator(locator: str | Path) -> bool:
    """Return True when the locator points at an HTTP(S) resource."""

    return isinstance(locator, str) and locator.lower().startswith(("http://", "https://"))


def resolve_local_path(locator: str | Path) -> Path:
    """Return an existing local path or raise ``SourceNotFoundError``."""

    path = Path(locator).expanduser()
    if not path.exists():
        raise SourceNotFoundError(str(locator), "path does not exist")
    if not path.is_file():
        raise SourceNotFoundError(str(locator), "path is not a regular file")
    return path


def stream_binary_file(
    file_path: str | Path,
    *,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    max_bytes: int | None = None,
) -> Iterator[bytes]:
    """Yield binary chunks from disk, stopping once ``max_bytes`` were produced."""

    bytes_read = 0
    try:
        with open(file_path, "rb") as file_handle:
            while True:
                to_read = chunk_size
                if max_bytes is not None:
                    to_read = min(chunk_size, max_bytes - bytes_read)
                    if to_read <= 0:
                        break
                chunk = file_handle.read(to_read)
                if not chunk:
                    break
                bytes_read += len(chunk)
                yield bytes(chunk)
    except FileNotFoundError as exc:
        raise SourceNotFoundError(str(file_path), str(exc)) from exc


def estimate_text_rows(file_path: str | Path, *, sample_bytes: int = ESTIMATION_SAMPLE_BYTES) -> int:
    """Estimate the number of data rows in a delimited text file.

    A leading sample is measured for average line width and extrapolated over
    the file size. The header line is excluded from the estimate.
    """

    size = os.path.getsize(file_path)
    if size == 0:
        return 0

    sample = b"".join(stream_binary_file(file_path, max_bytes=sample_bytes))
    newline_count = sample.count(b"\n")
    if len(sample) >= size:
        lines = newline_count + (0 if sample.endswith(b"\n") else 1)
        return max(lines - 1, 0)

    if newline_count == 0:
        return max(size // FALLBACK_BYTES_PER_ROW, 1)

    bytes_per_row = len(sample) / newline_count
    return max(int(size / bytes_per_row) - 1, 0)


def _suffix_for(url: str) -> str:
    return Path(urlparse(url).path).suffix


async def download_to_tempfile(
    url: str,
    *,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    timeout: float = 60.0,
    client: httpx.AsyncClient | None = None,
) -> Path:
    """Stream a remote file to a temporary path without buffering it in memory.

    Args:
        url: HTTP(S) address of the file.
        chunk_size: Size of each body chunk written to disk.
        timeout: Request timeout in seconds when a client is created here.
        client: Optional pre-configured client (tests pass a mock transport).

    Returns:
        Path to the downloaded file. The caller owns it and must remove it.

    Raises:
        SourceNotFoundError: The server refused or does not have the file.
        TransferInterruptedError: The body stopped before it was fully received.
    """

    owns_client = client is None
    http_client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)
    handle = tempfile.NamedTemporaryFile(
        prefix="tabula-", suffix=_suffix_for(url), delete=False
    )
    target = Path(handle.name)
    bytes_received = 0

    try:
        try:
            async with http_client.stream("GET", url) as response:
                if response.status_code >= 400:
                    raise SourceNotFoundError(url, f"HTTP {response.status_code}")
                expected = response.headers.get("content-length")
                try:
                    async for chunk in response.aiter_bytes(chunk_size):
                        handle.write(chunk)
                        bytes_received += len(chunk)
                except httpx.TransportError as exc:
                    raise TransferInterruptedError(url, bytes_received, str(exc)) from exc
                if expected is not None and expected.isdigit() and int(expected) > bytes_received:
                    raise TransferInterruptedError(
                        url, bytes_received, f"expected {expected} bytes"
                    )
        except httpx.TransportError as exc:
            raise SourceNotFoundError(url, str(exc)) from exc
        finally:
            handle.close()
    except BaseException:
        target.unlink(missing_ok=True)
        raise
    finally:
        if owns_client:
            await http_client.aclose()

    logger.info(
        "Downloaded remote source",
        extra={"source_id": url, "status": f"{bytes_received} bytes"},
    )
    return target
