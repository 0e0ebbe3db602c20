"""Base row source abstract class for all tabular formats."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable, Iterator
from pathlib import Path
from typing import Any, ClassVar, TypeVar

from ..monitoring.metrics import record_malformed_row, record_rows_ingested
from ..schemas.rows import RawRow
from ..utils.logging import setup_logger

logger = setup_logger(__name__, context={"source_id": "RowSource"})

T = TypeVar("T")

DEFAULT_READ_CHUNK_ROWS = 5_000


def synthesize_header(name: Any, position: int) -> str:
    """Return a usable column name, ``Column{N}`` (1-based) when the cell is blank."""

    if name is None:
        return f"Column{position + 1}"
    text = str(name).strip()
    if not text or text.startswith("Unnamed: "):
        return f"Column{position + 1}"
    return text


class RowSource(ABC):
    """
    Forward-only stream of raw rows decoded from one local file.

    Subclasses implement :meth:`_iter_blocks`, a blocking generator yielding
    lists of row mappings; it runs on a worker thread one block at a time so
    that large files are never materialized in memory. The stream may be
    consumed exactly once.
    """

    format_tag: ClassVar[str] = ""

    def __init__(
        self,
        path: str | Path,
        *,
        locator: str | None = None,
        options: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize the source.

        Args:
            path: Local path of the file to decode
            locator: Original locator (URL or path) used in logs and errors
            options: Format-specific options
        """
        self.path = Path(path)
        self.locator = locator or str(path)
        self.options = dict(options or {})
        self.read_chunk_rows = int(self.options.pop("read_chunk_rows", DEFAULT_READ_CHUNK_ROWS))
        self.headers: list[str] | None = None
        self.malformed_rows = 0
        self.rows_read = 0
        self._consumed = False

    async def _run_in_thread(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Execute a blocking function in a thread to avoid blocking the event loop."""

        return await asyncio.to_thread(func, *args, **kwargs)

    @abstractmethod
    def _iter_blocks(self) -> Iterator[list[dict[str, Any]]]:
        """Yield blocks of decoded rows; must set ``self.headers`` before the first block."""

    @abstractmethod
    def estimate_rows_sync(self) -> int:
        """Return an estimate of the number of data rows."""

    async def estimate_rows(self) -> int:
        return await self._run_in_thread(self.estimate_rows_sync)

    def report_malformed(self, detail: Any) -> None:
        """Record a dropped row; malformed rows never abort the stream."""

        self.malformed_rows += 1
        record_malformed_row(self.format_tag)
        logger.warning(
            "Dropping malformed row: %s",
            detail,
            extra={"source_id": self.locator, "status": "malformed_row"},
        )

    async def rows(self) -> AsyncIterator[RawRow]:
        """Yield each decoded row once, in source order."""

        if self._consumed:
            raise RuntimeError(f"Row stream for {self.locator} has already been consumed")
        self._consumed = True

        blocks = self._iter_blocks()
        sentinel: list[dict[str, Any]] | None = None
        try:
            while True:
                block = await self._run_in_thread(next, blocks, sentinel)
                if block is sentinel:
                    break
                record_rows_ingested(self.format_tag, len(block))
                for values in block:
                    self.rows_read += 1
                    yield RawRow(row_number=self.rows_read, values=values)
        finally:
            blocks.close()

    async def close(self) -> None:
        """Release resources held by the source."""
        return None
