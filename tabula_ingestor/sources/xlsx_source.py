"""Row source for Excel workbooks."""

from __future__ import annotations

import zipfile
from collections.abc import Iterator
from typing import Any

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from ..exceptions import ParsingError, SourceNotFoundError
from .base import RowSource, synthesize_header


def _is_blank(values: tuple[Any, ...]) -> bool:
    return all(value is None or (isinstance(value, str) and not value.strip()) for value in values)


class XLSXRowSource(RowSource):
    """Streams rows from the first worksheet using openpyxl's read-only mode.

    The first non-blank row supplies the headers; blank header cells are
    named ``Column{N}``. Fully blank rows are skipped.
    """

    format_tag = "xlsx"

    def _open_workbook(self) -> Any:
        try:
            return load_workbook(self.path, read_only=True, data_only=True)
        except FileNotFoundError as exc:
            raise SourceNotFoundError(self.locator, str(exc)) from exc
        except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError) as exc:
            raise ParsingError(f"Failed to open workbook {self.locator}: {exc}") from exc

    def _first_sheet(self, workbook: Any) -> Any:
        sheet_name = self.options.get("sheet_name")
        if sheet_name is not None:
            if sheet_name not in workbook.sheetnames:
                raise ParsingError(f"Worksheet '{sheet_name}' not found in {self.locator}")
            return workbook[sheet_name]
        if not workbook.worksheets:
            raise ParsingError(f"Workbook {self.locator} has no worksheets")
        return workbook.worksheets[0]

    def _iter_blocks(self) -> Iterator[list[dict[str, Any]]]:
        workbook = self._open_workbook()
        try:
            sheet = self._first_sheet(workbook)
            block: list[dict[str, Any]] = []
            for values in sheet.iter_rows(values_only=True):
                if _is_blank(values):
                    continue
                if self.headers is None:
                    self.headers = [
                        synthesize_header(name, position) for position, name in enumerate(values)
                    ]
                    continue
                extra = values[len(self.headers):]
                if any(value is not None for value in extra):
                    self.report_malformed(values)
                    continue
                padded = tuple(values) + (None,) * (len(self.headers) - len(values))
                block.append(dict(zip(self.headers, padded)))
                if len(block) >= self.read_chunk_rows:
                    yield block
                    block = []
            if block:
                yield block
        finally:
            workbook.close()
        if self.headers is None:
            self.headers = []

    def estimate_rows_sync(self) -> int:
        workbook = self._open_workbook()
        try:
            sheet = self._first_sheet(workbook)
            max_row = sheet.max_row
            min_row = sheet.min_row or 1
            if not max_row:
                return 0
            return max(max_row - min_row, 0)
        finally:
            workbook.close()
