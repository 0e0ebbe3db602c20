"""Row source for delimited text files."""

from __future__ import annotations

import math
from collections.abc import Iterator
from typing import Any

import pandas as pd

from ..exceptions import ParsingError, SourceNotFoundError
from ..utils.file_readers import estimate_text_rows
from .base import RowSource, synthesize_header

_PASSTHROUGH_OPTIONS = {"sep", "delimiter", "encoding", "quotechar", "escapechar", "skiprows"}


def _clean_cell(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, float) and math.isnan(value):
        return None
    if isinstance(value, str) and value == "":
        return None
    return value


class CSVRowSource(RowSource):
    """Streams CSV rows using pandas' chunked reader.

    Every cell is kept as a string (empty cells become ``None``) so that the
    stored payload reflects the source text; typing happens at the storage
    boundary against the target schema.
    """

    format_tag = "csv"

    def _resolve_csv_options(self) -> dict[str, Any]:
        """Return a validated pandas option mapping for CSV parsing."""

        key_mapping = {"skip_rows": "skiprows"}
        normalized: dict[str, Any] = {}
        for key, value in self.options.items():
            mapped_key = key_mapping.get(key, key)
            if mapped_key not in _PASSTHROUGH_OPTIONS:
                raise ParsingError(f"Unsupported CSV option '{key}'")
            if value is not None:
                normalized[mapped_key] = value
        return normalized

    def _on_bad_line(self, bad_line: list[str]) -> None:
        self.report_malformed(bad_line)
        return None

    def _iter_blocks(self) -> Iterator[list[dict[str, Any]]]:
        try:
            reader = pd.read_csv(
                self.path,
                chunksize=self.read_chunk_rows,
                dtype=str,
                keep_default_na=False,
                na_values=[],
                skip_blank_lines=True,
                engine="python",
                on_bad_lines=self._on_bad_line,
                **self._resolve_csv_options(),
            )
        except FileNotFoundError as exc:
            raise SourceNotFoundError(self.locator, str(exc)) from exc
        except pd.errors.EmptyDataError:
            self.headers = []
            return
        except (pd.errors.ParserError, UnicodeDecodeError) as exc:
            raise ParsingError(f"Failed to read CSV header from {self.locator}: {exc}") from exc

        with reader:
            while True:
                try:
                    frame = next(reader)
                except StopIteration:
                    break
                except (pd.errors.ParserError, UnicodeDecodeError) as exc:
                    raise ParsingError(f"Failed to decode CSV {self.locator}: {exc}") from exc

                if self.headers is None:
                    self.headers = [
                        synthesize_header(name, position)
                        for position, name in enumerate(frame.columns)
                    ]
                frame.columns = self.headers
                block = [
                    {column: _clean_cell(value) for column, value in zip(self.headers, record)}
                    for record in frame.itertuples(index=False, name=None)
                ]
                if block:
                    yield block

        if self.headers is None:
            self.headers = []

    def estimate_rows_sync(self) -> int:
        try:
            return estimate_text_rows(self.path)
        except FileNotFoundError as exc:
            raise SourceNotFoundError(self.locator, str(exc)) from exc
