"""Tests for the CSV row source."""

from __future__ import annotations

import httpx
import pytest

from tabula_ingestor.exceptions import ParsingError, UnsupportedFormatError
from tabula_ingestor.sources import CSVRowSource, get_source, infer_format, open_source


async def _collect(source):
    return [row async for row in source.rows()]


class TestCSVRowSource:
    """Test suite for CSVRowSource with on-disk fixtures."""

    @pytest.mark.asyncio
    async def test_rows_are_numbered_in_source_order(self, sample_csv):
        """Rows carry 1-based ordinals and string cells."""
        source = CSVRowSource(sample_csv)
        rows = await _collect(source)

        assert [row.row_number for row in rows] == [1, 2, 3, 4, 5]
        assert source.headers == ["id", "name", "email", "city"]
        assert rows[0].values == {
            "id": "1",
            "name": "Alice Johnson",
            "email": "alice@example.com",
            "city": "London",
        }

    @pytest.mark.asyncio
    async def test_empty_cells_become_none(self, sample_csv):
        """Blank cells are stored as missing values rather than empty strings."""
        rows = await _collect(CSVRowSource(sample_csv))

        assert rows[2].values["email"] is None

    @pytest.mark.asyncio
    async def test_blank_headers_are_synthesized(self, tmp_path):
        """A blank header cell is named after its 1-based position."""
        path = tmp_path / "blank_header.csv"
        path.write_text("id,,city\n1,x,Rome\n", encoding="utf-8")

        source = CSVRowSource(path)
        rows = await _collect(source)

        assert source.headers == ["id", "Column2", "city"]
        assert rows[0].values == {"id": "1", "Column2": "x", "city": "Rome"}

    @pytest.mark.asyncio
    async def test_malformed_rows_are_dropped(self, tmp_path):
        """Rows with too many fields are reported and skipped without aborting."""
        path = tmp_path / "ragged.csv"
        path.write_text("id,name\n1,Ada\n2,Bob,extra\n3,Cy\n", encoding="utf-8")

        source = CSVRowSource(path)
        rows = await _collect(source)

        assert [row.values["name"] for row in rows] == ["Ada", "Cy"]
        assert [row.row_number for row in rows] == [1, 2]
        assert source.malformed_rows == 1

    @pytest.mark.asyncio
    async def test_small_read_chunks_preserve_order(self, tmp_path):
        """Chunked reads yield the same rows as a single block."""
        path = tmp_path / "many.csv"
        path.write_text("n\n" + "".join(f"{i}\n" for i in range(1, 26)), encoding="utf-8")

        rows = await _collect(CSVRowSource(path, options={"read_chunk_rows": 4}))

        assert [row.values["n"] for row in rows] == [str(i) for i in range(1, 26)]
        assert rows[-1].row_number == 25

    @pytest.mark.asyncio
    async def test_custom_delimiter(self, tmp_path):
        """The delimiter option is passed through to the reader."""
        path = tmp_path / "semicolon.csv"
        path.write_text("a;b\n1;2\n", encoding="utf-8")

        rows = await _collect(CSVRowSource(path, options={"delimiter": ";"}))

        assert rows[0].values == {"a": "1", "b": "2"}

    @pytest.mark.asyncio
    async def test_header_only_file_has_no_rows(self, tmp_path):
        """A header without data yields nothing but still exposes the headers."""
        path = tmp_path / "header_only.csv"
        path.write_text("id,name\n", encoding="utf-8")

        source = CSVRowSource(path)
        assert await _collect(source) == []
        assert source.headers == ["id", "name"]

    @pytest.mark.asyncio
    async def test_empty_file(self, tmp_path):
        """A zero-byte file yields no rows and no headers."""
        path = tmp_path / "empty.csv"
        path.write_text("", encoding="utf-8")

        source = CSVRowSource(path)
        assert await _collect(source) == []
        assert source.headers == []
        assert await source.estimate_rows() == 0

    @pytest.mark.asyncio
    async def test_stream_can_only_be_consumed_once(self, sample_csv):
        """A second pass over the same source is refused."""
        source = CSVRowSource(sample_csv)
        await _collect(source)

        with pytest.raises(RuntimeError, match="already been consumed"):
            await _collect(source)

    @pytest.mark.asyncio
    async def test_unsupported_option(self, sample_csv):
        """Unknown reader options are a parsing error."""
        source = CSVRowSource(sample_csv, options={"compression_level": 3})

        with pytest.raises(ParsingError, match="Unsupported CSV option"):
            await _collect(source)

    @pytest.mark.asyncio
    async def test_estimate_rows(self, sample_csv):
        """Small files are estimated exactly."""
        assert await CSVRowSource(sample_csv).estimate_rows() == 5


class TestSourceRegistry:
    """Format lookup and source opening."""

    def test_infer_format_from_suffix(self):
        """Suffixes map to registered formats."""
        assert infer_format("data/customers.CSV") == "csv"
        assert infer_format("https://example.com/export.xlsx?token=abc") == "xlsx"

    def test_unknown_suffix(self):
        """Unknown suffixes cannot be inferred."""
        with pytest.raises(UnsupportedFormatError):
            infer_format("report.pdf")
        with pytest.raises(UnsupportedFormatError):
            get_source("parquet")

    @pytest.mark.asyncio
    async def test_open_remote_source_removes_download(self):
        """Remote sources are downloaded to a temp file that is deleted on exit."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=b"id,name\n1,Ada\n2,Bob\n")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            async with open_source("https://example.com/people.csv", client=client) as source:
                rows = await _collect(source)
                downloaded = source.path
                assert downloaded.exists()

        assert [row.values["name"] for row in rows] == ["Ada", "Bob"]
        assert source.locator == "https://example.com/people.csv"
        assert not downloaded.exists()
