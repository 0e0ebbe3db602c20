"""Tests for the XLSX row source."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

import pytest
from openpyxl import Workbook

from tabula_ingestor.exceptions import ParsingError
from tabula_ingestor.sources import XLSXRowSource


@pytest.fixture
def sample_workbook(tmp_path: Path) -> Path:
    """Workbook with a Products sheet followed by an Orders sheet."""

    workbook = Workbook()
    products = workbook.active
    products.title = "Products"
    products.append(["sku", "name", None])
    products.append(["A-1", "Widget", "blue"])
    products.append([None, None, None])
    products.append(["A-2", "Gadget", None])

    orders = workbook.create_sheet("Orders")
    orders.append(["order_id", "placed_at", "total"])
    orders.append([1001, datetime(2024, 3, 15, 10, 30), 19.5])

    path = tmp_path / "catalog.xlsx"
    workbook.save(path)
    return path


async def _collect(source):
    return [row async for row in source.rows()]


class TestXLSXRowSource:
    """Test suite for XLSXRowSource."""

    @pytest.mark.asyncio
    async def test_first_sheet_by_default(self, sample_workbook):
        """The first worksheet is read; blank header cells get positional names."""
        source = XLSXRowSource(sample_workbook)
        rows = await _collect(source)

        assert source.headers == ["sku", "name", "Column3"]
        assert [row.values for row in rows] == [
            {"sku": "A-1", "name": "Widget", "Column3": "blue"},
            {"sku": "A-2", "name": "Gadget", "Column3": None},
        ]

    @pytest.mark.asyncio
    async def test_blank_rows_do_not_consume_ordinals(self, sample_workbook):
        """Fully blank rows are skipped."""
        rows = await _collect(XLSXRowSource(sample_workbook))

        assert [row.row_number for row in rows] == [1, 2]

    @pytest.mark.asyncio
    async def test_named_sheet_keeps_native_types(self, sample_workbook):
        """Numbers and dates keep their cell types."""
        rows = await _collect(XLSXRowSource(sample_workbook, options={"sheet_name": "Orders"}))

        assert rows[0].values["order_id"] == 1001
        assert rows[0].values["placed_at"] == datetime(2024, 3, 15, 10, 30)
        assert rows[0].values["total"] == 19.5

    @pytest.mark.asyncio
    async def test_missing_sheet(self, sample_workbook):
        """Requesting an unknown sheet is a parsing error."""
        source = XLSXRowSource(sample_workbook, options={"sheet_name": "Returns"})

        with pytest.raises(ParsingError, match="Returns"):
            await _collect(source)

    @pytest.mark.asyncio
    async def test_corrupt_workbook(self, tmp_path):
        """Files that are not workbooks cannot be opened."""
        path = tmp_path / "broken.xlsx"
        path.write_bytes(b"not a zip archive")

        with pytest.raises(ParsingError):
            await _collect(XLSXRowSource(path))

    @pytest.mark.asyncio
    async def test_estimate_rows(self, sample_workbook):
        """The estimate comes from the sheet dimensions, header excluded."""
        assert await XLSXRowSource(sample_workbook).estimate_rows() == 3
