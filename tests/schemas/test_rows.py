"""Tests for the shared row types."""

from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal

from tabula_ingestor.schemas.rows import TaggedRow, ValueKind, to_json_value, value_kind


class TestValueKind:
    """Cell classification."""

    def test_booleans_are_not_numbers(self):
        assert value_kind(True) is ValueKind.BOOLEAN
        assert value_kind(3) is ValueKind.NUMBER

    def test_nan_is_null(self):
        """Pandas fills empty numeric cells with NaN."""
        assert value_kind(float("nan")) is ValueKind.NULL
        assert value_kind(None) is ValueKind.NULL

    def test_structured_values(self):
        assert value_kind(date(2024, 1, 2)) is ValueKind.TIMESTAMP
        assert value_kind({"a": 1}) is ValueKind.JSON
        assert value_kind("text") is ValueKind.STRING


class TestAsRecord:
    def test_values_are_json_ready(self):
        """Decimals, dates and tuples are converted; provenance is appended."""
        stamp = datetime(2024, 5, 1, tzinfo=timezone.utc)
        row = TaggedRow(
            row_number=1,
            values={"price": Decimal("2.5"), "day": date(2024, 1, 2), "tags": ("a", None)},
            source_id="erp",
            ingested_at=stamp,
        )

        assert row.as_record() == {
            "price": 2.5,
            "day": "2024-01-02",
            "tags": ["a", None],
            "source_id": "erp",
            "ingested_at": "2024-05-01T00:00:00+00:00",
        }
        assert to_json_value(float("nan")) is None
