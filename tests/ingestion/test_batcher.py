"""Tests for adaptive batch sizing and provenance tagging."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from tabula_ingestor.ingestion.batcher import (
    DEFAULT_BATCH_SIZE,
    AdaptiveBatcher,
    BackendMode,
    choose_batch_size,
    expected_batch_count,
)
from tabula_ingestor.ingestion.provenance import ProvenanceTagger
from tabula_ingestor.schemas.rows import RawRow, TaggedRow

_STAMP = datetime(2024, 1, 1, tzinfo=timezone.utc)


async def _tagged(count: int):
    for number in range(1, count + 1):
        yield TaggedRow(row_number=number, values={"n": number}, source_id="s", ingested_at=_STAMP)


class TestChooseBatchSize:
    """Threshold tables for both backend modes."""

    @pytest.mark.parametrize(
        ("estimated", "expected"),
        [
            (1_250_000, 200),
            (500_001, 200),
            (500_000, 500),
            (100_001, 500),
            (100_000, 1_000),
            (10_001, 1_000),
            (10_000, DEFAULT_BATCH_SIZE),
            (0, DEFAULT_BATCH_SIZE),
        ],
    )
    def test_accelerated(self, estimated, expected):
        """Accelerated backends get smaller batches as files grow."""
        assert choose_batch_size(estimated, BackendMode.ACCELERATED) == expected

    @pytest.mark.parametrize(
        ("estimated", "expected"),
        [
            (1_250_000, 500),
            (500_000, 1_000),
            (100_001, 1_000),
            (100_000, DEFAULT_BATCH_SIZE),
            (42, DEFAULT_BATCH_SIZE),
        ],
    )
    def test_direct(self, estimated, expected):
        """Direct connections tolerate larger batches."""
        assert choose_batch_size(estimated, "direct") == expected

    def test_unknown_mode(self):
        """Only the declared modes are accepted."""
        with pytest.raises(ValueError):
            choose_batch_size(10, "sharded")


class TestAdaptiveBatcher:
    """Batch emission from a row stream."""

    @pytest.mark.asyncio
    async def test_trailing_partial_batch(self):
        """Full batches are emitted in order followed by the remainder."""
        batcher = AdaptiveBatcher("file-1", 4)

        batches = [batch async for batch in batcher.batches(_tagged(10))]

        assert [len(batch) for batch in batches] == [4, 4, 2]
        assert [batch.sequence for batch in batches] == [1, 2, 3]
        assert [row.row_number for batch in batches for row in batch] == list(range(1, 11))
        assert all(batch.file_id == "file-1" and batch.target_size == 4 for batch in batches)

    @pytest.mark.asyncio
    async def test_exact_multiple_has_no_empty_batch(self):
        """No empty batch is emitted when the rows divide evenly."""
        batcher = AdaptiveBatcher("file-1", 5)

        batches = [batch async for batch in batcher.batches(_tagged(10))]

        assert [len(batch) for batch in batches] == [5, 5]

    @pytest.mark.asyncio
    async def test_empty_stream(self):
        """An empty stream emits nothing."""
        batcher = AdaptiveBatcher("file-1", 5)

        assert [batch async for batch in batcher.batches(_tagged(0))] == []
        assert batcher.emitted == 0

    @pytest.mark.slow
    @pytest.mark.asyncio
    async def test_large_accelerated_file(self):
        """1.25M estimated rows stream as 6,250 batches of 200."""
        rows = 1_250_000
        batcher = AdaptiveBatcher.for_run("big", rows, "accelerated")
        count = 0
        sizes: set[int] = set()

        async for batch in batcher.batches(_tagged(rows)):
            count += 1
            sizes.add(len(batch))

        assert batcher.target_size == 200
        assert count == expected_batch_count(rows, 200) == 6_250
        assert sizes == {200}

    def test_target_size_must_be_positive(self):
        """A zero target size is rejected."""
        with pytest.raises(ValueError):
            AdaptiveBatcher("file-1", 0)


class TestProvenanceTagger:
    """Provenance stamping."""

    @pytest.mark.asyncio
    async def test_every_row_shares_the_run_stamp(self):
        """One source id and one timestamp per run."""
        tagger = ProvenanceTagger("crm-export")

        async def raw():
            for number in (1, 2, 3):
                yield RawRow(row_number=number, values={"n": str(number)})

        tagged = [row async for row in tagger.tag_stream(raw())]

        assert {row.source_id for row in tagged} == {"crm-export"}
        assert {row.ingested_at for row in tagged} == {tagger.ingested_at}
        assert tagged[1].as_record() == {
            "n": "2",
            "source_id": "crm-export",
            "ingested_at": tagger.ingested_at.isoformat(),
        }
