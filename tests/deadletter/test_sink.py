"""Tests for the dead-letter queue and its replay loop."""

from __future__ import annotations

import pytest
from sqlalchemy import create_engine

from tabula_ingestor.deadletter.sink import DeadLetterSink, describe_entry
from tabula_ingestor.models.base import get_engine


@pytest.fixture
def sink() -> DeadLetterSink:
    return DeadLetterSink(get_engine())


class TestEnqueue:
    """Appending failed work."""

    @pytest.mark.asyncio
    async def test_entries_round_trip(self, sink):
        """Payload, error and a zero retry count are stored."""
        entry_id = await sink.enqueue(
            "file-1", "insert_rows", {"rows": [{"row_number": 1}]}, RuntimeError("db down")
        )

        (entry,) = await sink.list_entries()
        assert entry.id == entry_id
        assert entry.file_id == "file-1"
        assert entry.payload == {"rows": [{"row_number": 1}]}
        assert entry.error == "db down"
        assert entry.retry_count == 0
        assert entry.last_retry_at is None

    @pytest.mark.asyncio
    async def test_error_without_message_uses_class_name(self, sink):
        """Bare exceptions are described by their type."""
        await sink.enqueue("file-1", "convert", {}, TimeoutError())

        (entry,) = await sink.list_entries()
        assert entry.error == "TimeoutError"

    @pytest.mark.asyncio
    async def test_unreachable_store_degrades_to_no_op(self, tmp_path):
        """An unavailable store never raises into the caller."""
        missing_dir = tmp_path / "no" / "such" / "dir"
        broken = DeadLetterSink(create_engine(f"sqlite:///{missing_dir}/dlq.sqlite"))

        assert await broken.enqueue("file-1", "insert_rows", {}, "boom") is None
        report = await broken.dequeue()
        assert report.selected == 0


class TestReplay:
    """Dequeue and per-operation handlers."""

    @pytest.mark.asyncio
    async def test_successful_replay_removes_entry(self, sink):
        """Handled entries are deleted."""
        handled: list[int] = []

        async def handler(entry):
            handled.append(entry.id)

        entry_id = await sink.enqueue("file-1", "insert_rows", {}, "boom")
        sink.register_handler("insert_rows", handler)

        report = await sink.dequeue(max_items=10, max_retries=3)

        assert handled == [entry_id]
        assert (report.selected, report.replayed, report.failed) == (1, 1, 0)
        assert await sink.list_entries() == []

    @pytest.mark.asyncio
    async def test_failed_replay_bumps_retry_count(self, sink):
        """Failures keep the entry and count the attempt."""

        async def handler(entry):
            raise RuntimeError("still broken")

        await sink.enqueue("file-1", "insert_rows", {}, "boom")
        sink.register_handler("insert_rows", handler)

        report = await sink.dequeue()

        assert report.failed == 1
        assert report.errors[0]["error"] == "still broken"
        (entry,) = await sink.list_entries()
        assert entry.retry_count == 1
        assert entry.last_retry_at is not None

    @pytest.mark.asyncio
    async def test_entries_at_retry_limit_are_not_selected(self, sink):
        """Entries retried max_retries times stay parked."""

        async def handler(entry):
            raise RuntimeError("still broken")

        await sink.enqueue("file-1", "insert_rows", {}, "boom")
        sink.register_handler("insert_rows", handler)

        for _ in range(2):
            await sink.dequeue(max_retries=2)
        report = await sink.dequeue(max_retries=2)

        assert report.selected == 0
        (entry,) = await sink.list_entries()
        assert entry.retry_count == 2

    @pytest.mark.asyncio
    async def test_oldest_entries_first_up_to_max_items(self, sink):
        """Selection is FIFO and bounded."""
        seen: list[str] = []

        async def handler(entry):
            seen.append(entry.file_id)

        for index in range(5):
            await sink.enqueue(f"file-{index}", "insert_rows", {}, "boom")
        sink.register_handler("insert_rows", handler)

        report = await sink.dequeue(max_items=3)

        assert seen == ["file-0", "file-1", "file-2"]
        assert report.selected == 3
        assert len(await sink.list_entries()) == 2

    @pytest.mark.asyncio
    async def test_unknown_operation_is_skipped(self, sink):
        """Entries without a handler are left queued."""
        await sink.enqueue("file-1", "reindex", {}, "boom")

        report = await sink.dequeue()

        assert report.skipped == 1
        assert len(await sink.list_entries(operation="reindex")) == 1

    @pytest.mark.asyncio
    async def test_manual_retry_and_delete(self, sink):
        """Single entries can be retried or purged by id."""

        async def handler(entry):
            return None

        first = await sink.enqueue("file-1", "insert_rows", {}, "boom")
        second = await sink.enqueue("file-2", "insert_rows", {}, "boom")
        sink.register_handler("insert_rows", handler)

        assert await sink.retry_entry(first) is True
        assert await sink.retry_entry(first) is False
        assert await sink.delete_entry(second) is True
        assert await sink.delete_entry(second) is False
        assert await sink.list_entries() == []

    @pytest.mark.asyncio
    async def test_describe_entry(self, sink):
        """Entries serialise for logs and the CLI."""
        await sink.enqueue("file-1", "convert", {"headers": ["a"]}, "boom")

        (entry,) = await sink.list_entries()
        described = describe_entry(entry)

        assert described["operation"] == "convert"
        assert described["retry_count"] == 0
        assert described["timestamp"] is not None
