"""Durable dead-letter queue with a best-effort replay loop."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import Engine, delete, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

from ..exceptions import BackendUnavailableError
from ..models.base import get_engine, utcnow
from ..models.dead_letter import DeadLetterEntry
from ..monitoring.metrics import record_dead_letter_event
from ..utils.logging import setup_logger

logger = setup_logger(__name__, context={"source_id": "dead_letter"})

ReplayHandler = Callable[[DeadLetterEntry], Awaitable[None]]

_UNAVAILABLE_ERRORS = (BackendUnavailableError, OperationalError)


@dataclass(slots=True)
class ReplayReport:
    """Summary of one replay pass."""

    selected: int = 0
    replayed: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)


def _json_safe(payload: Any) -> Any:
    return json.loads(json.dumps(payload, default=str))


class DeadLetterSink:
    """Stores failed work and replays it through registered per-operation handlers.

    When the backing store cannot be reached every operation degrades to a
    logged no-op so that ingestion never fails because of its audit trail.
    """

    def __init__(self, engine: Engine | None = None) -> None:
        self._engine = engine
        self._session_factory: sessionmaker[Session] | None = None
        self._handlers: dict[str, ReplayHandler] = {}
        self._table_ready = False

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            self._engine = get_engine()
        return self._engine

    def register_handler(self, operation: str, handler: ReplayHandler) -> None:
        """Register the coroutine that reprocesses entries of ``operation``."""

        self._handlers[operation] = handler

    def _session(self) -> Session:
        if self._session_factory is None:
            self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        if not self._table_ready:
            DeadLetterEntry.__table__.create(bind=self.engine, checkfirst=True)
            self._table_ready = True
        return self._session_factory()

    def _enqueue_sync(self, file_id: str, operation: str, payload: Any, error: str) -> int:
        with self._session() as session, session.begin():
            entry = DeadLetterEntry(
                file_id=file_id,
                operation=operation,
                payload=_json_safe(payload),
                error=error,
                retry_count=0,
            )
            session.add(entry)
            session.flush()
            return entry.id

    async def enqueue(
        self,
        file_id: str,
        operation: str,
        payload: Any,
        error: BaseException | str,
    ) -> int | None:
        """Append an entry; returns its id, or None when the store is unavailable."""

        message = str(error) if str(error) else type(error).__name__
        try:
            entry_id = await asyncio.to_thread(
                self._enqueue_sync, file_id, operation, payload, message
            )
        except _UNAVAILABLE_ERRORS as exc:
            logger.warning(
                "Dead-letter store unavailable; dropping %s entry: %s",
                operation,
                exc,
                extra={"file_id": file_id, "status": "dead_letter_unavailable"},
            )
            record_dead_letter_event(operation, "skipped")
            return None

        logger.error(
            "Queued %s for offline retry: %s",
            operation,
            message,
            extra={"file_id": file_id, "status": "dead_lettered"},
        )
        record_dead_letter_event(operation, "enqueued")
        return entry_id

    def _claim_sync(self, max_items: int, max_retries: int) -> list[DeadLetterEntry]:
        with self._session() as session, session.begin():
            statement = (
                select(DeadLetterEntry)
                .where(DeadLetterEntry.retry_count < max_retries)
                .order_by(DeadLetterEntry.timestamp.asc(), DeadLetterEntry.id.asc())
                .limit(max_items)
            )
            entries = list(session.scalars(statement))
            now = utcnow()
            for entry in entries:
                entry.retry_count += 1
                entry.last_retry_at = now
            return entries

    def _delete_sync(self, entry_id: int) -> bool:
        with self._session() as session, session.begin():
            result = session.execute(delete(DeadLetterEntry).where(DeadLetterEntry.id == entry_id))
            return bool(result.rowcount)

    async def _replay(self, entry: DeadLetterEntry, report: ReplayReport) -> None:
        handler = self._handlers.get(entry.operation)
        if handler is None:
            report.skipped += 1
            logger.warning(
                "No replay handler registered for %s (entry %s)",
                entry.operation,
                entry.id,
                extra={"file_id": entry.file_id, "status": "skipped"},
            )
            return
        try:
            await handler(entry)
        except Exception as exc:  # replay failures stay queued
            report.failed += 1
            report.errors.append({"id": entry.id, "error": str(exc)})
            record_dead_letter_event(entry.operation, "retry_failed")
            logger.warning(
                "Replay of entry %s failed (attempt %s): %s",
                entry.id,
                entry.retry_count,
                exc,
                extra={"file_id": entry.file_id, "status": "retry_failed"},
            )
            return

        await asyncio.to_thread(self._delete_sync, entry.id)
        report.replayed += 1
        record_dead_letter_event(entry.operation, "replayed")
        logger.info(
            "Replayed dead-letter entry %s",
            entry.id,
            extra={"file_id": entry.file_id, "status": "replayed"},
        )

    async def dequeue(self, max_items: int = 10, max_retries: int = 3) -> ReplayReport:
        """Replay up to ``max_items`` oldest entries still under ``max_retries`` attempts.

        Each selected entry has its retry count and timestamp bumped before
        reprocessing and is removed only when its handler succeeds.
        """

        report = ReplayReport()
        try:
            entries = await asyncio.to_thread(self._claim_sync, max_items, max_retries)
        except _UNAVAILABLE_ERRORS as exc:
            logger.warning(
                "Dead-letter store unavailable; skipping replay: %s",
                exc,
                extra={"status": "dead_letter_unavailable"},
            )
            return report

        report.selected = len(entries)
        for entry in entries:
            await self._replay(entry, report)
        return report

    def _list_sync(
        self, file_id: str | None, operation: str | None, limit: int | None
    ) -> list[DeadLetterEntry]:
        with self._session() as session:
            statement = select(DeadLetterEntry).order_by(
                DeadLetterEntry.timestamp.asc(), DeadLetterEntry.id.asc()
            )
            if file_id is not None:
                statement = statement.where(DeadLetterEntry.file_id == file_id)
            if operation is not None:
                statement = statement.where(DeadLetterEntry.operation == operation)
            if limit is not None:
                statement = statement.limit(limit)
            return list(session.scalars(statement))

    async def list_entries(
        self,
        *,
        file_id: str | None = None,
        operation: str | None = None,
        limit: int | None = None,
    ) -> Sequence[DeadLetterEntry]:
        """Return queued entries, oldest first."""

        return await asyncio.to_thread(self._list_sync, file_id, operation, limit)

    def _get_sync(self, entry_id: int) -> DeadLetterEntry | None:
        with self._session() as session, session.begin():
            entry = session.get(DeadLetterEntry, entry_id)
            if entry is not None:
                entry.retry_count += 1
                entry.last_retry_at = utcnow()
            return entry

    async def retry_entry(self, entry_id: int) -> bool:
        """Replay one entry regardless of its retry count; returns True on success."""

        entry = await asyncio.to_thread(self._get_sync, entry_id)
        if entry is None:
            return False
        report = ReplayReport(selected=1)
        await self._replay(entry, report)
        return report.replayed == 1

    async def delete_entry(self, entry_id: int) -> bool:
        """Purge one entry; returns False when it does not exist."""

        return await asyncio.to_thread(self._delete_sync, entry_id)


def describe_entry(entry: DeadLetterEntry) -> dict[str, Any]:
    """Return a serializable summary of an entry for logs and the CLI."""

    return {
        "id": entry.id,
        "file_id": entry.file_id,
        "operation": entry.operation,
        "error": entry.error,
        "retry_count": entry.retry_count,
        "timestamp": entry.timestamp.isoformat() if entry.timestamp else None,
        "last_retry_at": entry.last_retry_at.isoformat() if entry.last_retry_at else None,
    }


__all__ = [
    "DeadLetterSink",
    "ReplayHandler",
    "ReplayReport",
    "describe_entry",
]
