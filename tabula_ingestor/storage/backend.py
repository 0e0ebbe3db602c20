"""Row storage backends used by the batch processor."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import asynccontextmanager
from typing import Any, TypeVar

from sqlalchemy import Connection, Engine, Insert, func, insert, select, text
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from ..models.base import get_engine
from ..models.files import FileRow
from ..schemas.rows import TaggedRow
from ..utils.logging import setup_logger

logger = setup_logger(__name__, context={"source_id": "row_backend"})

T = TypeVar("T")

_UNIQUE_COLUMNS = ("file_id", "row_number")


class RowBackend(ABC):
    """Pooled storage for ingested rows.

    Each attempt acquires a handle with :meth:`acquire` and must use it
    exclusively until the context exits, which always releases it.
    """

    @abstractmethod
    def acquire(self) -> Any:
        """Return an async context manager yielding a pooled handle."""

    @abstractmethod
    async def insert_many(
        self,
        handle: Any,
        file_id: str,
        rows: Sequence[TaggedRow],
        *,
        transactional: bool = False,
        timeout_ms: int | None = None,
        max_wait_ms: int | None = None,
    ) -> int:
        """Insert ``rows`` skipping ones that already exist; return the number inserted."""

    @abstractmethod
    async def insert_one(self, handle: Any, file_id: str, row: TaggedRow) -> None:
        """Insert a single row, raising if it collides with an existing key."""

    @abstractmethod
    async def count_rows(self, file_id: str) -> int:
        """Return the number of stored rows for ``file_id``."""

    @abstractmethod
    def stream_rows(self, file_id: str, *, page_size: int = 1000) -> AsyncIterator[dict[str, Any]]:
        """Yield stored row payloads for ``file_id`` in row order."""


def row_params(file_id: str, row: TaggedRow) -> dict[str, Any]:
    return {
        "file_id": file_id,
        "row_number": row.row_number,
        "source_id": row.source_id,
        "ingested_at": row.ingested_at,
        "data": row.as_record(),
    }


class SQLAlchemyRowBackend(RowBackend):
    """Backend writing rows to the ``file_rows`` table through a pooled engine."""

    def __init__(self, engine: Engine | None = None) -> None:
        self._engine = engine

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            self._engine = get_engine()
        return self._engine

    async def _run_in_thread(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return await asyncio.to_thread(func, *args, **kwargs)

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[Connection]:
        connection = await self._run_in_thread(self.engine.connect)
        try:
            yield connection
        finally:
            await self._run_in_thread(connection.close)

    def _skip_duplicates_insert(self) -> Insert:
        table = FileRow.__table__
        dialect = self.engine.dialect.name
        if dialect == "postgresql":
            return pg_insert(table).on_conflict_do_nothing(index_elements=list(_UNIQUE_COLUMNS))
        if dialect == "sqlite":
            return sqlite_insert(table).on_conflict_do_nothing(index_elements=list(_UNIQUE_COLUMNS))
        if dialect in {"mysql", "mariadb"}:
            return insert(table).prefix_with("IGNORE")
        logger.warning("Dialect %s has no conflict-skipping insert; duplicates will raise", dialect)
        return insert(table)

    def _apply_transaction_budget(
        self, connection: Connection, timeout_ms: int | None, max_wait_ms: int | None
    ) -> None:
        if connection.dialect.name != "postgresql":
            return
        if timeout_ms:
            connection.execute(
                text("SELECT set_config('statement_timeout', :value, true)"),
                {"value": str(int(timeout_ms))},
            )
        if max_wait_ms:
            connection.execute(
                text("SELECT set_config('lock_timeout', :value, true)"),
                {"value": str(int(max_wait_ms))},
            )

    def _insert_many_sync(
        self,
        connection: Connection,
        file_id: str,
        rows: Sequence[TaggedRow],
        transactional: bool,
        timeout_ms: int | None,
        max_wait_ms: int | None,
    ) -> int:
        params = [row_params(file_id, row) for row in rows]
        statement = self._skip_duplicates_insert()
        with connection.begin():
            if transactional:
                self._apply_transaction_budget(connection, timeout_ms, max_wait_ms)
            result = connection.execute(statement, params)
        inserted = result.rowcount
        if inserted is None or inserted < 0:
            return len(params)
        return min(inserted, len(params))

    async def insert_many(
        self,
        handle: Connection,
        file_id: str,
        rows: Sequence[TaggedRow],
        *,
        transactional: bool = False,
        timeout_ms: int | None = None,
        max_wait_ms: int | None = None,
    ) -> int:
        if not rows:
            return 0
        return await self._run_in_thread(
            self._insert_many_sync,
            handle,
            file_id,
            rows,
            transactional,
            timeout_ms,
            max_wait_ms,
        )

    def _insert_one_sync(self, connection: Connection, file_id: str, row: TaggedRow) -> None:
        with connection.begin():
            connection.execute(insert(FileRow.__table__), row_params(file_id, row))

    async def insert_one(self, handle: Connection, file_id: str, row: TaggedRow) -> None:
        await self._run_in_thread(self._insert_one_sync, handle, file_id, row)

    def _count_rows_sync(self, file_id: str) -> int:
        with self.engine.connect() as connection:
            statement = select(func.count()).select_from(FileRow).where(FileRow.file_id == file_id)
            return int(connection.execute(statement).scalar_one())

    async def count_rows(self, file_id: str) -> int:
        return await self._run_in_thread(self._count_rows_sync, file_id)

    def _page_sync(self, file_id: str, after: int, page_size: int) -> list[tuple[int, dict[str, Any]]]:
        with self.engine.connect() as connection:
            statement = (
                select(FileRow.row_number, FileRow.data)
                .where(FileRow.file_id == file_id, FileRow.row_number > after)
                .order_by(FileRow.row_number)
                .limit(page_size)
            )
            return [(int(number), data) for number, data in connection.execute(statement)]

    async def stream_rows(self, file_id: str, *, page_size: int = 1000) -> AsyncIterator[dict[str, Any]]:
        after = 0
        while True:
            page = await self._run_in_thread(self._page_sync, file_id, after, page_size)
            if not page:
                return
            for _, data in page:
                yield data
            after = page[-1][0]
