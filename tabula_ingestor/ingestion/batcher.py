"""Adaptive batching of tagged rows."""

from __future__ import annotations

import math
from collections.abc import AsyncIterable, AsyncIterator
from enum import Enum

from ..schemas.rows import Batch, TaggedRow


class BackendMode(str, Enum):
    """How the storage backend is reached."""

    DIRECT = "direct"
    ACCELERATED = "accelerated"


# (exclusive lower bound on estimated rows, batch size), checked top-down.
_ACCELERATED_THRESHOLDS: tuple[tuple[int, int], ...] = (
    (500_000, 200),
    (100_000, 500),
    (10_000, 1_000),
)
_DIRECT_THRESHOLDS: tuple[tuple[int, int], ...] = (
    (500_000, 500),
    (100_000, 1_000),
)
DEFAULT_BATCH_SIZE = 2_000


def choose_batch_size(estimated_rows: int, mode: BackendMode | str) -> int:
    """Return the target batch size for a run.

    Args:
        estimated_rows: Estimated total rows in the source.
        mode: Backend mode declared for the run.

    Returns:
        Number of rows per emitted batch.
    """

    resolved = BackendMode(mode)
    thresholds = (
        _ACCELERATED_THRESHOLDS if resolved is BackendMode.ACCELERATED else _DIRECT_THRESHOLDS
    )
    for lower_bound, size in thresholds:
        if estimated_rows > lower_bound:
            return size
    return DEFAULT_BATCH_SIZE


def expected_batch_count(row_count: int, target_size: int) -> int:
    return math.ceil(row_count / target_size) if row_count > 0 else 0


class AdaptiveBatcher:
    """Groups a tagged row stream into batches of a size fixed for the run."""

    def __init__(self, file_id: str, target_size: int) -> None:
        if target_size <= 0:
            raise ValueError("target_size must be positive")
        self.file_id = file_id
        self.target_size = target_size
        self.emitted = 0

    @classmethod
    def for_run(
        cls, file_id: str, estimated_rows: int, mode: BackendMode | str
    ) -> AdaptiveBatcher:
        return cls(file_id, choose_batch_size(estimated_rows, mode))

    def _emit(self, rows: list[TaggedRow]) -> Batch:
        self.emitted += 1
        return Batch(
            file_id=self.file_id,
            sequence=self.emitted,
            target_size=self.target_size,
            rows=tuple(rows),
        )

    async def batches(self, rows: AsyncIterable[TaggedRow]) -> AsyncIterator[Batch]:
        """Yield full batches as they fill and the trailing partial batch, if any."""

        pending: list[TaggedRow] = []
        async for row in rows:
            pending.append(row)
            if len(pending) >= self.target_size:
                yield self._emit(pending)
                pending = []
        if pending:
            yield self._emit(pending)
