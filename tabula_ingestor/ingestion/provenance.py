"""Provenance tagging for raw rows."""

from __future__ import annotations

from collections.abc import AsyncIterable, AsyncIterator
from dataclasses import dataclass, field
from datetime import datetime

from ..models.base import utcnow
from ..schemas.rows import RawRow, TaggedRow


@dataclass(frozen=True, slots=True)
class ProvenanceTagger:
    """Stamps every row of one ingestion run with the same source id and timestamp."""

    source_id: str
    ingested_at: datetime = field(default_factory=utcnow)

    def tag(self, row: RawRow) -> TaggedRow:
        return TaggedRow(
            row_number=row.row_number,
            values=row.values,
            source_id=self.source_id,
            ingested_at=self.ingested_at,
        )

    async def tag_stream(self, rows: AsyncIterable[RawRow]) -> AsyncIterator[TaggedRow]:
        async for row in rows:
            yield self.tag(row)
