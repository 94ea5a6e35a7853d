"""Pull interface shared by offline and live record sources."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Protocol

from ..models import RawRecord


class RecordSource(Protocol):
    """Lazy, ordered sequence of raw records.

    ``next_record`` returns ``None`` once the source is exhausted (offline) or
    closed (live).
    """

    async def next_record(self) -> RawRecord | None:
        """Return the next record, or None when the source is done."""
        ...


async def iter_records(source: RecordSource) -> AsyncIterator[RawRecord]:
    """Adapt a RecordSource into an async iterator."""
    while True:
        record = await source.next_record()
        if record is None:
            return
        yield record
