"""Source -> Decoder -> Normalizer -> Filter -> Detector -> Sink wiring.

This module is the main integration point used by the CLI and the MCP tool.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterable, AsyncIterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from .detector import AnomalyDetector
from .errors import NormalizeError
from .evtx import DecodeStats, RecordDecoder
from .filters import FilterCriteria
from .models import AnnotatedEvent, NormalizedEvent, RawRecord
from .normalizer import normalize
from .sources import LiveRecordSource, OfflineRecordSource, iter_records

logger = logging.getLogger(__name__)


class Sink(Protocol):
    """Consumer of the annotated stream, called in arrival order."""

    def emit(self, item: AnnotatedEvent) -> None:
        ...


@dataclass(slots=True)
class RunStats:
    """Counters for one run; decode skips come from the decoder session."""

    decode: DecodeStats = field(default_factory=DecodeStats)
    normalized: int = 0
    dropped: int = 0
    filtered_out: int = 0
    emitted: int = 0
    flagged: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "chunks_read": self.decode.chunks_read,
            "chunks_skipped": self.decode.chunks_skipped,
            "records_decoded": self.decode.records_decoded,
            "records_skipped": self.decode.records_skipped,
            "records_dropped": self.dropped,
            "events_normalized": self.normalized,
            "events_filtered_out": self.filtered_out,
            "events_emitted": self.emitted,
            "events_flagged": self.flagged,
        }


def log_run_summary(stats: RunStats, *, label: str = "Run") -> None:
    logger.info(
        "%s summary: %d events emitted (%d flagged); skipped %d chunks, %d records; dropped %d records",
        label,
        stats.emitted,
        stats.flagged,
        stats.decode.chunks_skipped,
        stats.decode.records_skipped,
        stats.dropped,
    )


async def normalize_records(
    records: AsyncIterable[RawRecord],
    stats: RunStats,
) -> AsyncIterator[NormalizedEvent]:
    """Normalize records, dropping (and counting) those missing required fields."""
    async for record in records:
        try:
            event = normalize(record)
        except NormalizeError as exc:
            stats.dropped += 1
            logger.debug("Dropping record %s: %s", record.record_id, exc)
            continue
        stats.normalized += 1
        yield event


async def annotate(
    records: AsyncIterable[RawRecord],
    *,
    criteria: FilterCriteria | None = None,
    detector: AnomalyDetector | None = None,
    stats: RunStats | None = None,
) -> AsyncIterator[AnnotatedEvent]:
    """Normalize, filter and (optionally) run detection over a record stream."""
    stats = stats if stats is not None else RunStats()
    criteria = criteria or FilterCriteria()

    async for event in normalize_records(records, stats):
        if not criteria.matches(event):
            stats.filtered_out += 1
            continue
        anomaly = detector.observe(event) if detector is not None else None
        stats.emitted += 1
        if anomaly is not None:
            stats.flagged += 1
        yield AnnotatedEvent(event, anomaly)


async def analyze_file(
    path: str | Path,
    *,
    criteria: FilterCriteria | None = None,
    detector: AnomalyDetector | None = None,
    stats: RunStats | None = None,
) -> AsyncIterator[AnnotatedEvent]:
    """Yield annotated events from a stored EVTX file, in file order."""
    stats = stats if stats is not None else RunStats()
    decoder = RecordDecoder(stats=stats.decode)
    async with OfflineRecordSource(path, decoder=decoder) as source:
        async for item in annotate(source, criteria=criteria, detector=detector, stats=stats):
            yield item
    log_run_summary(stats, label=f"Analysis of {Path(path).name}")


async def get_annotated(path: str | Path, **kwargs: Any) -> list[AnnotatedEvent]:
    """Collect analyze_file into a list."""
    return [item async for item in analyze_file(path, **kwargs)]


async def drain(stream: AsyncIterable[AnnotatedEvent], sink: Sink) -> int:
    """Pump ``stream`` into ``sink``; returns the number of items emitted."""
    count = 0
    async for item in stream:
        sink.emit(item)
        count += 1
    return count


async def _report_periodically(stats: RunStats, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        logger.info(
            "Live status: %d events emitted (%d flagged); skipped %d records; dropped %d records",
            stats.emitted,
            stats.flagged,
            stats.decode.records_skipped,
            stats.dropped,
        )


async def watch(
    source: LiveRecordSource,
    sink: Sink,
    *,
    criteria: FilterCriteria | None = None,
    detector: AnomalyDetector | None = None,
    report_interval: float | None = 60.0,
    stats: RunStats | None = None,
) -> RunStats:
    """Run the live pipeline until the source stops, is cancelled, or fails.

    One record is in flight at a time: it reaches the sink before the next wait.
    """
    stats = stats if stats is not None else RunStats(decode=source.stats)
    reporter = None
    if report_interval:
        reporter = asyncio.create_task(_report_periodically(stats, report_interval))
    try:
        async with source:
            await drain(
                annotate(iter_records(source), criteria=criteria, detector=detector, stats=stats),
                sink,
            )
    finally:
        if reporter is not None:
            reporter.cancel()
            await asyncio.gather(reporter, return_exceptions=True)
        log_run_summary(stats, label="Live monitoring")
    return stats
