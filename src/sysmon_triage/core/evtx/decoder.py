"""Chunk-level record decoding with per-chunk corruption recovery."""

from __future__ import annotations

import logging
import struct
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Protocol

from ..errors import DecodeError, MalformedChunk, MalformedRecord
from ..models import LogChunk, RawRecord
from .binxml import BinXmlParser
from .layout import (
    CHUNK_HEADER_SIZE,
    MIN_RECORD_SIZE,
    RECORD_HEADER,
    RECORD_SIGNATURE,
    RECORD_TRAILER_SIZE,
    verify_chunk_checksums,
)
from .records import record_from_element
from .templates import TemplateCache
from .values import filetime_to_datetime

logger = logging.getLogger(__name__)


class ChunkSource(Protocol):
    """Pull interface over a chunked log: a chunk, ``None`` at end, or DecodeError."""

    async def read_chunk(self) -> LogChunk | None:
        """Return the next chunk, or None at end of stream."""
        ...


@dataclass(slots=True)
class DecodeStats:
    """Counters reported at the end of a decode session."""

    chunks_read: int = 0
    chunks_skipped: int = 0
    records_decoded: int = 0
    records_skipped: int = 0

    @property
    def skipped_units(self) -> int:
        return self.chunks_skipped + self.records_skipped


@dataclass(frozen=True, slots=True)
class RecordSpan:
    """Boundary of one record inside a chunk."""

    offset: int
    size: int
    record_id: int
    written: int


def iter_record_spans(chunk: LogChunk) -> list[RecordSpan]:
    """Walk record boundaries between the chunk header and the free-space offset."""
    data = chunk.data
    header = chunk.header
    end = header.free_space_offset
    pos = CHUNK_HEADER_SIZE
    spans: list[RecordSpan] = []

    while pos + MIN_RECORD_SIZE <= end:
        signature, size, record_id, written = RECORD_HEADER.unpack_from(data, pos)
        if signature != RECORD_SIGNATURE:
            break
        if size < MIN_RECORD_SIZE or pos + size > end:
            raise MalformedChunk(f"record size {size} crosses free-space offset", chunk=header.index, offset=pos)
        (trailer,) = struct.unpack_from("<I", data, pos + size - RECORD_TRAILER_SIZE)
        if trailer != size:
            raise MalformedChunk(
                f"record size copy {trailer} does not match header size {size}",
                chunk=header.index,
                offset=pos,
            )
        spans.append(RecordSpan(offset=pos, size=size, record_id=record_id, written=written))
        pos += size

    if pos != end and any(data[pos:end]):
        raise MalformedChunk("unparsed bytes before free-space offset", chunk=header.index, offset=pos)
    return spans


class RecordDecoder:
    """Decode EVTX chunks into RawRecords.

    The template cache is the only state kept across chunks; it lives for one
    decode session (one call to :meth:`records`) and is cleared at the end.
    """

    def __init__(self, templates: TemplateCache | None = None, stats: DecodeStats | None = None):
        self.templates = templates or TemplateCache()
        self.stats = stats or DecodeStats()

    def decode_chunk(self, chunk: LogChunk) -> list[RawRecord]:
        """Validate a chunk and decode all of its records.

        Raises DecodeError when the chunk as a whole cannot be trusted. A record
        whose BinXML fails to decode is skipped and counted individually.
        """
        header = chunk.header
        verify_chunk_checksums(header, chunk.data)
        spans = iter_record_spans(chunk)

        declared = header.declared_record_count
        if len(spans) != declared:
            raise MalformedChunk(
                f"header declares {declared} records, found {len(spans)}",
                chunk=header.index,
            )

        parser = BinXmlParser(chunk.data, chunk_index=header.index, templates=self.templates)
        records: list[RawRecord] = []
        for span in spans:
            payload_start = span.offset + RECORD_HEADER.size
            payload_end = span.offset + span.size - RECORD_TRAILER_SIZE
            try:
                root = parser.parse_record(payload_start, payload_end)
                record = record_from_element(
                    root,
                    record_id=span.record_id,
                    written=filetime_to_datetime(span.written),
                )
            except DecodeError as exc:
                self.stats.records_skipped += 1
                logger.warning("Skipping record %s: %s", span.record_id, exc)
                continue
            except (struct.error, ValueError, OverflowError) as exc:
                self.stats.records_skipped += 1
                err = MalformedRecord(str(exc), chunk=header.index, offset=span.offset)
                logger.warning("Skipping record %s: %s", span.record_id, err)
                continue
            records.append(record)
        return records

    async def records(self, source: ChunkSource) -> AsyncIterator[RawRecord]:
        """Yield records from every readable chunk of ``source`` in file order."""
        try:
            while True:
                try:
                    chunk = await source.read_chunk()
                except DecodeError as exc:
                    # The source has already moved to the next chunk boundary.
                    self.stats.chunks_skipped += 1
                    logger.warning("Skipping unreadable chunk: %s", exc)
                    continue
                if chunk is None:
                    break

                self.stats.chunks_read += 1
                try:
                    decoded = self.decode_chunk(chunk)
                except DecodeError as exc:
                    self.stats.chunks_skipped += 1
                    self.stats.records_skipped += chunk.header.declared_record_count
                    logger.warning("Skipping corrupt chunk %s: %s", chunk.header.index, exc)
                    continue

                for record in decoded:
                    self.stats.records_decoded += 1
                    yield record
        finally:
            self.templates.clear()
            logger.info(
                "Decode session finished: %d records from %d chunks; skipped %d chunks, %d records",
                self.stats.records_decoded,
                self.stats.chunks_read,
                self.stats.chunks_skipped,
                self.stats.records_skipped,
            )
