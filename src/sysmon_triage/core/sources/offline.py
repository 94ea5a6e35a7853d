"""Stored ``.evtx`` files as chunk and record sources."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from pathlib import Path

import aiofiles

from ..errors import BadSignature, SourceError, TruncatedChunk
from ..evtx import RecordDecoder
from ..evtx.layout import (
    CHUNK_SIZE,
    FILE_HEADER_BLOCK_SIZE,
    FileHeader,
    is_unused_chunk,
    parse_chunk_header,
    parse_file_header,
)
from ..models import LogChunk, RawRecord

logger = logging.getLogger(__name__)


class EvtxFileSource:
    """Async chunk reader over an EVTX file.

    Use as an async context manager. ``read_chunk`` always advances to the next
    chunk boundary before raising, so a caller may skip a bad chunk and carry on.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.header: FileHeader | None = None
        self._f = None
        self._index = 0
        self._done = False

    async def __aenter__(self) -> EvtxFileSource:
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def open(self) -> None:
        if not self.path.is_file():
            raise FileNotFoundError(f"Log file not found: {self.path}")
        try:
            self._f = await aiofiles.open(self.path, mode="rb")
            block = await self._f.read(FILE_HEADER_BLOCK_SIZE)
        except OSError as exc:
            await self.close()
            raise SourceError(f"cannot read {self.path}: {exc}") from exc

        try:
            self.header = parse_file_header(block)
        except SourceError:
            await self.close()
            raise
        if not self.header.checksum_ok:
            logger.warning("EVTX file header checksum mismatch in %s; continuing", self.path)
        if self.header.dirty:
            logger.info("EVTX file %s is marked dirty (not cleanly closed)", self.path)

        self._index = 0
        self._done = False
        await self._f.seek(FILE_HEADER_BLOCK_SIZE)

    async def close(self) -> None:
        if self._f is not None:
            await self._f.close()
            self._f = None

    async def read_chunk(self) -> LogChunk | None:
        if self._done:
            return None
        if self._f is None:
            raise SourceError("source is not open")

        try:
            data = await self._f.read(CHUNK_SIZE)
        except OSError as exc:
            raise SourceError(f"cannot read {self.path}: {exc}") from exc

        index = self._index
        self._index += 1

        if not data:
            self._done = True
            return None
        if is_unused_chunk(data):
            if index >= self.header.chunk_count:
                self._done = True
                return None
            raise BadSignature(
                f"zeroed chunk inside the {self.header.chunk_count} chunks declared by the file header",
                chunk=index,
            )
        if len(data) < CHUNK_SIZE:
            self._done = True
            raise TruncatedChunk(f"file ends {len(data)} bytes into a chunk", chunk=index)

        return LogChunk(header=parse_chunk_header(data, index), data=data)


class OfflineRecordSource:
    """RecordSource that decodes a stored EVTX file to its end."""

    def __init__(self, path: str | Path, *, decoder: RecordDecoder | None = None):
        self.path = Path(path)
        self.decoder = decoder or RecordDecoder()
        self._chunks = EvtxFileSource(self.path)
        self._records: AsyncIterator[RawRecord] | None = None

    @property
    def stats(self):
        return self.decoder.stats

    async def __aenter__(self) -> OfflineRecordSource:
        await self._chunks.open()
        self._records = self.decoder.records(self._chunks)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._records is not None:
            await self._records.aclose()
            self._records = None
        await self._chunks.close()

    async def next_record(self) -> RawRecord | None:
        if self._records is None:
            return None
        try:
            return await anext(self._records)
        except StopAsyncIteration:
            self._records = None
            return None

    def __aiter__(self) -> AsyncIterator[RawRecord]:
        return self._iter()

    async def _iter(self) -> AsyncIterator[RawRecord]:
        while True:
            record = await self.next_record()
            if record is None:
                return
            yield record
