"""Live record source over an OS event feed.

The feed's blocking wait runs in a worker thread via ``asyncio.to_thread``;
records are handed out one at a time in delivery order.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Protocol

from ..errors import DecodeError, SourceError
from ..evtx import DecodeStats, record_from_xml
from ..models import RawRecord

logger = logging.getLogger(__name__)


class EventFeed(Protocol):
    """Blocking OS subscription that yields rendered event XML."""

    def open(self) -> None:
        """Start the subscription. Raises SourceError when unavailable."""
        ...

    def poll(self, timeout: float) -> list[str | None]:
        """Wait up to ``timeout`` seconds and return newly delivered events.

        A ``None`` entry stands for an event that was delivered but could not
        be rendered.
        """
        ...

    def close(self) -> None:
        """Release the subscription; must be safe to call twice."""
        ...


class LiveRecordSource:
    """RecordSource that blocks until the next live record arrives.

    A lost subscription is reopened with exponential backoff up to
    ``max_reconnects`` times before the SourceError propagates.
    """

    def __init__(
        self,
        feed: EventFeed,
        *,
        poll_timeout: float = 1.0,
        max_reconnects: int = 5,
        backoff_cap: float = 8.0,
        stats: DecodeStats | None = None,
    ):
        if poll_timeout <= 0:
            raise ValueError("poll_timeout must be > 0")
        if max_reconnects < 0:
            raise ValueError("max_reconnects must be >= 0")
        self.feed = feed
        self.poll_timeout = poll_timeout
        self.max_reconnects = max_reconnects
        self.backoff_cap = backoff_cap
        self.stats = stats or DecodeStats()
        self._pending: deque[str | None] = deque()
        self._inflight: asyncio.Future[list[str | None]] | None = None
        self._opened = False
        self._stopped = False

    async def __aenter__(self) -> LiveRecordSource:
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    @property
    def stopped(self) -> bool:
        return self._stopped

    async def open(self) -> None:
        await asyncio.to_thread(self.feed.open)
        self._opened = True
        self._stopped = False
        logger.info("Live subscription active")

    def stop(self) -> None:
        """End the stream after the record currently in flight."""
        self._stopped = True

    async def aclose(self) -> None:
        self._stopped = True
        if self._pending:
            logger.debug("Dropping %d undelivered live events on close", len(self._pending))
            self._pending.clear()
        inflight, self._inflight = self._inflight, None
        if inflight is not None:
            # A worker still inside feed.poll returns within poll_timeout.
            await asyncio.wait({inflight})
            if not inflight.cancelled() and inflight.exception() is not None:
                logger.debug("Poll in flight at close failed: %s", inflight.exception())
        if self._opened:
            self._opened = False
            await asyncio.to_thread(self.feed.close)
            logger.info("Live subscription closed")

    async def next_record(self) -> RawRecord | None:
        while not self._stopped:
            if not self._pending:
                self._pending.extend(await self._poll())
                continue

            xml = self._pending.popleft()
            if xml is None:
                self.stats.records_skipped += 1
                continue
            try:
                record = record_from_xml(xml)
            except DecodeError as exc:
                self.stats.records_skipped += 1
                logger.warning("Skipping undecodable live event: %s", exc)
                continue
            self.stats.records_decoded += 1
            return record
        return None

    async def _poll(self) -> list[str | None]:
        attempt = 0
        while True:
            try:
                return await self._poll_once()
            except SourceError as exc:
                attempt += 1
                if attempt > self.max_reconnects:
                    logger.error("Live subscription lost after %s reconnect attempts: %s", attempt - 1, exc)
                    raise
                sleep_s = min(self.backoff_cap, 2 ** (attempt - 1))
                logger.warning(
                    "Live subscription failed (attempt %s/%s): %s; reconnecting in %ss",
                    attempt,
                    self.max_reconnects,
                    exc,
                    sleep_s,
                )
                await asyncio.sleep(sleep_s)
                await self._reopen()

    async def _poll_once(self) -> list[str | None]:
        inflight = asyncio.ensure_future(asyncio.to_thread(self.feed.poll, self.poll_timeout))
        self._inflight = inflight
        try:
            return await asyncio.shield(inflight)
        finally:
            if inflight.done() and self._inflight is inflight:
                self._inflight = None

    async def _reopen(self) -> None:
        await asyncio.to_thread(self.feed.close)
        try:
            await asyncio.to_thread(self.feed.open)
        except SourceError as exc:
            logger.warning("Reopening live subscription failed: %s", exc)
