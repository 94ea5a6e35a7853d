from __future__ import annotations

import asyncio
import threading
import time
from pathlib import Path

import pytest

from sysmon_triage.core.errors import SourceError
from sysmon_triage.core.sources import (
    LiveRecordSource,
    OfflineRecordSource,
    SysmonChannelFeed,
    build_xpath_query,
    iter_records,
)
from sysmon_triage.core.sources import windows


class SlowFeed:
    """Feed whose poll blocks for the whole timeout and records overlap with close."""

    def __init__(self) -> None:
        self.entered = threading.Event()
        self.polling = False
        self.closed_while_polling = False
        self.closes = 0

    def open(self) -> None:
        pass

    def poll(self, timeout: float) -> list[str | None]:
        self.polling = True
        self.entered.set()
        time.sleep(timeout)
        self.polling = False
        return []

    def close(self) -> None:
        self.closes += 1
        self.closed_while_polling = self.polling


@pytest.mark.asyncio
async def test_live_source_delivers_in_order_and_stops(scripted_feed, event_xml, process_create) -> None:
    events = [process_create(rf"C:\bin\tool{i}.exe", seconds=i) for i in range(3)]
    feed = scripted_feed([[event_xml(events[0], 10), event_xml(events[1], 11)], [], [event_xml(events[2], 12)]])
    source = LiveRecordSource(feed, poll_timeout=0.01)
    feed.on_empty = source.stop

    async with source:
        records = [r async for r in iter_records(source)]

    assert [r.record_id for r in records] == [10, 11, 12]
    assert records[2].fields["Image"] == r"C:\bin\tool2.exe"
    assert source.stats.records_decoded == 3
    assert feed.opens == 1
    assert feed.closes == 1


@pytest.mark.asyncio
async def test_stop_before_next_wait_returns_none(scripted_feed) -> None:
    feed = scripted_feed([])
    source = LiveRecordSource(feed)

    async with source:
        source.stop()
        assert await source.next_record() is None

    assert feed.polls == 0
    assert feed.closes == 1


@pytest.mark.asyncio
async def test_undecodable_live_event_is_skipped(scripted_feed, event_xml, sysmon_event) -> None:
    good = event_xml(sysmon_event(5, Image=r"C:\a.exe"), 7)
    feed = scripted_feed([["<Event><System>", good]])
    source = LiveRecordSource(feed, poll_timeout=0.01)
    feed.on_empty = source.stop

    async with source:
        records = [r async for r in iter_records(source)]

    assert [r.record_id for r in records] == [7]
    assert source.stats.records_skipped == 1


@pytest.mark.asyncio
async def test_unrenderable_live_event_is_counted(scripted_feed, event_xml, sysmon_event) -> None:
    good = event_xml(sysmon_event(5, Image=r"C:\a.exe"), 8)
    feed = scripted_feed([[None, good, None]])
    source = LiveRecordSource(feed, poll_timeout=0.01)
    feed.on_empty = source.stop

    async with source:
        records = [r async for r in iter_records(source)]

    assert [r.record_id for r in records] == [8]
    assert source.stats.records_decoded == 1
    assert source.stats.records_skipped == 2


@pytest.mark.asyncio
async def test_close_waits_for_poll_in_flight() -> None:
    feed = SlowFeed()
    source = LiveRecordSource(feed, poll_timeout=0.2)
    await source.open()
    task = asyncio.create_task(source.next_record())
    await asyncio.to_thread(feed.entered.wait, 5)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    await source.aclose()

    assert feed.closes == 1
    assert feed.closed_while_polling is False


@pytest.mark.asyncio
async def test_lost_subscription_is_reopened(scripted_feed, event_xml, sysmon_event) -> None:
    xml = event_xml(sysmon_event(5, Image=r"C:\a.exe"), 1)
    feed = scripted_feed([SourceError("subscription lost"), SourceError("still down"), [xml]])
    source = LiveRecordSource(feed, poll_timeout=0.01, max_reconnects=3, backoff_cap=0)

    async with source:
        record = await source.next_record()

    assert record.record_id == 1
    assert feed.opens == 3
    assert feed.closes == 3


@pytest.mark.asyncio
async def test_failed_reopen_is_retried(scripted_feed, event_xml, sysmon_event) -> None:
    xml = event_xml(sysmon_event(5, Image=r"C:\a.exe"), 1)
    feed = scripted_feed([SourceError("lost"), SourceError("lost"), [xml]])
    source = LiveRecordSource(feed, poll_timeout=0.01, max_reconnects=2, backoff_cap=0)

    async with source:
        feed.fail_open = 1
        record = await source.next_record()

    assert record.record_id == 1


@pytest.mark.asyncio
async def test_reconnect_gives_up_after_max_attempts(scripted_feed) -> None:
    feed = scripted_feed([SourceError("lost")] * 3)
    source = LiveRecordSource(feed, poll_timeout=0.01, max_reconnects=2, backoff_cap=0)

    with pytest.raises(SourceError):
        async with source:
            await source.next_record()

    # The subscription is released even though the run failed.
    assert feed.closes == feed.opens


def test_live_source_rejects_bad_settings(scripted_feed) -> None:
    with pytest.raises(ValueError):
        LiveRecordSource(scripted_feed([]), poll_timeout=0)
    with pytest.raises(ValueError):
        LiveRecordSource(scripted_feed([]), max_reconnects=-1)


@pytest.mark.asyncio
async def test_offline_source_is_a_record_source(tmp_path: Path, write_evtx, sysmon_event) -> None:
    path = write_evtx(tmp_path / "a.evtx", [[sysmon_event(5, seconds=i, Image=r"C:\a.exe") for i in range(3)]])

    async with OfflineRecordSource(path) as source:
        first = await source.next_record()
        rest = [r async for r in source]
        after = await source.next_record()

    assert first.record_id == 1
    assert [r.record_id for r in rest] == [2, 3]
    assert after is None
    assert source.stats.records_decoded == 3


def test_xpath_query() -> None:
    assert build_xpath_query(None) == "*"
    assert build_xpath_query(frozenset()) == "*"
    assert build_xpath_query({11, 1, 3}) == "*[System[(EventID=1 or EventID=3 or EventID=11)]]"


def test_channel_feed_without_pywin32(monkeypatch) -> None:
    def _missing():
        raise SourceError("pywin32 is required for live monitoring")

    monkeypatch.setattr(windows, "_import_win32", _missing)
    feed = SysmonChannelFeed(query="*")

    with pytest.raises(SourceError):
        feed.open()


class FakeHandle:
    def __init__(self) -> None:
        self.closed = 0

    def Close(self) -> None:
        self.closed += 1


def test_channel_feed_close_releases_handles() -> None:
    feed = SysmonChannelFeed()
    subscription, signal = FakeHandle(), FakeHandle()
    feed._subscription, feed._signal = subscription, signal

    feed.close()
    feed.close()

    assert subscription.closed == 1
    assert signal.closed == 1
    with pytest.raises(SourceError, match="not open"):
        feed.poll(0.01)
