"""Event sources: stored EVTX files and the live Sysmon channel."""

from __future__ import annotations

from .base import RecordSource, iter_records
from .live import EventFeed, LiveRecordSource
from .offline import EvtxFileSource, OfflineRecordSource
from .windows import SYSMON_CHANNEL, SysmonChannelFeed, build_xpath_query

__all__ = [
    "EventFeed",
    "EvtxFileSource",
    "LiveRecordSource",
    "OfflineRecordSource",
    "RecordSource",
    "SYSMON_CHANNEL",
    "SysmonChannelFeed",
    "build_xpath_query",
    "iter_records",
]
