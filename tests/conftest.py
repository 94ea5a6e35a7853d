from __future__ import annotations

import struct
import zlib
from collections.abc import Callable, Iterable, Sequence
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any
from xml.sax.saxutils import escape

import pytest

from sysmon_triage.core.errors import SourceError

CHUNK_SIZE = 65536
CHUNK_HEADER_SIZE = 512
FILE_HEADER_BLOCK_SIZE = 4096
SYSMON_PROVIDER = "Microsoft-Windows-Sysmon"
SYSMON_CHANNEL = "Microsoft-Windows-Sysmon/Operational"
BASE_TIME = datetime(2025, 12, 30, 8, 0, 0, tzinfo=UTC)

_T_NULL = 0x00
_T_WSTRING = 0x01
_T_UINT16 = 0x06
_T_UINT32 = 0x08
_T_UINT64 = 0x0A
_T_BOOL = 0x0D
_T_FILETIME = 0x11


def _crc32(data: bytes) -> int:
    return zlib.crc32(data) & 0xFFFFFFFF


def _filetime(dt: datetime) -> int:
    delta = dt - datetime(1601, 1, 1, tzinfo=UTC)
    return (delta.days * 86400 + delta.seconds) * 10_000_000 + delta.microseconds * 10


def _encode(value: Any) -> tuple[bytes, int]:
    if value is None:
        return b"", _T_NULL
    if isinstance(value, bool):
        return struct.pack("<I", int(value)), _T_BOOL
    if isinstance(value, int):
        return struct.pack("<I", value), _T_UINT32
    if isinstance(value, datetime):
        return struct.pack("<Q", _filetime(value)), _T_FILETIME
    return str(value).encode("utf-16-le"), _T_WSTRING


class ChunkWriter:
    """Writes one EVTX chunk: records with BinXML template instances.

    The first record of each field layout carries the template definition
    inline; later records in the same chunk reference it by offset. Element
    names are written inline once per chunk and back-referenced afterwards.
    """

    def __init__(self) -> None:
        self.buf = bytearray(CHUNK_HEADER_SIZE)
        self.names: dict[str, int] = {}
        self.templates: dict[tuple[tuple[str, int], ...], tuple[int, int]] = {}
        self.record_ids: list[int] = []
        self.last_record_offset = 0

    # -- primitives -------------------------------------------------------------

    def u8(self, v: int) -> None:
        self.buf += struct.pack("<B", v)

    def u16(self, v: int) -> None:
        self.buf += struct.pack("<H", v)

    def u32(self, v: int) -> None:
        self.buf += struct.pack("<I", v)

    def name(self, name: str) -> None:
        known = self.names.get(name)
        if known is not None:
            self.u32(known)
            return
        pos = len(self.buf) + 4
        self.u32(pos)
        self.names[name] = pos
        self.u32(0)  # next string
        self.u16(0)  # hash
        self.u16(len(name))
        self.buf += name.encode("utf-16-le")
        self.u16(0)

    def text(self, s: str) -> None:
        self.u8(0x05)
        self.u8(_T_WSTRING)
        self.u16(len(s))
        self.buf += s.encode("utf-16-le")

    def subst(self, index: int, value_type: int, optional: bool = False) -> None:
        self.u8(0x0E if optional else 0x0D)
        self.u16(index)
        self.u8(value_type)

    def open(self, name: str, attrs: Sequence[tuple[str, Callable[[], None]]] = ()) -> None:
        self.u8(0x41 if attrs else 0x01)
        self.u16(0xFFFF)
        self.u32(0)
        self.name(name)
        if attrs:
            self.u32(0)
            for i, (attr_name, write_value) in enumerate(attrs):
                self.u8(0x46 if i < len(attrs) - 1 else 0x06)
                self.name(attr_name)
                write_value()

    def simple(self, name: str, write_value: Callable[[], None]) -> None:
        self.open(name)
        self.u8(0x02)
        write_value()
        self.u8(0x04)

    # -- template ---------------------------------------------------------------

    def template_body(self, layout: Sequence[tuple[str, int]]) -> None:
        self.buf += b"\x0f\x01\x01\x00"
        self.open("Event")
        self.u8(0x02)
        self.open("System")
        self.u8(0x02)
        self.open("Provider", [("Name", lambda: self.subst(0, _T_WSTRING))])
        self.u8(0x03)
        self.simple("EventID", lambda: self.subst(1, _T_UINT16))
        self.open("TimeCreated", [("SystemTime", lambda: self.subst(2, _T_FILETIME))])
        self.u8(0x03)
        self.simple("EventRecordID", lambda: self.subst(3, _T_UINT64))
        self.simple("Channel", lambda: self.text(SYSMON_CHANNEL))
        self.simple("Computer", lambda: self.subst(4, _T_WSTRING))
        self.u8(0x04)
        self.open("EventData")
        self.u8(0x02)
        for i, (field_name, value_type) in enumerate(layout):
            self.open("Data", [("Name", lambda n=field_name: self.text(n))])
            self.u8(0x02)
            self.subst(5 + i, value_type, optional=True)
            self.u8(0x04)
        self.u8(0x04)
        self.u8(0x04)
        self.u8(0x00)

    def template_instance(self, layout: tuple[tuple[str, int], ...], *, dangling: bool) -> None:
        self.u8(0x0C)
        self.u8(0x01)
        known = self.templates.get(layout)
        if dangling:
            self.u32(0xDEAD)
            self.u32(0xFFF0)
            return
        if known is not None:
            template_id, offset = known
            self.u32(template_id)
            self.u32(offset)
            return

        template_id = 0x1000 + len(self.templates)
        self.u32(template_id)
        offset = len(self.buf) + 4
        self.u32(offset)
        self.u32(0)  # next definition
        self.buf += struct.pack("<I", template_id) + bytes(12)
        size_pos = len(self.buf)
        self.u32(0)
        body_start = len(self.buf)
        self.template_body(layout)
        struct.pack_into("<I", self.buf, size_pos, len(self.buf) - body_start)
        self.templates[layout] = (template_id, offset)

    # -- records ----------------------------------------------------------------

    def add_record(self, record_id: int, event: dict[str, Any], *, dangling: bool = False) -> None:
        data: dict[str, Any] = event["data"]
        encoded = [_encode(v) for v in data.values()]
        layout = tuple((name, vtype) for name, (_, vtype) in zip(data.keys(), encoded))

        start = len(self.buf)
        self.buf += bytes(24)
        self.buf += b"\x0f\x01\x01\x00"
        self.template_instance(layout, dangling=dangling)

        values = [
            (SYSMON_PROVIDER.encode("utf-16-le"), _T_WSTRING),
            (struct.pack("<H", event["event_id"]), _T_UINT16),
            (struct.pack("<Q", _filetime(event["time"])), _T_FILETIME),
            (struct.pack("<Q", record_id), _T_UINT64),
            (event["computer"].encode("utf-16-le"), _T_WSTRING),
            *encoded,
        ]
        self.u32(len(values))
        for raw, vtype in values:
            self.u16(len(raw))
            self.u8(vtype)
            self.u8(0)
        for raw, _ in values:
            self.buf += raw
        self.u8(0x00)

        size = len(self.buf) - start + 4
        self.u32(size)
        struct.pack_into("<4sIQQ", self.buf, start, b"**\x00\x00", size, record_id, _filetime(event["time"]))
        self.record_ids.append(record_id)
        self.last_record_offset = start

    def finish(self, *, corrupt: bool = False, miscount: int = 0) -> bytes:
        free = len(self.buf)
        if free > CHUNK_SIZE:
            raise ValueError("too many records for one chunk")
        data = bytearray(self.buf) + bytes(CHUNK_SIZE - free)
        first = self.record_ids[0] if self.record_ids else 1
        last = (self.record_ids[-1] if self.record_ids else 0) + miscount
        data_crc = _crc32(bytes(data[CHUNK_HEADER_SIZE:free]))
        struct.pack_into(
            "<8sQQQQIIII",
            data,
            0,
            b"ElfChnk\x00",
            first,
            last,
            first,
            last,
            128,
            self.last_record_offset,
            free,
            data_crc,
        )
        struct.pack_into("<I", data, 120, 0)
        header_crc = _crc32(bytes(data[:120]) + bytes(data[128:CHUNK_HEADER_SIZE]))
        struct.pack_into("<I", data, 124, header_crc)
        if corrupt:
            data[CHUNK_HEADER_SIZE + 40] ^= 0xFF
        return bytes(data)


def build_evtx(
    chunks: Sequence[Sequence[dict[str, Any]]],
    *,
    corrupt_chunks: Iterable[int] = (),
    miscount_chunks: Iterable[int] = (),
    dangling_records: Iterable[int] = (),
    trailing_unused_chunks: int = 0,
    truncate: int = 0,
    bad_header_checksum: bool = False,
) -> bytes:
    """Build an EVTX file; chunk and record indexes below are 0-based."""
    corrupt = set(corrupt_chunks)
    miscount = set(miscount_chunks)
    dangling = set(dangling_records)

    body = bytearray()
    record_id = 1
    record_index = 0
    for chunk_index, events in enumerate(chunks):
        writer = ChunkWriter()
        for event in events:
            writer.add_record(record_id, event, dangling=record_index in dangling)
            record_id += 1
            record_index += 1
        body += writer.finish(corrupt=chunk_index in corrupt, miscount=1 if chunk_index in miscount else 0)
    body += bytes(CHUNK_SIZE * trailing_unused_chunks)

    header = bytearray(FILE_HEADER_BLOCK_SIZE)
    struct.pack_into(
        "<8sQQQIHHHH",
        header,
        0,
        b"ElfFile\x00",
        0,
        max(len(chunks) - 1, 0),
        record_id,
        128,
        1,
        3,
        FILE_HEADER_BLOCK_SIZE,
        len(chunks),
    )
    checksum = _crc32(bytes(header[:120]))
    if bad_header_checksum:
        checksum ^= 0xFFFFFFFF
    struct.pack_into("<II", header, 120, 0, checksum)

    out = bytes(header) + bytes(body)
    if truncate:
        out = out[:-truncate]
    return out


@pytest.fixture
def sysmon_event() -> Callable[..., dict[str, Any]]:
    """Factory for one event: ``sysmon_event(1, seconds=5, Image=..., CommandLine=...)``."""

    def _make(
        event_id: int,
        *,
        seconds: float = 0.0,
        time: datetime | None = None,
        computer: str = "WS01.corp.local",
        **data: Any,
    ) -> dict[str, Any]:
        return {
            "event_id": event_id,
            "time": time or BASE_TIME + timedelta(seconds=seconds),
            "computer": computer,
            "data": data,
        }

    return _make


@pytest.fixture
def process_create(sysmon_event) -> Callable[..., dict[str, Any]]:
    def _make(
        image: str,
        *,
        parent: str = r"C:\Windows\explorer.exe",
        pid: int = 4000,
        parent_pid: int = 1000,
        command_line: str | None = None,
        seconds: float = 0.0,
    ) -> dict[str, Any]:
        return sysmon_event(
            1,
            seconds=seconds,
            UtcTime=(BASE_TIME + timedelta(seconds=seconds)).strftime("%Y-%m-%d %H:%M:%S.%f")[:-3],
            ProcessGuid="{6A3B5C10-0000-0000-0000-000000000001}",
            ProcessId=pid,
            Image=image,
            CommandLine=command_line if command_line is not None else f'"{image}"',
            CurrentDirectory="C:\\Windows\\system32\\",
            User="CORP\\alice",
            IntegrityLevel="Medium",
            Hashes="SHA256=0000",
            ParentProcessId=parent_pid,
            ParentImage=parent,
            ParentCommandLine=parent,
        )

    return _make


@pytest.fixture
def write_evtx() -> Callable[..., Path]:
    def _write(path: Path, chunks: Sequence[Sequence[dict[str, Any]]], **options: Any) -> Path:
        path.write_bytes(build_evtx(chunks, **options))
        return path

    return _write


@pytest.fixture
def evtx_chunk_bytes() -> Callable[..., bytes]:
    """Raw bytes of a single chunk (no file header)."""

    def _build(events: Sequence[dict[str, Any]], **options: Any) -> bytes:
        return build_evtx([events], **options)[FILE_HEADER_BLOCK_SIZE : FILE_HEADER_BLOCK_SIZE + CHUNK_SIZE]

    return _build


def render_event_xml(event: dict[str, Any], record_id: int) -> str:
    """Render an event the way ``EvtRender(EvtRenderEventXml)`` does."""
    ts = event["time"].strftime("%Y-%m-%dT%H:%M:%S.%f") + "0Z"
    data = "".join(
        f"<Data Name='{escape(name)}'>{'' if value is None else escape(str(value))}</Data>"
        for name, value in event["data"].items()
    )
    return (
        "<Event xmlns='http://schemas.microsoft.com/win/2004/08/events/event'><System>"
        f"<Provider Name='{SYSMON_PROVIDER}' Guid='{{5770385f-c22a-43e0-bf4c-06f5698ffbd9}}'/>"
        f"<EventID>{event['event_id']}</EventID><Version>5</Version>"
        f"<TimeCreated SystemTime='{ts}'/><EventRecordID>{record_id}</EventRecordID>"
        "<Execution ProcessID='3132' ThreadID='4172'/>"
        f"<Channel>{SYSMON_CHANNEL}</Channel><Computer>{escape(event['computer'])}</Computer>"
        "<Security UserID='S-1-5-18'/></System>"
        f"<EventData>{data}</EventData></Event>"
    )


class ScriptedFeed:
    """EventFeed that replays a script of batches.

    Each script step is either a list of XML strings (``None`` for an
    unrenderable event) or an exception to raise from ``poll``. When the script
    runs out, ``on_empty`` is called (if set) and empty batches are returned.
    """

    def __init__(self, script: Sequence[Any], *, fail_open: int = 0):
        self.script = list(script)
        self.fail_open = fail_open
        self.on_empty: Callable[[], None] | None = None
        self.opens = 0
        self.closes = 0
        self.polls = 0

    def open(self) -> None:
        self.opens += 1
        if self.fail_open:
            self.fail_open -= 1
            raise SourceError("channel not found")

    def poll(self, timeout: float) -> list[str | None]:
        self.polls += 1
        if not self.script:
            if self.on_empty is not None:
                self.on_empty()
            return []
        step = self.script.pop(0)
        if isinstance(step, BaseException):
            raise step
        return list(step)

    def close(self) -> None:
        self.closes += 1


@pytest.fixture
def event_xml() -> Callable[[dict[str, Any], int], str]:
    return render_event_xml


@pytest.fixture
def scripted_feed() -> Callable[..., ScriptedFeed]:
    return ScriptedFeed
