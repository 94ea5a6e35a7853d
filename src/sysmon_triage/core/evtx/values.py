"""Typed BinXML value decoding (substitution values and value text)."""

from __future__ import annotations

import struct
import uuid
from datetime import UTC, datetime, timedelta

from ..models import RawValue

TYPE_NULL = 0x00
TYPE_WSTRING = 0x01
TYPE_STRING = 0x02
TYPE_INT8 = 0x03
TYPE_UINT8 = 0x04
TYPE_INT16 = 0x05
TYPE_UINT16 = 0x06
TYPE_INT32 = 0x07
TYPE_UINT32 = 0x08
TYPE_INT64 = 0x09
TYPE_UINT64 = 0x0A
TYPE_REAL32 = 0x0B
TYPE_REAL64 = 0x0C
TYPE_BOOL = 0x0D
TYPE_BINARY = 0x0E
TYPE_GUID = 0x0F
TYPE_SIZET = 0x10
TYPE_FILETIME = 0x11
TYPE_SYSTEMTIME = 0x12
TYPE_SID = 0x13
TYPE_HEXINT32 = 0x14
TYPE_HEXINT64 = 0x15
TYPE_EVT_HANDLE = 0x20
TYPE_BINXML = 0x21
TYPE_EVT_XML = 0x23
ARRAY_FLAG = 0x80

FILETIME_EPOCH = datetime(1601, 1, 1, tzinfo=UTC)

_FIXED: dict[int, struct.Struct] = {
    TYPE_INT8: struct.Struct("<b"),
    TYPE_UINT8: struct.Struct("<B"),
    TYPE_INT16: struct.Struct("<h"),
    TYPE_UINT16: struct.Struct("<H"),
    TYPE_INT32: struct.Struct("<i"),
    TYPE_UINT32: struct.Struct("<I"),
    TYPE_INT64: struct.Struct("<q"),
    TYPE_UINT64: struct.Struct("<Q"),
    TYPE_REAL32: struct.Struct("<f"),
    TYPE_REAL64: struct.Struct("<d"),
    TYPE_BOOL: struct.Struct("<I"),
    TYPE_FILETIME: struct.Struct("<Q"),
    TYPE_HEXINT32: struct.Struct("<I"),
    TYPE_HEXINT64: struct.Struct("<Q"),
}

_ITEM_SIZE: dict[int, int] = {t: s.size for t, s in _FIXED.items()}
_ITEM_SIZE[TYPE_GUID] = 16
_ITEM_SIZE[TYPE_SYSTEMTIME] = 16


def filetime_to_datetime(value: int) -> datetime:
    """Convert a FILETIME (100ns ticks since 1601-01-01 UTC) to an aware datetime."""
    return FILETIME_EPOCH + timedelta(microseconds=value // 10)


def datetime_to_filetime(dt: datetime) -> int:
    """Inverse of :func:`filetime_to_datetime` (microsecond precision)."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    delta = dt.astimezone(UTC) - FILETIME_EPOCH
    return (delta.days * 86400 + delta.seconds) * 10_000_000 + delta.microseconds * 10


def _systemtime(data: bytes) -> datetime | None:
    year, month, _dow, day, hour, minute, second, millis = struct.unpack_from("<8H", data, 0)
    if year == 0:
        return None
    return datetime(year, month, day, hour, minute, second, millis * 1000, tzinfo=UTC)


def _guid(data: bytes) -> str:
    return "{" + str(uuid.UUID(bytes_le=bytes(data[:16]))).upper() + "}"


def _sid(data: bytes) -> str:
    revision = data[0]
    sub_count = data[1]
    authority = int.from_bytes(data[2:8], "big")
    subs = struct.unpack_from(f"<{sub_count}I", data, 8)
    return "S-" + "-".join(str(x) for x in (revision, authority, *subs))


def _wstring(data: bytes) -> str:
    return bytes(data).decode("utf-16-le", errors="replace").rstrip("\x00")


def decode_value(value_type: int, data: bytes) -> RawValue:
    """Decode one substitution value.

    Embedded BinXML (0x21) is handled by the BinXML parser, not here.
    """
    if value_type == TYPE_NULL or (not data and value_type != TYPE_WSTRING):
        return None
    if value_type & ARRAY_FLAG:
        return _decode_array(value_type & ~ARRAY_FLAG, data)
    if value_type == TYPE_WSTRING:
        return _wstring(data)
    if value_type == TYPE_STRING:
        return bytes(data).decode("cp1252", errors="replace").rstrip("\x00")
    if value_type == TYPE_BINARY:
        return bytes(data)
    if value_type == TYPE_GUID:
        return _guid(data)
    if value_type == TYPE_SID:
        return _sid(data)
    if value_type == TYPE_SYSTEMTIME:
        return _systemtime(data)
    if value_type == TYPE_SIZET:
        width = "<Q" if len(data) >= 8 else "<I"
        return f"0x{struct.unpack_from(width, data, 0)[0]:x}"
    if value_type == TYPE_EVT_XML:
        return _wstring(data)

    fixed = _FIXED.get(value_type)
    if fixed is None:
        # Unknown or handle types: keep the bytes instead of guessing.
        return bytes(data)
    (raw,) = fixed.unpack_from(data, 0)
    if value_type == TYPE_BOOL:
        return bool(raw)
    if value_type == TYPE_FILETIME:
        return filetime_to_datetime(raw)
    if value_type in (TYPE_HEXINT32, TYPE_HEXINT64):
        return f"0x{raw:x}"
    return raw


def _decode_array(item_type: int, data: bytes) -> list[RawValue]:
    if item_type == TYPE_WSTRING:
        text = _wstring(data)
        return text.split("\x00") if text else []
    if item_type == TYPE_STRING:
        text = bytes(data).decode("cp1252", errors="replace").rstrip("\x00")
        return text.split("\x00") if text else []
    size = _ITEM_SIZE.get(item_type)
    if not size:
        return [bytes(data)]
    return [decode_value(item_type, data[i : i + size]) for i in range(0, len(data) - size + 1, size)]
