"""Extract RawRecord fields from a decoded event element tree.

Both the binary decoder and the live XML feed end up here, so offline and live
records have the same shape.
"""

from __future__ import annotations

import re
import xml.etree.ElementTree as ET
from datetime import UTC, datetime

from ..errors import MalformedRecord
from ..models import RawRecord, RawValue
from .templates import Element

_SYSTEM_TIME_RE = re.compile(
    r"^(?P<base>\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2})(?:\.(?P<frac>\d+))?(?P<tz>Z|[+-]\d{2}:\d{2})?$"
)


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def parse_system_time(value: str) -> datetime | None:
    """Parse ``SystemTime``/``UtcTime`` strings (nanosecond fractions are truncated)."""
    m = _SYSTEM_TIME_RE.match(value.strip())
    if not m:
        return None
    base = m.group("base").replace(" ", "T")
    frac = (m.group("frac") or "0")[:6].ljust(6, "0")
    tz = m.group("tz") or "Z"
    dt = datetime.fromisoformat(f"{base}.{frac}{'+00:00' if tz == 'Z' else tz}")
    return dt.astimezone(UTC)


def _as_int(value: RawValue) -> int | None:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        s = value.strip()
        if s.isdigit():
            return int(s)
    return None


def _as_datetime(value: RawValue) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, str):
        return parse_system_time(value)
    return None


def _system_values(system: Element) -> dict[str, RawValue]:
    out: dict[str, RawValue] = {}
    for child in system.iter_elements():
        if child.name == "Provider":
            out["Provider"] = child.attr("Name")
            guid = child.attr("Guid")
            if guid is not None:
                out["ProviderGuid"] = guid
        elif child.name == "TimeCreated":
            out["TimeCreated"] = child.attr("SystemTime")
        elif child.name == "Execution":
            out["ProcessID"] = _as_int(child.attr("ProcessID"))
            out["ThreadID"] = _as_int(child.attr("ThreadID"))
        elif child.name == "Security":
            out["UserID"] = child.attr("UserID")
        elif child.name == "Correlation":
            continue
        else:
            out[child.name] = child.text()
    return out


def _event_data(root: Element) -> dict[str, RawValue]:
    fields: dict[str, RawValue] = {}
    data = root.find("EventData")
    if data is not None:
        unnamed = 0
        for item in data.iter_elements("Data"):
            name = item.attr("Name")
            if not isinstance(name, str) or not name:
                name = f"Data{unnamed}"
                unnamed += 1
            fields[name] = item.text()
        return fields

    # Providers that use UserData wrap their fields in one custom element.
    user_data = root.find("UserData")
    if user_data is not None:
        for wrapper in user_data.iter_elements():
            for item in wrapper.iter_elements():
                fields[item.name] = item.text()
    return fields


def record_from_element(
    root: Element,
    *,
    record_id: int | None = None,
    written: datetime | None = None,
) -> RawRecord:
    """Build a RawRecord from an ``<Event>`` element.

    ``record_id``/``written`` come from the binary record header and are used when
    the System section lacks them.
    """
    if root.name != "Event":
        raise MalformedRecord(f"root element is <{root.name}>, expected <Event>")

    system_el = root.find("System")
    system = _system_values(system_el) if system_el is not None else {}

    event_id = _as_int(system.get("EventID"))
    timestamp = _as_datetime(system.get("TimeCreated")) or written
    rid = _as_int(system.get("EventRecordID"))
    if rid is None:
        rid = record_id

    return RawRecord(
        record_id=rid,
        timestamp=timestamp,
        event_id=event_id,
        fields=_event_data(root),
        system=system,
    )


def element_from_etree(node: ET.Element) -> Element:
    """Convert an ElementTree node (namespaces stripped) into an Element."""
    el = Element(_local(node.tag))
    for key, value in node.attrib.items():
        el.attributes[_local(key)] = [value]
    if node.text and node.text.strip():
        el.children.append(node.text)
    for child in node:
        el.children.append(element_from_etree(child))
        if child.tail and child.tail.strip():
            el.children.append(child.tail)
    return el


def record_from_xml(xml: str) -> RawRecord:
    """Parse rendered event XML (as returned by ``EvtRender``) into a RawRecord."""
    try:
        node = ET.fromstring(xml)
    except ET.ParseError as exc:
        raise MalformedRecord(f"invalid event XML: {exc}") from exc
    return record_from_element(element_from_etree(node))
