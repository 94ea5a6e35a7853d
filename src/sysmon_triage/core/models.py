"""Core data models for Sysmon triage."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, NamedTuple

# Raw values as they come out of BinXML substitutions or rendered XML.
RawValue = str | int | float | bool | bytes | datetime | list[Any] | None


@dataclass(frozen=True, slots=True)
class ChunkHeader:
    """Fixed 512-byte header at the start of every EVTX chunk."""

    index: int
    first_record_number: int
    last_record_number: int
    first_record_id: int
    last_record_id: int
    header_size: int
    last_record_offset: int
    free_space_offset: int
    data_checksum: int
    header_checksum: int
    string_offsets: tuple[int, ...] = ()
    template_offsets: tuple[int, ...] = ()

    @property
    def declared_record_count(self) -> int:
        if self.last_record_number < self.first_record_number:
            return 0
        return self.last_record_number - self.first_record_number + 1


@dataclass(frozen=True, slots=True)
class LogChunk:
    """One 64 KiB chunk: parsed header plus the full chunk bytes.

    Offsets inside BinXML are chunk-relative, so ``data`` keeps the header bytes too.
    """

    header: ChunkHeader
    data: bytes


@dataclass(frozen=True, slots=True)
class RawRecord:
    """One decoded event record before normalization."""

    record_id: int | None
    timestamp: datetime | None
    event_id: int | None
    fields: dict[str, RawValue]
    system: dict[str, RawValue] = field(default_factory=dict)


class EventKind(str, Enum):
    """Closed set of event variants the normalizer produces."""

    PROCESS_CREATE = "ProcessCreate"
    NETWORK_CONNECT = "NetworkConnect"
    IMAGE_LOAD = "ImageLoad"
    FILE_CREATE = "FileCreate"
    REGISTRY_EVENT = "RegistryEvent"
    OTHER = "Other"


@dataclass(frozen=True, slots=True)
class SysmonEvent:
    """Fields shared by every normalized event."""

    kind: ClassVar[EventKind] = EventKind.OTHER

    event_id: int
    timestamp: datetime
    record_id: int | None
    computer: str | None

    @property
    def image(self) -> str | None:
        return None


@dataclass(frozen=True, slots=True)
class ProcessCreate(SysmonEvent):
    kind: ClassVar[EventKind] = EventKind.PROCESS_CREATE

    pid: int | None = None
    parent_pid: int | None = None
    image: str | None = None
    command_line: str | None = None
    user: str | None = None
    parent_image: str | None = None
    parent_command_line: str | None = None
    current_directory: str | None = None
    integrity_level: str | None = None
    hashes: str | None = None
    process_guid: str | None = None
    parent_process_guid: str | None = None


@dataclass(frozen=True, slots=True)
class NetworkConnect(SysmonEvent):
    kind: ClassVar[EventKind] = EventKind.NETWORK_CONNECT

    pid: int | None = None
    image: str | None = None
    user: str | None = None
    protocol: str | None = None
    initiated: bool | None = None
    source_ip: str | None = None
    source_port: int | None = None
    destination_ip: str | None = None
    destination_hostname: str | None = None
    destination_port: int | None = None


@dataclass(frozen=True, slots=True)
class ImageLoad(SysmonEvent):
    kind: ClassVar[EventKind] = EventKind.IMAGE_LOAD

    pid: int | None = None
    image: str | None = None
    image_loaded: str | None = None
    hashes: str | None = None
    signed: bool | None = None
    signature: str | None = None
    signature_status: str | None = None


@dataclass(frozen=True, slots=True)
class FileCreate(SysmonEvent):
    kind: ClassVar[EventKind] = EventKind.FILE_CREATE

    pid: int | None = None
    image: str | None = None
    target_filename: str | None = None
    creation_time: datetime | None = None


@dataclass(frozen=True, slots=True)
class RegistryEvent(SysmonEvent):
    kind: ClassVar[EventKind] = EventKind.REGISTRY_EVENT

    pid: int | None = None
    image: str | None = None
    event_type: str | None = None
    target_object: str | None = None
    details: str | None = None
    new_name: str | None = None


@dataclass(frozen=True, slots=True)
class OtherEvent(SysmonEvent):
    """Any event ID without a dedicated schema; keeps the raw fields."""

    kind: ClassVar[EventKind] = EventKind.OTHER

    fields: dict[str, RawValue] = field(default_factory=dict)

    @property
    def image(self) -> str | None:
        value = self.fields.get("Image")
        return value if isinstance(value, str) else None


NormalizedEvent = ProcessCreate | NetworkConnect | ImageLoad | FileCreate | RegistryEvent | OtherEvent


class Severity(str, Enum):
    """Anomaly severity levels, lowest first."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


@dataclass(frozen=True, slots=True)
class Anomaly:
    """Annotation attached to an event by the anomaly detector."""

    rule: str
    severity: Severity
    justification: str
    key: tuple[str, str] | None = None
    also_fired: tuple[str, ...] = ()


class AnnotatedEvent(NamedTuple):
    """What the pipeline hands to a sink, in arrival order."""

    event: NormalizedEvent
    anomaly: Anomaly | None
