"""Map raw records onto typed Sysmon event variants.

Only the timestamp and event ID are required; every variant-specific field is
best effort and becomes ``None`` when absent or unparsable.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from typing import Any

from .errors import MissingRequiredField
from .evtx.records import parse_system_time
from .models import (
    FileCreate,
    ImageLoad,
    NetworkConnect,
    NormalizedEvent,
    OtherEvent,
    ProcessCreate,
    RawRecord,
    RawValue,
    RegistryEvent,
)

_EVENT_NAMES: dict[int, str] = {
    1: "ProcessCreate",
    2: "FileCreateTime",
    3: "NetworkConnect",
    4: "ServiceStateChange",
    5: "ProcessTerminate",
    6: "DriverLoad",
    7: "ImageLoad",
    8: "CreateRemoteThread",
    9: "RawAccessRead",
    10: "ProcessAccess",
    11: "FileCreate",
    12: "RegistryEvent",
    13: "RegistryEventSetValue",
    14: "RegistryEventRename",
    15: "FileCreateStreamHash",
    16: "ServiceConfigurationChange",
    17: "PipeEventCreated",
    18: "PipeEventConnected",
    19: "WmiEventFilter",
    20: "WmiEventConsumer",
    21: "WmiEventConsumerToFilter",
    22: "DNSEvent",
    23: "FileDelete",
    24: "ClipboardChange",
    25: "ProcessTampering",
    26: "FileDeleteDetected",
    27: "FileBlockExecutable",
    28: "FileBlockShredding",
    29: "FileExecutableDetected",
    255: "Error",
}


def event_name(event_id: int) -> str:
    """Sysmon display name for an event ID."""
    return _EVENT_NAMES.get(event_id, "Unknown")


def event_names() -> dict[int, str]:
    return dict(_EVENT_NAMES)


def _str(fields: Mapping[str, RawValue], key: str) -> str | None:
    value = fields.get(key)
    if value is None:
        return None
    if isinstance(value, str):
        return value if value and value != "-" else None
    return str(value)


def _int(fields: Mapping[str, RawValue], key: str) -> int | None:
    value = fields.get(key)
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        s = value.strip()
        try:
            return int(s, 16) if s.lower().startswith("0x") else int(s)
        except ValueError:
            return None
    return None


def _bool(fields: Mapping[str, RawValue], key: str) -> bool | None:
    value = fields.get(key)
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        s = value.strip().lower()
        if s in ("true", "1", "yes"):
            return True
        if s in ("false", "0", "no"):
            return False
    return None


def _time(fields: Mapping[str, RawValue], key: str) -> datetime | None:
    value = fields.get(key)
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, str):
        return parse_system_time(value)
    return None


def _process_create(common: dict[str, Any], f: Mapping[str, RawValue]) -> ProcessCreate:
    return ProcessCreate(
        **common,
        pid=_int(f, "ProcessId"),
        parent_pid=_int(f, "ParentProcessId"),
        image=_str(f, "Image"),
        command_line=_str(f, "CommandLine"),
        user=_str(f, "User"),
        parent_image=_str(f, "ParentImage"),
        parent_command_line=_str(f, "ParentCommandLine"),
        current_directory=_str(f, "CurrentDirectory"),
        integrity_level=_str(f, "IntegrityLevel"),
        hashes=_str(f, "Hashes"),
        process_guid=_str(f, "ProcessGuid"),
        parent_process_guid=_str(f, "ParentProcessGuid"),
    )


def _network_connect(common: dict[str, Any], f: Mapping[str, RawValue]) -> NetworkConnect:
    return NetworkConnect(
        **common,
        pid=_int(f, "ProcessId"),
        image=_str(f, "Image"),
        user=_str(f, "User"),
        protocol=_str(f, "Protocol"),
        initiated=_bool(f, "Initiated"),
        source_ip=_str(f, "SourceIp"),
        source_port=_int(f, "SourcePort"),
        destination_ip=_str(f, "DestinationIp"),
        destination_hostname=_str(f, "DestinationHostname"),
        destination_port=_int(f, "DestinationPort"),
    )


def _image_load(common: dict[str, Any], f: Mapping[str, RawValue]) -> ImageLoad:
    return ImageLoad(
        **common,
        pid=_int(f, "ProcessId"),
        image=_str(f, "Image"),
        image_loaded=_str(f, "ImageLoaded"),
        hashes=_str(f, "Hashes"),
        signed=_bool(f, "Signed"),
        signature=_str(f, "Signature"),
        signature_status=_str(f, "SignatureStatus"),
    )


def _file_create(common: dict[str, Any], f: Mapping[str, RawValue]) -> FileCreate:
    return FileCreate(
        **common,
        pid=_int(f, "ProcessId"),
        image=_str(f, "Image"),
        target_filename=_str(f, "TargetFilename"),
        creation_time=_time(f, "CreationUtcTime"),
    )


def _registry_event(common: dict[str, Any], f: Mapping[str, RawValue]) -> RegistryEvent:
    return RegistryEvent(
        **common,
        pid=_int(f, "ProcessId"),
        image=_str(f, "Image"),
        event_type=_str(f, "EventType"),
        target_object=_str(f, "TargetObject"),
        details=_str(f, "Details"),
        new_name=_str(f, "NewName"),
    )


_SCHEMAS: dict[int, Callable[[dict[str, Any], Mapping[str, RawValue]], NormalizedEvent]] = {
    1: _process_create,
    3: _network_connect,
    7: _image_load,
    11: _file_create,
    12: _registry_event,
    13: _registry_event,
    14: _registry_event,
}


def normalize(record: RawRecord) -> NormalizedEvent:
    """Map a RawRecord onto its typed variant (``OtherEvent`` for unknown IDs)."""
    if record.event_id is None:
        raise MissingRequiredField("EventID", record_id=record.record_id)

    timestamp = record.timestamp or _time(record.fields, "UtcTime")
    if timestamp is None:
        raise MissingRequiredField("timestamp", record_id=record.record_id)
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=UTC)

    computer = record.system.get("Computer")
    common: dict[str, Any] = {
        "event_id": record.event_id,
        "timestamp": timestamp.astimezone(UTC),
        "record_id": record.record_id,
        "computer": computer if isinstance(computer, str) else None,
    }

    build = _SCHEMAS.get(record.event_id)
    if build is None:
        return OtherEvent(**common, fields=dict(record.fields))
    return build(common, record.fields)
