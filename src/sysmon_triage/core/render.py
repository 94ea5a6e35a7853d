"""JSON-serializable and compact text renderings of annotated events."""

from __future__ import annotations

import base64
from dataclasses import fields
from datetime import datetime
from typing import Any

from .models import (
    Anomaly,
    AnnotatedEvent,
    FileCreate,
    ImageLoad,
    NetworkConnect,
    NormalizedEvent,
    OtherEvent,
    ProcessCreate,
    RawValue,
    RegistryEvent,
)
from .normalizer import event_name

_DETAIL_WIDTH = 80


def _jsonable(value: RawValue) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, bytes):
        return base64.b64encode(value).decode("ascii")
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    return value


def event_to_dict(event: NormalizedEvent) -> dict[str, Any]:
    """Convert a normalized event into a JSON-serializable dict (None fields omitted)."""
    d: dict[str, Any] = {
        "kind": event.kind.value,
        "event_name": event_name(event.event_id),
    }
    for f in fields(event):
        value = getattr(event, f.name)
        if value is None:
            continue
        if f.name == "fields":
            d["fields"] = {k: _jsonable(v) for k, v in value.items()}
        else:
            d[f.name] = _jsonable(value)
    return d


def anomaly_to_dict(anomaly: Anomaly) -> dict[str, Any]:
    d: dict[str, Any] = {
        "rule": anomaly.rule,
        "severity": anomaly.severity.value,
        "justification": anomaly.justification,
    }
    if anomaly.key is not None:
        d["key"] = list(anomaly.key)
    if anomaly.also_fired:
        d["also_fired"] = list(anomaly.also_fired)
    return d


def annotated_to_dict(item: AnnotatedEvent) -> dict[str, Any]:
    d = event_to_dict(item.event)
    d["anomaly"] = anomaly_to_dict(item.anomaly) if item.anomaly is not None else None
    return d


def _truncate(s: str, max_len: int = _DETAIL_WIDTH) -> str:
    if len(s) <= max_len:
        return s
    return s[: max_len - 3] + "..."


def event_details(event: NormalizedEvent) -> str:
    """Short human-readable description of what the event is about."""
    if isinstance(event, ProcessCreate):
        return f"Cmd: {event.command_line or event.image or '-'}"
    if isinstance(event, NetworkConnect):
        direction = "->" if event.initiated is not False else "<-"
        return (
            f"{event.source_ip or '?'}:{event.source_port or '?'} {direction} "
            f"{event.destination_hostname or event.destination_ip or '?'}:{event.destination_port or '?'}"
        )
    if isinstance(event, FileCreate):
        return f"File: {event.target_filename or '-'}"
    if isinstance(event, ImageLoad):
        return f"Loaded: {event.image_loaded or '-'}"
    if isinstance(event, RegistryEvent):
        return f"{event.event_type or 'Registry'}: {event.target_object or '-'}"
    if isinstance(event, OtherEvent):
        return ", ".join(f"{k}={v}" for k, v in list(event.fields.items())[:3])
    return ""


def process_name(event: NormalizedEvent) -> str:
    image = event.image
    if not image:
        return "-"
    return image.replace("/", "\\").rsplit("\\", 1)[-1]


def format_compact(item: AnnotatedEvent, index: int | None = None) -> str:
    """One line per event, plus an indented line when an anomaly fired."""
    event = item.event
    prefix = f"#{index} " if index is not None else ""
    line = (
        f"{prefix}{event.timestamp.isoformat()} ID:{event.event_id} {event_name(event.event_id)} "
        f"{process_name(event)} {_truncate(event_details(event))}"
    )
    if item.anomaly is None:
        return line
    a = item.anomaly
    extra = f" (+{', '.join(a.also_fired)})" if a.also_fired else ""
    return f"{line}\n    [{a.severity.value.upper()}] {a.rule}: {a.justification}{extra}"
