"""Individual anomaly heuristics.

Each check reads detector state and returns an Anomaly or None; none of them
mutate anything. The engine commits state only after every check has run.
"""

from __future__ import annotations

import re
from collections.abc import Sequence

from ..models import Anomaly, NetworkConnect, NormalizedEvent, ProcessCreate, Severity
from .baseline import Baseline, DetectionKey

RULE_BURST = "burst"
RULE_FIRST_SEEN = "first-seen"
RULE_SUSPICIOUS = "suspicious"
RULE_LINEAGE = "suspicious-lineage"
RULE_UNUSUAL_PORT = "unusual-port"
RULE_DEEP_TREE = "deep-process-tree"
RULE_EVENT_STORM = "event-storm"

OFFICE_APPS = frozenset({"winword.exe", "excel.exe", "powerpnt.exe"})
SHELL_PROCESSES = frozenset({"powershell.exe", "cmd.exe", "wscript.exe", "cscript.exe"})


def basename(path: str | None) -> str:
    if not path:
        return ""
    return path.replace("/", "\\").rsplit("\\", 1)[-1]


def check_burst(
    baseline: Baseline | None,
    interval: float | None,
    *,
    key: DetectionKey,
    warmup_count: int,
    rate_k: float,
    min_stddev: float,
) -> Anomaly | None:
    """Inter-arrival time far below this key's running mean."""
    if baseline is None or interval is None or baseline.intervals < warmup_count:
        return None
    stddev = max(baseline.stddev, min_stddev)
    if stddev <= 0:
        return None
    threshold = baseline.mean - rate_k * stddev
    if interval >= threshold:
        return None

    z = (baseline.mean - interval) / stddev
    if z >= 2 * rate_k:
        severity = Severity.HIGH
    elif z >= 1.5 * rate_k:
        severity = Severity.MEDIUM
    else:
        severity = Severity.LOW
    return Anomaly(
        rule=RULE_BURST,
        severity=severity,
        justification=(
            f"interval {interval:.3f}s is {z:.1f} stddev below mean {baseline.mean:.3f}s "
            f"for {key[1]} after {baseline.intervals} intervals"
        ),
        key=key,
    )


def check_suspicious(
    event: NormalizedEvent,
    patterns: Sequence[re.Pattern[str]],
    *,
    key: DetectionKey,
) -> Anomaly | None:
    """Image path (or ProcessCreate command line) matches the denylist."""
    candidates: list[tuple[str, str]] = []
    if event.image:
        candidates.append(("image", event.image))
    if isinstance(event, ProcessCreate) and event.command_line:
        candidates.append(("command line", event.command_line))

    for label, text in candidates:
        for pattern in patterns:
            if pattern.search(text):
                return Anomaly(
                    rule=RULE_SUSPICIOUS,
                    severity=Severity.HIGH,
                    justification=f"{label} {text!r} matches suspicious pattern {pattern.pattern!r}",
                    key=key,
                )
    return None


def check_lineage(event: NormalizedEvent, *, key: DetectionKey) -> Anomaly | None:
    """Parent/child combinations that legitimate software does not produce."""
    if not isinstance(event, ProcessCreate):
        return None
    parent = basename(event.parent_image)
    child = basename(event.image)
    parent_lower = parent.lower()
    child_lower = child.lower()

    reason = None
    if child_lower == "svchost.exe" and parent_lower and parent_lower != "services.exe":
        reason = "svchost.exe spawned by a non-service process"
    elif parent_lower in OFFICE_APPS and child_lower in SHELL_PROCESSES:
        reason = "Office application spawned a shell"
    if reason is None:
        return None
    return Anomaly(
        rule=RULE_LINEAGE,
        severity=Severity.HIGH,
        justification=f"{parent} -> {child}: {reason}",
        key=key,
    )


def check_unusual_port(event: NormalizedEvent, *, threshold: int, key: DetectionKey) -> Anomaly | None:
    """Outbound connection to a port in the dynamic range."""
    if not isinstance(event, NetworkConnect) or not event.initiated:
        return None
    port = event.destination_port
    if port is None or port < threshold:
        return None
    process = basename(event.image) or "unknown process"
    return Anomaly(
        rule=RULE_UNUSUAL_PORT,
        severity=Severity.MEDIUM,
        justification=f"outbound connection to {event.destination_ip or '?'}:{port} by {process}",
        key=key,
    )


def check_deep_tree(
    event: NormalizedEvent,
    depth: int | None,
    *,
    threshold: int,
    high_threshold: int,
    key: DetectionKey,
) -> Anomaly | None:
    if depth is None or depth <= threshold:
        return None
    return Anomaly(
        rule=RULE_DEEP_TREE,
        severity=Severity.HIGH if depth > high_threshold else Severity.MEDIUM,
        justification=f"process nesting depth {depth} for {basename(event.image) or 'unknown process'}",
        key=key,
    )


def check_event_storm(
    event: NormalizedEvent,
    count: int,
    *,
    storm_count: int,
    window_seconds: float,
    active: bool,
    key: DetectionKey,
) -> Anomaly | None:
    """Fires once when the per-event-ID count in the window crosses the threshold."""
    if active or count < storm_count:
        return None
    return Anomaly(
        rule=RULE_EVENT_STORM,
        severity=Severity.HIGH,
        justification=f"{count} events with ID {event.event_id} within {window_seconds:g}s",
        key=key,
    )


def check_first_seen(
    event: NormalizedEvent,
    *,
    seen_pairs: set[tuple[str, str]],
    seen_destinations: set[tuple[str, str, str]],
    key: DetectionKey,
) -> Anomaly | None:
    """First parent/child pair, or first destination address/port from an image."""
    if isinstance(event, ProcessCreate):
        pair = novelty_pair(event)
        if pair is None or pair in seen_pairs:
            return None
        return Anomaly(
            rule=RULE_FIRST_SEEN,
            severity=Severity.LOW,
            justification=f"first time {event.parent_image or '?'} spawned {event.image or '?'}",
            key=key,
        )

    if isinstance(event, NetworkConnect):
        new = [d for d in novelty_destinations(event) if d not in seen_destinations]
        if not new:
            return None
        what = ", ".join(f"destination {kind} {value}" for _, kind, value in new)
        return Anomaly(
            rule=RULE_FIRST_SEEN,
            severity=Severity.LOW,
            justification=f"first {what} from {event.image or '?'}",
            key=key,
        )
    return None


def novelty_pair(event: ProcessCreate) -> tuple[str, str] | None:
    if not event.image:
        return None
    return ((event.parent_image or "").lower(), event.image.lower())


def novelty_destinations(event: NetworkConnect) -> list[tuple[str, str, str]]:
    image = (event.image or "").lower()
    out: list[tuple[str, str, str]] = []
    if event.destination_ip:
        out.append((image, "address", event.destination_ip))
    if event.destination_port is not None:
        out.append((image, "port", str(event.destination_port)))
    return out
