"""MCP tool implementations.

This module contains the *implementation* behind the exposed MCP tools.
Keep this layer thin: validate inputs, translate them into core calls, and
return JSON-serializable data structures.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Sequence
from typing import Any

from sysmon_triage.core.detector import AnomalyDetector, resolve_detector_config
from sysmon_triage.core.filters import build_criteria
from sysmon_triage.core.normalizer import event_name
from sysmon_triage.core.pipeline import RunStats, analyze_file
from sysmon_triage.core.render import annotated_to_dict

DEFAULT_LIMIT = 200
HARD_LIMIT = 5000


def _event_ids_arg(event_ids: Sequence[int | str] | str | None) -> str | list[int | str] | None:
    if event_ids is None or isinstance(event_ids, str):
        return event_ids
    return list(event_ids)


async def analyze_sysmon_log_impl(
    *,
    log_path: str,
    event_ids: Sequence[int | str] | str | None = None,
    since: str | None = None,
    until: str | None = None,
    date: str | None = None,
    hour: str | None = None,
    search: str | None = None,
    detect: bool = True,
    anomalies_only: bool = False,
    limit: int | None = None,
) -> dict[str, Any]:
    """Implementation for the `analyze_sysmon_log` MCP tool.

    Notes
    -----
    - Time window selection precedence: date/hour selectors over since/until.
    - anomalies_only implies detect.
    - ``count`` is the number of returned events; ``matched`` counts every
      event that passed the filter (and, with anomalies_only, was flagged).
    """
    if anomalies_only:
        detect = True
    if limit is None:
        limit = DEFAULT_LIMIT
    if limit <= 0:
        raise ValueError("limit must be > 0")
    if limit > HARD_LIMIT:
        limit = HARD_LIMIT

    criteria = build_criteria(
        event_ids=_event_ids_arg(event_ids),
        since=since,
        until=until,
        date=date,
        hour=hour,
        search=search,
    )
    detector = AnomalyDetector(resolve_detector_config()) if detect else None

    stats = RunStats()
    events: list[dict[str, Any]] = []
    by_event_id: Counter[str] = Counter()
    by_severity: Counter[str] = Counter()
    matched = 0

    async for item in analyze_file(log_path, criteria=criteria, detector=detector, stats=stats):
        if anomalies_only and item.anomaly is None:
            continue
        matched += 1
        by_event_id[f"{item.event.event_id} {event_name(item.event.event_id)}"] += 1
        if item.anomaly is not None:
            by_severity[item.anomaly.severity.value] += 1
        if len(events) < limit:
            events.append(annotated_to_dict(item))

    out: dict[str, Any] = {
        "count": len(events),
        "matched": matched,
        "truncated": matched > len(events),
        "events": events,
        "summary": {
            "by_event_id": dict(by_event_id),
            "stats": stats.as_dict(),
        },
    }
    if detector is not None:
        out["summary"]["anomalies_by_severity"] = dict(by_severity)
        out["summary"]["anomalies_by_rule"] = dict(detector.stats.by_rule)
    return out
