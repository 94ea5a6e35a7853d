"""MCP prompt registry.

Prompts are predefined conversation/workflow templates that the client can invoke explicitly.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from mcp.server.fastmcp import FastMCP


def _format_event_ids(event_ids: Sequence[int | str] | str | None) -> str:
    """Return event IDs as a JSON array literal for prompt display."""
    if event_ids is None:
        return "null"
    if isinstance(event_ids, str):
        items = [s.strip() for s in event_ids.split(",") if s.strip()]
    else:
        items = [str(s).strip() for s in event_ids if str(s).strip()]
    if not items:
        return "null"
    return f"[{', '.join(items)}]"


def register_prompts(mcp: FastMCP) -> None:
    """Register prompt templates on the MCP server."""

    @mcp.prompt()
    def investigate_sysmon_log(
        log_path: str,
        event_ids: Sequence[int | str] | str | None = None,
        since: str | None = None,
        until: str | None = None,
        date: str | None = None,
        hour: str | None = None,
        search: str | None = None,
    ) -> list[dict[str, Any]]:
        """Build a prompt for anomaly-driven Sysmon log investigation."""
        call_lines = [f"- log_path: {log_path}"]
        if date is not None:
            call_lines.append(f"- date: {date}")
        elif hour is not None:
            call_lines.append(f"- hour: {hour}")
        else:
            if since is not None:
                call_lines.append(f"- since: {since}")
            if until is not None:
                call_lines.append(f"- until: {until}")
        call_lines.append(f"- event_ids: {_format_event_ids(event_ids)}")
        if search:
            call_lines.append(f"- search: {search}")
        call_lines.append("- detect: true")
        call_lines.append("- anomalies_only: true")
        call_block = "\n".join(call_lines)
        return [
            {
                "role": "system",
                "content": (
                    "You are a Windows endpoint security analyst. Interpret Sysmon telemetry "
                    "and heuristic anomaly flags. Be evidence-based; these are threshold "
                    "heuristics, not verdicts. Do not invent events."
                ),
            },
            {
                "role": "user",
                "content": (
                    "Investigate the Sysmon log using analyze_sysmon_log. Follow this workflow:\n"
                    "- Call analyze_sysmon_log first with the parameters below.\n"
                    "- Group flagged events by rule (suspicious, suspicious-lineage, burst, "
                    "first-seen, unusual-port, deep-process-tree, event-storm).\n"
                    "- For high severity findings, call analyze_sysmon_log again without "
                    "anomalies_only and with search set to the process image to see context.\n"
                    "- If nothing is flagged, say so and suggest widening the time window.\n\n"
                    "Call analyze_sysmon_log with:\n"
                    f"{call_block}\n\n"
                    "Return this structure:\n"
                    "1) Summary (1-3 bullets)\n"
                    "2) Findings by severity (rule, process, record_id, justification)\n"
                    "3) Likely benign vs needs follow-up\n"
                    "4) Next actions (2-4 bullets)\n"
                ),
            },
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": "Event ID reference:"},
                    {"type": "resource", "uri": "app://sysmon-triage/reference/event-ids"},
                ],
            },
        ]
