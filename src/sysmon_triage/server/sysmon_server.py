"""MCP server entrypoint (stdio transport).

This module wires together:
- Tools: callable actions (e.g., analyze a Sysmon .evtx file)
- Resources: addressable data blobs (e.g., detector config, event ID names)
- Prompts: reusable conversation templates that clients can invoke

Run locally (stdio):
    python -m sysmon_triage.server.sysmon_server
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Sequence
from typing import Any

from mcp.server.fastmcp import FastMCP

from sysmon_triage.logging_setup import configure_logging
from sysmon_triage.prompts.registry import register_prompts
from sysmon_triage.resources.registry import register_resources
from sysmon_triage.tools.analyze import analyze_sysmon_log_impl

LOGGER = logging.getLogger(__name__)

mcp = FastMCP("sysmon-triage", json_response=True)

register_resources(mcp)
register_prompts(mcp)


@mcp.tool()
async def analyze_sysmon_log(
    log_path: str,
    event_ids: list[int] | None = None,
    since: str | None = None,
    until: str | None = None,
    date: str | None = None,
    hour: str | None = None,
    search: str | None = None,
    detect: bool = True,
    anomalies_only: bool = False,
    limit: int | None = None,
) -> dict[str, Any]:
    """Decode a Sysmon .evtx file, filter it, and flag anomalous events.

    Parameters
    ----------
    log_path:
        Path to a local .evtx file exported from Microsoft-Windows-Sysmon/Operational.
    event_ids:
        Sysmon event IDs to keep (e.g., [1, 3]). Omit for all events.
    since/until:
        Inclusive bounds, ISO-8601 or "YYYY-MM-DD HH:MM:SS". If timezone is omitted, UTC is assumed.
    date/hour:
        Convenience selectors that set a time window (e.g., 2025-12-31, 2025-12-31T20).
        They take precedence over since/until.
    search:
        Case-insensitive substring matched against image paths, command lines,
        users, destinations, file and registry targets.
    detect:
        Run anomaly detection (burst, first-seen, suspicious path, lineage, ports,
        process depth, event storms).
    anomalies_only:
        Return only flagged events (implies detect).
    limit:
        Maximum number of events returned (hard-capped in the implementation).

    Returns
    -------
    dict:
        {"count": int, "matched": int, "truncated": bool, "events": list[dict], "summary": dict}
    """
    return await analyze_sysmon_log_impl(
        log_path=log_path,
        event_ids=event_ids,
        since=since,
        until=until,
        date=date,
        hour=hour,
        search=search,
        detect=detect,
        anomalies_only=anomalies_only,
        limit=limit,
    )


def main(argv: Sequence[str] | None = None) -> None:
    """Start the MCP server over stdio."""
    configure_logging()
    LOGGER.debug("Starting MCP server (transport=stdio)")
    _ = argv or sys.argv[1:]
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
