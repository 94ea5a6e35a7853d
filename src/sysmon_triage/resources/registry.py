"""MCP resource registry.

Resources are addressable by URI and can be fetched by the MCP client on demand.
"""

from __future__ import annotations

from typing import Any

from mcp.server.fastmcp import FastMCP

from sysmon_triage.core.detector import DetectorConfig, resolve_detector_config
from sysmon_triage.core.normalizer import event_names


def register_resources(mcp: FastMCP) -> None:
    """Register resource handlers on the MCP server."""

    @mcp.resource("app://sysmon-triage/help")
    def help_resource() -> str:
        """Return a short list of available resource URIs."""
        return (
            "Resources:\n"
            "- app://sysmon-triage/help\n"
            "- app://sysmon-triage/config/detector\n"
            "- app://sysmon-triage/schemas/detector-config\n"
            "- app://sysmon-triage/reference/event-ids\n"
            "\nTools:\n"
            "- analyze_sysmon_log(log_path, event_ids, since, until, date, hour, search, "
            "detect, anomalies_only, limit)\n"
            "\nDetector overrides (environment): SYSMON_TRIAGE_WARMUP_COUNT, "
            "SYSMON_TRIAGE_RATE_K, SYSMON_TRIAGE_SUSPICIOUS_PATTERNS (';'-separated)\n"
        )

    @mcp.resource("app://sysmon-triage/config/detector")
    def detector_config() -> dict[str, Any]:
        """Return the effective detector configuration (env overrides applied)."""
        return resolve_detector_config().model_dump(mode="json")

    @mcp.resource("app://sysmon-triage/schemas/detector-config")
    def detector_config_schema() -> dict[str, Any]:
        """Return the JSON schema for detector configuration."""
        return DetectorConfig.model_json_schema()

    @mcp.resource("app://sysmon-triage/reference/event-ids")
    def event_id_names() -> dict[str, str]:
        """Return Sysmon event IDs and their names."""
        return {str(k): v for k, v in event_names().items()}
