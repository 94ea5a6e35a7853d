"""Process-level logging setup shared by the CLI and the MCP server."""

from __future__ import annotations

import logging
import os
import sys

LOG_LEVEL_ENV = "SYSMON_TRIAGE_LOG_LEVEL"


def configure_logging() -> None:
    """Configure a reasonable default logging setup.

    Logs go to stderr: the MCP stdio transport owns stdout, and the CLI prints
    events there.
    """
    level_name = os.getenv(LOG_LEVEL_ENV, "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
