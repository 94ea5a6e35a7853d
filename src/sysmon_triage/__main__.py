"""Module entrypoint.

Allows:
    python -m sysmon_triage parse FILE [...]
    python -m sysmon_triage watch [...]
"""

from __future__ import annotations

from sysmon_triage.cli import main

if __name__ == "__main__":
    main()
