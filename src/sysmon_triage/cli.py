from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Sequence
from typing import TextIO

from sysmon_triage.core.detector import AnomalyDetector, resolve_detector_config
from sysmon_triage.core.errors import SourceError
from sysmon_triage.core.filters import FilterCriteria, build_criteria
from sysmon_triage.core.models import AnnotatedEvent
from sysmon_triage.core.pipeline import RunStats, analyze_file, drain, watch
from sysmon_triage.core.render import annotated_to_dict, format_compact
from sysmon_triage.core.sources import LiveRecordSource, SysmonChannelFeed, build_xpath_query
from sysmon_triage.logging_setup import configure_logging


class TextSink:
    """Numbered compact lines, anomalies indented underneath."""

    def __init__(self, out: TextIO = sys.stdout, *, anomalies_only: bool = False):
        self.out = out
        self.anomalies_only = anomalies_only
        self.count = 0
        self.flagged = 0

    def emit(self, item: AnnotatedEvent) -> None:
        if self.anomalies_only and item.anomaly is None:
            return
        self.count += 1
        if item.anomaly is not None:
            self.flagged += 1
        print(format_compact(item, self.count), file=self.out, flush=True)


class JsonLinesSink:
    """One JSON object per event."""

    def __init__(self, out: TextIO = sys.stdout, *, anomalies_only: bool = False):
        self.out = out
        self.anomalies_only = anomalies_only
        self.count = 0
        self.flagged = 0

    def emit(self, item: AnnotatedEvent) -> None:
        if self.anomalies_only and item.anomaly is None:
            return
        self.count += 1
        if item.anomaly is not None:
            self.flagged += 1
        print(json.dumps(annotated_to_dict(item), ensure_ascii=False), file=self.out, flush=True)


def _add_filter_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--event-id", default=None, help="Comma-separated Sysmon event IDs (e.g., 1,3,11)")
    p.add_argument("--search", default=None, help="Case-insensitive substring in key fields")
    p.add_argument("--detect", "-d", action="store_true", help="Enable anomaly detection")
    p.add_argument("--anomalies-only", action="store_true", help="Only print flagged events (implies --detect)")
    p.add_argument("--json", dest="as_json", action="store_true", help="Emit JSON lines instead of text")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="sysmon-triage", description="Windows Sysmon log analysis.")
    sub = p.add_subparsers(dest="command", required=True)

    parse = sub.add_parser("parse", help="Parse a stored .evtx file")
    parse.add_argument("file_path", metavar="FILE")
    _add_filter_args(parse)
    parse.add_argument("--after", default=None, help="Include events at/after this time (YYYY-MM-DD HH:MM:SS or ISO8601, UTC)")
    parse.add_argument("--before", default=None, help="Include events at/before this time (YYYY-MM-DD HH:MM:SS or ISO8601, UTC)")
    parse.add_argument("--date", default=None, help="YYYY-MM-DD (UTC day)")
    parse.add_argument("--hour", default=None, help="YYYY-MM-DDTHH (UTC hour)")

    live = sub.add_parser("watch", help="Monitor the live Sysmon channel (Windows only)")
    _add_filter_args(live)
    live.add_argument("--poll-timeout", type=float, default=1.0, help="Seconds per subscription wait")
    live.add_argument("--max-reconnects", type=int, default=5, help="Reconnect attempts before giving up")
    live.add_argument("--report-interval", type=float, default=60.0, help="Seconds between status log lines (0 disables)")
    return p


def _make_sink(args: argparse.Namespace) -> TextSink | JsonLinesSink:
    cls = JsonLinesSink if args.as_json else TextSink
    return cls(sys.stdout, anomalies_only=args.anomalies_only)


def _make_detector(args: argparse.Namespace) -> AnomalyDetector | None:
    if not (args.detect or args.anomalies_only):
        return None
    return AnomalyDetector(resolve_detector_config())


async def _run_parse(args: argparse.Namespace) -> None:
    criteria = build_criteria(
        event_ids=args.event_id,
        since=args.after,
        until=args.before,
        date=args.date,
        hour=args.hour,
        search=args.search,
    )
    detector = _make_detector(args)
    sink = _make_sink(args)
    stats = RunStats()
    await drain(analyze_file(args.file_path, criteria=criteria, detector=detector, stats=stats), sink)

    if not args.as_json:
        skipped = stats.decode.chunks_skipped + stats.decode.records_skipped
        print(f"\nFound {sink.count} matching events ({sink.flagged} flagged).")
        if skipped or stats.dropped:
            print(
                f"Skipped {stats.decode.chunks_skipped} chunks, {stats.decode.records_skipped} records; "
                f"dropped {stats.dropped} records."
            )


async def _run_watch(args: argparse.Namespace) -> None:
    criteria: FilterCriteria = build_criteria(event_ids=args.event_id, search=args.search)
    detector = _make_detector(args)
    sink = _make_sink(args)
    feed = SysmonChannelFeed(query=build_xpath_query(criteria.event_ids))
    source = LiveRecordSource(feed, poll_timeout=args.poll_timeout, max_reconnects=args.max_reconnects)
    print("Subscription active. Waiting for events... (Ctrl+C to stop)", file=sys.stderr)
    await watch(
        source,
        sink,
        criteria=criteria,
        detector=detector,
        report_interval=args.report_interval or None,
    )


def main(argv: Sequence[str] | None = None) -> None:
    p = build_parser()
    args = p.parse_args(argv)
    configure_logging()

    runner = _run_parse if args.command == "parse" else _run_watch
    try:
        asyncio.run(runner(args))
    except FileNotFoundError as e:
        print(str(e), file=sys.stderr)
        raise SystemExit(2)
    except (SourceError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        raise SystemExit(2)
    except KeyboardInterrupt:
        print("\nReceived stop signal... shut down.", file=sys.stderr)


if __name__ == "__main__":
    main()
