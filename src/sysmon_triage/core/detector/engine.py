"""Stateful anomaly detector.

Single writer: one ``observe`` call at a time, in arrival order. For each
event every rule is evaluated against the current state, then the state for
that event is committed in one step.
"""

from __future__ import annotations

import logging
import re
from collections import Counter, OrderedDict, deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta

from ..models import Anomaly, NetworkConnect, NormalizedEvent, ProcessCreate
from . import rules
from .baseline import BaselineStore, DetectionKey
from .config import DetectorConfig

logger = logging.getLogger(__name__)

_UNKNOWN = "<unknown>"


def detection_key(event: NormalizedEvent) -> DetectionKey:
    """Remote address for network events, lowercased image path for the rest."""
    if isinstance(event, NetworkConnect):
        return (event.kind.value, event.destination_ip or _UNKNOWN)
    image = event.image
    return (event.kind.value, image.lower() if image else _UNKNOWN)


@dataclass(slots=True)
class DetectorStats:
    observed: int = 0
    flagged: int = 0
    by_rule: Counter[str] = field(default_factory=Counter)


class AnomalyDetector:
    """Rolling-baseline anomaly detector for one monitoring session."""

    def __init__(self, config: DetectorConfig | None = None):
        self.config = config or DetectorConfig()
        self._patterns = [re.compile(p, re.IGNORECASE) for p in self.config.suspicious_patterns]
        self._storm_window = timedelta(seconds=self.config.storm_window_seconds)
        self._baselines = BaselineStore(history_size=self.config.history_size)
        self._seen_pairs: set[tuple[str, str]] = set()
        self._seen_destinations: set[tuple[str, str, str]] = set()
        self._depths: OrderedDict[int, int] = OrderedDict()
        self._storms: dict[int, deque[datetime]] = {}
        self._storm_active: set[int] = set()
        self.stats = DetectorStats()

    @property
    def baselines(self) -> BaselineStore:
        return self._baselines

    def reset(self) -> None:
        """Drop all accumulated state; the next event starts a fresh session."""
        self._baselines.clear()
        self._seen_pairs.clear()
        self._seen_destinations.clear()
        self._depths.clear()
        self._storms.clear()
        self._storm_active.clear()
        self.stats = DetectorStats()

    def observe(self, event: NormalizedEvent) -> Anomaly | None:
        """Evaluate ``event`` and update state; return the most severe anomaly, if any."""
        cfg = self.config
        key = detection_key(event)
        baseline = self._baselines.get(key)
        interval = baseline.interval_to(event.timestamp) if baseline is not None else None
        depth = self._depth_of(event)
        storm_count = self._storm_count(event)

        candidates = [
            rules.check_suspicious(event, self._patterns, key=key),
            rules.check_lineage(event, key=key),
            rules.check_deep_tree(
                event,
                depth,
                threshold=cfg.deep_tree_threshold,
                high_threshold=cfg.deep_tree_high_threshold,
                key=key,
            ),
            rules.check_event_storm(
                event,
                storm_count,
                storm_count=cfg.storm_count,
                window_seconds=cfg.storm_window_seconds,
                active=event.event_id in self._storm_active,
                key=key,
            ),
            rules.check_burst(
                baseline,
                interval,
                key=key,
                warmup_count=cfg.warmup_count,
                rate_k=cfg.rate_k,
                min_stddev=cfg.min_stddev_seconds,
            ),
            rules.check_unusual_port(event, threshold=cfg.unusual_port_threshold, key=key),
        ]
        if cfg.enable_novelty:
            candidates.append(
                rules.check_first_seen(
                    event,
                    seen_pairs=self._seen_pairs,
                    seen_destinations=self._seen_destinations,
                    key=key,
                )
            )
        fired = [a for a in candidates if a is not None]

        self._commit(event, key, interval, depth, storm_count)

        self.stats.observed += 1
        if not fired:
            return None

        top = max(fired, key=lambda a: a.severity.rank)
        others = tuple(a.rule for a in fired if a is not top)
        self.stats.flagged += 1
        self.stats.by_rule.update(a.rule for a in fired)
        logger.debug("Record %s flagged by %s", event.record_id, ", ".join(a.rule for a in fired))
        return replace(top, also_fired=others) if others else top

    # -- state ------------------------------------------------------------------

    def _depth_of(self, event: NormalizedEvent) -> int | None:
        if not isinstance(event, ProcessCreate) or event.pid is None:
            return None
        parent_depth = self._depths.get(event.parent_pid, 0) if event.parent_pid is not None else 0
        return parent_depth + 1

    def _storm_count(self, event: NormalizedEvent) -> int:
        window = self._storms.get(event.event_id)
        if not window:
            return 1
        start = event.timestamp - self._storm_window
        return 1 + sum(1 for ts in window if ts >= start)

    def _commit(
        self,
        event: NormalizedEvent,
        key: DetectionKey,
        interval: float | None,
        depth: int | None,
        storm_count: int,
    ) -> None:
        cfg = self.config
        self._baselines.get_or_create(key).update(event.timestamp, interval)

        if isinstance(event, ProcessCreate):
            pair = rules.novelty_pair(event)
            if pair is not None:
                self._seen_pairs.add(pair)
            if depth is not None and event.pid is not None:
                self._depths[event.pid] = depth
                self._depths.move_to_end(event.pid)
                while len(self._depths) > cfg.max_tracked_processes:
                    self._depths.popitem(last=False)
        elif isinstance(event, NetworkConnect):
            self._seen_destinations.update(rules.novelty_destinations(event))

        window = self._storms.setdefault(event.event_id, deque())
        window.append(event.timestamp)
        start = event.timestamp - self._storm_window
        while window and window[0] < start:
            window.popleft()
        if storm_count >= cfg.storm_count:
            self._storm_active.add(event.event_id)
        else:
            self._storm_active.discard(event.event_id)
