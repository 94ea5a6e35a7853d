"""Per-key rolling statistics owned by the anomaly detector."""

from __future__ import annotations

import math
from collections import deque
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime

DetectionKey = tuple[str, str]


@dataclass(slots=True)
class Baseline:
    """Observation count plus Welford running stats of inter-arrival time."""

    history_size: int = 50
    count: int = 0
    intervals: int = 0
    mean: float = 0.0
    m2: float = 0.0
    last_timestamp: datetime | None = None
    recent: deque[float] = field(default_factory=deque)

    def __post_init__(self) -> None:
        self.recent = deque(self.recent, maxlen=self.history_size)

    @property
    def variance(self) -> float:
        if self.intervals < 2:
            return 0.0
        return self.m2 / (self.intervals - 1)

    @property
    def stddev(self) -> float:
        return math.sqrt(self.variance)

    def interval_to(self, ts: datetime) -> float | None:
        """Seconds since the previous observation (negative deltas clamp to 0)."""
        if self.last_timestamp is None:
            return None
        return max(0.0, (ts - self.last_timestamp).total_seconds())

    def update(self, ts: datetime, interval: float | None) -> None:
        """Fold one observation in. ``interval`` must come from :meth:`interval_to`."""
        self.count += 1
        if interval is not None:
            self.intervals += 1
            delta = interval - self.mean
            self.mean += delta / self.intervals
            self.m2 += delta * (interval - self.mean)
            self.recent.append(interval)
        self.last_timestamp = ts


class BaselineStore:
    """Arena of baselines keyed by detection key."""

    def __init__(self, history_size: int = 50):
        self._history_size = history_size
        self._baselines: dict[DetectionKey, Baseline] = {}

    def get(self, key: DetectionKey) -> Baseline | None:
        return self._baselines.get(key)

    def get_or_create(self, key: DetectionKey) -> Baseline:
        baseline = self._baselines.get(key)
        if baseline is None:
            baseline = Baseline(history_size=self._history_size)
            self._baselines[key] = baseline
        return baseline

    def clear(self) -> None:
        self._baselines.clear()

    def __len__(self) -> int:
        return len(self._baselines)

    def __iter__(self) -> Iterator[DetectionKey]:
        return iter(self._baselines)
