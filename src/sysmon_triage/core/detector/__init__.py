"""Rolling-baseline anomaly detection over normalized events."""

from __future__ import annotations

from .baseline import Baseline, BaselineStore, DetectionKey
from .config import (
    DEFAULT_SUSPICIOUS_PATTERNS,
    DetectorConfig,
    build_detector_config,
    resolve_detector_config,
)
from .engine import AnomalyDetector, DetectorStats, detection_key
from .rules import (
    RULE_BURST,
    RULE_DEEP_TREE,
    RULE_EVENT_STORM,
    RULE_FIRST_SEEN,
    RULE_LINEAGE,
    RULE_SUSPICIOUS,
    RULE_UNUSUAL_PORT,
)

__all__ = [
    "AnomalyDetector",
    "Baseline",
    "BaselineStore",
    "DEFAULT_SUSPICIOUS_PATTERNS",
    "DetectionKey",
    "DetectorConfig",
    "DetectorStats",
    "RULE_BURST",
    "RULE_DEEP_TREE",
    "RULE_EVENT_STORM",
    "RULE_FIRST_SEEN",
    "RULE_LINEAGE",
    "RULE_SUSPICIOUS",
    "RULE_UNUSUAL_PORT",
    "build_detector_config",
    "detection_key",
    "resolve_detector_config",
]
