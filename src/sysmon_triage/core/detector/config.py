"""Anomaly detector configuration."""

from __future__ import annotations

import os
import re

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..errors import ConfigError

DEFAULT_SUSPICIOUS_PATTERNS: tuple[str, ...] = (
    r"\\temp\\",
    r"\\appdata\\local\\temp\\",
    r"\\users\\public\\",
    r"\\downloads\\",
    r"\\\$recycle\.bin\\",
    r"\\windows\\tasks\\",
    r"\\programdata\\[^\\]+\.exe$",
    r"\\perflogs\\",
)


class DetectorConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    warmup_count: int = Field(
        default=10,
        ge=1,
        description="Intervals a key must accumulate before rate heuristics may fire.",
    )
    rate_k: float = Field(
        default=3.0,
        gt=0.0,
        description="Burst fires when an interval is below mean - k * stddev.",
    )
    history_size: int = Field(
        default=50,
        ge=1,
        description="Recent inter-arrival intervals kept per key.",
    )
    min_stddev_seconds: float = Field(
        default=0.001,
        ge=0.0,
        description=(
            "Floor applied to the interval stddev. A perfectly regular key keeps only this "
            "spread, so any sudden change in its rate is flagged."
        ),
    )
    suspicious_patterns: tuple[str, ...] = Field(
        default=DEFAULT_SUSPICIOUS_PATTERNS,
        description="Case-insensitive regexes matched against image paths and command lines.",
    )
    enable_novelty: bool = Field(
        default=True,
        description="Flag first-seen parent/child pairs and destinations.",
    )
    unusual_port_threshold: int = Field(
        default=49152,
        ge=1,
        le=65535,
        description="Outbound destination ports at or above this value are flagged.",
    )
    deep_tree_threshold: int = Field(
        default=5,
        ge=1,
        description="Process nesting depth above which a ProcessCreate is flagged.",
    )
    deep_tree_high_threshold: int = Field(
        default=7,
        ge=1,
        description="Nesting depth above which a deep-process-tree flag is high severity.",
    )
    storm_count: int = Field(
        default=50,
        ge=2,
        description="Events of a single ID within the storm window that count as a storm.",
    )
    storm_window_seconds: float = Field(
        default=10.0,
        gt=0.0,
        description="Sliding window for event-storm detection.",
    )
    max_tracked_processes: int = Field(
        default=10_000,
        ge=1,
        description="Upper bound on the pid map used for process depth tracking.",
    )

    @field_validator("suspicious_patterns")
    @classmethod
    def _patterns_compile(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        for pattern in value:
            try:
                re.compile(pattern, re.IGNORECASE)
            except re.error as exc:
                raise ValueError(f"invalid suspicious pattern {pattern!r}: {exc}") from exc
        return value


def _env_int(name: str) -> int | None:
    env = os.getenv(name)
    if env is None or env == "":
        return None
    try:
        return int(env)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer") from exc


def _env_float(name: str) -> float | None:
    env = os.getenv(name)
    if env is None or env == "":
        return None
    try:
        return float(env)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number") from exc


def resolve_detector_config(cfg: DetectorConfig | None = None) -> DetectorConfig:
    """Return config with optional env overrides applied."""
    if cfg is None:
        cfg = DetectorConfig()

    overrides: dict[str, object] = {}
    warmup = _env_int("SYSMON_TRIAGE_WARMUP_COUNT")
    if warmup is not None:
        overrides["warmup_count"] = warmup
    rate_k = _env_float("SYSMON_TRIAGE_RATE_K")
    if rate_k is not None:
        overrides["rate_k"] = rate_k
    patterns = os.getenv("SYSMON_TRIAGE_SUSPICIOUS_PATTERNS")
    if patterns:
        overrides["suspicious_patterns"] = tuple(p for p in patterns.split(";") if p)

    if not overrides:
        return cfg
    try:
        return DetectorConfig.model_validate({**cfg.model_dump(), **overrides})
    except ValidationError as exc:
        raise ConfigError(f"invalid detector config override: {exc}") from exc


def build_detector_config(**values: object) -> DetectorConfig:
    """Validate keyword settings into a DetectorConfig, raising ConfigError."""
    try:
        return DetectorConfig.model_validate(values)
    except ValidationError as exc:
        raise ConfigError(f"invalid detector config: {exc}") from exc
