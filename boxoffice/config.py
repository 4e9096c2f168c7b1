"""Pipeline configuration."""

from __future__ import annotations

import os
import pathlib
import re
from dataclasses import dataclass, field, fields, replace
from typing import Any, Mapping

import yaml

DEFAULTS_PATH = pathlib.Path(__file__).with_name("defaults.yml")
ENV_PREFIX = "BOXOFFICE_"

INT_KEYS = ("anomaly_drop_floor", "materiality_threshold", "pacing_weeks")
FLOAT_KEYS = ("anomaly_growth_multiplier", "backfill_confidence")

# Keys a series override is allowed to change.
OVERRIDABLE = {
    "anomaly_drop_floor",
    "anomaly_growth_multiplier",
    "materiality_threshold",
    "backfill_confidence",
}


class ConfigError(ValueError):
    pass


@dataclass(frozen=True, slots=True)
class PipelineConfig:
    """Thresholds and parser settings passed to the parser and reconciler."""

    anomaly_drop_floor: int = -50
    anomaly_growth_multiplier: float = 2.0
    materiality_threshold: int = 10
    pacing_weeks: int = 10
    backfill_confidence: float = 0.8
    performance_code_pattern: str = r"^\d{6}[A-Z]{1,2}$"
    total_marker: str = "Total"
    series_overrides: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.anomaly_drop_floor > 0:
            raise ConfigError("anomaly_drop_floor must be zero or negative")
        if self.anomaly_growth_multiplier <= 0:
            raise ConfigError("anomaly_growth_multiplier must be positive")
        if self.materiality_threshold < 0:
            raise ConfigError("materiality_threshold must not be negative")
        if self.pacing_weeks < 0:
            raise ConfigError("pacing_weeks must not be negative")
        if not 0.0 <= self.backfill_confidence <= 1.0:
            raise ConfigError("backfill_confidence must be between 0 and 1")
        try:
            re.compile(self.performance_code_pattern)
        except re.error as exc:
            raise ConfigError(f"Invalid performance_code_pattern: {exc}") from exc
        for series, overrides in self.series_overrides.items():
            unknown = set(overrides) - OVERRIDABLE
            if unknown:
                raise ConfigError(f"Unsupported overrides for {series}: {sorted(unknown)}")
            # Raises if the overridden values are out of range.
            replace(self, series_overrides={}, **_numbers(overrides))

    @property
    def code_re(self) -> re.Pattern[str]:
        return re.compile(self.performance_code_pattern)

    def for_series(self, series: str | None) -> PipelineConfig:
        overrides = self.series_overrides.get(series or "")
        if not overrides:
            return self
        return replace(self, **_numbers(overrides))


def load_config(path: pathlib.Path | str | None = None, *, env: Mapping[str, str] | None = None) -> PipelineConfig:
    """Build a config from ``defaults.yml`` (or ``path``) plus ``BOXOFFICE_*`` overrides."""
    data = yaml.safe_load(DEFAULTS_PATH.read_text()) or {}
    if path:
        data.update(yaml.safe_load(pathlib.Path(path).read_text()) or {})
    env = os.environ if env is None else env
    for item in fields(PipelineConfig):
        if item.name == "series_overrides":
            continue
        raw = env.get(f"{ENV_PREFIX}{item.name.upper()}")
        if raw is not None:
            data[item.name] = raw
    return PipelineConfig(**_coerce(data))


def _coerce(data: dict[str, Any]) -> dict[str, Any]:
    known = {item.name for item in fields(PipelineConfig)}
    unknown = set(data) - known
    if unknown:
        raise ConfigError(f"Unknown config keys: {sorted(unknown)}")
    result = _numbers(data)
    overrides = result.get("series_overrides") or {}
    if not isinstance(overrides, Mapping):
        raise ConfigError("series_overrides must map series names to settings")
    result["series_overrides"] = {}
    for series, values in overrides.items():
        if not isinstance(values, Mapping):
            raise ConfigError(f"Overrides for {series} must be a mapping")
        result["series_overrides"][str(series)] = _numbers(values)
    return result


def _numbers(data: Mapping[str, Any]) -> dict[str, Any]:
    """Numeric settings as int/float; YAML and env values may arrive as strings."""
    result = dict(data)
    try:
        for key in INT_KEYS:
            if key in result:
                result[key] = int(result[key])
        for key in FLOAT_KEYS:
            if key in result:
                result[key] = float(result[key])
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid config value: {exc}") from exc
    return result
