"""Engine configuration.

Configuration is a frozen pydantic model. It can be built directly, or
loaded from an optional YAML file with environment overrides:

    VENDOREVAL_CONFIG_PATH: YAML file with any EngineConfig fields
    VENDOREVAL_SCALE_MIN / VENDOREVAL_SCALE_MAX: score scale bounds
    VENDOREVAL_VARIANCE_THRESHOLD: reconciliation trigger
    VENDOREVAL_WEIGHT_POLICY: manual | auto_redistribute
    VENDOREVAL_DEADLINE_FALLBACK: mark_unresolved | escalate | average

Fail closed: an unreadable or invalid file raises ConfigError.
"""

from __future__ import annotations

import logging
import os
from enum import StrEnum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

logger = logging.getLogger(__name__)

CONFIG_PATH_ENV = "VENDOREVAL_CONFIG_PATH"

_ENV_OVERRIDES: dict[str, str] = {
    "VENDOREVAL_SCALE_MIN": "scale_min",
    "VENDOREVAL_SCALE_MAX": "scale_max",
    "VENDOREVAL_VARIANCE_THRESHOLD": "variance_threshold",
    "VENDOREVAL_WEIGHT_POLICY": "weight_policy",
    "VENDOREVAL_DEADLINE_FALLBACK": "deadline_fallback",
    "VENDOREVAL_COMBINATION": "combination",
}


class ConfigError(Exception):
    """Raised when configuration cannot be loaded or is invalid."""


class CombinationMethod(StrEnum):
    """How submitted evaluator scores combine into one criterion value."""

    MEAN = "mean"
    MEDIAN = "median"


class WeightPolicy(StrEnum):
    """What happens to sibling weights when one weight changes."""

    MANUAL = "manual"
    AUTO_REDISTRIBUTE = "auto_redistribute"


class DeadlineFallback(StrEnum):
    """Behavior when reconciliation reaches its deadline without consensus."""

    MARK_UNRESOLVED = "mark_unresolved"
    ESCALATE = "escalate"
    AVERAGE = "average"


class RagThresholds(BaseModel):
    """Score thresholds for Red/Amber/Green classification."""

    model_config = ConfigDict(frozen=True)

    green: float = Field(default=4.0, description="Score >= green is GREEN")
    amber: float = Field(default=3.0, description="Score >= amber is AMBER, below is RED")

    @model_validator(mode="after")
    def _ordered(self) -> RagThresholds:
        if self.amber > self.green:
            raise ValueError(f"RAG amber threshold {self.amber} exceeds green {self.green}")
        return self


class SeverityRatios(BaseModel):
    """How far past the anomaly threshold a deviation must be per severity."""

    model_config = ConfigDict(frozen=True)

    warning: float = Field(default=1.5, gt=1.0)
    critical: float = Field(default=2.0, gt=1.0)

    @model_validator(mode="after")
    def _ordered(self) -> SeverityRatios:
        if self.warning > self.critical:
            raise ValueError("warning ratio must not exceed critical ratio")
        return self


class EngineConfig(BaseModel):
    """All tunables of the scoring engine."""

    model_config = ConfigDict(frozen=True)

    scale_min: float = Field(default=0.0, description="Lowest valid score value")
    scale_max: float = Field(default=5.0, description="Highest valid score value")
    combination: CombinationMethod = CombinationMethod.MEAN
    weight_tolerance: float = Field(default=0.01, ge=0.0, le=1.0)
    weight_policy: WeightPolicy = WeightPolicy.MANUAL
    variance_threshold: float = Field(default=1.0, ge=0.0)
    deadline_fallback: DeadlineFallback = DeadlineFallback.MARK_UNRESOLVED
    reconciliation_window_hours: float = Field(default=72.0, gt=0.0)
    anomaly_k: dict[str, float] = Field(
        default_factory=lambda: {"price": 2.5, "schedule": 2.5, "score": 2.5},
        description="MAD multiplier per anomaly dimension",
    )
    anomaly_min_vendors: int = Field(default=3, ge=3)
    severity_ratios: SeverityRatios = Field(default_factory=SeverityRatios)
    rag: RagThresholds = Field(default_factory=RagThresholds)
    display_decimals: int = Field(default=2, ge=0, le=10)
    concurrency_retries: int = Field(default=1, ge=0, le=5)
    cache_enabled: bool = True

    @model_validator(mode="after")
    def _validate_scale(self) -> EngineConfig:
        if self.scale_min >= self.scale_max:
            raise ValueError(
                f"scale_min ({self.scale_min}) must be below scale_max ({self.scale_max})"
            )
        for dimension, k in self.anomaly_k.items():
            if k <= 0:
                raise ValueError(f"anomaly_k for '{dimension}' must be positive (got {k})")
        return self

    def k_for(self, dimension: str) -> float:
        """Return the MAD multiplier for a dimension, defaulting to 2.5."""
        return self.anomaly_k.get(dimension, 2.5)


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    return data


def load_config(path: str | Path | None = None) -> EngineConfig:
    """Load configuration from YAML (optional) plus environment overrides.

    Args:
        path: Explicit YAML path. Falls back to VENDOREVAL_CONFIG_PATH.

    Returns:
        Validated EngineConfig.

    Raises:
        ConfigError: If the file is unreadable or values are invalid.
    """
    raw: dict[str, Any] = {}
    config_path = path or os.environ.get(CONFIG_PATH_ENV)
    if config_path:
        raw.update(_read_yaml(Path(config_path)))
        logger.info("Loaded engine config from %s", config_path)

    for env_name, field_name in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            raw[field_name] = value

    try:
        return EngineConfig.model_validate(raw)
    except ValidationError as e:
        raise ConfigError(f"Invalid engine config: {e}") from e
