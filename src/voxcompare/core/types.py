"""Core data types for the voxcompare engine."""

from __future__ import annotations

import math
from dataclasses import dataclass, field

import numpy as np

from voxcompare.core.errors import ConfigurationError

# Sentinel results written in place of a metric value.
DISCREPANCY_NO_OVERLAP = float("nan")
GAMMA_NOT_FOUND = float("inf")
GAMMA_ABOVE_ONE = float(np.nextafter(1.0, np.inf))


def dta_not_found(dta_max: float) -> float:
    """DTA sentinel: the smallest value strictly above ``dta_max``."""
    return float(np.nextafter(dta_max, np.inf))


@dataclass(frozen=True)
class ThresholdBound:
    """Inclusive value bound, either absolute or relative to a volume's values.

    ``kind`` is "value", "percent" (of the min-max range) or "percentile".
    """

    value: float
    kind: str = "value"

    def __post_init__(self):
        if self.kind not in ("value", "percent", "percentile"):
            raise ConfigurationError(f"Unknown threshold kind '{self.kind}'")

    def resolve(self, values: np.ndarray) -> float:
        """Return the bound as an absolute value for the given volume values."""
        if self.kind == "value":
            return float(self.value)
        finite = values[np.isfinite(values)]
        if finite.size == 0 or math.isnan(self.value):
            return float("nan")
        if self.kind == "percent":
            vmin, vmax = float(finite.min()), float(finite.max())
            return vmin + (vmax - vmin) * self.value / 100.0
        return float(np.percentile(finite, min(max(self.value, 0.0), 100.0)))

    def __str__(self) -> str:
        suffix = {"value": "", "percent": "%", "percentile": "tile"}[self.kind]
        return f"{self.value:g}{suffix}"


@dataclass(frozen=True)
class ComparisonConfig:
    """Validated, immutable settings for one comparison run."""

    method: str = "gamma-index"
    channel: int = 0
    test_lower: ThresholdBound = ThresholdBound(float("-inf"))
    test_upper: ThresholdBound = ThresholdBound(float("inf"))
    ref_lower: ThresholdBound = ThresholdBound(float("-inf"))
    ref_upper: ThresholdBound = ThresholdBound(float("inf"))
    dta_abs_tol: float = 1.0e-3
    dta_rel_tol: float = 1.0  # %
    dta_max: float = 30.0  # mm
    gamma_dta_threshold: float = 5.0  # mm
    gamma_disc_threshold: float = 5.0  # %
    gamma_terminate_above_one: bool = True
    discrepancy_type: str = "relative"
    max_workers: int | None = None

    def __post_init__(self):
        if self.channel < 0:
            raise ConfigurationError(f"Channel must be non-negative, got {self.channel}")
        for name in (
            "dta_abs_tol",
            "dta_rel_tol",
            "dta_max",
            "gamma_dta_threshold",
            "gamma_disc_threshold",
        ):
            value = getattr(self, name)
            if math.isnan(value) or value < 0:
                raise ConfigurationError(f"{name} must be non-negative, got {value}")
        if self.discrepancy_type not in ("relative", "absolute"):
            raise ConfigurationError(
                f"Unknown discrepancy type '{self.discrepancy_type}'. "
                "Available: relative, absolute"
            )
        if self.max_workers is not None and self.max_workers < 1:
            raise ConfigurationError(f"max_workers must be >= 1, got {self.max_workers}")


@dataclass
class ComparisonReport:
    """Summary of one test volume's comparison pass."""

    volume_name: str
    method_name: str
    voxels_total: int = 0
    voxels_processed: int = 0
    skipped_roi: int = 0
    skipped_threshold: int = 0
    not_found: int = 0
    passed: int | None = None  # gamma-index only
    processing_time: float = 0.0
    warnings: list[str] = field(default_factory=list)

    @property
    def pass_rate(self) -> float | None:
        if self.passed is None or self.voxels_processed == 0:
            return None
        return self.passed / self.voxels_processed
