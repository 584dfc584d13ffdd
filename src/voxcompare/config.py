"""Parse string key/value options into a ComparisonConfig."""

from __future__ import annotations

import re
from collections.abc import Mapping

from voxcompare.core.errors import ConfigurationError
from voxcompare.core.types import ComparisonConfig, ThresholdBound
from voxcompare.methods.registry import resolve_method_name

DEFAULT_OPTIONS: dict[str, str] = {
    "Method": "gamma-index",
    "Channel": "0",
    "TestImgLowerThreshold": "-inf",
    "TestImgUpperThreshold": "inf",
    "RefImgLowerThreshold": "-inf",
    "RefImgUpperThreshold": "inf",
    "DTAVoxValEqAbs": "1.0E-3",
    "DTAVoxValEqRelDiff": "1.0",
    "DTAMax": "30.0",
    "GammaDTAThreshold": "5.0",
    "GammaDiscThreshold": "5.0",
    "GammaTerminateAboveOne": "true",
    "DiscrepancyType": "relative",
}

_TRUE = re.compile(r"^tr?u?e?$", re.IGNORECASE)
_FALSE = re.compile(r"^fa?l?s?e?$", re.IGNORECASE)
_PERCENTILE = re.compile(r"^(.*?)\s*(?:p?e?r?c?e?n?)tile$", re.IGNORECASE)


def parse_float(text: str, name: str) -> float:
    """Parse a real number; accepts inf, -inf and nan."""
    try:
        return float(text.strip())
    except ValueError:
        raise ConfigurationError(f"{name}: expected a number, got '{text}'")


def parse_bound(text: str, name: str = "threshold") -> ThresholdBound:
    """Parse a threshold bound: "12.5", "-inf", "nan", "20%" or "95tile"."""
    s = text.strip()
    if s.endswith("%"):
        return ThresholdBound(parse_float(s[:-1], name), "percent")
    m = _PERCENTILE.match(s)
    if m:
        return ThresholdBound(parse_float(m.group(1), name), "percentile")
    return ThresholdBound(parse_float(s, name))


def parse_bool(text: str, name: str) -> bool:
    s = text.strip()
    if _TRUE.match(s):
        return True
    if _FALSE.match(s):
        return False
    raise ConfigurationError(f"{name}: expected true or false, got '{text}'")


def parse_channel(text: str) -> int:
    try:
        channel = int(text.strip())
    except ValueError:
        raise ConfigurationError(f"Channel: expected a non-negative integer, got '{text}'")
    if channel < 0:
        raise ConfigurationError(f"Channel: expected a non-negative integer, got '{text}'")
    return channel


def parse_comparison_config(
    options: Mapping[str, str] | None = None,
    max_workers: int | None = None,
) -> ComparisonConfig:
    """Build a validated ComparisonConfig from string options.

    Option names are matched case-insensitively against DEFAULT_OPTIONS;
    missing options take their defaults. Raises ConfigurationError on
    unknown options or unparsable values.
    """
    canonical = {k.lower(): k for k in DEFAULT_OPTIONS}
    merged = dict(DEFAULT_OPTIONS)
    for key, value in (options or {}).items():
        name = canonical.get(key.lower())
        if name is None:
            raise ConfigurationError(
                f"Unknown option '{key}'. Available: {', '.join(DEFAULT_OPTIONS)}"
            )
        merged[name] = str(value)

    return ComparisonConfig(
        method=resolve_method_name(merged["Method"]),
        channel=parse_channel(merged["Channel"]),
        test_lower=parse_bound(merged["TestImgLowerThreshold"], "TestImgLowerThreshold"),
        test_upper=parse_bound(merged["TestImgUpperThreshold"], "TestImgUpperThreshold"),
        ref_lower=parse_bound(merged["RefImgLowerThreshold"], "RefImgLowerThreshold"),
        ref_upper=parse_bound(merged["RefImgUpperThreshold"], "RefImgUpperThreshold"),
        dta_abs_tol=parse_float(merged["DTAVoxValEqAbs"], "DTAVoxValEqAbs"),
        dta_rel_tol=parse_float(merged["DTAVoxValEqRelDiff"], "DTAVoxValEqRelDiff"),
        dta_max=parse_float(merged["DTAMax"], "DTAMax"),
        gamma_dta_threshold=parse_float(merged["GammaDTAThreshold"], "GammaDTAThreshold"),
        gamma_disc_threshold=parse_float(merged["GammaDiscThreshold"], "GammaDiscThreshold"),
        gamma_terminate_above_one=parse_bool(
            merged["GammaTerminateAboveOne"], "GammaTerminateAboveOne"
        ),
        discrepancy_type=merged["DiscrepancyType"].strip().lower(),
        max_workers=max_workers,
    )
