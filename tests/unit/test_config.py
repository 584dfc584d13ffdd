"""Unit tests for option parsing and configuration validation."""

from __future__ import annotations

import math

import numpy as np
import pytest

from voxcompare.config import (
    DEFAULT_OPTIONS,
    parse_bool,
    parse_bound,
    parse_comparison_config,
)
from voxcompare.core.errors import ConfigurationError
from voxcompare.core.types import ComparisonConfig, ThresholdBound


def test_defaults_match_config_defaults():
    assert parse_comparison_config() == ComparisonConfig()
    assert set(DEFAULT_OPTIONS) >= {"Method", "DTAMax", "GammaTerminateAboveOne"}


def test_option_names_are_case_insensitive():
    config = parse_comparison_config({"method": "DTA", "dtamax": "12.5", "CHANNEL": "2"})
    assert config.method == "dta"
    assert config.dta_max == 12.5
    assert config.channel == 2


def test_method_prefix_is_resolved():
    assert parse_comparison_config({"Method": "gam"}).method == "gamma-index"


def test_unknown_option_raises():
    with pytest.raises(ConfigurationError, match="Unknown option"):
        parse_comparison_config({"Tolerance": "1"})


def test_unparsable_number_raises():
    with pytest.raises(ConfigurationError, match="DTAMax"):
        parse_comparison_config({"DTAMax": "far"})


@pytest.mark.parametrize(
    "options",
    [
        {"Channel": "-1"},
        {"DTAMax": "-5"},
        {"GammaDTAThreshold": "nan"},
        {"DiscrepancyType": "squared"},
        {"Method": "d"},
    ],
)
def test_invalid_values_raise(options):
    with pytest.raises(ConfigurationError):
        parse_comparison_config(options)


def test_invalid_worker_count_raises():
    with pytest.raises(ConfigurationError, match="max_workers"):
        parse_comparison_config(max_workers=0)


@pytest.mark.parametrize(
    "text, expected",
    [
        ("12.5", ThresholdBound(12.5)),
        ("-inf", ThresholdBound(-math.inf)),
        ("20%", ThresholdBound(20.0, "percent")),
        ("95tile", ThresholdBound(95.0, "percentile")),
        ("95 percentile", ThresholdBound(95.0, "percentile")),
    ],
)
def test_parse_bound(text, expected):
    assert parse_bound(text) == expected


def test_parse_bound_nan():
    bound = parse_bound("nan")
    assert bound.kind == "value"
    assert math.isnan(bound.value)


@pytest.mark.parametrize("text, expected", [("true", True), ("T", True), ("fal", False), ("FALSE", False)])
def test_parse_bool(text, expected):
    assert parse_bool(text, "flag") is expected


def test_parse_bool_rejects_other_words():
    with pytest.raises(ConfigurationError):
        parse_bool("yes", "flag")


# --- threshold resolution ---


def test_resolve_percent_of_range():
    values = np.array([0.0, 50.0, 100.0, np.nan])
    assert ThresholdBound(20.0, "percent").resolve(values) == pytest.approx(20.0)


def test_resolve_percentile():
    assert ThresholdBound(50.0, "percentile").resolve(np.array([1.0, 2.0, 3.0])) == pytest.approx(2.0)


def test_resolve_value_ignores_data():
    assert ThresholdBound(7.0).resolve(np.array([])) == 7.0


def test_resolve_relative_bound_without_data_is_nan():
    assert math.isnan(ThresholdBound(10.0, "percent").resolve(np.array([np.nan])))


def test_bound_str():
    assert str(ThresholdBound(20.0, "percent")) == "20%"
    assert str(ThresholdBound(95.0, "percentile")) == "95tile"
    assert str(ThresholdBound(-math.inf)) == "-inf"
