"""Tests for test definition validation and sample size planning."""
import copy
from datetime import datetime, timedelta, timezone

import pytest

from src.abtesting.config import DEFAULT_MIN_SAMPLE_SIZE
from src.abtesting.errors import ValidationError
from src.abtesting.schema import TestStatus
from src.abtesting.stats.power import min_sample_size
from src.abtesting.validation import INVALID_FIELD, build_definition

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


def _kind(config):
    with pytest.raises(ValidationError) as exc:
        build_definition(config, now=T0)
    return exc.value.kind


def test_single_variant_rejected(base_config):
    """One variant is not an A/B test."""
    base_config["variants"] = base_config["variants"][:1]
    base_config["variants"][0]["weight"] = 100
    assert _kind(base_config) == ValidationError.TOO_FEW_VARIANTS


def test_weights_must_sum_to_100(base_config):
    """60/30 is rejected with WeightSumInvalid."""
    base_config["variants"][0]["weight"] = 60
    base_config["variants"][1]["weight"] = 30
    assert _kind(base_config) == ValidationError.WEIGHT_SUM_INVALID


def test_weight_sum_tolerance(base_config):
    """Rounding within 0.01 of 100 is accepted."""
    base_config["variants"][0]["weight"] = 33.333
    base_config["variants"][1]["weight"] = 66.666
    test = build_definition(base_config, now=T0)
    assert test.status == TestStatus.DRAFT


def test_missing_and_multiple_controls(base_config):
    """Exactly one control is required."""
    no_control = copy.deepcopy(base_config)
    no_control["variants"][0]["is_control"] = False
    assert _kind(no_control) == ValidationError.MISSING_CONTROL

    two_controls = copy.deepcopy(base_config)
    two_controls["variants"][1]["is_control"] = True
    assert _kind(two_controls) == ValidationError.MULTIPLE_CONTROLS


def test_metrics_required(base_config):
    base_config["metrics"] = []
    assert _kind(base_config) == ValidationError.NO_METRICS


def test_exactly_one_primary_metric(base_config):
    """Two primaries and zero primaries are both rejected."""
    two = copy.deepcopy(base_config)
    two["metrics"].append(dict(two["metrics"][0], id="revenue", type="revenue"))
    assert _kind(two) == ValidationError.MULTIPLE_PRIMARY_METRICS

    none = copy.deepcopy(base_config)
    none["metrics"][0]["is_primary"] = False
    assert _kind(none) == ValidationError.MULTIPLE_PRIMARY_METRICS


def test_malformed_config_is_invalid_field(base_config):
    """Unknown enum values, duplicate ids and wrongly shaped sections surface as InvalidField."""
    bad_type = copy.deepcopy(base_config)
    bad_type["metrics"][0]["type"] = "clicks"
    assert _kind(bad_type) == INVALID_FIELD

    dup = copy.deepcopy(base_config)
    dup["variants"][1]["id"] = "control"
    dup["variants"][1]["is_control"] = False
    assert _kind(dup) == INVALID_FIELD

    list_targeting = copy.deepcopy(base_config)
    list_targeting["targeting"] = ["mobile"]
    assert _kind(list_targeting) == INVALID_FIELD

    string_schedule = copy.deepcopy(base_config)
    string_schedule["schedule"] = "2024-05-01"
    assert _kind(string_schedule) == INVALID_FIELD


def test_build_definition_sets_server_fields(base_config):
    """Id, draft status, timestamps and the planned sample size are filled in."""
    base_config["status"] = "running"
    base_config["id"] = "client_chosen"
    test = build_definition(base_config, now=T0)

    assert test.id.startswith("abtest_")
    assert test.id != "client_chosen"
    assert test.status == TestStatus.DRAFT
    assert test.created_at == T0
    assert test.schedule.start_date is None
    assert test.schedule.min_sample_size == 565
    assert test.control.id == "control"
    assert test.primary_metric.id == "signup"


def test_past_end_date_dropped(base_config):
    base_config["schedule"] = {"end_date": (T0 - timedelta(days=1)).isoformat()}
    assert build_definition(base_config, now=T0).schedule.end_date is None

    base_config["schedule"] = {"end_date": (T0 + timedelta(days=14)).isoformat()}
    assert build_definition(base_config, now=T0).schedule.end_date == T0 + timedelta(days=14)


def test_min_sample_size_known_value():
    """10% -> 15% needs 565 participants."""
    assert min_sample_size(10, 15) == 565


def test_min_sample_size_degenerate_inputs():
    """Zero baseline or no planned change fall back to the default."""
    assert min_sample_size(0, 5) == DEFAULT_MIN_SAMPLE_SIZE
    assert min_sample_size(100, 50) == DEFAULT_MIN_SAMPLE_SIZE
    assert min_sample_size(10, 10) == DEFAULT_MIN_SAMPLE_SIZE
