"""Tests for the z-test, SRM and power helpers."""
import math

import pytest

from src.abtesting.stats.hypothesis_tests import erf, normal_cdf, two_proportion_z_test
from src.abtesting.stats.power import power_proportion
from src.abtesting.stats.srm import check_srm, srm_chi_square


def test_erf_matches_math_erf():
    """Closed-form erf stays within 1.5e-7 of the exact value."""
    for x in (-3.0, -1.2, -0.1, 0.0, 0.3, 1.0, 2.5):
        assert abs(erf(x) - math.erf(x)) < 1.5e-7


def test_normal_cdf_symmetry():
    assert normal_cdf(0) == pytest.approx(0.5, abs=1e-7)
    assert normal_cdf(1.96) == pytest.approx(0.975, abs=1e-4)
    assert normal_cdf(-1.5) == pytest.approx(1 - normal_cdf(1.5), abs=1e-7)


def test_z_test_clear_winner():
    """Control 100/1000 vs variant 150/1000."""
    res = two_proportion_z_test(1000, 100, 1000, 150)
    assert res.improvement == pytest.approx(50.0)
    assert res.pooled_rate == pytest.approx(0.125)
    assert res.standard_error == pytest.approx(math.sqrt(0.125 * 0.875 * 0.002))
    assert res.z_score > 1.96
    assert res.confidence == 95
    assert res.is_significant
    assert res.p_value < 0.001


def test_z_test_confidence_clamped():
    """Very strong evidence still reports 95% confidence."""
    res = two_proportion_z_test(10000, 1000, 10000, 2000)
    assert res.confidence == 95
    assert res.z_score > 10


def test_z_test_no_difference():
    res = two_proportion_z_test(1000, 100, 1000, 100)
    assert res.improvement == 0
    assert res.confidence == pytest.approx(0.0, abs=1e-6)
    assert not res.is_significant


def test_z_test_small_difference_not_significant():
    """10% vs 11% on 500 each is nowhere near significant."""
    res = two_proportion_z_test(500, 50, 500, 55)
    assert res.improvement == pytest.approx(10.0)
    assert 0 < res.confidence < 95
    assert not res.is_significant


def test_z_test_empty_group():
    """A variant with 0 participants gives the zeroed default."""
    res = two_proportion_z_test(1000, 100, 0, 0)
    assert res.confidence == 0
    assert res.improvement == 0
    assert not res.is_significant
    assert res.p_value is None


def test_z_test_zero_standard_error():
    """Nobody converted anywhere: no evidence either way."""
    res = two_proportion_z_test(200, 0, 200, 0)
    assert res.confidence == 0
    assert res.improvement == 0
    assert not res.is_significant


def test_srm_balanced_passes():
    passed, chi2, p = check_srm([5000, 5020], [50, 50])
    assert passed
    assert p > 0.5


def test_srm_skewed_fails():
    passed, chi2, p = check_srm([5000, 5600], [50, 50])
    assert not passed
    assert chi2 > 30


def test_srm_respects_weights():
    """A 20/80 split observed as 20/80 is not a mismatch."""
    chi2, p = srm_chi_square([2000, 8000], [20, 80])
    assert chi2 == pytest.approx(0.0)
    assert p == pytest.approx(1.0)


def test_srm_nothing_to_test():
    assert srm_chi_square([0, 0], [50, 50]) == (0.0, 1.0)
    assert srm_chi_square([10, 0], [100, 0]) == (0.0, 1.0)


def test_power_grows_with_sample_size():
    small = power_proportion(0.10, 0.5, 100)
    planned = power_proportion(0.10, 0.5, 565)
    assert small < planned
    assert 0.65 < planned < 0.85


def test_power_degenerate():
    assert power_proportion(0.10, 0.5, 0) == 0.0
    assert power_proportion(0.0, 0.5, 1000) == 0.0
