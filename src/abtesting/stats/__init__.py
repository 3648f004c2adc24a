"""Experiment statistics module."""

from .srm import srm_chi_square, check_srm
from .power import min_sample_size, power_proportion
from .hypothesis_tests import erf, normal_cdf, two_proportion_z_test, SignificanceResult

__all__ = [
    "srm_chi_square",
    "check_srm",
    "min_sample_size",
    "power_proportion",
    "erf",
    "normal_cdf",
    "two_proportion_z_test",
    "SignificanceResult",
]
