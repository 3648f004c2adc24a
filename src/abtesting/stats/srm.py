"""
Sample Ratio Mismatch (SRM) chi-square test.

Detects if the observed traffic split across variants deviates significantly
from the configured weights.
"""

from typing import Sequence, Tuple

import numpy as np
from scipy import stats

from ..config import SRM_ALPHA


def srm_chi_square(
    observed: Sequence[int],
    weights: Sequence[float],
) -> Tuple[float, float]:
    """
    Chi-square goodness of fit of observed counts against expected weights.

    H0: traffic is split according to the weights

    Args:
        observed: Participants per variant
        weights: Configured weights per variant (any scale, e.g. percent)

    Returns:
        Tuple of (chi2_statistic, p_value). (0.0, 1.0) when there is nothing
        to test.
    """
    obs = np.asarray(observed, dtype=float)
    w = np.asarray(weights, dtype=float)
    n_total = obs.sum()
    if n_total == 0 or len(obs) < 2 or w.sum() <= 0:
        return 0.0, 1.0

    expected = n_total * w / w.sum()
    # Zero-weight variants cannot contribute a finite term
    mask = expected > 0
    if mask.sum() < 2:
        return 0.0, 1.0

    chi2 = float(np.sum((obs[mask] - expected[mask]) ** 2 / expected[mask]))
    p_value = float(stats.chi2.sf(chi2, df=int(mask.sum()) - 1))
    return chi2, p_value


def check_srm(
    observed: Sequence[int],
    weights: Sequence[float],
    alpha: float = SRM_ALPHA,
) -> Tuple[bool, float, float]:
    """
    Check for sample ratio mismatch.

    Returns:
        Tuple of (srm_passed, chi2_statistic, p_value)
    """
    chi2, p_value = srm_chi_square(observed, weights)
    return p_value >= alpha, chi2, p_value
