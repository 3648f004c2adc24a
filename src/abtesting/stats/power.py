"""
Power analysis and minimum sample size.

Sample size uses fixed critical values (alpha = 0.05 two-sided, power = 0.8)
so planned sizes are reproducible across platforms; achieved power uses the
exact normal distribution from scipy.
"""

import logging
import math

import numpy as np
from scipy import stats

from ..config import DEFAULT_MIN_SAMPLE_SIZE, Z_ALPHA, Z_BETA

logger = logging.getLogger(__name__)


def min_sample_size(
    baseline: float,
    target: float,
    z_alpha: float = Z_ALPHA,
    z_beta: float = Z_BETA,
) -> int:
    """
    Minimum participants for a conversion metric to detect the planned lift.

    n = ceil((z_alpha + z_beta)^2 * 2p(1-p) / (delta * p)^2) where p is the
    baseline rate and delta the relative change |target - baseline| / baseline.

    Args:
        baseline: Baseline conversion rate in percent (e.g. 10 for 10%)
        target: Target conversion rate in percent
        z_alpha: Critical value for the significance level
        z_beta: Critical value for the desired power

    Returns:
        Required sample size; DEFAULT_MIN_SAMPLE_SIZE when the inputs cannot
        define an effect (baseline outside (0, 100) or target == baseline).
    """
    p = baseline / 100
    if p <= 0 or p >= 1:
        logger.warning(f"Baseline {baseline}% outside (0, 100); using default sample size")
        return DEFAULT_MIN_SAMPLE_SIZE

    effect = abs(target / 100 - p) / p
    if effect == 0:
        logger.warning("Target equals baseline; using default sample size")
        return DEFAULT_MIN_SAMPLE_SIZE

    numerator = (z_alpha + z_beta) ** 2 * 2 * p * (1 - p)
    denominator = (effect * p) ** 2
    return int(math.ceil(numerator / denominator))


def power_proportion(
    baseline: float,
    effect_relative: float,
    n_per_arm: int,
    alpha: float = 0.05,
) -> float:
    """
    Achieved power for a given relative effect and sample size per arm.

    Args:
        baseline: Baseline proportion (0-1)
        effect_relative: Relative change to detect (0.5 = +50%)
        n_per_arm: Participants per arm
        alpha: Type I error

    Returns:
        Statistical power (0-1)
    """
    if n_per_arm <= 0 or baseline <= 0 or baseline >= 1:
        return 0.0

    p1 = baseline
    p2 = float(np.clip(baseline * (1 + effect_relative), 0, 1))

    z_alpha = stats.norm.ppf(1 - alpha / 2)
    p_pool = (p1 + p2) / 2
    se = np.sqrt(p_pool * (1 - p_pool) * 2 / n_per_arm)
    effect = abs(p2 - p1)

    if se == 0:
        return 0.0

    z_crit = effect / se
    power = 1 - stats.norm.cdf(z_alpha - z_crit) + stats.norm.cdf(-z_alpha - z_crit)
    return float(np.clip(power, 0, 1))
