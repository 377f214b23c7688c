"""
Sample Ratio Mismatch (SRM) chi-square test.

Detects if the actual allocation across variants deviates significantly
from the configured traffic percentages.
"""

from typing import Sequence, Tuple

import numpy as np
from scipy import stats


def srm_chi_square(
    observed_counts: Sequence[int],
    expected_weights: Sequence[float],
) -> Tuple[float, float]:
    """
    Chi-square goodness-of-fit test for sample ratio mismatch.

    H0: assignments follow the configured weights
    H1: actual ratio differs from expected

    Args:
        observed_counts: Assigned visitors per variant
        expected_weights: Configured weights per variant (any scale, e.g. percentages)

    Returns:
        Tuple of (chi2_statistic, p_value)
    """
    observed = np.asarray(observed_counts, dtype=float)
    weights = np.asarray(expected_weights, dtype=float)
    n_total = observed.sum()
    if n_total == 0 or len(observed) < 2 or weights.sum() == 0:
        return 0.0, 1.0

    expected = n_total * weights / weights.sum()

    # Avoid division by zero
    expected = np.where(expected == 0, 1e-10, expected)

    chi2 = float(np.sum((observed - expected) ** 2 / expected))
    p_value = float(stats.chi2.sf(chi2, df=len(observed) - 1))

    return chi2, p_value


def check_srm(
    observed_counts: Sequence[int],
    expected_weights: Sequence[float],
    alpha: float = 0.01,
) -> Tuple[bool, float, float]:
    """
    Check for sample ratio mismatch.

    Args:
        observed_counts: Assigned visitors per variant
        expected_weights: Configured weights per variant
        alpha: Significance threshold (default 0.01)

    Returns:
        Tuple of (srm_passed, chi2_statistic, p_value)
    """
    chi2, p_value = srm_chi_square(observed_counts, expected_weights)
    srm_passed = p_value >= alpha
    return srm_passed, chi2, p_value
