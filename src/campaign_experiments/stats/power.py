"""
Power analysis and MDE (Minimum Detectable Effect) calculator.

Computes per-arm sample sizes, achieved power and MDE for proportions and
continuous metrics. Effects are absolute differences in metric units
(0.02 = two percentage points for a conversion rate).

Sample-size functions return None when the requirement is unbounded
(zero effect), which callers treat as "never reached".
"""

import math
from typing import Optional

import numpy as np
from scipy import stats


def _z(alpha: float, power: float):
    return stats.norm.ppf(1 - alpha / 2), stats.norm.ppf(power)


def _shifted(baseline: float, effect: float) -> float:
    """baseline + effect, mirrored when that would leave [0, 1]."""
    p2 = baseline + abs(effect)
    if p2 > 1:
        p2 = baseline - abs(effect)
    return p2


def sample_size_proportion(
    baseline: float,
    mde: float,
    alpha: float = 0.05,
    power: float = 0.8,
) -> Optional[int]:
    """
    Per-arm sample size for a two-sided two-proportion test.

    Args:
        baseline: Control conversion rate (e.g., 0.10)
        mde: Minimum detectable effect, absolute (e.g., 0.02)
        alpha: Type I error rate
        power: Statistical power (1 - Type II)

    Returns:
        Visitors needed in each arm, or None for a zero effect
    """
    p1 = min(max(baseline, 0.0), 1.0)
    p2 = _shifted(p1, mde)
    effect = abs(p2 - p1)
    if effect == 0 or p2 < 0:
        return None

    z_alpha, z_beta = _z(alpha, power)
    p_bar = (p1 + p2) / 2
    numerator = (
        z_alpha * math.sqrt(2 * p_bar * (1 - p_bar))
        + z_beta * math.sqrt(p1 * (1 - p1) + p2 * (1 - p2))
    ) ** 2
    return int(np.ceil(numerator / effect ** 2))


def sample_size_continuous(
    std: float,
    mde: float,
    alpha: float = 0.05,
    power: float = 0.8,
) -> Optional[int]:
    """
    Per-arm sample size for a two-sample test on means.

    Args:
        std: Pooled standard deviation
        mde: Minimum detectable effect (absolute difference in means)
        alpha: Type I error
        power: Statistical power

    Returns:
        Observations needed in each arm, or None for a zero effect
    """
    if mde == 0:
        return None
    if std == 0:
        return 2
    z_alpha, z_beta = _z(alpha, power)
    n = 2 * (z_alpha + z_beta) ** 2 * (std ** 2) / (mde ** 2)
    return max(2, int(np.ceil(n)))


def power_proportion(
    baseline: float,
    effect: float,
    n_per_arm: int,
    alpha: float = 0.05,
) -> float:
    """
    Achieved power for a given absolute effect and per-arm sample size.

    Returns:
        Statistical power (0-1)
    """
    if n_per_arm <= 0:
        return 0.0
    p1 = min(max(baseline, 0.0), 1.0)
    p2 = _shifted(p1, effect)
    z_alpha = stats.norm.ppf(1 - alpha / 2)
    se = math.sqrt((p1 * (1 - p1) + p2 * (1 - p2)) / n_per_arm)
    delta = abs(p2 - p1)
    if se == 0:
        return 1.0 if delta > 0 else 0.0
    z_crit = delta / se
    achieved = stats.norm.cdf(z_crit - z_alpha) + stats.norm.cdf(-z_alpha - z_crit)
    return float(np.clip(achieved, 0, 1))


def power_continuous(
    std: float,
    effect: float,
    n_per_arm: int,
    alpha: float = 0.05,
) -> float:
    """Achieved power for a difference in means."""
    if n_per_arm <= 0:
        return 0.0
    if std == 0:
        return 1.0 if effect != 0 else 0.0
    z_alpha = stats.norm.ppf(1 - alpha / 2)
    z_crit = abs(effect) / (std * math.sqrt(2 / n_per_arm))
    achieved = stats.norm.cdf(z_crit - z_alpha) + stats.norm.cdf(-z_alpha - z_crit)
    return float(np.clip(achieved, 0, 1))


def mde_proportion(
    baseline: float,
    n_per_arm: int,
    alpha: float = 0.05,
    power: float = 0.8,
) -> float:
    """
    Minimum detectable absolute effect for a proportion.

    Normal approximation around the baseline variance.
    """
    if n_per_arm <= 0:
        return 1.0
    z_alpha, z_beta = _z(alpha, power)
    se = math.sqrt(2 * baseline * (1 - baseline) / n_per_arm)
    return float((z_alpha + z_beta) * se)


def mde_continuous(
    std: float,
    n_per_arm: int,
    alpha: float = 0.05,
    power: float = 0.8,
) -> float:
    """Minimum detectable absolute difference in means."""
    if n_per_arm <= 0:
        return math.inf
    z_alpha, z_beta = _z(alpha, power)
    return float((z_alpha + z_beta) * std * math.sqrt(2 / n_per_arm))
