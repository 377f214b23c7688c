"""
Sequential analysis: O'Brien-Fleming alpha spending for repeated looks.

Interim looks at a running test are allowed without inflating the overall
Type I error: early looks face a much stricter boundary, and the cumulative
alpha spent reaches the nominal level only at the planned sample size.
"""

import math
from dataclasses import dataclass
from typing import List, Tuple

from scipy import stats


def obf_boundary(
    alpha: float,
    information_fraction: float,
) -> float:
    """
    O'Brien-Fleming boundary.

    Returns adjusted z-critical for current information fraction.

    Args:
        alpha: Overall Type I error
        information_fraction: Proportion of planned sample already observed (0-1)

    Returns:
        Z-critical value for current look (inf before any data)
    """
    if information_fraction <= 0:
        return math.inf
    t = min(information_fraction, 1.0)
    z_alpha = stats.norm.ppf(1 - alpha / 2)
    return float(z_alpha / math.sqrt(t))


def obf_alpha_spent(alpha: float, information_fraction: float) -> float:
    """
    Lan-DeMets O'Brien-Fleming spending function.

    Cumulative alpha spent by information fraction t:
    alpha(t) = 2 - 2 * Phi(z_{alpha/2} / sqrt(t)); alpha(1) == alpha.
    """
    if information_fraction <= 0:
        return 0.0
    return float(2 * stats.norm.sf(obf_boundary(alpha, information_fraction)))


@dataclass
class SequentialLook:
    """One interim analysis."""
    information_fraction: float
    boundary: float
    cumulative_alpha: float
    incremental_alpha: float
    crossed: bool


class AlphaSpendingPlan:
    """
    Tracks the looks taken at one (test, metric, variant) comparison.

    The information fraction never moves backwards between looks, so the
    cumulative alpha spent is non-decreasing and never exceeds alpha.
    """

    def __init__(self, alpha: float):
        self.alpha = alpha
        self.looks: List[SequentialLook] = []

    @property
    def spent(self) -> float:
        return self.looks[-1].cumulative_alpha if self.looks else 0.0

    @property
    def remaining(self) -> float:
        return max(self.alpha - self.spent, 0.0)

    def look(self, information_fraction: float, z_statistic: float) -> SequentialLook:
        t = min(max(information_fraction, 0.0), 1.0)
        if self.looks:
            t = max(t, self.looks[-1].information_fraction)
        boundary = obf_boundary(self.alpha, t)
        cumulative = obf_alpha_spent(self.alpha, t)
        look = SequentialLook(
            information_fraction=t,
            boundary=boundary,
            cumulative_alpha=cumulative,
            incremental_alpha=cumulative - self.spent,
            crossed=abs(z_statistic) >= boundary,
        )
        self.looks.append(look)
        return look


def repeated_peek_warning(
    n_planned: int,
    n_observed: int,
    n_analyses: int,
) -> Tuple[bool, str]:
    """
    Warning for repeated peeking at a fixed-horizon test.

    Args:
        n_planned: Planned per-arm sample size
        n_observed: Currently observed per-arm sample size
        n_analyses: Number of times results have been analyzed

    Returns:
        Tuple of (is_warning, message)
    """
    if n_observed >= n_planned and n_analyses <= 1:
        return False, "Single analysis at planned sample size."

    msg_parts = []

    if n_observed < n_planned:
        pct = 100 * n_observed / n_planned
        msg_parts.append(
            f"Early analysis: only {pct:.0f}% of planned sample. "
            "Type I error inflation possible if stopping early."
        )

    if n_analyses > 1:
        msg_parts.append(
            f"Multiple analyses ({n_analyses}) performed. "
            "Consider enabling sequential testing."
        )

    is_warning = len(msg_parts) > 0
    return is_warning, " ".join(msg_parts) if msg_parts else ""
