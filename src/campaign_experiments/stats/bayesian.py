"""
Bayesian comparison of a treatment against control.

Conversion metrics use independent Beta(successes + 1, failures + 1)
posteriors (uniform prior) and a seeded Monte-Carlo estimate of
P(treatment > control). Continuous metrics use the normal approximation
to the posterior of the difference in means.
"""

import math
from dataclasses import dataclass
from typing import Tuple

import numpy as np
from scipy import stats


@dataclass
class BayesianComparison:
    """Posterior summary of treatment minus control."""
    probability_to_beat_control: float
    expected_lift: float
    credible_interval: Tuple[float, float]
    expected_loss: float  # expected shortfall from choosing treatment


def beta_binomial_comparison(
    n1: int,
    x1: int,
    n2: int,
    x2: int,
    ci_level: float = 0.95,
    draws: int = 100_000,
    seed: int = 42,
) -> BayesianComparison:
    """
    Monte-Carlo P(p_treatment > p_control) under Beta(1, 1) priors.

    Args:
        n1: Control trials
        x1: Control successes
        n2: Treatment trials
        x2: Treatment successes
        ci_level: Mass of the central credible interval for the difference
        draws: Posterior samples per arm
        seed: RNG seed; identical inputs give identical outputs

    Returns:
        BayesianComparison
    """
    rng = np.random.default_rng(seed)
    control = rng.beta(x1 + 1, n1 - x1 + 1, size=draws)
    treatment = rng.beta(x2 + 1, n2 - x2 + 1, size=draws)
    diff = treatment - control

    tail = (1 - ci_level) / 2
    low, high = np.quantile(diff, [tail, 1 - tail])

    return BayesianComparison(
        probability_to_beat_control=float(np.mean(diff > 0)),
        expected_lift=float(np.mean(diff)),
        credible_interval=(float(low), float(high)),
        expected_loss=float(np.mean(np.maximum(-diff, 0))),
    )


def normal_comparison(
    n1: int,
    mean1: float,
    var1: float,
    n2: int,
    mean2: float,
    var2: float,
    ci_level: float = 0.95,
) -> BayesianComparison:
    """Posterior of mean2 - mean1 under flat priors and the normal approximation."""
    lift = mean2 - mean1
    if n1 < 2 or n2 < 2:
        return BayesianComparison(0.5, lift, (-math.inf, math.inf), 0.0)

    se = math.sqrt(var1 / n1 + var2 / n2)
    if se == 0:
        prob = 0.5 if lift == 0 else float(lift > 0)
        return BayesianComparison(prob, lift, (lift, lift), max(-lift, 0.0))

    posterior = stats.norm(loc=lift, scale=se)
    tail = (1 - ci_level) / 2
    # E[max(-D, 0)] for D ~ N(lift, se)
    loss = se * stats.norm.pdf(lift / se) - lift * stats.norm.cdf(-lift / se)
    return BayesianComparison(
        probability_to_beat_control=float(posterior.sf(0)),
        expected_lift=lift,
        credible_interval=(float(posterior.ppf(tail)), float(posterior.ppf(1 - tail))),
        expected_loss=float(loss),
    )
