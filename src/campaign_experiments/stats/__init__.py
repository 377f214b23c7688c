"""Experiment statistics module."""

from .srm import srm_chi_square, check_srm
from .power import (
    sample_size_proportion,
    sample_size_continuous,
    mde_proportion,
    mde_continuous,
    power_proportion,
    power_continuous,
)
from .hypothesis_tests import (
    ArmStats,
    Comparison,
    proportions_z_test,
    welch_t_test,
    wilson_interval,
    newcombe_interval,
    build_arm_stats,
)
from .sequential import AlphaSpendingPlan, obf_boundary, obf_alpha_spent, repeated_peek_warning
from .bayesian import BayesianComparison, beta_binomial_comparison, normal_comparison
from .segments import SegmentResult, events_to_frame, segment_analysis, segment_frame

__all__ = [
    "srm_chi_square",
    "check_srm",
    "sample_size_proportion",
    "sample_size_continuous",
    "mde_proportion",
    "mde_continuous",
    "power_proportion",
    "power_continuous",
    "ArmStats",
    "Comparison",
    "proportions_z_test",
    "welch_t_test",
    "wilson_interval",
    "newcombe_interval",
    "build_arm_stats",
    "AlphaSpendingPlan",
    "obf_boundary",
    "obf_alpha_spent",
    "repeated_peek_warning",
    "BayesianComparison",
    "beta_binomial_comparison",
    "normal_comparison",
    "SegmentResult",
    "events_to_frame",
    "segment_analysis",
    "segment_frame",
]
