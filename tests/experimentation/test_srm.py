"""Tests for SRM chi-square."""
import pytest
from src.campaign_experiments.stats.srm import srm_chi_square, check_srm


def test_srm_perfect_balance():
    """500/500 should pass SRM."""
    passed, _, p = check_srm([500, 500], [50, 50])
    assert passed
    assert p > 0.9


def test_srm_extreme_imbalance():
    """900/100 should fail SRM."""
    passed, _, p = check_srm([900, 100], [50, 50])
    assert not passed
    assert p < 0.01


def test_srm_three_arms_uneven_weights():
    """Counts matching a 20/30/50 split pass; a 33/33/33 split against it fails."""
    passed, _, _ = check_srm([2010, 2985, 5005], [20, 30, 50])
    assert passed
    passed, _, _ = check_srm([3333, 3333, 3334], [20, 30, 50])
    assert not passed


def test_srm_chi_square_output():
    """Chi-square returns (stat, pvalue)."""
    chi2, p = srm_chi_square([50, 50], [1, 1])
    assert chi2 >= 0
    assert 0 <= p <= 1


def test_srm_no_traffic():
    assert srm_chi_square([0, 0], [50, 50]) == (0.0, 1.0)


def test_srm_flagged_in_analysis(service, storage, running_test):
    """A skewed ledger produces a warning, not an error."""
    control, treatment = running_test.active_variants()
    for i in range(900):
        storage.record_assignment(running_test.id, f"c{i}", control.id)
    for i in range(100):
        storage.record_assignment(running_test.id, f"t{i}", treatment.id)

    run, recommendation = service.run_analysis(running_test.id)
    assert not run.srm_passed
    assert any("Sample ratio mismatch" in w for w in recommendation.warnings)
