"""Tests for recommendation rules."""
from datetime import datetime, timedelta, timezone

import pytest
from src.campaign_experiments.schema import RecommendationType


def _start(service, spec):
    test = service.create_test(spec)
    service.transition_status(test.id, "running")
    return service.get_test(test.id)


def test_never_declares_winner_while_underpowered(service, spec_factory, conversions):
    """p < 0.05 but far short of the sample needed for a 1pt effect."""
    test = _start(service, spec_factory(
        success_criteria={"primary_metric": "conversion", "minimum_effect_size": 0.01},
    ))
    conversions(test, {"Control": (1000, 200), "Treatment": (1000, 260)})

    run, recommendation = service.run_analysis(test.id)
    result = run.results[0]
    assert result.p_value < 0.05
    assert result.underpowered
    assert not result.statistical_significance
    assert recommendation.type != RecommendationType.DECLARE_WINNER
    assert recommendation.target_variant_id is None


def test_stop_no_difference(service, spec_factory, conversions):
    test = _start(service, spec_factory(
        success_criteria={"primary_metric": "conversion", "minimum_effect_size": 0.05},
    ))
    conversions(test, {"Control": (1200, 240), "Treatment": (1200, 242)})

    _, recommendation = service.run_analysis(test.id)
    assert recommendation.type == RecommendationType.STOP_NO_DIFFERENCE
    assert 0 <= recommendation.confidence_score <= 1
    assert "No detectable difference" in recommendation.content


def test_insufficient_power(service, spec_factory, conversions):
    test = _start(service, spec_factory(
        success_criteria={"primary_metric": "conversion", "minimum_effect_size": 0.05},
    ))
    conversions(test, {"Control": (300, 60), "Treatment": (300, 66)})

    run, recommendation = service.run_analysis(test.id)
    assert run.results[0].underpowered
    assert recommendation.type == RecommendationType.INSUFFICIENT_POWER


def test_control_declared_when_treatment_worse(service, spec_factory, conversions):
    test = _start(service, spec_factory(
        success_criteria={"primary_metric": "conversion", "minimum_effect_size": 0.05},
    ))
    conversions(test, {"Control": (1200, 240), "Treatment": (1200, 168)})

    _, recommendation = service.run_analysis(test.id)
    assert recommendation.type == RecommendationType.DECLARE_WINNER
    assert recommendation.target_variant_id == test.control.id
    assert recommendation.content.startswith("Keep Control")


def test_lower_is_better_metric(service, spec_factory, conversions):
    test = _start(service, spec_factory(
        metrics=[{"name": "bounce", "metric_type": "binary", "higher_is_better": False}],
        success_criteria={"primary_metric": "bounce", "minimum_effect_size": 0.05},
    ))
    conversions(test, {"Control": (1600, 640), "Treatment": (1600, 530)})

    _, recommendation = service.run_analysis(test.id)
    treatment = test.treatments()[0]
    assert recommendation.type == RecommendationType.DECLARE_WINNER
    assert recommendation.target_variant_id == treatment.id


def test_held_until_end_date_without_early_stopping(service, spec_factory, conversions):
    end = datetime.now(timezone.utc) + timedelta(days=7)
    test = _start(service, spec_factory(
        success_criteria={"primary_metric": "conversion", "minimum_effect_size": 0.055},
        end_date=end,
    ))
    conversions(test, {"Control": (1000, 200), "Treatment": (1000, 260)})

    run, recommendation = service.run_analysis(test.id)
    assert run.results[0].statistical_significance
    assert recommendation.type == RecommendationType.CONTINUE
    assert recommendation.recommended_status is None
    assert end.date().isoformat() in recommendation.content


def test_early_stopping_recommends_completion(service, spec_factory, conversions):
    end = datetime.now(timezone.utc) + timedelta(days=7)
    test = _start(service, spec_factory(
        success_criteria={"primary_metric": "conversion", "minimum_effect_size": 0.055},
        advanced_settings={"early_stopping": True},
        end_date=end,
    ))
    conversions(test, {"Control": (1000, 200), "Treatment": (1000, 260)})

    _, recommendation = service.run_analysis(test.id)
    assert recommendation.type == RecommendationType.DECLARE_WINNER
    assert recommendation.recommended_status.value == "completed"
    # run_analysis recommends; it never changes status itself
    assert service.get_test(test.id).status.value == "running"


def test_results_are_append_only(service, spec_factory, conversions):
    test = _start(service, spec_factory())
    conversions(test, {"Control": (100, 10), "Treatment": (100, 12)})

    first, _ = service.run_analysis(test.id)
    service.update_configuration(test.id, {"advanced_settings": {"bayesian_analysis": True}})
    second, _ = service.run_analysis(test.id)

    history = service.get_results(test.id, history=True)
    assert len(history) == 2
    assert {r.run_id for r in history} == {first.run_id, second.run_id}
    assert [r.configuration_version for r in history] == [1, 2]

    latest = service.get_results(test.id)
    assert len(latest) == 1
    assert latest[0].run_id == second.run_id
    assert len(service.get_recommendations(test.id)) == 2


def test_paused_test_can_still_be_analysed(service, spec_factory, conversions):
    test = _start(service, spec_factory())
    conversions(test, {"Control": (100, 10), "Treatment": (100, 15)})
    service.transition_status(test.id, "paused")

    run, _ = service.run_analysis(test.id)
    assert len(run.results) == 1


def test_one_result_per_metric_and_treatment(service, spec_factory):
    test = _start(service, spec_factory(
        variants=[
            {"name": "Control", "traffic_percentage": 34, "is_control": True},
            {"name": "B", "traffic_percentage": 33},
            {"name": "C", "traffic_percentage": 33},
        ],
        metrics=["conversion", {"name": "revenue", "metric_type": "continuous"}],
        success_criteria={"primary_metric": "conversion", "secondary_metrics": ["revenue"]},
    ))
    run, recommendation = service.run_analysis(test.id)
    assert len(run.results) == 4
    assert {r.metric_type.value for r in run.results} == {"binary", "continuous"}
    assert recommendation.type in (RecommendationType.CONTINUE, RecommendationType.INSUFFICIENT_POWER)


def test_early_stopping_needs_a_planned_horizon(service, spec_factory, conversions):
    """Significant at a fixed-horizon peek with no powered sample: no early completion."""
    test = _start(service, spec_factory(advanced_settings={"early_stopping": True}))
    conversions(test, {"Control": (120, 12), "Treatment": (120, 24)})

    run, recommendation = service.run_analysis(test.id)
    assert run.results[0].p_value < 0.05
    assert run.results[0].required_sample_size is None
    assert recommendation.type == RecommendationType.DECLARE_WINNER
    assert recommendation.recommended_status is None


def test_early_stopping_waits_for_planned_sample(service, spec_factory, conversions):
    test = _start(service, spec_factory(
        success_criteria={"primary_metric": "conversion", "minimum_effect_size": 0.055},
        advanced_settings={"early_stopping": True, "planned_sample_size": 2000},
    ))
    conversions(test, {"Control": (1000, 200), "Treatment": (1000, 260)})

    run, recommendation = service.run_analysis(test.id)
    assert run.results[0].underpowered
    assert recommendation.recommended_status is None


def test_insufficient_power_score_is_one_minus_p(service, spec_factory, conversions):
    test = _start(service, spec_factory(
        success_criteria={"primary_metric": "conversion", "minimum_effect_size": 0.05},
    ))
    conversions(test, {"Control": (300, 60), "Treatment": (300, 66)})

    run, recommendation = service.run_analysis(test.id)
    assert recommendation.type == RecommendationType.INSUFFICIENT_POWER
    assert recommendation.confidence_score == pytest.approx(1 - run.results[0].p_value)


def test_stop_no_difference_score_is_one_minus_p(service, spec_factory, conversions):
    test = _start(service, spec_factory(
        success_criteria={"primary_metric": "conversion", "minimum_effect_size": 0.05},
    ))
    conversions(test, {"Control": (1200, 240), "Treatment": (1200, 242)})

    run, recommendation = service.run_analysis(test.id)
    assert recommendation.type == RecommendationType.STOP_NO_DIFFERENCE
    assert recommendation.confidence_score == pytest.approx(1 - run.results[0].p_value)


def test_minimum_confidence_follows_confidence_level(service, spec_factory, conversions):
    """At 90% confidence a p of about 0.07 is enough to call the winner."""
    test = _start(service, spec_factory(confidence_level=0.90))
    assert test.configuration.success_criteria.minimum_confidence == pytest.approx(0.90)
    conversions(test, {"Control": (1000, 200), "Treatment": (1000, 233)})

    run, recommendation = service.run_analysis(test.id)
    assert 0.05 < run.results[0].p_value < 0.10
    assert run.results[0].statistical_significance
    assert recommendation.type == RecommendationType.DECLARE_WINNER


def test_explicit_minimum_confidence_is_kept(service, spec_factory, conversions):
    test = _start(service, spec_factory(
        confidence_level=0.90,
        success_criteria={"primary_metric": "conversion", "minimum_confidence": 0.99},
    ))
    conversions(test, {"Control": (1000, 200), "Treatment": (1000, 233)})

    run, recommendation = service.run_analysis(test.id)
    assert run.results[0].statistical_significance
    assert recommendation.type != RecommendationType.DECLARE_WINNER
