"""End-to-end: design -> start -> traffic -> analyze -> recommend."""
import pytest
from src.campaign_experiments.schema import RecommendationType
from src.campaign_experiments.simulate_campaign import simulate_traffic


def test_e2e_declares_treatment_winner(service, spec_factory, conversions):
    """Control 200/1000 vs treatment 260/1000 at a 5.5pt minimum effect."""
    test = service.create_test(spec_factory(
        success_criteria={"primary_metric": "conversion", "minimum_effect_size": 0.055},
        advanced_settings={"power_analysis": 80},
    ))
    service.transition_status(test.id, "running")
    conversions(test, {"Control": (1000, 200), "Treatment": (1000, 260)})

    run, recommendation = service.run_analysis(test.id)
    [result] = run.results
    treatment = test.treatments()[0]

    assert result.variant_id == treatment.id
    assert result.point_estimate == pytest.approx(0.26)
    assert result.control_estimate == pytest.approx(0.20)
    assert result.effect_size == pytest.approx(0.06)
    assert result.relative_lift == pytest.approx(0.30)
    assert result.p_value < 0.01
    assert result.required_sample_size == 911
    assert result.minimum_detectable_effect == pytest.approx(0.050, abs=2e-3)
    assert not result.underpowered
    assert result.statistical_significance
    assert result.configuration_version == 1
    assert run.srm_passed

    assert recommendation.type == RecommendationType.DECLARE_WINNER
    assert recommendation.target_variant_id == treatment.id
    assert recommendation.confidence_score == pytest.approx(1 - result.p_value)
    assert "Roll out Treatment" in recommendation.content
    assert service.get_recommendations(test.id)[-1].id == recommendation.id


def test_e2e_same_effect_underpowered_at_5pt(service, spec_factory, conversions):
    """A 5pt minimum effect needs 1094 per arm; 1000 is not enough to call it."""
    test = service.create_test(spec_factory(
        success_criteria={"primary_metric": "conversion", "minimum_effect_size": 0.05},
    ))
    service.transition_status(test.id, "running")
    conversions(test, {"Control": (1000, 200), "Treatment": (1000, 260)})

    run, recommendation = service.run_analysis(test.id)
    assert run.results[0].underpowered
    assert recommendation.type != RecommendationType.DECLARE_WINNER


def test_e2e_simulated_campaign(service, spec_factory):
    test = service.create_test(spec_factory(
        success_criteria={"primary_metric": "conversion", "minimum_effect_size": 0.05},
        traffic_rules={"exclusion_rules": ["bot_traffic"]},
    ))
    service.transition_status(test.id, "running")

    summary = simulate_traffic(
        service, test.id, {"Control": 0.20, "Treatment": 0.40}, n_visitors=4000, random_seed=11
    )
    assert summary["n_assigned"] == 4000
    assert summary["events_written"] == 4000
    assert sum(summary["per_variant"].values()) == 4000

    _, recommendation = service.run_analysis(test.id)
    assert recommendation.type == RecommendationType.DECLARE_WINNER
    assert recommendation.target_variant_id == test.treatments()[0].id

    service.transition_status(test.id, "completed")
    summary = service.test_summary(test.id)
    assert summary["status"] == "completed"
    assert summary["total_assigned"] == 4000
    assert summary["latest_recommendation"]["type"] == "declare_winner"
    control_row = next(v for v in summary["variants"] if v["is_control"])
    low, high = control_row["estimate_interval"]
    assert low < control_row["estimate"] < high


def test_e2e_simulation_is_reproducible(service, spec_factory):
    first = service.create_test(spec_factory(name="A"))
    service.transition_status(first.id, "running")

    a = simulate_traffic(service, first.id, {"Control": 0.2, "Treatment": 0.25}, n_visitors=500,
                         return_frame=True)
    b = simulate_traffic(service, first.id, {"Control": 0.2, "Treatment": 0.25}, n_visitors=500,
                         return_frame=True)
    assert a["visitors"]["value"].tolist() == b["visitors"]["value"].tolist()
