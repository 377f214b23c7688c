"""Tests for test design validation, lifecycle and configuration amendments."""
import pytest
from src.campaign_experiments.errors import (
    ConcurrencyConflictError,
    IllegalStateError,
    NotFoundError,
    ValidationError,
)
from src.campaign_experiments.schema import ExperimentStatus


def test_create_test_valid(service, spec_factory):
    test = service.create_test(spec_factory())
    assert test.status == ExperimentStatus.DRAFT
    assert test.version == 1
    assert test.control.name == "Control"
    assert [v.position for v in test.variants] == [0, 1]
    assert all(v.test_id == test.id for v in test.variants)
    assert service.get_test(test.id).name == "Homepage hero"


def test_traffic_must_sum_to_100(service, spec_factory):
    spec = spec_factory(variants=[
        {"name": "Control", "traffic_percentage": 50, "is_control": True},
        {"name": "B", "traffic_percentage": 40},
    ])
    with pytest.raises(ValidationError, match="sum to 100"):
        service.create_test(spec)


def test_thirds_within_tolerance(service, spec_factory):
    spec = spec_factory(variants=[
        {"name": "Control", "traffic_percentage": 33.33, "is_control": True},
        {"name": "B", "traffic_percentage": 33.33},
        {"name": "C", "traffic_percentage": 33.34},
    ])
    assert len(service.create_test(spec).variants) == 3


@pytest.mark.parametrize("variants,message", [
    ([{"name": "Control", "traffic_percentage": 100, "is_control": True}], "at least 2"),
    ([{"name": "A", "traffic_percentage": 50}, {"name": "B", "traffic_percentage": 50}], "control"),
    ([
        {"name": "A", "traffic_percentage": 50, "is_control": True},
        {"name": "B", "traffic_percentage": 50, "is_control": True},
    ], "control"),
    ([
        {"name": "A", "traffic_percentage": 50, "is_control": True},
        {"name": "A", "traffic_percentage": 50},
    ], "unique"),
])
def test_variant_rules(service, spec_factory, variants, message):
    with pytest.raises(ValidationError, match=message):
        service.create_test(spec_factory(variants=variants))


def test_success_criteria_must_reference_declared_metrics(service, spec_factory):
    spec = spec_factory(success_criteria={"primary_metric": "revenue"})
    with pytest.raises(ValidationError) as exc:
        service.create_test(spec)
    assert any("revenue" in e for e in exc.value.errors)


def test_unknown_advanced_setting_rejected(service, spec_factory):
    with pytest.raises(ValidationError):
        service.create_test(spec_factory(advanced_settings={"turbo": True}))


def test_percent_style_confidence(service, spec_factory):
    test = service.create_test(spec_factory(confidence_level=90))
    assert test.confidence_level == pytest.approx(0.90)
    assert test.alpha == pytest.approx(0.10)


def test_lifecycle_transitions(service, spec_factory):
    test = service.create_test(spec_factory())
    running = service.transition_status(test.id, "running")
    assert running.start_date is not None

    paused = service.transition_status(test.id, ExperimentStatus.PAUSED)
    assert paused.start_date == running.start_date
    service.transition_status(test.id, "running")
    completed = service.transition_status(test.id, "completed")
    assert completed.end_date is not None
    archived = service.transition_status(test.id, "archived")

    assert [s for s, _ in archived.status_history] == [
        "draft", "running", "paused", "running", "completed", "archived"
    ]


@pytest.mark.parametrize("path", [
    ["completed"],
    ["running", "draft"],
    ["running", "completed", "running"],
    ["running", "completed", "archived", "running"],
])
def test_illegal_transitions(service, spec_factory, path):
    test = service.create_test(spec_factory())
    *legal, illegal = path
    for status in legal:
        service.transition_status(test.id, status)
    with pytest.raises(IllegalStateError):
        service.transition_status(test.id, illegal)


def test_unknown_test(service):
    with pytest.raises(NotFoundError):
        service.get_test("missing")


def test_draft_configuration_fully_editable(service, spec_factory):
    test = service.create_test(spec_factory(metrics=["conversion", "clicks"]))
    updated = service.update_configuration(test.id, {
        "success_criteria": {"secondary_metrics": ["clicks"], "minimum_effect_size": 0.02},
        "traffic_rules": {"device_targeting": ["mobile"]},
    })
    assert updated.version == 2
    assert updated.configuration.success_criteria.primary_metric == "conversion"
    assert updated.configuration.success_criteria.minimum_effect_size == 0.02
    assert updated.configuration.traffic_rules.device_targeting == ["mobile"]


def test_running_test_freezes_structure(service, running_test):
    with pytest.raises(IllegalStateError):
        service.update_configuration(running_test.id, {"traffic_rules": {"device_targeting": ["mobile"]}})
    with pytest.raises(IllegalStateError):
        service.update_configuration(running_test.id, {"success_criteria": {"minimum_effect_size": 0.1}})

    updated = service.update_configuration(
        running_test.id, {"advanced_settings": {"bayesian_analysis": True}}, expected_version=1
    )
    assert updated.version == 2
    assert updated.configuration.advanced_settings.bayesian_analysis


def test_stale_version_conflicts(service, running_test):
    service.update_configuration(running_test.id, {"advanced_settings": {"early_stopping": True}}, 1)
    with pytest.raises(ConcurrencyConflictError) as exc:
        service.update_configuration(running_test.id, {"advanced_settings": {"auto_stop": True}}, 1)
    assert exc.value.actual_version == 2
    assert service.get_test(running_test.id).version == 2


def test_completed_configuration_is_final(service, running_test):
    service.transition_status(running_test.id, "completed")
    with pytest.raises(IllegalStateError):
        service.update_configuration(running_test.id, {"advanced_settings": {"early_stopping": True}})


def test_reallocate_traffic_validates_and_versions(service, running_test):
    control, treatment = running_test.active_variants()
    with pytest.raises(ValidationError):
        service.reallocate_traffic(running_test.id, {control.id: 70, treatment.id: 20})
    with pytest.raises(ValidationError):
        service.reallocate_traffic(running_test.id, {"nope": 100})

    updated = service.reallocate_traffic(running_test.id, {control.id: 70, treatment.id: 30}, 1)
    assert updated.version == 2
    assert updated.get_variant(treatment.id).traffic_percentage == 30


def test_clone_test(service, running_test):
    clone = service.clone_test(running_test.id)
    assert clone.id != running_test.id
    assert clone.status == ExperimentStatus.DRAFT
    assert clone.name.endswith("(Clone)")
    assert {v.id for v in clone.variants}.isdisjoint({v.id for v in running_test.variants})
    assert [v.name for v in clone.variants] == ["Control", "Treatment"]


def test_list_tests_by_status(service, spec_factory, running_test):
    service.create_test(spec_factory(name="Other"))
    assert [t.id for t in service.list_tests("running")] == [running_test.id]
    assert len(service.list_tests()) == 2
    with pytest.raises(ValidationError):
        service.list_tests("launched")


def test_add_variant_splits_traffic_evenly(service, spec_factory):
    test = service.create_test(spec_factory())
    variant = service.add_variant(test.id, {"name": "Treatment B", "content": {"headline": "Save 20%"}})

    test = service.get_test(test.id)
    assert test.version == 2
    assert variant.test_id == test.id
    assert variant.position == 2
    assert [v.name for v in test.active_variants()] == ["Control", "Treatment", "Treatment B"]
    assert [v.traffic_percentage for v in test.active_variants()] == [33.34, 33.33, 33.33]


def test_add_variant_with_share_scales_others(service, spec_factory):
    test = service.create_test(spec_factory())
    service.add_variant(test.id, {"name": "B", "traffic_percentage": 20}, expected_version=1)

    weights = {v.name: v.traffic_percentage for v in service.get_test(test.id).active_variants()}
    assert weights == {"Control": 40.0, "Treatment": 40.0, "B": 20.0}


def test_add_variant_rejects_bad_designs(service, spec_factory):
    test = service.create_test(spec_factory())
    with pytest.raises(ValidationError, match="unique"):
        service.add_variant(test.id, {"name": "Treatment"})
    with pytest.raises(ValidationError, match="control"):
        service.add_variant(test.id, {"name": "Other control", "is_control": True})
    with pytest.raises(ValidationError):
        service.add_variant(test.id, {"traffic_percentage": 10})
    with pytest.raises(ConcurrencyConflictError):
        service.add_variant(test.id, {"name": "B"}, expected_version=7)
    assert service.get_test(test.id).version == 1


def test_remove_variant_deactivates_and_rebalances(service, spec_factory):
    test = service.create_test(spec_factory(variants=[
        {"name": "Control", "traffic_percentage": 50, "is_control": True},
        {"name": "B", "traffic_percentage": 25},
        {"name": "C", "traffic_percentage": 25},
    ]))
    b = next(v for v in test.variants if v.name == "B")

    updated = service.remove_variant(test.id, b.id)
    assert updated.version == 2
    assert len(updated.variants) == 3
    assert not updated.get_variant(b.id).active
    assert {v.name: v.traffic_percentage for v in updated.active_variants()} == {
        "Control": 66.67, "C": 33.33,
    }
    with pytest.raises(NotFoundError):
        service.remove_variant(test.id, b.id)


def test_remove_variant_keeps_control_and_one_treatment(service, spec_factory):
    test = service.create_test(spec_factory())
    with pytest.raises(ValidationError, match="control"):
        service.remove_variant(test.id, test.control.id)
    with pytest.raises(ValidationError, match="at least 2"):
        service.remove_variant(test.id, test.treatments()[0].id)
    assert service.get_test(test.id).treatments()[0].active


def test_variants_fixed_once_running(service, running_test):
    with pytest.raises(IllegalStateError):
        service.add_variant(running_test.id, {"name": "Late"})
    with pytest.raises(IllegalStateError):
        service.remove_variant(running_test.id, running_test.treatments()[0].id)
