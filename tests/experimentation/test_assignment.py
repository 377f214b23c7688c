"""Tests for deterministic assignment."""
import pytest
from src.campaign_experiments.assignment import (
    BUCKETS,
    _hash_to_bucket,
    allocate,
    exclusion_reason,
    select_variant,
)
from src.campaign_experiments.schema import TrafficRules, Variant


def test_hash_to_bucket_deterministic():
    """Same test + visitor always gets same bucket."""
    b1 = _hash_to_bucket("test_1", "visitor_001")
    b2 = _hash_to_bucket("test_1", "visitor_001")
    assert b1 == b2
    assert 0 <= b1 < BUCKETS


def test_select_variant_walks_cumulative_bounds():
    """Control first: buckets [0, 3333) control, [3333, 10000) treatment."""
    control = Variant("A", 33.33, is_control=True)
    treatment = Variant("B", 66.67)
    assert select_variant([control, treatment], 0) is control
    assert select_variant([control, treatment], 3332) is control
    assert select_variant([control, treatment], 3333) is treatment
    assert select_variant([control, treatment], 9999) is treatment


def test_select_variant_zero_weight_never_chosen():
    control = Variant("A", 100, is_control=True)
    retired = Variant("B", 0)
    assert all(select_variant([control, retired], b) is control for b in range(0, BUCKETS, 97))


def test_assign_same_visitor_same_variant(service, running_test):
    """Repeated calls return the same variant."""
    v1 = service.assign(running_test.id, "visitor_42")
    v2 = service.assign(running_test.id, "visitor_42")
    assert v1 is not None
    assert v1 == v2


def test_assign_distribution_converges(service, spec_factory):
    """Empirical split approaches the configured 20/30/50 weights."""
    spec = spec_factory(variants=[
        {"name": "Control", "traffic_percentage": 20, "is_control": True},
        {"name": "B", "traffic_percentage": 30},
        {"name": "C", "traffic_percentage": 50},
    ])
    test = service.create_test(spec)
    service.transition_status(test.id, "running")

    assignments = service.assign_many(test.id, [f"v{i}" for i in range(20000)])
    names = {v.id: v.name for v in test.variants}
    counts = {"Control": 0, "B": 0, "C": 0}
    for variant_id in assignments.values():
        counts[names[variant_id]] += 1

    assert counts["Control"] / 20000 == pytest.approx(0.20, abs=0.015)
    assert counts["B"] / 20000 == pytest.approx(0.30, abs=0.015)
    assert counts["C"] / 20000 == pytest.approx(0.50, abs=0.015)


def test_assign_not_running_returns_none(service, spec_factory):
    """Draft and paused tests assign nobody."""
    test = service.create_test(spec_factory())
    assert service.assign(test.id, "visitor_1") is None

    service.transition_status(test.id, "running")
    service.transition_status(test.id, "paused")
    assert service.assign(test.id, "visitor_1") is None


def test_excluded_visitors_not_counted(service, storage, spec_factory):
    spec = spec_factory(traffic_rules={
        "exclusion_rules": ["bot_traffic", "internal_users"],
        "geographic_restrictions": ["US", "CA"],
    })
    test = service.create_test(spec)
    service.transition_status(test.id, "running")

    assert service.assign(test.id, "bot", {"country": "US", "user_agent": "Googlebot/2.1"}) is None
    assert service.assign(test.id, "staff", {"country": "US", "is_internal": True}) is None
    assert service.assign(test.id, "abroad", {"country": "FR"}) is None
    assert service.assign(test.id, "ok", {"country": "CA", "user_agent": "Mozilla/5.0"}) is not None

    snapshot = storage.load_latest_aggregates(test.id)
    assert sum(a.assigned_count for a in snapshot.variants.values()) == 1


def test_exclusion_reason_targeting_lists():
    rules = TrafficRules(device_targeting=["mobile"], user_segments=["new"])
    assert exclusion_reason(rules, {"device": "desktop", "segment": "new"}) == "device"
    assert exclusion_reason(rules, {"device": "mobile", "segment": "returning"}) == "segment"
    assert exclusion_reason(rules, {"device": "mobile", "segment": "new"}) is None
    assert exclusion_reason(TrafficRules(), None) is None


def test_ledger_keeps_visitors_through_reallocation(service, running_test):
    """Visitors assigned before a reallocation keep their variant."""
    visitors = [f"v{i}" for i in range(500)]
    before = service.assign_many(running_test.id, visitors)

    control, treatment = running_test.active_variants()
    service.reallocate_traffic(running_test.id, {control.id: 10, treatment.id: 90})

    after = service.assign_many(running_test.id, visitors)
    assert after == before

    test = service.get_test(running_test.id)
    fresh = allocate(test, "never-seen-before")
    assert fresh is not None


def test_assigned_count_increments_once(service, storage, running_test):
    for _ in range(5):
        service.assign(running_test.id, "same_visitor")
    snapshot = storage.load_latest_aggregates(running_test.id)
    assert sum(a.assigned_count for a in snapshot.variants.values()) == 1


def test_non_sticky_assignment_follows_new_weights(service, storage, spec_factory):
    """Without sticky assignments visitors are re-bucketed under current weights."""
    test = service.create_test(spec_factory(advanced_settings={"sticky_assignments": False}))
    service.transition_status(test.id, "running")
    control, treatment = test.active_variants()

    visitors = [f"v{i}" for i in range(200)]
    service.assign_many(test.id, visitors)
    service.reallocate_traffic(test.id, {control.id: 0, treatment.id: 100})
    after = service.assign_many(test.id, visitors)

    assert set(after.values()) == {treatment.id}
    snapshot = storage.load_latest_aggregates(test.id)
    assert snapshot.for_variant(control.id).assigned_count == 0
    assert snapshot.for_variant(treatment.id).assigned_count == 200
