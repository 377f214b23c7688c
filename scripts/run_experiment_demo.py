#!/usr/bin/env python3
"""
Run full experiment demo: design -> start -> simulate traffic -> analyze -> recommend.

Prints the latest results, the segment breakdown and the recommendation.
"""

import json
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT))

DEMO_TEST = {
    "name": "Checkout button copy",
    "hypothesis": "Action-oriented copy lifts checkout conversion",
    "test_type": "binary-conversion",
    "confidence_level": 0.95,
    "variants": [
        {"name": "Control", "traffic_percentage": 50, "is_control": True, "content": {"label": "Buy"}},
        {"name": "Treatment", "traffic_percentage": 50, "content": {"label": "Get it now"}},
    ],
    "metrics": ["conversion"],
    "configuration": {
        "success_criteria": {"primary_metric": "conversion", "minimum_effect_size": 0.04},
        "traffic_rules": {"exclusion_rules": ["bot_traffic", "internal_users"]},
        "advanced_settings": {"power_analysis": 0.8},
    },
}


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")

    from src.campaign_experiments.service import ExperimentService
    from src.campaign_experiments.simulate_campaign import simulate_traffic

    service = ExperimentService()

    print("1. Creating and starting test...")
    test = service.create_test(DEMO_TEST)
    service.transition_status(test.id, "running")

    print("2. Simulating traffic...")
    summary = simulate_traffic(
        service,
        test.id,
        true_rates={"Control": 0.20, "Treatment": 0.26},
        n_visitors=6000,
    )
    print(f"   Assigned: {summary['per_variant']}, events: {summary['events_written']}")

    print("3. Running analysis...")
    run, recommendation = service.run_analysis(test.id)
    for result in run.results:
        print(
            f"   {result.metric_name}: {result.control_estimate:.4f} -> {result.point_estimate:.4f} "
            f"(p={result.p_value:.4f}, significant={result.statistical_significance}, "
            f"underpowered={result.underpowered})"
        )

    print("4. Segment breakdown by device...")
    segments = service.segment_breakdown(test.id, "device")
    if not segments.empty:
        print(segments[["segment_value", "control_mean", "treatment_mean", "p_value", "significant"]].to_string(index=False))

    print("\n[OK] Recommendation:")
    print(json.dumps(recommendation.to_dict(), indent=2))


if __name__ == "__main__":
    main()
