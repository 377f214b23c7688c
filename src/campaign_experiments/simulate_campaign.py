"""
Campaign traffic simulator.

Drives a running test through the service the way real traffic would:
visitors arrive, get assigned, and a share of them convert (or report a
continuous value) according to per-variant true rates. Seeded, so the same
call always produces the same events.

Returns a run summary and, optionally, the per-visitor table.
"""

import logging
from typing import Dict, List, Optional

import numpy as np
import pandas as pd

from .schema import MetricType

logger = logging.getLogger(__name__)

SIMULATOR_SEED = 42

DEFAULT_SEGMENTS = {"device": ["desktop", "mobile", "tablet"]}


def simulate_traffic(
    service,
    test_id: str,
    true_rates: Dict[str, float],
    n_visitors: int = 2000,
    metric_name: Optional[str] = None,
    value_std: float = 1.0,
    segments: Optional[Dict[str, List[str]]] = None,
    context: Optional[Dict] = None,
    random_seed: int = SIMULATOR_SEED,
    return_frame: bool = False,
) -> Dict:
    """
    Simulate visitors for a running test.

    Args:
        service: ExperimentService
        test_id: Running test
        true_rates: Variant name -> true conversion rate (binary metric) or
            true mean (continuous metric)
        n_visitors: Visitors to generate
        metric_name: Metric to report (default: primary metric)
        value_std: Standard deviation of continuous values
        segments: Metadata key -> possible values, drawn uniformly per visitor
        context: Assignment context shared by every visitor
        random_seed: Random seed for reproducibility
        return_frame: Include the per-visitor DataFrame under "visitors"

    Returns:
        Dict with n_visitors, n_assigned, per-variant counts and events_written
    """
    rng = np.random.default_rng(random_seed)
    test = service.get_test(test_id)
    metric_name = metric_name or test.configuration.success_criteria.primary_metric
    binary = test.metric_type(metric_name) == MetricType.BINARY
    segments = DEFAULT_SEGMENTS if segments is None else segments

    names = {v.id: v.name for v in test.variants}
    missing = [v.name for v in test.active_variants() if v.name not in true_rates]
    if missing:
        raise ValueError(f"true_rates missing variants: {missing}")

    rows = []
    batch = []
    for i in range(n_visitors):
        visitor_id = f"{test_id[:8]}-visitor-{i:06d}"
        variant_id = service.assign(test_id, visitor_id, context)
        if variant_id is None:
            continue

        metadata = {key: str(rng.choice(values)) for key, values in segments.items()}
        rate = true_rates[names[variant_id]]
        if binary:
            value = 1.0 if rng.random() < rate else 0.0
        else:
            value = float(rng.normal(rate, value_std))

        # Non-converters report 0 so segment breakdowns see every visitor.
        batch.append({
            "test_id": test_id,
            "variant_id": variant_id,
            "visitor_id": visitor_id,
            "metric_name": metric_name,
            "value": value,
            "metadata": metadata,
        })
        rows.append({"visitor_id": visitor_id, "variant": names[variant_id], "value": value, **metadata})

    acks = service.record_events(batch) if batch else []
    visitors = pd.DataFrame(rows, columns=["visitor_id", "variant", "value", *segments])

    counts = visitors["variant"].value_counts().to_dict() if not visitors.empty else {}
    summary = {
        "test_id": test_id,
        "metric_name": metric_name,
        "n_visitors": n_visitors,
        "n_assigned": len(visitors),
        "per_variant": {name: int(counts.get(name, 0)) for name in true_rates},
        "events_written": len(acks),
        "random_seed": random_seed,
    }
    if not visitors.empty:
        summary["observed"] = visitors.groupby("variant")["value"].mean().round(4).to_dict()

    logger.info(f"Simulation complete: {summary}")
    if return_frame:
        summary["visitors"] = visitors
    return summary
