"""
Segmented analysis for experiments.

Breakdown of a metric by an event-metadata key (device, country, channel...).
Per-segment lift per treatment + multiple-comparison control
(Benjamini-Hochberg FDR optional). Works on the raw event log, not the
running aggregates, so it is an offline/diagnostic view.
"""

from dataclasses import dataclass
from typing import Iterable, List, Optional

import numpy as np
import pandas as pd

from ..schema import MetricEvent
from .hypothesis_tests import proportions_z_test, welch_t_test

EVENT_COLUMNS = [
    "event_id",
    "test_id",
    "variant_id",
    "visitor_id",
    "session_id",
    "metric_name",
    "metric_value",
    "timestamp",
]

MIN_SEGMENT_SIZE = 10


@dataclass
class SegmentResult:
    """Per-segment analysis result."""
    segment_name: str
    segment_value: str
    variant_id: str
    control_n: int
    treatment_n: int
    control_mean: float
    treatment_mean: float
    lift: float
    lift_pct: Optional[float]
    p_value: float
    ci_low: float
    ci_high: float
    significant: bool


def events_to_frame(events: Iterable[MetricEvent]) -> pd.DataFrame:
    """Flatten metric events into a DataFrame, one column per metadata key."""
    rows = []
    for evt in events:
        row = {
            "event_id": evt.id,
            "test_id": evt.test_id,
            "variant_id": evt.variant_id,
            "visitor_id": evt.visitor_id,
            "session_id": evt.session_id,
            "metric_name": evt.metric_name,
            "metric_value": evt.metric_value,
            "timestamp": evt.timestamp,
        }
        for key, value in (evt.metadata or {}).items():
            row.setdefault(key, value)
        rows.append(row)
    if not rows:
        return pd.DataFrame(columns=EVENT_COLUMNS)
    df = pd.DataFrame(rows)
    df["timestamp"] = pd.to_datetime(df["timestamp"], utc=True)
    return df


def segment_analysis(
    df: pd.DataFrame,
    segment_col: str,
    metric_name: str,
    control_variant_id: str,
    treatment_variant_ids: List[str],
    metric_type: str = "binary",
    ci_level: float = 0.95,
    alpha: float = 0.05,
    apply_fdr: bool = False,
) -> List[SegmentResult]:
    """
    Compute per-segment analysis.

    Binary metrics are reduced to one 0/1 outcome per visitor (did the visitor
    convert within the segment), so the denominator is the visitors that
    reported the metric at all, 0 included. Continuous metrics keep every
    event value.

    Args:
        df: Event frame from events_to_frame
        segment_col: Metadata column defining segments
        metric_name: Metric to analyse
        control_variant_id: Control variant id
        treatment_variant_ids: Treatment variant ids to compare against control
        metric_type: 'binary' or 'continuous'
        ci_level: Confidence level
        alpha: Significance threshold
        apply_fdr: Apply Benjamini-Hochberg FDR correction

    Returns:
        List of SegmentResult
    """
    if df.empty or segment_col not in df.columns:
        return []

    sub_metric = df[df["metric_name"] == metric_name]
    if metric_type == "binary":
        sub_metric = (
            sub_metric.groupby(["variant_id", "visitor_id", segment_col], as_index=False)["metric_value"]
            .max()
        )

    results = []

    for seg_val in sub_metric[segment_col].dropna().unique():
        sub = sub_metric[sub_metric[segment_col] == seg_val]
        ctrl = sub[sub["variant_id"] == control_variant_id]["metric_value"]
        n_c = len(ctrl)

        for treatment_id in treatment_variant_ids:
            treat = sub[sub["variant_id"] == treatment_id]["metric_value"]
            n_t = len(treat)

            if n_c < MIN_SEGMENT_SIZE or n_t < MIN_SEGMENT_SIZE:
                continue

            if metric_type == "binary":
                cmp = proportions_z_test(
                    n_c, int((ctrl > 0).sum()), n_t, int((treat > 0).sum()), ci_level
                )
            else:
                cmp = welch_t_test(
                    n_c, float(ctrl.mean()), float(ctrl.var(ddof=1)),
                    n_t, float(treat.mean()), float(treat.var(ddof=1)),
                    ci_level,
                )

            results.append(SegmentResult(
                segment_name=segment_col,
                segment_value=str(seg_val),
                variant_id=treatment_id,
                control_n=n_c,
                treatment_n=n_t,
                control_mean=float(cmp.control_estimate),
                treatment_mean=float(cmp.treatment_estimate),
                lift=float(cmp.lift),
                lift_pct=cmp.lift_pct,
                p_value=float(cmp.p_value),
                ci_low=float(cmp.ci_low),
                ci_high=float(cmp.ci_high),
                significant=cmp.p_value < alpha,
            ))

    if apply_fdr and results:
        pvals = [r.p_value for r in results]
        _, pvals_adj = _benjamini_hochberg(pvals, alpha)
        for r, adj_p in zip(results, pvals_adj):
            r.significant = adj_p < alpha

    return results


def segment_frame(results: List[SegmentResult]) -> pd.DataFrame:
    """Tabular view of segment results."""
    return pd.DataFrame([r.__dict__ for r in results])


def _benjamini_hochberg(p_values: List[float], alpha: float) -> tuple:
    """Benjamini-Hochberg FDR correction."""
    p_arr = np.array(p_values)
    n = len(p_arr)
    order = np.argsort(p_arr)
    p_sorted = p_arr[order]

    # BH critical values
    crit = (np.arange(1, n + 1) / n) * alpha
    below = p_sorted <= crit
    rejected_sorted = np.zeros(n, dtype=bool)
    if below.any():
        rejected_sorted[: np.max(np.nonzero(below)[0]) + 1] = True

    # Adjusted p-values: running minimum from the largest rank down
    scaled = p_sorted * n / np.arange(1, n + 1)
    p_adj = np.minimum(np.minimum.accumulate(scaled[::-1])[::-1], 1.0)

    inv_order = np.argsort(order)
    return rejected_sorted[inv_order], list(p_adj[inv_order])

