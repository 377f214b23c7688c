"""
Statistical engine: turn an aggregate snapshot into Result rows.

One Result per (declared metric, non-control variant), each comparing the
variant with control. Frequentist (fixed horizon or O'Brien-Fleming
sequential) or Bayesian depending on the test's advanced settings. Every
run reads a single consistent snapshot and appends new rows; earlier rows
are never touched.
"""

import logging
import math
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from .config import EngineSettings, get_settings
from .errors import IllegalStateError
from .schema import (
    ABTest,
    AggregateSnapshot,
    ExperimentStatus,
    MetricType,
    Result,
    Variant,
    new_id,
    utcnow,
)
from .stats import (
    AlphaSpendingPlan,
    beta_binomial_comparison,
    check_srm,
    mde_continuous,
    mde_proportion,
    normal_comparison,
    power_continuous,
    power_proportion,
    proportions_z_test,
    repeated_peek_warning,
    sample_size_continuous,
    sample_size_proportion,
    welch_t_test,
)
from .storage import Storage

logger = logging.getLogger(__name__)


@dataclass
class AnalysisRun:
    """Everything one evaluation cycle produced."""
    run_id: str
    test_id: str
    configuration_version: int
    results: List[Result]
    srm_passed: bool = True
    srm_p_value: Optional[float] = None
    warnings: List[str] = field(default_factory=list)
    computed_at: datetime = field(default_factory=utcnow)

    def primary_results(self, primary_metric: str) -> List[Result]:
        return [r for r in self.results if r.metric_name == primary_metric]

    def to_dict(self) -> Dict:
        return {
            "run_id": self.run_id,
            "test_id": self.test_id,
            "configuration_version": self.configuration_version,
            "srm_passed": self.srm_passed,
            "srm_p_value": self.srm_p_value,
            "warnings": list(self.warnings),
            "computed_at": self.computed_at.isoformat(),
            "results": [r.to_dict() for r in self.results],
        }


@dataclass
class _ArmData:
    n: int
    successes: int
    mean: float
    variance: float


def _arm_data(test: ABTest, snapshot: AggregateSnapshot, variant: Variant, metric_name: str) -> _ArmData:
    agg = snapshot.for_variant(variant.id)
    metric = agg.metric(metric_name)
    if test.metric_type(metric_name) == MetricType.BINARY:
        n = agg.assigned_count
        successes = min(metric.converters, n)
        rate = successes / n if n else 0.0
        return _ArmData(n=n, successes=successes, mean=rate, variance=rate * (1 - rate))
    return _ArmData(n=metric.count, successes=0, mean=metric.mean, variance=metric.variance)


class StatisticalEngine:
    """Computes and stores Results for a test."""

    def __init__(self, storage: Storage, settings: Optional[EngineSettings] = None):
        self.storage = storage
        self.settings = settings or get_settings()
        self._plans: Dict[Tuple[str, str, str], AlphaSpendingPlan] = {}
        self._plans_lock = threading.Lock()

    def _plan_for(self, test: ABTest, metric_name: str, variant_id: str) -> AlphaSpendingPlan:
        key = (test.id, metric_name, variant_id)
        with self._plans_lock:
            plan = self._plans.get(key)
            if plan is None:
                plan = self._plans[key] = AlphaSpendingPlan(test.alpha)
                # Resume from looks persisted by an earlier process.
                previous = [
                    r for r in self.storage.load_results(test.id)
                    if r.metric_name == metric_name and r.variant_id == variant_id
                    and r.information_fraction is not None
                ]
                if previous:
                    latest = max(previous, key=lambda r: r.computed_at)
                    plan.look(latest.information_fraction, 0.0)
            return plan

    def _required(
        self,
        metric_type: MetricType,
        control: _ArmData,
        treatment: _ArmData,
        effect: float,
        alpha: float,
        power: float,
    ) -> Optional[int]:
        if effect == 0:
            return None
        if metric_type == MetricType.BINARY:
            return sample_size_proportion(control.mean, effect, alpha, power)
        pooled_std = math.sqrt((control.variance + treatment.variance) / 2)
        return sample_size_continuous(pooled_std, effect, alpha, power)

    def compare(
        self,
        test: ABTest,
        snapshot: AggregateSnapshot,
        metric_name: str,
        treatment: Variant,
        run_id: str,
        computed_at: datetime,
    ) -> Result:
        """Compare one treatment with control on one metric."""
        metric_type = test.metric_type(metric_name)
        control_data = _arm_data(test, snapshot, test.control, metric_name)
        treatment_data = _arm_data(test, snapshot, treatment, metric_name)
        alpha = test.alpha
        conf = test.confidence_level
        advanced = test.configuration.advanced_settings
        mde = test.configuration.success_criteria.minimum_effect_size
        n_min = min(control_data.n, treatment_data.n)

        if metric_type == MetricType.BINARY:
            cmp = proportions_z_test(
                control_data.n, control_data.successes,
                treatment_data.n, treatment_data.successes,
                conf,
            )
        else:
            cmp = welch_t_test(
                control_data.n, control_data.mean, control_data.variance,
                treatment_data.n, treatment_data.mean, treatment_data.variance,
                conf,
            )

        required = advanced.planned_sample_size or self._required(
            metric_type, control_data, treatment_data, mde, alpha, advanced.power_analysis
        )
        required_observed = self._required(
            metric_type, control_data, treatment_data, cmp.lift, alpha, advanced.power_analysis
        )
        power_effect = mde or cmp.lift
        if metric_type == MetricType.BINARY:
            achieved = power_proportion(control_data.mean, power_effect, n_min, alpha)
            detectable = mde_proportion(control_data.mean, n_min, alpha, advanced.power_analysis)
        else:
            pooled_std = math.sqrt((control_data.variance + treatment_data.variance) / 2)
            achieved = power_continuous(pooled_std, power_effect, n_min, alpha)
            detectable = mde_continuous(pooled_std, n_min, alpha, advanced.power_analysis)

        p_value: Optional[float] = cmp.p_value
        ci = (cmp.ci_low, cmp.ci_high)
        probability = None
        expected_loss = None
        information_fraction = None
        alpha_spent = None

        if advanced.bayesian_analysis:
            if metric_type == MetricType.BINARY:
                bayes = beta_binomial_comparison(
                    control_data.n, control_data.successes,
                    treatment_data.n, treatment_data.successes,
                    conf,
                    draws=self.settings.monte_carlo_draws,
                    seed=self.settings.monte_carlo_seed,
                )
            else:
                bayes = normal_comparison(
                    control_data.n, control_data.mean, control_data.variance,
                    treatment_data.n, treatment_data.mean, treatment_data.variance,
                    conf,
                )
            probability = bayes.probability_to_beat_control
            expected_loss = bayes.expected_loss
            ci = bayes.credible_interval
            p_value = None
            underpowered = required is not None and n_min < required
            decisive = probability >= conf or probability <= 1 - conf
            significant = decisive and not underpowered
        elif advanced.sequential_testing:
            floor = advanced.min_sample_size or self.settings.sequential_min_sample_size
            # Without a planned horizon, the sample needed for the observed effect stands in.
            horizon = required or required_observed
            information_fraction = n_min / horizon if horizon else 0.0
            look = self._plan_for(test, metric_name, treatment.id).look(information_fraction, cmp.statistic)
            information_fraction = look.information_fraction
            alpha_spent = look.cumulative_alpha
            underpowered = n_min < floor
            significant = look.crossed and not underpowered
        else:
            underpowered = required is not None and n_min < required
            significant = cmp.p_value < alpha and not underpowered

        return Result(
            test_id=test.id,
            variant_id=treatment.id,
            metric_name=metric_name,
            metric_type=metric_type,
            sample_size=treatment_data.n,
            control_sample_size=control_data.n,
            point_estimate=float(cmp.treatment_estimate),
            control_estimate=float(cmp.control_estimate),
            effect_size=float(cmp.lift),
            relative_lift=cmp.lift_pct / 100 if cmp.lift_pct is not None else None,
            confidence_interval=(float(ci[0]), float(ci[1])),
            p_value=p_value,
            statistical_significance=bool(significant),
            underpowered=bool(underpowered),
            required_sample_size=required,
            required_for_observed_effect=required_observed,
            configuration_version=test.version,
            run_id=run_id,
            probability_to_beat_control=probability,
            expected_loss=expected_loss,
            achieved_power=achieved,
            minimum_detectable_effect=detectable,
            information_fraction=information_fraction,
            alpha_spent=alpha_spent,
            computed_at=computed_at,
        )

    def compute(self, test: ABTest, snapshot: AggregateSnapshot) -> AnalysisRun:
        """Compute every Result for one snapshot without writing anything."""
        run_id = new_id()
        computed_at = utcnow()
        metric_names = [m.name for m in test.metrics]
        results = [
            self.compare(test, snapshot, metric_name, treatment, run_id, computed_at)
            for metric_name in metric_names
            for treatment in test.treatments()
        ]
        run = AnalysisRun(
            run_id=run_id,
            test_id=test.id,
            configuration_version=test.version,
            results=results,
            computed_at=computed_at,
        )

        variants = test.active_variants()
        observed = [snapshot.for_variant(v.id).assigned_count for v in variants]
        if sum(observed) > 0:
            passed, _, srm_p = check_srm(observed, [v.traffic_percentage for v in variants])
            run.srm_passed = passed
            run.srm_p_value = srm_p
            if not passed:
                run.warnings.append(
                    f"Sample ratio mismatch (p={srm_p:.4g}): assignments {observed} "
                    f"deviate from configured traffic; results may be biased."
                )
                logger.warning(f"SRM detected for test {test.id}: observed={observed}, p={srm_p:.4g}")

        advanced = test.configuration.advanced_settings
        if not advanced.sequential_testing and not advanced.bayesian_analysis:
            n_analyses = len({r.run_id for r in self.storage.load_results(test.id)}) + 1
            for result in run.primary_results(test.configuration.success_criteria.primary_metric):
                if result.required_sample_size:
                    n_observed = min(result.sample_size, result.control_sample_size)
                    warn, message = repeated_peek_warning(result.required_sample_size, n_observed, n_analyses)
                    if warn and message not in run.warnings:
                        run.warnings.append(message)
        return run

    def run(self, test_id: str) -> AnalysisRun:
        """
        Analyse a test from a fresh snapshot and append the Results.

        Paused, completed and archived tests can still be analysed over the
        data already collected.
        """
        test = self.storage.load_test(test_id)
        if test.status == ExperimentStatus.DRAFT:
            raise IllegalStateError(f"Test {test_id} is a draft; nothing to analyse")

        snapshot = self.storage.load_latest_aggregates(test_id)
        run = self.compute(test, snapshot)
        for result in run.results:
            self.storage.save_result(result)

        significant = sum(1 for r in run.results if r.statistical_significance)
        logger.info(
            f"Analysis {run.run_id} for test {test_id}: {len(run.results)} results, "
            f"{significant} significant (config v{run.configuration_version})"
        )
        return run


def latest_results(results: List[Result]) -> List[Result]:
    """Most recent Result per (variant, metric)."""
    latest: Dict[Tuple[str, str], Result] = {}
    for result in results:
        key = (result.variant_id, result.metric_name)
        if key not in latest or result.computed_at >= latest[key].computed_at:
            latest[key] = result
    return list(latest.values())
