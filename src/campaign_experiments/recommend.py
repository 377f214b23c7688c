"""
Recommendation engine: turn one analysis run into an actionable outcome.

Decision order (primary metric only):
    1. declare_winner      significant, powered and at least the minimum effect
    2. stop_no_difference  every comparison reached its planned sample, none significant
    3. insufficient_power  the observed effect needs more data than collected
    4. continue            otherwise

A winner is never declared from an underpowered Result. Early stopping
only authorises completion once the deciding Results crossed a sequential
boundary or reached their planned sample. Human-readable text is rendered
with Jinja2.
"""

import logging
from datetime import datetime
from typing import List, Optional, Tuple

from jinja2 import Environment, StrictUndefined

from .analyze import AnalysisRun
from .schema import (
    ABTest,
    ExperimentStatus,
    MetricDefinition,
    Recommendation,
    RecommendationType,
    Result,
    utcnow,
)

logger = logging.getLogger(__name__)

_env = Environment(undefined=StrictUndefined, trim_blocks=True, lstrip_blocks=True)
_env.filters["pct"] = lambda value: "n/a" if value is None else f"{value * 100:+.1f}%"
_env.filters["num"] = lambda value: "n/a" if value is None else f"{value:.4g}"

TEMPLATES = {
    RecommendationType.DECLARE_WINNER: _env.from_string(
        "{% if is_control %}"
        "Keep {{ variant }}: every treatment performs worse on {{ metric }}."
        "{% else %}"
        "Roll out {{ variant }}: {{ metric }} {{ estimate|num }} vs control {{ control|num }} "
        "({{ lift|pct }} relative)."
        "{% if loss is not none %} Expected loss if wrong {{ loss|num }}.{% endif %}"
        "{% endif %}"
        " Confidence {{ (score * 100)|round(1) }}%."
        "{% if early %} Stopped early at {{ (fraction * 100)|round(0) }}% of the planned sample.{% endif %}"
    ),
    RecommendationType.STOP_NO_DIFFERENCE: _env.from_string(
        "No detectable difference on {{ metric }} after reaching the planned sample "
        "of {{ planned }} per arm. Stop the test and keep the control."
    ),
    RecommendationType.INSUFFICIENT_POWER: _env.from_string(
        "Not enough data to detect the effect observed on {{ metric }}: "
        "{{ observed }} per arm collected, about {{ needed }} needed. "
        "Extend the test or accept a larger minimum effect."
    ),
    RecommendationType.CONTINUE: _env.from_string(
        "Keep collecting data on {{ metric }}"
        "{% if planned %} ({{ observed }} of {{ planned }} planned per arm){% endif %}."
        "{% if held %} A result is available but the test runs until {{ end_date }}.{% endif %}"
    ),
}

_CONCLUSIVE = (RecommendationType.DECLARE_WINNER, RecommendationType.STOP_NO_DIFFERENCE)


def _favourable(result: Result, metric: MetricDefinition) -> float:
    """Effect in the direction the metric wants (positive is good)."""
    return result.effect_size if metric.higher_is_better else -result.effect_size


def _confidence(result: Result, metric: MetricDefinition, treatment_better: bool = True) -> float:
    """
    1 - p, or the posterior probability that the favoured side wins.

    `treatment_better=False` scores a control win, so the Bayesian
    probability is taken with respect to control.
    """
    prob = result.probability_to_beat_control
    if prob is not None:
        return prob if metric.higher_is_better == treatment_better else 1 - prob
    if result.p_value is None:
        return 0.0
    return 1 - result.p_value


def _reached_horizon(result: Result) -> bool:
    return (
        result.required_sample_size is not None
        and min(result.sample_size, result.control_sample_size) >= result.required_sample_size
    )


def _stop_authorised(result: Result) -> bool:
    """A crossed sequential boundary or a fully powered fixed-horizon sample."""
    if result.information_fraction is not None and result.statistical_significance:
        return True
    return _reached_horizon(result)


def _clamp(value: float) -> float:
    return min(max(float(value), 0.0), 1.0)


class RecommendationEngine:
    """Derives one Recommendation per analysis run."""

    def _winner(
        self, test: ABTest, primary: List[Result], metric: MetricDefinition
    ) -> Optional[Tuple[Optional[Result], List[Result]]]:
        """
        Winning Result (None when control wins) and the Results that decided it.

        Besides significance at the test's confidence_level, the confidence
        score must reach success_criteria.minimum_confidence. That threshold
        defaults to the confidence_level; set it higher for a stricter bar.
        """
        criteria = test.configuration.success_criteria
        mde = criteria.minimum_effect_size
        decisive = [r for r in primary if r.statistical_significance and not r.underpowered]
        winners = [
            r for r in decisive
            if _favourable(r, metric) > 0 and _favourable(r, metric) >= mde
            and _confidence(r, metric) >= criteria.minimum_confidence
        ]
        if winners:
            best = max(winners, key=lambda r: (_favourable(r, metric), _confidence(r, metric)))
            return best, [best]

        # Control wins only if every treatment is materially worse.
        losers = [
            r for r in decisive
            if _favourable(r, metric) < 0 and -_favourable(r, metric) >= mde
            and _confidence(r, metric, treatment_better=False) >= criteria.minimum_confidence
        ]
        if primary and len(losers) == len(primary):
            return None, losers
        return None

    def recommend(
        self, test: ABTest, run: AnalysisRun, now: Optional[datetime] = None
    ) -> Recommendation:
        """
        Build the recommendation for an analysis run.

        Args:
            test: Test the run belongs to
            run: Output of StatisticalEngine.run / compute
            now: Clock override for end-date checks

        Returns:
            Recommendation (not persisted)
        """
        now = now or utcnow()
        criteria = test.configuration.success_criteria
        advanced = test.configuration.advanced_settings
        metric = test.get_metric(criteria.primary_metric)
        primary = run.primary_results(criteria.primary_metric)

        rec_type = RecommendationType.CONTINUE
        target: Optional[str] = None
        deciding: List[Result] = []
        score = max((_confidence(r, metric) for r in primary), default=0.0)
        context = {"metric": metric.name}

        n_observed = min((min(r.sample_size, r.control_sample_size) for r in primary), default=0)
        planned = max((r.required_sample_size or 0 for r in primary), default=0) or None
        context.update(observed=n_observed, planned=planned)

        winner = self._winner(test, primary, metric)
        if winner is not None:
            best, deciding = winner
            rec_type = RecommendationType.DECLARE_WINNER
            if best is None:
                target = test.control.id
                score = min(_confidence(r, metric, treatment_better=False) for r in deciding)
                context.update(variant=test.control.name, is_control=True)
            else:
                target = best.variant_id
                score = _confidence(best, metric)
                context.update(
                    variant=test.get_variant(best.variant_id).name,
                    is_control=False,
                    estimate=best.point_estimate,
                    control=best.control_estimate,
                    lift=best.relative_lift,
                    loss=best.expected_loss,
                )
                if best.information_fraction is not None:
                    context.update(early=best.information_fraction < 1, fraction=best.information_fraction)
        elif primary and all(_reached_horizon(r) and not r.statistical_significance for r in primary):
            rec_type = RecommendationType.STOP_NO_DIFFERENCE
            deciding = primary
        else:
            short = [
                r for r in primary
                if r.required_for_observed_effect is None
                or min(r.sample_size, r.control_sample_size) < r.required_for_observed_effect
            ]
            if short and not any(r.statistical_significance for r in primary):
                rec_type = RecommendationType.INSUFFICIENT_POWER
                needed = [r.required_for_observed_effect for r in short if r.required_for_observed_effect]
                context["needed"] = max(needed) if needed else "an unbounded number"

        held = False
        if rec_type in _CONCLUSIVE and not advanced.early_stopping:
            if test.end_date is not None and now < test.end_date:
                logger.info(
                    f"Test {test.id}: {rec_type.value} held until end date {test.end_date.isoformat()}"
                )
                rec_type = RecommendationType.CONTINUE
                target = None
                held = True

        recommended_status = None
        if rec_type in _CONCLUSIVE and advanced.early_stopping and test.status == ExperimentStatus.RUNNING:
            if all(_stop_authorised(r) for r in deciding):
                recommended_status = ExperimentStatus.COMPLETED
            else:
                logger.info(
                    f"Test {test.id}: {rec_type.value} without a crossed boundary or planned sample; "
                    f"early stop not authorised"
                )

        context.setdefault("early", False)
        context.setdefault("fraction", 1.0)
        context.update(
            score=_clamp(score),
            held=held,
            end_date=test.end_date.date().isoformat() if test.end_date else "",
        )
        content = TEMPLATES[rec_type].render(**context)

        recommendation = Recommendation(
            test_id=test.id,
            type=rec_type,
            confidence_score=_clamp(score),
            target_variant_id=target,
            content=content,
            run_id=run.run_id,
            recommended_status=recommended_status,
            warnings=tuple(run.warnings),
        )
        logger.info(
            f"Recommendation for test {test.id}: {rec_type.value} "
            f"(confidence={recommendation.confidence_score:.3f}, target={target})"
        )
        return recommendation
