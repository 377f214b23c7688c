"""
Service facade: the operations exposed to callers (an HTTP layer, a job
runner, the demo script).

Wires the registry, assignment, ingestion, statistical and recommendation
components over one storage and one scheduler. Errors raised by the
components propagate unchanged.
"""

import logging
import threading
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

import pandas as pd

from .analyze import AnalysisRun, StatisticalEngine, latest_results
from .assignment import AssignmentService
from .config import EngineSettings, get_settings
from .errors import ValidationError
from .ingestion import MetricsIngestion
from .recommend import RecommendationEngine
from .registry import ExperimentRegistry
from .scheduling import AnalysisJob, ScheduledHandle, Scheduler, ThreadScheduler
from .schema import (
    ABTest,
    Ack,
    ExperimentStatus,
    MetricType,
    Recommendation,
    Result,
    Variant,
)
from .stats import build_arm_stats, events_to_frame, segment_analysis, segment_frame
from .storage import InMemoryStorage, Storage

logger = logging.getLogger(__name__)


class ExperimentService:
    """Entry point for experiment design, traffic, data and analysis."""

    def __init__(
        self,
        storage: Optional[Storage] = None,
        scheduler: Optional[Scheduler] = None,
        settings: Optional[EngineSettings] = None,
    ):
        self.storage = storage or InMemoryStorage()
        self.scheduler = scheduler or ThreadScheduler()
        self.settings = settings or get_settings()

        self.registry = ExperimentRegistry(self.storage, self.settings)
        self.assignment = AssignmentService(self.storage)
        self.ingestion = MetricsIngestion(self.storage)
        self.analysis = StatisticalEngine(self.storage, self.settings)
        self.recommender = RecommendationEngine()

        self._periodic: Dict[str, ScheduledHandle] = {}
        self._periodic_lock = threading.Lock()

    # Registry

    def create_test(self, spec: Union[Dict[str, Any], ABTest]) -> ABTest:
        return self.registry.create_test(spec)

    def get_test(self, test_id: str) -> ABTest:
        return self.registry.get_test(test_id)

    def list_tests(self, status: Optional[Union[str, ExperimentStatus]] = None) -> List[ABTest]:
        return self.registry.list_tests(status)

    def transition_status(self, test_id: str, status: Union[str, ExperimentStatus]) -> ABTest:
        test = self.registry.transition_status(test_id, status)
        if test.status in (ExperimentStatus.COMPLETED, ExperimentStatus.ARCHIVED):
            self.stop_periodic_analysis(test_id)
        return test

    def update_configuration(
        self,
        test_id: str,
        patch: Dict[str, Dict[str, Any]],
        expected_version: Optional[int] = None,
    ) -> ABTest:
        return self.registry.update_configuration(test_id, patch, expected_version)

    def reallocate_traffic(
        self,
        test_id: str,
        percentages: Dict[str, float],
        expected_version: Optional[int] = None,
    ) -> ABTest:
        return self.registry.reallocate_traffic(test_id, percentages, expected_version)

    def add_variant(
        self,
        test_id: str,
        variant_spec: Dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> Variant:
        return self.registry.add_variant(test_id, variant_spec, expected_version)

    def remove_variant(
        self, test_id: str, variant_id: str, expected_version: Optional[int] = None
    ) -> ABTest:
        return self.registry.remove_variant(test_id, variant_id, expected_version)

    def clone_test(self, test_id: str, name: Optional[str] = None) -> ABTest:
        return self.registry.clone_test(test_id, name)

    # Traffic and data

    def assign(
        self, test_id: str, visitor_id: str, context: Optional[Dict[str, Any]] = None
    ) -> Optional[str]:
        return self.assignment.assign(test_id, visitor_id, context)

    def assign_many(
        self, test_id: str, visitor_ids: Iterable[str], context: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Optional[str]]:
        return self.assignment.assign_many(test_id, visitor_ids, context)

    def record_event(
        self,
        test_id: str,
        variant_id: str,
        visitor_id: str,
        metric_name: str,
        value: float,
        metadata: Optional[Dict[str, Any]] = None,
        session_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> Ack:
        return self.ingestion.record_event(
            test_id, variant_id, visitor_id, metric_name, value,
            metadata=metadata, session_id=session_id, timestamp=timestamp,
        )

    def record_events(self, batch: Iterable[Dict[str, Any]]) -> List[Ack]:
        return self.ingestion.record_events(batch)

    # Analysis

    def run_analysis(self, test_id: str) -> Tuple[AnalysisRun, Recommendation]:
        """
        Analyse a test now and store a recommendation for the run.

        Unlike the periodic job this never changes the test's status; a
        recommended completion is left to the caller.
        """
        run = self.analysis.run(test_id)
        test = self.registry.get_test(test_id)
        recommendation = self.recommender.recommend(test, run)
        self.storage.save_recommendation(recommendation)
        return run, recommendation

    def get_results(self, test_id: str, history: bool = False) -> List[Result]:
        """
        Results of a test.

        Args:
            test_id: Test identifier
            history: Return every stored row instead of the latest per comparison
        """
        self.registry.get_test(test_id)
        results = self.storage.load_results(test_id)
        if history:
            return sorted(results, key=lambda r: r.computed_at)
        return sorted(latest_results(results), key=lambda r: (r.metric_name, r.variant_id))

    def get_recommendations(self, test_id: str) -> List[Recommendation]:
        self.registry.get_test(test_id)
        return sorted(self.storage.load_recommendations(test_id), key=lambda r: r.generated_at)

    def start_periodic_analysis(self, test_id: str, interval: Optional[float] = None) -> ScheduledHandle:
        """Schedule an AnalysisJob every interval seconds (settings default)."""
        self.registry.get_test(test_id)
        interval = interval or self.settings.analysis_interval_seconds
        with self._periodic_lock:
            existing = self._periodic.pop(test_id, None)
            if existing is not None:
                existing.cancel()
            job = AnalysisJob(self, test_id, self.settings)
            handle = self.scheduler.schedule_periodic(interval, job)
            self._periodic[test_id] = handle
        logger.info(f"Periodic analysis of test {test_id} every {interval}s")
        return handle

    def stop_periodic_analysis(self, test_id: str) -> bool:
        with self._periodic_lock:
            handle = self._periodic.pop(test_id, None)
        if handle is None:
            return False
        handle.cancel()
        logger.info(f"Periodic analysis of test {test_id} stopped")
        return True

    def schedule_final_analysis(self, test_id: str, at: Optional[datetime] = None) -> ScheduledHandle:
        """One AnalysisJob at the given time, or at the test's end date."""
        test = self.registry.get_test(test_id)
        at = at or test.end_date
        if at is None:
            raise ValidationError(f"Test {test_id} has no end_date; pass an explicit time")
        return self.scheduler.schedule_once(at, AnalysisJob(self, test_id, self.settings))

    def segment_breakdown(
        self,
        test_id: str,
        segment_key: str,
        metric_name: Optional[str] = None,
        apply_fdr: bool = True,
    ) -> pd.DataFrame:
        """
        Per-segment comparison of every treatment with control.

        Segments come from the event metadata key segment_key. Returns an
        empty frame when no segment has enough data.
        """
        test = self.registry.get_test(test_id)
        metric_name = metric_name or test.configuration.success_criteria.primary_metric
        if test.get_metric(metric_name) is None:
            raise ValidationError(f"Unknown metric '{metric_name}' for test {test_id}")

        df = events_to_frame(self.storage.load_metric_events(test_id))
        metric_type = test.metric_type(metric_name)
        results = segment_analysis(
            df,
            segment_key,
            metric_name,
            test.control.id,
            [v.id for v in test.treatments()],
            metric_type="binary" if metric_type == MetricType.BINARY else "continuous",
            ci_level=test.confidence_level,
            alpha=test.alpha,
            apply_fdr=apply_fdr,
        )
        logger.info(f"Segment breakdown of test {test_id} by {segment_key}: {len(results)} rows")
        return segment_frame(results)

    def test_summary(self, test_id: str) -> Dict[str, Any]:
        """Status, traffic and latest primary-metric figures in one dict."""
        test = self.registry.get_test(test_id)
        snapshot = self.storage.load_latest_aggregates(test_id)
        primary = test.configuration.success_criteria.primary_metric
        latest = {
            r.variant_id: r for r in latest_results(self.storage.load_results(test_id))
            if r.metric_name == primary
        }
        recommendations = self.get_recommendations(test_id)
        binary = test.metric_type(primary) == MetricType.BINARY

        variants = []
        for variant in test.active_variants():
            agg = snapshot.for_variant(variant.id)
            metric = agg.metric(primary)
            if binary:
                n = agg.assigned_count
                rate = metric.converters / n if n else 0.0
                arm = build_arm_stats(variant.name, n, rate, (rate * (1 - rate)) ** 0.5, binary=True,
                                      successes=metric.converters, ci_level=test.confidence_level)
            else:
                arm = build_arm_stats(variant.name, metric.count, metric.mean, metric.std,
                                      ci_level=test.confidence_level)
            result = latest.get(variant.id)
            variants.append({
                "variant_id": variant.id,
                "name": variant.name,
                "is_control": variant.is_control,
                "traffic_percentage": variant.traffic_percentage,
                "assigned": agg.assigned_count,
                "events": metric.count,
                "estimate": arm.mean,
                "estimate_interval": (arm.ci_low, arm.ci_high),
                "effect_size": result.effect_size if result else None,
                "p_value": result.p_value if result else None,
                "significant": result.statistical_significance if result else None,
            })

        return {
            "test_id": test.id,
            "name": test.name,
            "status": test.status.value,
            "configuration_version": test.version,
            "start_date": test.start_date.isoformat() if test.start_date else None,
            "end_date": test.end_date.isoformat() if test.end_date else None,
            "primary_metric": primary,
            "total_assigned": sum(v["assigned"] for v in variants),
            "variants": variants,
            "latest_recommendation": recommendations[-1].to_dict() if recommendations else None,
        }
