"""Campaign experiment engine: A/B/n test design, allocation, analysis and recommendations."""

from .schema import (
    ABTest,
    Variant,
    MetricDefinition,
    Configuration,
    TrafficRules,
    SuccessCriteria,
    AdvancedSettings,
    ExperimentStatus,
    ExperimentType,
    MetricType,
    MetricEvent,
    Result,
    Recommendation,
    RecommendationType,
    Ack,
)
from .errors import (
    ExperimentError,
    ValidationError,
    NotFoundError,
    IllegalStateError,
    ConcurrencyConflictError,
)
from .config import EngineSettings, get_settings
from .storage import Storage, InMemoryStorage
from .registry import ExperimentRegistry
from .assignment import AssignmentService, bucket_for
from .ingestion import MetricsIngestion
from .analyze import StatisticalEngine, AnalysisRun
from .recommend import RecommendationEngine
from .scheduling import Scheduler, ThreadScheduler, ScheduledHandle, AnalysisJob
from .service import ExperimentService
from .simulate_campaign import simulate_traffic

__all__ = [
    "ABTest",
    "Variant",
    "MetricDefinition",
    "Configuration",
    "TrafficRules",
    "SuccessCriteria",
    "AdvancedSettings",
    "ExperimentStatus",
    "ExperimentType",
    "MetricType",
    "MetricEvent",
    "Result",
    "Recommendation",
    "RecommendationType",
    "Ack",
    "ExperimentError",
    "ValidationError",
    "NotFoundError",
    "IllegalStateError",
    "ConcurrencyConflictError",
    "EngineSettings",
    "get_settings",
    "Storage",
    "InMemoryStorage",
    "ExperimentRegistry",
    "AssignmentService",
    "bucket_for",
    "MetricsIngestion",
    "StatisticalEngine",
    "AnalysisRun",
    "RecommendationEngine",
    "Scheduler",
    "ThreadScheduler",
    "ScheduledHandle",
    "AnalysisJob",
    "ExperimentService",
    "simulate_traffic",
]
