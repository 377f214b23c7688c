"""
Experiment data models for the campaign experiment engine.

Dataclass schemas for tests, variants, configuration, metric events,
running aggregates, statistical results and recommendations.
"""

import math
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .errors import ValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def _as_fraction(value: float) -> float:
    """Accept 0.95 or 95 for the same confidence/power level."""
    value = float(value)
    return value / 100.0 if value > 1 else value


class ExperimentType(str, Enum):
    """Kind of outcome the test is designed around."""
    BINARY_CONVERSION = "binary-conversion"
    CONTINUOUS_METRIC = "continuous-metric"


class ExperimentStatus(str, Enum):
    """Lifecycle status of a test."""
    DRAFT = "draft"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class MetricType(str, Enum):
    """Metric type for analysis."""
    BINARY = "binary"  # e.g., click, conversion
    CONTINUOUS = "continuous"  # e.g., revenue, time on page


class RecommendationType(str, Enum):
    DECLARE_WINNER = "declare_winner"
    STOP_NO_DIFFERENCE = "stop_no_difference"
    CONTINUE = "continue"
    INSUFFICIENT_POWER = "insufficient_power"


_METRIC_TYPE_FOR_TEST = {
    ExperimentType.BINARY_CONVERSION: MetricType.BINARY,
    ExperimentType.CONTINUOUS_METRIC: MetricType.CONTINUOUS,
}


@dataclass
class MetricDefinition:
    """Definition of a metric tracked by a test."""
    name: str
    metric_type: Optional[MetricType] = None  # None: follow the test type
    higher_is_better: bool = True  # bounce rate, for one, is not
    description: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> "MetricDefinition":
        if isinstance(data, MetricDefinition):
            return data
        if isinstance(data, str):
            return cls(name=data)
        metric_type = data.get("metric_type")
        return cls(
            name=data["name"],
            metric_type=MetricType(metric_type) if metric_type else None,
            higher_is_better=bool(data.get("higher_is_better", True)),
            description=data.get("description", ""),
        )


@dataclass
class TrafficRules:
    """Targeting and exclusion rules applied before bucketing a visitor."""
    geographic_restrictions: List[str] = field(default_factory=list)
    device_targeting: List[str] = field(default_factory=list)
    user_segments: List[str] = field(default_factory=list)
    exclusion_rules: List[str] = field(default_factory=list)

    KNOWN_EXCLUSIONS = ("bot_traffic", "internal_users")

    def __post_init__(self):
        unknown = [r for r in self.exclusion_rules if r not in self.KNOWN_EXCLUSIONS]
        if unknown:
            raise ValidationError(f"Unknown exclusion rules: {unknown}")

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "TrafficRules":
        if isinstance(data, TrafficRules):
            return data
        data = data or {}
        return cls(
            geographic_restrictions=list(data.get("geographic_restrictions", [])),
            device_targeting=list(data.get("device_targeting", [])),
            user_segments=list(data.get("user_segments", [])),
            exclusion_rules=list(data.get("exclusion_rules", [])),
        )


@dataclass
class SuccessCriteria:
    """What counts as a win for the test."""
    primary_metric: str
    secondary_metrics: List[str] = field(default_factory=list)
    minimum_confidence: Optional[float] = None  # defaults to the test's confidence_level
    minimum_effect_size: float = 0.0  # absolute difference in metric units

    def __post_init__(self):
        errors = []
        if self.minimum_confidence is not None:
            self.minimum_confidence = _as_fraction(self.minimum_confidence)
            if not 0 < self.minimum_confidence < 1:
                errors.append(f"minimum_confidence must be in (0, 1), got {self.minimum_confidence}")
        if not self.primary_metric:
            errors.append("primary_metric is required")
        if self.minimum_effect_size < 0:
            errors.append(f"minimum_effect_size must be >= 0, got {self.minimum_effect_size}")
        if errors:
            raise ValidationError("; ".join(errors), errors)

    @property
    def metric_names(self) -> List[str]:
        return [self.primary_metric] + [m for m in self.secondary_metrics if m != self.primary_metric]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SuccessCriteria":
        if isinstance(data, SuccessCriteria):
            return data
        if not data or "primary_metric" not in data:
            raise ValidationError("success_criteria.primary_metric is required")
        return cls(
            primary_metric=data["primary_metric"],
            secondary_metrics=list(data.get("secondary_metrics", [])),
            minimum_confidence=data.get("minimum_confidence"),
            minimum_effect_size=float(data.get("minimum_effect_size", 0.0)),
        )


@dataclass
class AdvancedSettings:
    """Analysis options. The only configuration amendable while running."""
    sequential_testing: bool = False
    bayesian_analysis: bool = False
    early_stopping: bool = False
    power_analysis: float = 0.8  # target power
    auto_stop: bool = False  # apply early-stop recommendations to the test status
    sticky_assignments: bool = True
    planned_sample_size: Optional[int] = None  # per arm; None: derive from power analysis
    min_sample_size: Optional[int] = None  # per-arm floor for sequential looks

    FIELDS = (
        "sequential_testing",
        "bayesian_analysis",
        "early_stopping",
        "power_analysis",
        "auto_stop",
        "sticky_assignments",
        "planned_sample_size",
        "min_sample_size",
    )

    def __post_init__(self):
        self.power_analysis = _as_fraction(self.power_analysis)
        errors = []
        if not 0 < self.power_analysis < 1:
            errors.append(f"power_analysis must be in (0, 1), got {self.power_analysis}")
        if self.planned_sample_size is not None and self.planned_sample_size < 1:
            errors.append("planned_sample_size must be positive")
        if self.min_sample_size is not None and self.min_sample_size < 1:
            errors.append("min_sample_size must be positive")
        if errors:
            raise ValidationError("; ".join(errors), errors)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "AdvancedSettings":
        if isinstance(data, AdvancedSettings):
            return data
        data = data or {}
        unknown = set(data) - set(cls.FIELDS)
        if unknown:
            raise ValidationError(f"Unknown advanced settings: {sorted(unknown)}")
        return cls(**data)


@dataclass
class Configuration:
    """Typed replacement for the free-form traffic/success/advanced JSON blobs."""
    success_criteria: SuccessCriteria
    traffic_rules: TrafficRules = field(default_factory=TrafficRules)
    advanced_settings: AdvancedSettings = field(default_factory=AdvancedSettings)
    version: int = 1

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Configuration":
        if isinstance(data, Configuration):
            return data
        if not data:
            raise ValidationError("configuration is required")
        return cls(
            success_criteria=SuccessCriteria.from_dict(data.get("success_criteria")),
            traffic_rules=TrafficRules.from_dict(data.get("traffic_rules")),
            advanced_settings=AdvancedSettings.from_dict(data.get("advanced_settings")),
        )


@dataclass
class Variant:
    """One treatment arm of a test, including the control."""
    name: str
    traffic_percentage: float
    is_control: bool = False
    content: Dict[str, Any] = field(default_factory=dict)  # opaque to the engine
    id: str = field(default_factory=new_id)
    test_id: str = ""
    active: bool = True
    position: int = 0  # creation order

    @classmethod
    def from_dict(cls, data: Any) -> "Variant":
        if isinstance(data, Variant):
            return data
        return cls(
            name=data["name"],
            traffic_percentage=float(data.get("traffic_percentage", 0.0)),
            is_control=bool(data.get("is_control", False)),
            content=dict(data.get("content", {})),
            id=data.get("id") or new_id(),
            active=bool(data.get("active", True)),
        )


@dataclass
class ABTest:
    """An A/B/n test and everything needed to allocate and analyse it."""
    name: str
    variants: List[Variant]
    metrics: List[MetricDefinition]
    configuration: Configuration
    test_type: ExperimentType = ExperimentType.BINARY_CONVERSION
    hypothesis: str = ""
    id: str = field(default_factory=new_id)
    status: ExperimentStatus = ExperimentStatus.DRAFT
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    confidence_level: float = 0.95
    significance_threshold: Optional[float] = None
    created_at: datetime = field(default_factory=utcnow)
    status_history: List[Tuple[str, datetime]] = field(default_factory=list)

    def __post_init__(self):
        self.confidence_level = _as_fraction(self.confidence_level)
        if self.significance_threshold is None:
            self.significance_threshold = round(1 - self.confidence_level, 10)
        criteria = self.configuration.success_criteria
        if criteria.minimum_confidence is None:
            criteria.minimum_confidence = self.confidence_level

    @property
    def version(self) -> int:
        return self.configuration.version

    @property
    def alpha(self) -> float:
        return self.significance_threshold

    @property
    def is_frozen(self) -> bool:
        """Structural fields are frozen once the test has started."""
        return self.status != ExperimentStatus.DRAFT

    @property
    def control(self) -> Variant:
        return next(v for v in self.variants if v.is_control)

    def active_variants(self) -> List[Variant]:
        """Control first, then the others in creation order."""
        active = [v for v in self.variants if v.active]
        return sorted(active, key=lambda v: (not v.is_control, v.position))

    def treatments(self) -> List[Variant]:
        return [v for v in self.active_variants() if not v.is_control]

    def get_variant(self, variant_id: str) -> Optional[Variant]:
        for variant in self.variants:
            if variant.id == variant_id:
                return variant
        return None

    def get_metric(self, name: str) -> Optional[MetricDefinition]:
        for metric in self.metrics:
            if metric.name == name:
                return metric
        return None

    def metric_type(self, name: str) -> MetricType:
        metric = self.get_metric(name)
        if metric is not None and metric.metric_type is not None:
            return metric.metric_type
        return _METRIC_TYPE_FOR_TEST[self.test_type]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "id": self.id,
            "name": self.name,
            "hypothesis": self.hypothesis,
            "test_type": self.test_type.value,
            "status": self.status.value,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "confidence_level": self.confidence_level,
            "significance_threshold": self.significance_threshold,
            "configuration_version": self.version,
            "variants": [
                {
                    "id": v.id,
                    "name": v.name,
                    "traffic_percentage": v.traffic_percentage,
                    "is_control": v.is_control,
                    "active": v.active,
                }
                for v in self.active_variants()
            ],
            "metrics": [
                {"name": m.name, "metric_type": self.metric_type(m.name).value,
                 "higher_is_better": m.higher_is_better}
                for m in self.metrics
            ],
        }


@dataclass(frozen=True)
class MetricEvent:
    """Immutable outcome event. Never mutated or deleted after acceptance."""
    test_id: str
    variant_id: str
    visitor_id: str
    metric_name: str
    metric_value: float
    session_id: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)


@dataclass
class MetricAggregate:
    """Running sums for one (variant, metric)."""
    count: int = 0
    total: float = 0.0
    sum_squares: float = 0.0
    converters: int = 0  # distinct visitors with a positive binary event

    def add(self, value: float, first_conversion: bool = False) -> None:
        self.count += 1
        self.total += value
        self.sum_squares += value * value
        if first_conversion:
            self.converters += 1

    @property
    def mean(self) -> float:
        return self.total / self.count if self.count else 0.0

    @property
    def variance(self) -> float:
        """Sample variance (ddof=1) from the running sums."""
        if self.count < 2:
            return 0.0
        var = (self.sum_squares - self.total * self.total / self.count) / (self.count - 1)
        return max(var, 0.0)

    @property
    def std(self) -> float:
        return math.sqrt(self.variance)


@dataclass
class VariantAggregate:
    """Running aggregates for one variant."""
    variant_id: str
    assigned_count: int = 0
    metrics: Dict[str, MetricAggregate] = field(default_factory=dict)

    def metric(self, name: str) -> MetricAggregate:
        return self.metrics.get(name, MetricAggregate())


@dataclass(frozen=True)
class AggregateSnapshot:
    """Aggregates of every variant of a test, read at one instant."""
    test_id: str
    variants: Dict[str, VariantAggregate]
    taken_at: datetime = field(default_factory=utcnow)

    def for_variant(self, variant_id: str) -> VariantAggregate:
        return self.variants.get(variant_id, VariantAggregate(variant_id=variant_id))


@dataclass(frozen=True)
class Ack:
    """Acknowledgement of an accepted metric event."""
    event_id: str
    accepted_at: datetime


@dataclass(frozen=True)
class Result:
    """Comparison of one treatment against control on one metric."""
    test_id: str
    variant_id: str
    metric_name: str
    metric_type: MetricType
    sample_size: int
    control_sample_size: int
    point_estimate: float
    control_estimate: float
    effect_size: float  # treatment - control
    relative_lift: Optional[float]
    confidence_interval: Tuple[float, float]
    p_value: Optional[float]
    statistical_significance: bool
    underpowered: bool
    required_sample_size: Optional[int]  # per arm, planned horizon at the minimum effect
    required_for_observed_effect: Optional[int]  # per arm, to detect the effect seen so far
    configuration_version: int
    run_id: str
    probability_to_beat_control: Optional[float] = None
    expected_loss: Optional[float] = None  # Bayesian only: expected shortfall from shipping the treatment
    achieved_power: Optional[float] = None
    minimum_detectable_effect: Optional[float] = None  # at the current per-arm sample
    information_fraction: Optional[float] = None
    alpha_spent: Optional[float] = None
    computed_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=new_id)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["metric_type"] = self.metric_type.value
        d["confidence_interval"] = list(self.confidence_interval)
        d["computed_at"] = self.computed_at.isoformat()
        return d


@dataclass(frozen=True)
class Recommendation:
    """Actionable outcome of one evaluation cycle."""
    test_id: str
    type: RecommendationType
    confidence_score: float
    target_variant_id: Optional[str]
    content: str
    run_id: str
    recommended_status: Optional[ExperimentStatus] = None
    warnings: Tuple[str, ...] = ()
    generated_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=new_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "test_id": self.test_id,
            "run_id": self.run_id,
            "type": self.type.value,
            "confidence_score": self.confidence_score,
            "target_variant_id": self.target_variant_id,
            "content": self.content,
            "recommended_status": self.recommended_status.value if self.recommended_status else None,
            "warnings": list(self.warnings),
            "generated_at": self.generated_at.isoformat(),
        }


__all__ = [
    "ABTest",
    "Ack",
    "AdvancedSettings",
    "AggregateSnapshot",
    "Configuration",
    "ExperimentStatus",
    "ExperimentType",
    "MetricAggregate",
    "MetricDefinition",
    "MetricEvent",
    "MetricType",
    "Recommendation",
    "RecommendationType",
    "Result",
    "SuccessCriteria",
    "TrafficRules",
    "Variant",
    "VariantAggregate",
    "utcnow",
]
