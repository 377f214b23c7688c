"""
Experiment registry: test definitions, configuration and lifecycle.

Validates designs at creation, enforces the status state machine and
versions every configuration amendment. Persistence goes through the
storage collaborator; nothing here is lazily fetched.
"""

import copy
import logging
import threading
from collections import defaultdict
from dataclasses import asdict
from typing import Any, Dict, List, Optional, Union

from .config import EngineSettings, get_settings
from .errors import ConcurrencyConflictError, IllegalStateError, NotFoundError, ValidationError
from .schema import (
    ABTest,
    AdvancedSettings,
    Configuration,
    ExperimentStatus,
    ExperimentType,
    MetricDefinition,
    SuccessCriteria,
    TrafficRules,
    Variant,
    utcnow,
)
from .storage import Storage

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    ExperimentStatus.DRAFT: {ExperimentStatus.RUNNING},
    ExperimentStatus.RUNNING: {ExperimentStatus.PAUSED, ExperimentStatus.COMPLETED},
    ExperimentStatus.PAUSED: {ExperimentStatus.RUNNING, ExperimentStatus.COMPLETED},
    ExperimentStatus.COMPLETED: {ExperimentStatus.ARCHIVED},
    ExperimentStatus.ARCHIVED: set(),
}

STRUCTURAL_SECTIONS = ("traffic_rules", "success_criteria")


def _coerce_status(status: Union[str, ExperimentStatus]) -> ExperimentStatus:
    try:
        return ExperimentStatus(status)
    except ValueError:
        raise ValidationError(f"Unknown status: {status}")


def build_test(spec: Dict[str, Any]) -> ABTest:
    """
    Build an ABTest from a plain design dict.

    Expected keys: name, variants, metrics, configuration; optional
    hypothesis, test_type, start_date, end_date, confidence_level,
    significance_threshold.
    """
    if isinstance(spec, ABTest):
        return copy.deepcopy(spec)
    try:
        variants = [Variant.from_dict(v) for v in spec.get("variants", [])]
        metrics = [MetricDefinition.from_dict(m) for m in spec.get("metrics", [])]
        test = ABTest(
            name=spec.get("name", ""),
            hypothesis=spec.get("hypothesis", ""),
            test_type=ExperimentType(spec.get("test_type", ExperimentType.BINARY_CONVERSION)),
            variants=variants,
            metrics=metrics,
            configuration=Configuration.from_dict(spec.get("configuration")),
            start_date=spec.get("start_date"),
            end_date=spec.get("end_date"),
            confidence_level=spec.get("confidence_level", get_settings().default_confidence_level),
            significance_threshold=spec.get("significance_threshold"),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ValidationError(f"Malformed test spec: {e}")
    return test


def validate_traffic(variants: List[Variant], tolerance: float) -> List[str]:
    """Errors for the traffic split of the active variants."""
    errors = []
    active = [v for v in variants if v.active]
    for v in active:
        if not 0 <= v.traffic_percentage <= 100:
            errors.append(f"Variant '{v.name}' traffic_percentage must be in [0, 100]")
    total = sum(v.traffic_percentage for v in active)
    if abs(total - 100.0) > tolerance:
        errors.append(f"Variant traffic percentages must sum to 100, got {total}")
    return errors


def validate_test(test: ABTest, tolerance: float = 0.01) -> List[str]:
    """All design errors for a test; empty when valid."""
    errors = []
    if not test.name:
        errors.append("name is required")

    if len([v for v in test.variants if v.active]) < 2:
        errors.append("A test needs at least 2 active variants")
    controls = [v for v in test.variants if v.is_control]
    if not controls:
        errors.append("Exactly one variant must be marked as control")
    elif len(controls) > 1:
        errors.append(f"Exactly one variant must be marked as control, got {len(controls)}")
    names = [v.name for v in test.variants]
    if len(set(names)) != len(names):
        errors.append("Variant names must be unique")
    errors.extend(validate_traffic(test.variants, tolerance))

    if not test.metrics:
        errors.append("At least one metric must be declared")
    declared = {m.name for m in test.metrics}
    for name in test.configuration.success_criteria.metric_names:
        if name not in declared:
            errors.append(f"success_criteria references unknown metric '{name}'")

    if not 0 < test.confidence_level < 1:
        errors.append(f"confidence_level must be in (0, 1), got {test.confidence_level}")
    if test.start_date and test.end_date and test.end_date <= test.start_date:
        errors.append("end_date must be after start_date")
    return errors


def rebalance_traffic(variants: List[Variant], share: float = 100.0) -> None:
    """
    Spread `share` percent over the given variants.

    Existing weights keep their ratios; all-zero weights split evenly.
    Rounding drift lands on the first variant so the total is exact.
    """
    if not variants:
        return
    total = sum(v.traffic_percentage for v in variants)
    for v in variants:
        weight = v.traffic_percentage / total if total > 0 else 1 / len(variants)
        v.traffic_percentage = round(share * weight, 2)
    variants[0].traffic_percentage = round(share - sum(v.traffic_percentage for v in variants[1:]), 2)


class ExperimentRegistry:
    """Owns test definitions and their lifecycle."""

    def __init__(self, storage: Storage, settings: Optional[EngineSettings] = None):
        self.storage = storage
        self.settings = settings or get_settings()
        self._locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)

    def create_test(self, spec: Union[Dict[str, Any], ABTest]) -> ABTest:
        """
        Validate and persist a new test in draft.

        Raises:
            ValidationError: fewer than 2 variants, no single control, traffic
                not summing to 100, or success criteria naming unknown metrics
        """
        test = build_test(spec)
        errors = validate_test(test, self.settings.traffic_tolerance)
        if errors:
            raise ValidationError("; ".join(errors), errors)

        test.status = ExperimentStatus.DRAFT
        test.status_history = [(ExperimentStatus.DRAFT.value, utcnow())]
        for position, variant in enumerate(test.variants):
            variant.test_id = test.id
            variant.position = position

        self.storage.save_test(test, expected_version=0)
        logger.info(
            f"Test {test.id} ({test.name}) created with {len(test.variants)} variants, "
            f"primary metric {test.configuration.success_criteria.primary_metric}"
        )
        return test

    def get_test(self, test_id: str) -> ABTest:
        return self.storage.load_test(test_id)

    def list_tests(self, status: Optional[Union[str, ExperimentStatus]] = None) -> List[ABTest]:
        tests = self.storage.list_tests()
        if status is not None:
            status = _coerce_status(status)
            tests = [t for t in tests if t.status == status]
        return sorted(tests, key=lambda t: t.created_at)

    def transition_status(self, test_id: str, new_status: Union[str, ExperimentStatus]) -> ABTest:
        """
        Move a test along draft -> running -> {paused <-> running} -> completed -> archived.

        Raises:
            IllegalStateError: transition not allowed from the current status
        """
        new_status = _coerce_status(new_status)
        with self._locks[test_id]:
            test = self.storage.load_test(test_id)
            old_status = test.status
            if new_status not in ALLOWED_TRANSITIONS[old_status]:
                raise IllegalStateError(
                    f"Cannot move test {test_id} from {old_status.value} to {new_status.value}"
                )

            now = utcnow()
            if new_status == ExperimentStatus.RUNNING and test.start_date is None:
                test.start_date = now
            if new_status == ExperimentStatus.COMPLETED and (test.end_date is None or test.end_date > now):
                test.end_date = now
            test.status = new_status
            test.status_history.append((new_status.value, now))
            self.storage.save_test(test)

        logger.info(f"Test {test_id} ({test.name}) moved from {old_status.value} to {new_status.value}")
        return test

    def update_configuration(
        self,
        test_id: str,
        patch: Dict[str, Dict[str, Any]],
        expected_version: Optional[int] = None,
    ) -> ABTest:
        """
        Amend a test's configuration, bumping its version.

        Args:
            test_id: Test identifier
            patch: Partial sections, e.g. {"advanced_settings": {"bayesian_analysis": True}}
            expected_version: Version the caller last read; stale versions conflict

        Raises:
            IllegalStateError: structural sections patched after the test started,
                or any amendment on a completed/archived test
            ConcurrencyConflictError: expected_version is stale
            ValidationError: unknown sections or invalid values
        """
        unknown = set(patch) - {"traffic_rules", "success_criteria", "advanced_settings"}
        if unknown:
            raise ValidationError(f"Unknown configuration sections: {sorted(unknown)}")

        with self._locks[test_id]:
            test = self.storage.load_test(test_id)
            current_version = test.version
            if expected_version is not None and expected_version != current_version:
                raise ConcurrencyConflictError(test_id, expected_version, current_version)
            if test.status in (ExperimentStatus.COMPLETED, ExperimentStatus.ARCHIVED):
                raise IllegalStateError(f"Test {test_id} is {test.status.value}; configuration is final")
            frozen = [s for s in STRUCTURAL_SECTIONS if s in patch and test.is_frozen]
            if frozen:
                raise IllegalStateError(
                    f"{', '.join(frozen)} cannot change once test {test_id} has started"
                )

            config = test.configuration
            if "traffic_rules" in patch:
                merged = {**asdict(config.traffic_rules), **patch["traffic_rules"]}
                config.traffic_rules = TrafficRules.from_dict(merged)
            if "success_criteria" in patch:
                merged = {**asdict(config.success_criteria), **patch["success_criteria"]}
                config.success_criteria = SuccessCriteria.from_dict(merged)
            if "advanced_settings" in patch:
                merged = {**asdict(config.advanced_settings), **patch["advanced_settings"]}
                config.advanced_settings = AdvancedSettings.from_dict(merged)
            config.version = current_version + 1

            errors = validate_test(test, self.settings.traffic_tolerance)
            if errors:
                raise ValidationError("; ".join(errors), errors)
            self.storage.save_test(test, expected_version=current_version)

        logger.info(f"Test {test_id} configuration amended to version {config.version}: {sorted(patch)}")
        return test

    def reallocate_traffic(
        self,
        test_id: str,
        percentages: Dict[str, float],
        expected_version: Optional[int] = None,
    ) -> ABTest:
        """
        Operator amendment of variant weights.

        Visitors already in the assignment ledger keep their variant; only
        new visitors see the new weights. A weight of 0 retires a treatment
        from new traffic without deleting it.
        """
        with self._locks[test_id]:
            test = self.storage.load_test(test_id)
            current_version = test.version
            if expected_version is not None and expected_version != current_version:
                raise ConcurrencyConflictError(test_id, expected_version, current_version)
            if test.status in (ExperimentStatus.COMPLETED, ExperimentStatus.ARCHIVED):
                raise IllegalStateError(f"Test {test_id} is {test.status.value}; traffic is final")

            unknown = set(percentages) - {v.id for v in test.variants}
            if unknown:
                raise ValidationError(f"Unknown variant ids: {sorted(unknown)}")
            for variant in test.variants:
                if variant.id in percentages:
                    variant.traffic_percentage = float(percentages[variant.id])

            errors = validate_traffic(test.variants, self.settings.traffic_tolerance)
            if errors:
                raise ValidationError("; ".join(errors), errors)
            test.configuration.version = current_version + 1
            self.storage.save_test(test, expected_version=current_version)

        logger.info(f"Test {test_id} traffic reallocated (version {test.version}): {percentages}")
        return test

    def _load_draft(self, test_id: str, expected_version: Optional[int]) -> ABTest:
        test = self.storage.load_test(test_id)
        if expected_version is not None and expected_version != test.version:
            raise ConcurrencyConflictError(test_id, expected_version, test.version)
        if test.status != ExperimentStatus.DRAFT:
            raise IllegalStateError(f"Variants of test {test_id} are fixed once it is {test.status.value}")
        return test

    def _save_variants(self, test: ABTest, current_version: int) -> None:
        errors = validate_test(test, self.settings.traffic_tolerance)
        if errors:
            raise ValidationError("; ".join(errors), errors)
        test.configuration.version = current_version + 1
        self.storage.save_test(test, expected_version=current_version)

    def add_variant(
        self,
        test_id: str,
        variant_spec: Dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> Variant:
        """
        Add a treatment to a draft test.

        Without a traffic_percentage every active variant gets an even
        share. With one, the other active variants shrink in proportion to
        make room for it.

        Raises:
            IllegalStateError: the test is no longer a draft
            ValidationError: malformed spec, duplicate name or a second control
        """
        try:
            variant = Variant.from_dict(variant_spec)
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Malformed variant spec: {e}")

        with self._locks[test_id]:
            test = self._load_draft(test_id, expected_version)
            current_version = test.version
            others = test.active_variants()
            variant.test_id = test.id
            variant.position = max((v.position for v in test.variants), default=-1) + 1
            test.variants.append(variant)

            if not isinstance(variant_spec, dict) or "traffic_percentage" in variant_spec:
                rebalance_traffic(others, 100.0 - variant.traffic_percentage)
            else:
                for v in others + [variant]:
                    v.traffic_percentage = 0.0
                rebalance_traffic(others + [variant])
            self._save_variants(test, current_version)

        logger.info(
            f"Variant {variant.id} ({variant.name}) added to test {test_id}: "
            f"{[(v.name, v.traffic_percentage) for v in test.active_variants()]}"
        )
        return variant

    def remove_variant(
        self,
        test_id: str,
        variant_id: str,
        expected_version: Optional[int] = None,
    ) -> ABTest:
        """
        Deactivate a treatment of a draft test; its traffic goes to the
        remaining active variants in proportion to their weights.

        Raises:
            IllegalStateError: the test is no longer a draft
            NotFoundError: unknown or already inactive variant
            ValidationError: the control, or the last treatment
        """
        with self._locks[test_id]:
            test = self._load_draft(test_id, expected_version)
            current_version = test.version
            variant = test.get_variant(variant_id)
            if variant is None or not variant.active:
                raise NotFoundError(f"Variant {variant_id} not active in test {test_id}")
            if variant.is_control:
                raise ValidationError("The control variant cannot be removed")

            variant.active = False
            variant.traffic_percentage = 0.0
            rebalance_traffic(test.active_variants())
            self._save_variants(test, current_version)

        logger.info(f"Variant {variant_id} ({variant.name}) removed from test {test_id}")
        return test

    def clone_test(self, test_id: str, name: Optional[str] = None) -> ABTest:
        """Copy a test's design into a new draft with fresh ids."""
        source = self.storage.load_test(test_id)
        config = source.configuration
        spec = {
            "name": name or f"{source.name} (Clone)",
            "hypothesis": source.hypothesis,
            "test_type": source.test_type,
            "confidence_level": source.confidence_level,
            "significance_threshold": source.significance_threshold,
            "metrics": copy.deepcopy(source.metrics),
            "variants": [
                {
                    "name": v.name,
                    "traffic_percentage": v.traffic_percentage,
                    "is_control": v.is_control,
                    "content": copy.deepcopy(v.content),
                    "active": v.active,
                }
                for v in source.active_variants()
            ],
            "configuration": Configuration(
                success_criteria=copy.deepcopy(config.success_criteria),
                traffic_rules=copy.deepcopy(config.traffic_rules),
                advanced_settings=copy.deepcopy(config.advanced_settings),
            ),
        }
        clone = self.create_test(spec)
        logger.info(f"Test {test_id} cloned into {clone.id}")
        return clone
