"""
Metric ingestion: accept outcome events for running tests.

Each accepted event is appended to the immutable event log and folded into
its variant's running aggregate inside one atomic section of the storage.
Events for different variants are written in parallel; no global order is
kept because analysis reads aggregates only.
"""

import logging
import math
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from .errors import IllegalStateError, NotFoundError, ValidationError
from .schema import ABTest, Ack, ExperimentStatus, MetricEvent, MetricType, utcnow
from .storage import Storage

logger = logging.getLogger(__name__)


class MetricsIngestion:
    """Validates and records metric events."""

    def __init__(self, storage: Storage):
        self.storage = storage

    def _build_event(
        self,
        test: ABTest,
        variant_id: str,
        visitor_id: str,
        metric_name: str,
        value: Any,
        metadata: Optional[Dict[str, Any]],
        session_id: Optional[str],
        timestamp: Optional[datetime],
    ) -> MetricEvent:
        if test.status != ExperimentStatus.RUNNING:
            raise IllegalStateError(
                f"Test {test.id} is {test.status.value}; events are accepted only while running"
            )
        if test.get_variant(variant_id) is None:
            raise NotFoundError(f"Variant {variant_id} not found in test {test.id}")

        assigned = self.storage.load_assignment(test.id, visitor_id)
        if assigned != variant_id:
            raise ValidationError(
                f"Visitor {visitor_id} is not assigned to variant {variant_id} in test {test.id}"
            )

        if test.get_metric(metric_name) is None:
            raise ValidationError(f"Unknown metric '{metric_name}' for test {test.id}")
        try:
            value = float(value)
        except (TypeError, ValueError):
            raise ValidationError(f"metric_value must be numeric, got {value!r}")
        if not math.isfinite(value):
            raise ValidationError(f"metric_value must be finite, got {value}")
        if test.metric_type(metric_name) == MetricType.BINARY and value not in (0.0, 1.0):
            raise ValidationError(f"Binary metric '{metric_name}' takes 0 or 1, got {value}")

        return MetricEvent(
            test_id=test.id,
            variant_id=variant_id,
            visitor_id=visitor_id,
            metric_name=metric_name,
            metric_value=value,
            session_id=session_id,
            timestamp=timestamp or utcnow(),
            metadata=dict(metadata or {}),
        )

    def _write(self, test: ABTest, event: MetricEvent) -> Ack:
        binary = test.metric_type(event.metric_name) == MetricType.BINARY
        with self.storage.atomic(event.test_id, event.variant_id):
            self.storage.append_metric_event(event)
            self.storage.update_variant_aggregate(
                event.test_id,
                event.variant_id,
                event.metric_name,
                event.metric_value,
                event.visitor_id,
                binary=binary,
            )
        return Ack(event_id=event.id, accepted_at=utcnow())

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
        """
        Record one metric event.

        Raises:
            NotFoundError: unknown test or variant
            IllegalStateError: test is not running
            ValidationError: visitor not assigned to the variant, unknown
                metric, or a value the metric cannot take
        """
        test = self.storage.load_test(test_id)
        event = self._build_event(
            test, variant_id, visitor_id, metric_name, value, metadata, session_id, timestamp
        )
        return self._write(test, event)

    def record_events(self, batch: Iterable[Dict[str, Any]]) -> List[Ack]:
        """
        Record a batch of events. Every event is validated before any is written.

        Each item carries the keyword arguments of record_event.
        """
        tests: Dict[str, ABTest] = {}
        pending = []
        for item in batch:
            try:
                test_id = item["test_id"]
                if test_id not in tests:
                    tests[test_id] = self.storage.load_test(test_id)
                event = self._build_event(
                    tests[test_id],
                    item["variant_id"],
                    item["visitor_id"],
                    item["metric_name"],
                    item["value"],
                    item.get("metadata"),
                    item.get("session_id"),
                    item.get("timestamp"),
                )
            except KeyError as e:
                raise ValidationError(f"Event is missing field {e}")
            pending.append((tests[test_id], event))

        acks = [self._write(test, event) for test, event in pending]
        logger.info(f"Recorded batch of {len(acks)} events across {len(tests)} tests")
        return acks
