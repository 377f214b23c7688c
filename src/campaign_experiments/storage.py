"""
Storage collaborator for the experiment engine.

`Storage` is the contract the engine consumes; `InMemoryStorage` is a
thread-safe reference implementation used by tests, the demo, and any
single-process deployment. Results, recommendations and metric events are
append-only in every implementation.
"""

import copy
import logging
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import ExitStack, contextmanager
from typing import Dict, Iterator, List, Optional, Set, Tuple

from .errors import ConcurrencyConflictError, NotFoundError
from .schema import (
    ABTest,
    AggregateSnapshot,
    MetricAggregate,
    MetricEvent,
    Recommendation,
    Result,
    VariantAggregate,
)

logger = logging.getLogger(__name__)


class Storage(ABC):
    """Persistence contract. Implementations must be safe for concurrent callers."""

    @abstractmethod
    def save_test(self, test: ABTest, expected_version: Optional[int] = None) -> None:
        """
        Persist a test.

        Args:
            test: Test to store
            expected_version: When given, the stored configuration version must
                match it or ConcurrencyConflictError is raised (compare-and-set)
        """

    @abstractmethod
    def load_test(self, test_id: str) -> ABTest:
        """Load a test or raise NotFoundError."""

    @abstractmethod
    def list_tests(self) -> List[ABTest]:
        ...

    @abstractmethod
    def atomic(self, test_id: str, variant_id: str):
        """Context manager making an event append and its aggregate update indivisible."""

    @abstractmethod
    def append_metric_event(self, event: MetricEvent) -> None:
        ...

    @abstractmethod
    def update_variant_aggregate(
        self,
        test_id: str,
        variant_id: str,
        metric_name: str,
        value: float,
        visitor_id: str,
        binary: bool = False,
    ) -> None:
        """Increment count/sum/sum-of-squares and, for binary metrics, distinct converters."""

    @abstractmethod
    def record_assignment(
        self,
        test_id: str,
        visitor_id: str,
        variant_id: str,
        overwrite: bool = False,
    ) -> Tuple[str, bool]:
        """
        Write the ledger entry for (test_id, visitor_id) if absent.

        Returns:
            Tuple of (variant_id now in the ledger, whether this call wrote it)
        """

    @abstractmethod
    def load_assignment(self, test_id: str, visitor_id: str) -> Optional[str]:
        ...

    @abstractmethod
    def save_result(self, result: Result) -> None:
        ...

    @abstractmethod
    def load_results(self, test_id: str) -> List[Result]:
        ...

    @abstractmethod
    def save_recommendation(self, recommendation: Recommendation) -> None:
        ...

    @abstractmethod
    def load_recommendations(self, test_id: str) -> List[Recommendation]:
        ...

    @abstractmethod
    def load_latest_aggregates(self, test_id: str) -> AggregateSnapshot:
        """Consistent snapshot: no variant is read mid-update."""

    @abstractmethod
    def load_metric_events(self, test_id: str) -> List[MetricEvent]:
        ...


class InMemoryStorage(Storage):
    """
    Process-local storage.

    One re-entrant lock per (test, variant) guards that variant's events and
    aggregates, so writers to different variants never contend. Snapshots take
    every lock of the test in sorted order.
    """

    def __init__(self):
        self._tests: Dict[str, ABTest] = {}
        self._tests_lock = threading.Lock()

        self._variant_locks: Dict[Tuple[str, str], threading.RLock] = {}
        self._locks_lock = threading.Lock()

        self._events: Dict[Tuple[str, str], List[MetricEvent]] = defaultdict(list)
        self._aggregates: Dict[Tuple[str, str], VariantAggregate] = {}
        self._converted: Dict[Tuple[str, str, str], Set[str]] = defaultdict(set)

        self._ledger: Dict[Tuple[str, str], str] = {}
        self._ledger_lock = threading.Lock()

        self._results: Dict[str, List[Result]] = defaultdict(list)
        self._recommendations: Dict[str, List[Recommendation]] = defaultdict(list)
        self._derived_lock = threading.Lock()

    # Tests

    def save_test(self, test: ABTest, expected_version: Optional[int] = None) -> None:
        with self._tests_lock:
            current = self._tests.get(test.id)
            if expected_version is not None:
                actual = current.version if current else 0
                if actual != expected_version:
                    raise ConcurrencyConflictError(test.id, expected_version, actual)
            self._tests[test.id] = copy.deepcopy(test)
        for variant in test.variants:
            self._lock_for(test.id, variant.id)

    def load_test(self, test_id: str) -> ABTest:
        with self._tests_lock:
            test = self._tests.get(test_id)
            if test is None:
                raise NotFoundError(f"Test {test_id} not found")
            return copy.deepcopy(test)

    def list_tests(self) -> List[ABTest]:
        with self._tests_lock:
            return [copy.deepcopy(t) for t in self._tests.values()]

    # Events and aggregates

    def _lock_for(self, test_id: str, variant_id: str) -> threading.RLock:
        key = (test_id, variant_id)
        with self._locks_lock:
            lock = self._variant_locks.get(key)
            if lock is None:
                lock = self._variant_locks[key] = threading.RLock()
            return lock

    @contextmanager
    def atomic(self, test_id: str, variant_id: str) -> Iterator[None]:
        with self._lock_for(test_id, variant_id):
            yield

    def _aggregate(self, test_id: str, variant_id: str) -> VariantAggregate:
        key = (test_id, variant_id)
        agg = self._aggregates.get(key)
        if agg is None:
            agg = self._aggregates[key] = VariantAggregate(variant_id=variant_id)
        return agg

    def append_metric_event(self, event: MetricEvent) -> None:
        with self._lock_for(event.test_id, event.variant_id):
            self._events[(event.test_id, event.variant_id)].append(event)

    def update_variant_aggregate(
        self,
        test_id: str,
        variant_id: str,
        metric_name: str,
        value: float,
        visitor_id: str,
        binary: bool = False,
    ) -> None:
        with self._lock_for(test_id, variant_id):
            agg = self._aggregate(test_id, variant_id)
            metric = agg.metrics.setdefault(metric_name, MetricAggregate())
            first_conversion = False
            if binary and value > 0:
                seen = self._converted[(test_id, variant_id, metric_name)]
                first_conversion = visitor_id not in seen
                seen.add(visitor_id)
            metric.add(value, first_conversion=first_conversion)

    def record_assignment(
        self,
        test_id: str,
        visitor_id: str,
        variant_id: str,
        overwrite: bool = False,
    ) -> Tuple[str, bool]:
        with self._ledger_lock:
            existing = self._ledger.get((test_id, visitor_id))
            if existing is not None and (existing == variant_id or not overwrite):
                return existing, False
            self._ledger[(test_id, visitor_id)] = variant_id
        if existing is not None:
            logger.debug(f"Visitor {visitor_id} moved from {existing} to {variant_id} in test {test_id}")
            with self._lock_for(test_id, existing):
                self._aggregate(test_id, existing).assigned_count -= 1
        with self._lock_for(test_id, variant_id):
            self._aggregate(test_id, variant_id).assigned_count += 1
        return variant_id, True

    def load_assignment(self, test_id: str, visitor_id: str) -> Optional[str]:
        with self._ledger_lock:
            return self._ledger.get((test_id, visitor_id))

    def load_latest_aggregates(self, test_id: str) -> AggregateSnapshot:
        with self._locks_lock:
            keys = sorted(k for k in self._variant_locks if k[0] == test_id)
            locks = [self._variant_locks[k] for k in keys]
        with ExitStack() as stack:
            for lock in locks:
                stack.enter_context(lock)
            variants = {
                variant_id: copy.deepcopy(self._aggregates.get(
                    (test_id, variant_id), VariantAggregate(variant_id=variant_id)
                ))
                for _, variant_id in keys
            }
        return AggregateSnapshot(test_id=test_id, variants=variants)

    def load_metric_events(self, test_id: str) -> List[MetricEvent]:
        with self._locks_lock:
            keys = [k for k in self._variant_locks if k[0] == test_id]
        events: List[MetricEvent] = []
        for key in keys:
            with self._lock_for(*key):
                events.extend(self._events.get(key, []))
        return sorted(events, key=lambda e: e.timestamp)

    # Derived rows

    def save_result(self, result: Result) -> None:
        with self._derived_lock:
            self._results[result.test_id].append(result)

    def load_results(self, test_id: str) -> List[Result]:
        with self._derived_lock:
            return list(self._results.get(test_id, []))

    def save_recommendation(self, recommendation: Recommendation) -> None:
        with self._derived_lock:
            self._recommendations[recommendation.test_id].append(recommendation)

    def load_recommendations(self, test_id: str) -> List[Recommendation]:
        with self._derived_lock:
            return list(self._recommendations.get(test_id, []))
