"""Pytest configuration - add project root to path, shared fixtures."""
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT))

from src.campaign_experiments.config import EngineSettings  # noqa: E402
from src.campaign_experiments.scheduling import ScheduledHandle, Scheduler  # noqa: E402
from src.campaign_experiments.service import ExperimentService  # noqa: E402
from src.campaign_experiments.storage import InMemoryStorage  # noqa: E402


class ManualScheduler(Scheduler):
    """Records scheduled tasks; tests fire them explicitly."""

    def __init__(self):
        self.periodic = []
        self.once = []

    def schedule_periodic(self, interval, task):
        handle = ScheduledHandle(repr(task))
        self.periodic.append((interval, task, handle))
        return handle

    def schedule_once(self, at, task):
        handle = ScheduledHandle(repr(task))
        self.once.append((at, task, handle))
        return handle

    def run_pending(self):
        """Fire every live task once; returns their return values."""
        outputs = []
        for _, task, handle in self.periodic + self.once:
            if not handle.cancelled:
                outputs.append(task())
        self.once = []
        return outputs


def make_spec(
    name="Homepage hero",
    variants=None,
    metrics=None,
    success_criteria=None,
    advanced_settings=None,
    traffic_rules=None,
    **extra,
):
    spec = {
        "name": name,
        "hypothesis": "New hero image lifts sign-ups",
        "variants": variants or [
            {"name": "Control", "traffic_percentage": 50, "is_control": True},
            {"name": "Treatment", "traffic_percentage": 50},
        ],
        "metrics": metrics or ["conversion"],
        "configuration": {
            "success_criteria": success_criteria or {"primary_metric": "conversion"},
            "traffic_rules": traffic_rules or {},
            "advanced_settings": advanced_settings or {},
        },
    }
    spec.update(extra)
    return spec


@pytest.fixture
def settings():
    return EngineSettings(
        monte_carlo_draws=20_000,
        retry_attempts=3,
        retry_backoff_seconds=0.5,
    )


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def service(storage, scheduler, settings):
    return ExperimentService(storage=storage, scheduler=scheduler, settings=settings)


@pytest.fixture
def running_test(service):
    """A running 50/50 conversion test."""
    test = service.create_test(make_spec())
    return service.transition_status(test.id, "running")


def load_conversions(storage, service, test, counts):
    """
    Put exact (assigned, converted) counts per variant name into a test.

    Visitors are written straight into the assignment ledger so arm sizes
    are exact; conversions then go through normal ingestion.
    """
    metric = test.configuration.success_criteria.primary_metric
    for variant in test.active_variants():
        assigned, converted = counts[variant.name]
        for i in range(assigned):
            visitor_id = f"{variant.name}-{i}"
            storage.record_assignment(test.id, visitor_id, variant.id)
            if i < converted:
                service.record_event(test.id, variant.id, visitor_id, metric, 1)


@pytest.fixture
def spec_factory():
    return make_spec


@pytest.fixture
def conversions(storage, service):
    """load_conversions bound to the shared storage and service."""
    def load(test, counts):
        load_conversions(storage, service, test, counts)
    return load
