"""
Scheduling contract and the periodic analysis job.

The engine only needs "run this every N seconds" and "run this once at T";
ThreadScheduler provides both on threading.Timer. AnalysisJob is the unit
of background work: analyse, recommend, optionally auto-stop, with retries
and exponential backoff on storage failures.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Optional

from .config import EngineSettings, get_settings
from .errors import ExperimentError
from .schema import ExperimentStatus, Recommendation, utcnow

logger = logging.getLogger(__name__)

Task = Callable[[], None]


class ScheduledHandle:
    """Cancellable reference to a scheduled task."""

    def __init__(self, name: str = ""):
        self.name = name
        self._cancelled = threading.Event()
        self._timer: Optional[threading.Timer] = None
        self._lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()

    def _set_timer(self, timer: threading.Timer) -> bool:
        with self._lock:
            if self.cancelled:
                return False
            self._timer = timer
            return True


class Scheduler(ABC):
    @abstractmethod
    def schedule_periodic(self, interval: float, task: Task) -> ScheduledHandle:
        """Run task every interval seconds until the handle is cancelled."""

    @abstractmethod
    def schedule_once(self, at: datetime, task: Task) -> ScheduledHandle:
        """Run task once at the given time."""


class ThreadScheduler(Scheduler):
    """Daemon threading.Timer chains; a failing task does not stop the chain."""

    def _run_safely(self, handle: ScheduledHandle, task: Task) -> None:
        if handle.cancelled:
            return
        try:
            task()
        except Exception:
            logger.exception(f"Scheduled task {handle.name} failed")

    def schedule_periodic(self, interval: float, task: Task) -> ScheduledHandle:
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        handle = ScheduledHandle(getattr(task, "__name__", repr(task)))

        def tick():
            self._run_safely(handle, task)
            arm()

        def arm():
            timer = threading.Timer(interval, tick)
            timer.daemon = True
            if handle._set_timer(timer):
                timer.start()

        arm()
        return handle

    def schedule_once(self, at: datetime, task: Task) -> ScheduledHandle:
        handle = ScheduledHandle(getattr(task, "__name__", repr(task)))
        delay = max((at - utcnow()).total_seconds(), 0.0)
        timer = threading.Timer(delay, self._run_safely, args=(handle, task))
        timer.daemon = True
        if handle._set_timer(timer):
            timer.start()
        return handle


class AnalysisJob:
    """
    One background evaluation cycle for a test.

    Storage and OS failures are retried with exponential backoff; domain
    errors (ExperimentError) are not, since retrying cannot fix them.
    """

    def __init__(
        self,
        service,
        test_id: str,
        settings: Optional[EngineSettings] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.service = service
        self.test_id = test_id
        self.settings = settings or get_settings()
        self._sleep = sleep

    def __repr__(self) -> str:
        return f"AnalysisJob(test_id={self.test_id!r})"

    def _cycle(self) -> Recommendation:
        test = self.service.get_test(self.test_id)
        run = self.service.analysis.run(self.test_id)
        recommendation = self.service.recommender.recommend(test, run)
        self.service.storage.save_recommendation(recommendation)

        advanced = test.configuration.advanced_settings
        if (
            advanced.auto_stop
            and recommendation.recommended_status == ExperimentStatus.COMPLETED
            and test.status == ExperimentStatus.RUNNING
        ):
            self.service.transition_status(self.test_id, ExperimentStatus.COMPLETED)
            logger.info(f"Test {self.test_id} auto-stopped: {recommendation.type.value}")
        return recommendation

    def __call__(self) -> Optional[Recommendation]:
        attempts = self.settings.retry_attempts
        delay = self.settings.retry_backoff_seconds
        for attempt in range(1, attempts + 1):
            try:
                return self._cycle()
            except ExperimentError as e:
                logger.warning(f"Analysis of test {self.test_id} skipped: {e}")
                return None
            except (OSError, RuntimeError) as e:
                if attempt == attempts:
                    logger.error(
                        f"Analysis of test {self.test_id} failed after {attempts} attempts: {e}"
                    )
                    return None
                logger.warning(
                    f"Analysis of test {self.test_id} failed (attempt {attempt}/{attempts}), "
                    f"retrying in {delay:.1f}s: {e}"
                )
                self._sleep(delay)
                delay *= self.settings.retry_backoff_multiplier
        return None
