"""
Error taxonomy for the experiment engine.

Statistical insufficiency has no error class: underpowered or
non-significant results are ordinary values, flagged on the Result.
"""


class ExperimentError(Exception):
    """Base class for all engine errors."""


class ValidationError(ExperimentError):
    """Malformed test, configuration or event input. Never retried."""

    def __init__(self, message: str, errors=None):
        super().__init__(message)
        self.errors = list(errors or [message])


class NotFoundError(ExperimentError):
    """Unknown test or variant id."""


class IllegalStateError(ExperimentError):
    """Operation not valid for the test's current status."""


class ConcurrencyConflictError(ExperimentError):
    """Configuration amended concurrently; retry against the latest version."""

    def __init__(self, test_id: str, expected_version: int, actual_version: int):
        super().__init__(
            f"Test {test_id} is at configuration version {actual_version}, "
            f"expected {expected_version}"
        )
        self.test_id = test_id
        self.expected_version = expected_version
        self.actual_version = actual_version
