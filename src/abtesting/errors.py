"""Error taxonomy for the A/B testing engine."""

from typing import Optional


class ExperimentError(Exception):
    """Base class for all engine errors."""


class ValidationError(ExperimentError, ValueError):
    """Malformed experiment definition, rejected before anything is persisted."""

    TOO_FEW_VARIANTS = "TooFewVariants"
    WEIGHT_SUM_INVALID = "WeightSumInvalid"
    MISSING_CONTROL = "MissingControl"
    MULTIPLE_CONTROLS = "MultipleControls"
    NO_METRICS = "NoMetrics"
    MULTIPLE_PRIMARY_METRICS = "MultiplePrimaryMetrics"

    def __init__(self, kind: str, message: str):
        super().__init__(message)
        self.kind = kind


class NotFoundError(ExperimentError, LookupError):
    """Unknown test id."""

    def __init__(self, test_id: str):
        super().__init__(f"Test not found: {test_id}")
        self.test_id = test_id


class StateError(ExperimentError):
    """Illegal lifecycle transition. The test state is left unchanged."""

    def __init__(self, test_id: str, current: str, action: str):
        super().__init__(f"Cannot {action} test {test_id} in status '{current}'")
        self.test_id = test_id
        self.current = current
        self.action = action


class StorageError(ExperimentError):
    """Persistence failure (including lock or database timeouts)."""

    def __init__(self, message: str, retryable: bool = True, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.retryable = retryable
        self.cause = cause
