"""
Error taxonomy for the MRV Guardian ML core.

Configuration errors (undersized corpora, unfitted models) are raised and
named so callers can tell them apart from data problems. Advisory paths
(drift checks, forecasting) report insufficient data through structured
results instead of raising.
"""

from typing import Optional


class GuardianError(Exception):
    """Base class for all MRV Guardian errors."""


class InsufficientTrainingDataError(GuardianError, ValueError):
    """Raised when a model is fit or retrained on too small a corpus."""

    def __init__(self, required: int, provided: int, what: str = "readings"):
        self.required = required
        self.provided = provided
        super().__init__(
            f"Need at least {required} {what} to train, got {provided}"
        )


class ModelNotFittedError(GuardianError, RuntimeError):
    """Raised when a model is used before it has been trained."""


class SnapshotError(GuardianError):
    """Raised when a persisted snapshot is missing, corrupt or unreadable."""

    def __init__(self, message: str, path: Optional[str] = None):
        self.path = path
        super().__init__(f"{message} ({path})" if path else message)


class ScorerError(GuardianError):
    """Raised when an out-of-process scorer fails or returns garbage."""
