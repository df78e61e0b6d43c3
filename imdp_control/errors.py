"""
Error taxonomy for the IMDP engine.

InvalidBoundsError, IntegrationError and InconsistentIntervalError are
fatal and raised. MaxIterationsExceeded is a warning category: it is
issued through warnings.warn and the best current estimate is returned.
"""


class InvalidBoundsError(ValueError):
    """Malformed grid parameters (lower >= upper, step <= 0, ...)."""


class IntegrationError(RuntimeError):
    """
    Transition bound computation failed for one or more units.

    Attributes:
        failed_units: {(source_cell, input_idx, mode_idx): reason}
    """

    def __init__(self, message: str, failed_units=None):
        super().__init__(message)
        self.failed_units = dict(failed_units or {})


class InconsistentIntervalError(ValueError):
    """
    The assembled IMDP has rows that no probability vector can realize.

    Attributes:
        rows: List of offending (state, action) pairs
    """

    def __init__(self, message: str, rows=None):
        super().__init__(message)
        self.rows = list(rows or [])


class MaxIterationsExceeded(RuntimeWarning):
    """Infinite-horizon value iteration stopped before converging."""
