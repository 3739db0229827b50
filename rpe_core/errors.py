"""
Exception taxonomy for robust position estimation.

- ConfigurationError: bad arguments, raised synchronously by setters/constructors
- LockedError: mutation attempted while an estimation is running
- NotReadyError: estimate() called without sufficient inputs
- LaterationError: single-shot solver failures (numerical vs convergence)
- RobustEstimationError: the robust loop produced no usable solution
"""


class RPEError(Exception):
    """Base class for all robust position estimation errors."""


class ConfigurationError(RPEError, ValueError):
    """Illegal argument: out-of-range value, missing or mismatched input."""


class LockedError(RPEError, RuntimeError):
    """Raised by any mutator (or estimate()) while an estimation is running."""

    def __init__(self, message: str = "estimator is locked while estimating"):
        super().__init__(message)


class NotReadyError(RPEError, RuntimeError):
    """Raised when required inputs are missing or insufficient."""

    def __init__(self, message: str = "estimator is not ready"):
        super().__init__(message)


class LaterationError(RPEError):
    """Base class for single-shot lateration failures."""


class NumericalError(LaterationError):
    """Singular or ill-conditioned system of equations."""


class ConvergenceError(LaterationError):
    """Iterative solver did not converge."""


class RobustEstimationError(RPEError):
    """Robust loop could not produce any usable solution."""
