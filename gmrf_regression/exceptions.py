"""
Error types for GMRF spatial regression.

Configuration and data errors are raised before Newton iteration starts.
Numerical errors abort the current fit; no partial mode is returned.
"""


class GMRFRegressionError(Exception):
    """Base class for all errors raised by gmrf_regression."""


class ConfigurationError(GMRFRegressionError, ValueError):
    """Degenerate grid shape, non-positive sigma2 or an invalid solver option."""


class DataError(GMRFRegressionError, ValueError):
    """Observation records that are inconsistent with the grid."""


class NumericalError(GMRFRegressionError, ArithmeticError):
    """A linear solve or inverse-diagonal extraction failed."""


class ConvergenceError(NumericalError):
    """
    Newton iteration hit its iteration cap before the step criterion was met.

    Attributes:
        n_iterations: Number of Newton steps taken
        last_step: Mean squared step of the final iteration
        history: Per-iteration diagnostics collected before giving up
    """

    def __init__(self, message, n_iterations=None, last_step=None, history=None):
        super().__init__(message)
        self.n_iterations = n_iterations
        self.last_step = last_step
        self.history = history if history is not None else []


class EmptySiteWarning(UserWarning):
    """A grid site has no observations; its estimate comes from the prior alone."""
