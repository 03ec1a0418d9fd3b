"""
GMRF Regression: spatially smoothed site regressions on a 2-D grid

A Python package that fits a local regression (intercept, slope,
log-variance) at every site of a rectangular grid, with the three parameter
fields tied together by a Gaussian Markov Random Field smoothness prior.
The posterior mode is found by damped Newton-Raphson and summarised by a
Laplace approximation.

Main Components:
    - precision: Random-walk structure and precision matrices
    - models: Log-density, gradient and Hessian of the joint model
    - inference: Damped Newton-Raphson and the one-call fitting routine
    - posterior: Laplace approximation and marginal standard deviations
    - utils: Grid indexing, banded solvers, synthetic data, diagnostics
"""

__version__ = "0.1.0"
__license__ = "MIT"

# Errors
from .exceptions import (
    GMRFRegressionError,
    ConfigurationError,
    DataError,
    NumericalError,
    ConvergenceError,
    EmptySiteWarning,
)

# Core building blocks
from .utils.grid import Grid
from .precision import (
    PrecisionMatrices,
    build_structure_matrix,
    build_precision,
)
from .observations import ObservationTable
from .models import SpatialRegressionGMRF, SufficientStatistics

# Inference engines
from .inference import (
    NewtonConfig,
    NewtonRaphson,
    ModeResult,
    SpatialRegressionResult,
    fit_spatial_regression,
)
from .posterior import LaplaceApproximation

# Most commonly used utilities (convenient imports)
from .utils import (
    generate_synthetic_panel,
    compute_fitted_values,
    compute_prediction_intervals,
    compute_coverage,
    compute_spatial_autocorrelation,
)

__all__ = [
    # Version info
    '__version__',
    # Errors
    'GMRFRegressionError',
    'ConfigurationError',
    'DataError',
    'NumericalError',
    'ConvergenceError',
    'EmptySiteWarning',
    # Core
    'Grid',
    'PrecisionMatrices',
    'build_structure_matrix',
    'build_precision',
    'ObservationTable',
    'SpatialRegressionGMRF',
    'SufficientStatistics',
    # Inference
    'NewtonConfig',
    'NewtonRaphson',
    'ModeResult',
    'SpatialRegressionResult',
    'fit_spatial_regression',
    'LaplaceApproximation',
    # Utils
    'generate_synthetic_panel',
    'compute_fitted_values',
    'compute_prediction_intervals',
    'compute_coverage',
    'compute_spatial_autocorrelation',
]


# Package-level configuration
def get_config():
    """Get current package configuration."""
    defaults = NewtonConfig()
    return {
        'version': __version__,
        'license': __license__,
        'damping': defaults.damping,
        'tol': defaults.tol,
        'max_iter': defaults.max_iter,
        'solver': defaults.solver,
    }


def print_info():
    """Print package information."""
    print(f"GMRF Regression v{__version__}")
    print(f"License: {__license__}")
    print("\nMain entry points:")
    print("  - fit_spatial_regression: mode, marginal SDs and residuals in one call")
    print("  - NewtonRaphson: damped Newton-Raphson on a SpatialRegressionGMRF")
    print("  - LaplaceApproximation: marginal standard deviations at the mode")
