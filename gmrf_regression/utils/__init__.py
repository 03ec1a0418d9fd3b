"""
Utility functions for GMRF spatial regression.

This subpackage contains helper functions organized into modules:
    - grid: Grid indexing, neighbours and adjacency
    - banded: Banded Cholesky solves and inverse diagonals
    - data: Synthetic data generation
    - diagnostics: Fitted values, residual checks and interval coverage
"""

# Grid utilities
from .grid import Grid

# Banded linear algebra
from .banded import (
    BandedCholesky,
    interleave_permutation,
    solve_sparse,
    to_lower_banded,
)

# Data generation
from .data import (
    generate_smooth_field,
    generate_smooth_parameter_fields,
    generate_synthetic_panel,
)

# Diagnostics
from .diagnostics import (
    compute_fitted_values,
    compute_standardized_residuals,
    compute_prediction_intervals,
    compute_coverage,
    compute_spatial_autocorrelation,
    site_mean_residuals,
    check_convergence_diagnostics,
)

__all__ = [
    # Grid
    'Grid',
    # Banded
    'BandedCholesky',
    'interleave_permutation',
    'solve_sparse',
    'to_lower_banded',
    # Data
    'generate_smooth_field',
    'generate_smooth_parameter_fields',
    'generate_synthetic_panel',
    # Diagnostics
    'compute_fitted_values',
    'compute_standardized_residuals',
    'compute_prediction_intervals',
    'compute_coverage',
    'compute_spatial_autocorrelation',
    'site_mean_residuals',
    'check_convergence_diagnostics',
]
