"""
Quick start example for GMRF spatial regression.

Minimal example showing the essential workflow: simulate a panel on a grid,
fit the smoothed site regressions and check the uncertainty estimates.
"""

import numpy as np
from gmrf_regression import Grid, build_precision, fit_spatial_regression
from gmrf_regression.utils import (
    generate_synthetic_panel,
    compute_prediction_intervals,
    compute_coverage,
    compute_spatial_autocorrelation,
    site_mean_residuals,
)

# 1. Create grid and generate data
print("Generating data...")
rows, cols = 8, 6
grid = Grid(rows, cols)
data = generate_synthetic_panel(grid, n_times=30, seed=42)
table = data['observations']

# 2. Build the shared prior once (reusable across fits on this grid)
precision = build_precision(grid)

# 3. Fit with damped Newton-Raphson
print("Fitting model...")
result = fit_spatial_regression(
    rows, cols, table,
    sigma2=1.0,
    damping=1.0,
    tol=1e-4,
    precision=precision,
    verbose=True,
)

# 4. Evaluate
rmse_alpha = np.sqrt(np.mean((result.alpha_hat - data['alpha']) ** 2))
rmse_beta = np.sqrt(np.mean((result.beta_hat - data['beta']) ** 2))

lower, upper = compute_prediction_intervals(result.beta_hat, result.sd_beta, coverage=0.95)
coverage = compute_coverage(result.beta_hat, lower, upper, data['beta'])

mean_resid = site_mean_residuals(result.residuals, table, grid.site_count)
morans_i = compute_spatial_autocorrelation(mean_resid, grid)

print(f"\n{'='*40}")
print(f"Results:")
print(f"  Newton iterations: {result.n_iterations}")
print(f"  RMSE alpha: {rmse_alpha:.4f}")
print(f"  RMSE beta: {rmse_beta:.4f}")
print(f"  95% coverage of beta: {coverage['coverage']:.2f}")
print(f"  Moran's I of site residuals: {morans_i:.3f}")
print(f"{'='*40}")
