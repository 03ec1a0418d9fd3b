"""
Diagnostic utilities for GMRF spatial regression fits.

"""
from typing import List, Tuple, Union

import numpy as np
from scipy import sparse, stats

from gmrf_regression.utils.grid import Grid


def compute_fitted_values(
    alpha: np.ndarray,
    beta: np.ndarray,
    observations
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Fitted values and residuals for every observation record.

    Args:
        alpha: Intercept per site (S,)
        beta: Slope per site (S,)
        observations: ObservationTable the model was fitted to

    Returns:
        fitted: alpha_s + beta_s * covariate per record (n_records,)
        residuals: observed - fitted per record (n_records,)

    Example:
        >>> fitted, residuals = compute_fitted_values(result.alpha_hat, result.beta_hat, table)
        >>> print(f"RMSE: {np.sqrt(np.mean(residuals ** 2)):.3f}")
    """
    alpha = np.asarray(alpha, dtype=np.float64)
    beta = np.asarray(beta, dtype=np.float64)
    site = observations.site
    fitted = alpha[site] + beta[site] * observations.covariate
    residuals = observations.observed - fitted
    return fitted, residuals


def compute_standardized_residuals(
    residuals: np.ndarray,
    tau: np.ndarray,
    observations
) -> np.ndarray:
    """Residuals divided by the site noise standard deviation exp(tau_s / 2)."""
    tau = np.asarray(tau, dtype=np.float64)
    return np.asarray(residuals) * np.exp(-0.5 * tau[observations.site])


def compute_prediction_intervals(
    mean: np.ndarray,
    sd: np.ndarray,
    coverage: float = 0.95
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Equal-tailed Gaussian intervals mean +/- z * sd.

    Args:
        mean: Point estimates (n,)
        sd: Standard deviations (n,)
        coverage: Target coverage probability (default: 0.95)

    Returns:
        lower: Lower bounds (n,)
        upper: Upper bounds (n,)

    Example:
        >>> lower, upper = compute_prediction_intervals(result.alpha_hat, result.sd_alpha)
    """
    if not 0 < coverage < 1:
        raise ValueError(f"coverage must lie in (0, 1), got {coverage}")
    z = stats.norm.ppf(0.5 + coverage / 2)
    mean = np.asarray(mean, dtype=np.float64)
    sd = np.asarray(sd, dtype=np.float64)
    return mean - z * sd, mean + z * sd


def compute_coverage(
    predictions: np.ndarray,
    lower: np.ndarray,
    upper: np.ndarray,
    true_values: np.ndarray
) -> dict:
    """
    Compute empirical coverage statistics.

    Args:
        predictions: Point predictions (n,)
        lower: Lower interval bounds (n,)
        upper: Upper interval bounds (n,)
        true_values: True values (n,)

    Returns:
        stats: Dictionary of coverage statistics
    """
    predictions = np.asarray(predictions)
    true_values = np.asarray(true_values)

    in_interval = (true_values >= lower) & (true_values <= upper)
    errors = np.abs(predictions - true_values)

    return {
        'coverage': float(in_interval.mean()),
        'mean_interval_width': float(np.mean(upper - lower)),
        'mae': float(errors.mean()),
        'rmse': float(np.sqrt(np.mean(errors ** 2))),
        'below_rate': float(np.mean(true_values < lower)),
        'above_rate': float(np.mean(true_values > upper)),
        'n_obs': len(true_values)
    }


def compute_spatial_autocorrelation(
    values: np.ndarray,
    W: Union[Grid, sparse.spmatrix, np.ndarray]
) -> float:
    """
    Compute Moran's I statistic for spatial autocorrelation of a site field.

    Values near 0 indicate no spatial correlation, which is what per-site
    mean residuals of a well-specified fit should show.

    Args:
        values: One value per site (S,)
        W: Spatial weights matrix (S, S), or a Grid whose rook adjacency is used

    Returns:
        morans_i: Moran's I statistic

    Reference:
        Moran (1950), Cliff and Ord (1981)
    """
    if isinstance(W, Grid):
        W = W.adjacency()
    W = sparse.csr_matrix(W)
    values = np.asarray(values, dtype=np.float64)
    n = len(values)

    centered = values - values.mean()
    numerator = centered @ (W @ centered)
    denominator = centered @ centered
    if denominator == 0:
        return 0.0

    return float((n / W.sum()) * (numerator / denominator))


def site_mean_residuals(residuals: np.ndarray, observations, site_count: int) -> np.ndarray:
    """Average residual per site; NaN at sites without records."""
    counts = np.bincount(observations.site, minlength=site_count)
    totals = np.bincount(observations.site, weights=residuals, minlength=site_count)
    means = np.full(site_count, np.nan)
    np.divide(totals, counts, out=means, where=counts > 0)
    return means


def check_convergence_diagnostics(history: List[dict], tol: float = 1e-4) -> dict:
    """
    Summarise a Newton-Raphson history.

    Args:
        history: List of per-iteration dictionaries from NewtonRaphson.fit
        tol: Mean-squared-step threshold the fit used

    Returns:
        diagnostics: Dictionary of convergence diagnostics
    """
    if not history:
        return {'converged': False, 'message': 'Empty history'}

    steps = np.array([h['step_mse'] for h in history])
    log_densities = np.array([h['log_density'] for h in history])

    converged = bool(steps[-1] < tol)
    diffs = np.diff(log_densities)
    monotonic_ratio = 1.0 - float(np.mean(diffs < 0)) if diffs.size else 1.0

    # Ratio of successive steps; below 1 means the iteration is contracting
    if steps.size >= 2 and steps[-2] > 0:
        contraction = float(np.sqrt(steps[-1] / steps[-2]))
    else:
        contraction = float('nan')

    return {
        'converged': converged,
        'n_iterations': len(history),
        'final_step_mse': float(steps[-1]),
        'final_log_density': float(log_densities[-1]),
        'log_density_improvement': float(log_densities[-1] - log_densities[0]),
        'monotonic_ratio': monotonic_ratio,
        'contraction': contraction,
        'message': 'Converged' if converged else 'Not yet converged'
    }
