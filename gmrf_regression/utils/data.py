"""
Data Generation Utilities for GMRF spatial regression.

Synthetic panels are drawn with torch so that a seed fully determines the
parameter fields, the covariates and the noise.
"""
from typing import Optional

import numpy as np
import torch

from gmrf_regression.observations import ObservationTable
from gmrf_regression.utils.grid import Grid


def generate_smooth_field(
    grid: Grid,
    length_scale: float = 0.3,
    scale: float = 1.0,
    seed: Optional[int] = None
) -> np.ndarray:
    """
    Generate a smooth random field on a rectangular grid.

    Draws from a Gaussian process with exponential covariance on the unit
    square, returned in the grid's column-major site order.

    Args:
        grid: Grid shape
        length_scale: Correlation length in units of the longer grid side
        scale: Standard deviation of the field
        seed: Random seed

    Returns:
        Field values (site_count,)

    Example:
        >>> field = generate_smooth_field(Grid(8, 6), length_scale=0.3)
        >>> Grid(8, 6).to_field(field).shape
        (8, 6)
    """
    if seed is not None:
        torch.manual_seed(seed)

    n_sites = grid.site_count
    extent = float(max(grid.rows, grid.cols) - 1)

    # Column-major coordinates: site = j * rows + i
    i = torch.arange(grid.rows, dtype=torch.float64)
    j = torch.arange(grid.cols, dtype=torch.float64)
    jj, ii = torch.meshgrid(j, i, indexing='ij')
    coords = torch.stack([ii.flatten(), jj.flatten()], dim=1) / extent

    diff = coords.unsqueeze(1) - coords.unsqueeze(0)
    distances = torch.sqrt(torch.sum(diff ** 2, dim=2))

    K = torch.exp(-distances / length_scale)
    K = K + torch.eye(n_sites, dtype=torch.float64) * 1e-6  # Jitter

    field = torch.distributions.MultivariateNormal(
        torch.zeros(n_sites, dtype=torch.float64), covariance_matrix=K
    ).sample() * scale

    return field.numpy()


def generate_smooth_parameter_fields(
    grid: Grid,
    alpha_mean: float = 0.5,
    beta_mean: float = 2.0,
    tau_mean: float = float(np.log(0.25)),
    alpha_scale: float = 0.3,
    beta_scale: float = 0.3,
    tau_scale: float = 0.2,
    length_scale: float = 0.5,
    seed: Optional[int] = None
) -> dict:
    """
    Generate smooth alpha, beta and tau fields around given means.

    Args:
        grid: Grid shape
        alpha_mean, beta_mean, tau_mean: Field means
        alpha_scale, beta_scale, tau_scale: Field standard deviations
        length_scale: Correlation length shared by the three fields
        seed: Random seed

    Returns:
        Dictionary with keys 'alpha', 'beta', 'tau' (each (site_count,))
    """
    if seed is not None:
        torch.manual_seed(seed)

    return {
        'alpha': alpha_mean + generate_smooth_field(grid, length_scale, alpha_scale),
        'beta': beta_mean + generate_smooth_field(grid, length_scale, beta_scale),
        'tau': tau_mean + generate_smooth_field(grid, length_scale, tau_scale),
    }


def generate_synthetic_panel(
    grid: Grid,
    n_times: int,
    alpha=None,
    beta=None,
    tau=None,
    covariate_scale: float = 1.0,
    first_time: int = 0,
    seed: Optional[int] = None
) -> dict:
    """
    Generate a complete panel from the site regression model.

    Creates data from
        y_st = alpha_s + beta_s * f_st + eps_st,  eps_st ~ N(0, exp(tau_s))
        f_st ~ N(0, covariate_scale^2)

    Args:
        grid: Grid shape
        n_times: Number of time periods per site
        alpha, beta, tau: True parameter fields (site_count,) or scalars;
            smooth random fields are generated for the ones left as None
        covariate_scale: Standard deviation of the covariate
        first_time: Label of the first time period
        seed: Random seed for reproducibility

    Returns:
        Dictionary containing:
            - observations: ObservationTable with site_count * n_times records
            - alpha, beta, tau: True parameter fields (site_count,)

    Example:
        >>> data = generate_synthetic_panel(Grid(3, 3), n_times=50, seed=0)
        >>> len(data['observations'])
        450
    """
    if n_times < 1:
        raise ValueError(f"n_times must be positive, got {n_times}")
    if seed is not None:
        torch.manual_seed(seed)

    n_sites = grid.site_count
    if alpha is None or beta is None or tau is None:
        generated = generate_smooth_parameter_fields(grid)
        alpha = generated['alpha'] if alpha is None else alpha
        beta = generated['beta'] if beta is None else beta
        tau = generated['tau'] if tau is None else tau

    alpha = np.broadcast_to(np.asarray(alpha, dtype=np.float64), (n_sites,)).copy()
    beta = np.broadcast_to(np.asarray(beta, dtype=np.float64), (n_sites,)).copy()
    tau = np.broadcast_to(np.asarray(tau, dtype=np.float64), (n_sites,)).copy()

    site = np.repeat(np.arange(n_sites), n_times)
    time = np.tile(np.arange(first_time, first_time + n_times), n_sites)

    covariate = torch.randn(n_sites * n_times, dtype=torch.float64) * covariate_scale
    noise = torch.randn(n_sites * n_times, dtype=torch.float64)
    noise_sd = torch.from_numpy(np.exp(0.5 * tau[site]))

    covariate = covariate.numpy()
    observed = alpha[site] + beta[site] * covariate + (noise * noise_sd).numpy()

    return {
        'observations': ObservationTable(site, time, observed, covariate),
        'alpha': alpha,
        'beta': beta,
        'tau': tau,
    }
