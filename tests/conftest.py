"""Shared fixtures for the gmrf_regression test suite."""

import numpy as np
import pytest

from gmrf_regression import Grid, ObservationTable, build_precision


def make_panel(grid, n_times, alpha, beta, tau, seed=0):
    """Complete panel from the site regression model using a numpy generator."""
    rng = np.random.default_rng(seed)
    n_sites = grid.site_count
    alpha = np.broadcast_to(alpha, (n_sites,))
    beta = np.broadcast_to(beta, (n_sites,))
    tau = np.broadcast_to(tau, (n_sites,))

    site = np.repeat(np.arange(n_sites), n_times)
    time = np.tile(np.arange(2000, 2000 + n_times), n_sites)
    covariate = rng.normal(size=site.size)
    noise = rng.normal(size=site.size) * np.exp(0.5 * tau[site])
    observed = alpha[site] + beta[site] * covariate + noise
    return ObservationTable(site, time, observed, covariate)


@pytest.fixture
def grid_3x3():
    return Grid(3, 3)


@pytest.fixture
def small_grid():
    return Grid(3, 2)


@pytest.fixture
def small_table(small_grid):
    rng = np.random.default_rng(7)
    n_sites = small_grid.site_count
    alpha = rng.normal(0.5, 0.3, n_sites)
    beta = rng.normal(2.0, 0.3, n_sites)
    return make_panel(small_grid, 5, alpha, beta, np.log(0.5), seed=11)


@pytest.fixture
def true_fields_3x3(grid_3x3):
    """Smooth generating fields on a 3x3 grid."""
    i, j = np.meshgrid(np.arange(3), np.arange(3), indexing='ij')
    alpha = grid_3x3.from_field(0.5 + 0.1 * i - 0.05 * j)
    beta = grid_3x3.from_field(2.0 + 0.05 * i + 0.1 * j)
    tau = np.full(grid_3x3.site_count, np.log(0.25))
    return {'alpha': alpha, 'beta': beta, 'tau': tau}


@pytest.fixture
def panel_3x3(grid_3x3, true_fields_3x3):
    return make_panel(
        grid_3x3, 200,
        true_fields_3x3['alpha'], true_fields_3x3['beta'], true_fields_3x3['tau'],
        seed=3
    )


@pytest.fixture
def precision_3x3(grid_3x3):
    return build_precision(grid_3x3)
