"""
Tests for the damped Newton-Raphson mode finder and fit_spatial_regression.
"""

import os

import numpy as np
import pytest

from gmrf_regression import (
    ConfigurationError,
    ConvergenceError,
    EmptySiteWarning,
    Grid,
    NewtonConfig,
    NewtonRaphson,
    NumericalError,
    ObservationTable,
    SpatialRegressionGMRF,
    build_precision,
    fit_spatial_regression,
)
from gmrf_regression.utils.diagnostics import check_convergence_diagnostics

from conftest import make_panel


def ols_per_site(table, site_count):
    """Unregularised single-site regression: (alpha, beta, log(RSS / n))."""
    alpha = np.empty(site_count)
    beta = np.empty(site_count)
    tau = np.empty(site_count)
    for s in range(site_count):
        mask = table.site == s
        f, y = table.covariate[mask], table.observed[mask]
        X = np.column_stack([np.ones_like(f), f])
        coef = np.linalg.lstsq(X, y, rcond=None)[0]
        alpha[s], beta[s] = coef
        tau[s] = np.log(np.mean((y - X @ coef) ** 2))
    return alpha, beta, tau


def linear_panel(rows, cols, noise):
    """Every site observes y = 0.5 + 2 f + noise at f = -1, 0, 1."""
    grid = Grid(rows, cols)
    n_sites = grid.site_count
    f = np.array([-1.0, 0.0, 1.0])
    site = np.repeat(np.arange(n_sites), 3)
    time = np.tile([0, 1, 2], n_sites)
    covariate = np.tile(f, n_sites)
    observed = 0.5 + 2.0 * covariate + np.tile(noise, n_sites)
    return grid, ObservationTable(site, time, observed, covariate)


class TestNewtonConfig:
    """Validation of the iteration settings."""

    def test_defaults(self):
        config = NewtonConfig()
        assert config.damping == 1.0
        assert config.tol == 1e-4
        assert config.max_iter == 100
        assert config.solver == 'cholesky'
        assert config.posterior_hessian == 'damped'

    @pytest.mark.parametrize("options", [
        {'damping': -0.5},
        {'damping': np.nan},
        {'tol': 0.0},
        {'tol': -1e-4},
        {'max_iter': 0},
        {'max_iter': 2.5},
        {'max_iter': True},
        {'solver': 'qr'},
        {'posterior_hessian': 'exact'},
    ])
    def test_invalid(self, options):
        with pytest.raises(ConfigurationError):
            NewtonConfig(**options)

    def test_from_dict_lambda_alias(self):
        config = NewtonConfig.from_dict({'lambda': 2.0, 'tol': 1e-6})
        assert config.damping == 2.0
        assert config.tol == 1e-6

    def test_from_dict_conflicting_damping(self):
        with pytest.raises(ConfigurationError):
            NewtonConfig.from_dict({'lambda': 1.0, 'damping': 2.0})

    def test_from_dict_unknown_key(self):
        with pytest.raises(ConfigurationError, match="step_size"):
            NewtonConfig.from_dict({'step_size': 0.1})

    def test_option_overrides(self, precision_3x3, panel_3x3):
        model = SpatialRegressionGMRF(precision_3x3, panel_3x3, sigma2=1.0)
        newton = NewtonRaphson(model, NewtonConfig(tol=1e-6), damping=0.5)
        assert newton.config.tol == 1e-6
        assert newton.config.damping == 0.5


class TestDamping:
    """Levenberg-Marquardt scaling of the Hessian diagonal."""

    def test_diagonal_scaled(self, precision_3x3, panel_3x3):
        model = SpatialRegressionGMRF(precision_3x3, panel_3x3, sigma2=1.0)
        hess = model.hessian(np.zeros(model.n_params))
        damped = NewtonRaphson(model, damping=1.0).damp(hess)

        np.testing.assert_allclose(damped.diagonal(), 2.0 * hess.diagonal())
        off = (damped - hess).toarray()
        np.fill_diagonal(off, 0.0)
        assert np.all(off == 0.0)

    def test_zero_damping_is_identity(self, precision_3x3, panel_3x3):
        model = SpatialRegressionGMRF(precision_3x3, panel_3x3, sigma2=1.0)
        hess = model.hessian(np.zeros(model.n_params))
        damped = NewtonRaphson(model, damping=0.0).damp(hess)
        np.testing.assert_array_equal(damped.toarray(), hess.toarray())

    def test_step_solves_damped_system(self, precision_3x3, panel_3x3):
        model = SpatialRegressionGMRF(precision_3x3, panel_3x3, sigma2=1.0)
        newton = NewtonRaphson(model)
        x = np.zeros(model.n_params)
        _, grad, hess = model.evaluate(x)
        damped = newton.damp(hess)
        step = newton.solve_step(damped, grad)
        np.testing.assert_allclose(damped @ step, -grad, atol=1e-8)


class TestModeFinding:
    """Convergence and accuracy of the posterior mode."""

    def test_recovers_generating_fields(self, panel_3x3, true_fields_3x3):
        result = fit_spatial_regression(3, 3, panel_3x3, sigma2=1.0)

        assert np.max(np.abs(result.alpha_hat - true_fields_3x3['alpha'])) < 0.2
        assert np.max(np.abs(result.beta_hat - true_fields_3x3['beta'])) < 0.2
        tau_error = np.abs(result.tau_hat - true_fields_3x3['tau'])
        assert tau_error.mean() < 0.2
        assert tau_error.max() < 0.5
        assert result.n_iterations <= 50
        assert result.history[-1]['step_mse'] < 1e-4

    def test_result_shapes(self, panel_3x3, grid_3x3):
        result = fit_spatial_regression(3, 3, panel_3x3, sigma2=1.0)
        S = grid_3x3.site_count
        for name in ('alpha_hat', 'beta_hat', 'tau_hat', 'sd_alpha', 'sd_beta', 'sd_tau'):
            assert getattr(result, name).shape == (S,)
        assert result.fitted.shape == (len(panel_3x3),)
        np.testing.assert_allclose(result.fitted + result.residuals, panel_3x3.observed)
        assert result.fields()['alpha_hat'].shape == (3, 3)
        assert np.all(result.sd_alpha > 0)

    def test_idempotent_restart(self, precision_3x3, panel_3x3):
        model = SpatialRegressionGMRF(precision_3x3, panel_3x3, sigma2=1.0)
        first = NewtonRaphson(model).fit()
        second = NewtonRaphson(model).fit(x0=first.x)

        assert second.n_iterations == 1
        np.testing.assert_allclose(second.x, first.x, atol=0.05)

    def test_stops_on_mean_squared_step(self, precision_3x3, panel_3x3):
        model = SpatialRegressionGMRF(precision_3x3, panel_3x3, sigma2=1.0)
        mode = NewtonRaphson(model, tol=1e-4).fit()
        steps = [h['step_mse'] for h in mode.history]
        assert steps[-1] < 1e-4
        assert all(s >= 1e-4 for s in steps[:-1])

        diagnostics = check_convergence_diagnostics(mode.history, tol=1e-4)
        assert diagnostics['converged']
        assert diagnostics['n_iterations'] == mode.n_iterations

    def test_mode_log_density(self, precision_3x3, panel_3x3):
        model = SpatialRegressionGMRF(precision_3x3, panel_3x3, sigma2=1.0)
        mode = NewtonRaphson(model).fit()
        assert mode.log_density == pytest.approx(model.log_density(mode.x))
        assert mode.log_density > mode.history[0]['log_density']

    def test_lu_matches_cholesky(self, panel_3x3):
        banded = fit_spatial_regression(3, 3, panel_3x3, sigma2=1.0, solver='cholesky')
        general = fit_spatial_regression(3, 3, panel_3x3, sigma2=1.0, solver='lu')
        assert banded.n_iterations == general.n_iterations
        np.testing.assert_allclose(banded.mode.x, general.mode.x, atol=1e-8)

    def test_rectangular_grid(self):
        grid = Grid(4, 2)
        table = make_panel(grid, 100, 0.5, 2.0, np.log(0.25), seed=21)
        result = fit_spatial_regression(4, 2, table, sigma2=1.0)
        np.testing.assert_allclose(result.alpha_hat, 0.5, atol=0.2)
        np.testing.assert_allclose(result.beta_hat, 2.0, atol=0.2)

    def test_verbose_output(self, panel_3x3, capsys):
        fit_spatial_regression(3, 3, panel_3x3, sigma2=1.0, verbose=True, print_every=2)
        out = capsys.readouterr().out
        assert "Iter" in out
        assert "Converged after" in out

    @pytest.mark.parametrize("print_every", [0, -1, 1.5])
    def test_invalid_print_every(self, panel_3x3, print_every):
        with pytest.raises(ConfigurationError):
            fit_spatial_regression(3, 3, panel_3x3, sigma2=1.0, verbose=True, print_every=print_every)

    def test_accepts_column_mapping(self, panel_3x3):
        columns = {
            'site': panel_3x3.site,
            'time': panel_3x3.time,
            'observed': panel_3x3.observed,
            'covariate': panel_3x3.covariate,
        }
        from_mapping = fit_spatial_regression(3, 3, columns, sigma2=1.0)
        from_table = fit_spatial_regression(3, 3, panel_3x3, sigma2=1.0)
        np.testing.assert_array_equal(from_mapping.mode.x, from_table.mode.x)


class TestSmoothingStrength:
    """Effect of sigma2 on the fitted fields."""

    @pytest.fixture
    def rough_panel(self, grid_3x3):
        alpha = np.array([-1.0, 0.5, -0.25, 1.0, -0.75, 0.25, 0.75, -0.5, 0.0])
        beta = 2.0 + 0.5 * alpha[::-1]
        return make_panel(grid_3x3, 50, alpha, beta, np.log(0.25), seed=8)

    def test_large_sigma2_approaches_site_regressions(self, grid_3x3, rough_panel):
        result = fit_spatial_regression(3, 3, rough_panel, sigma2=1e4, tol=1e-10, max_iter=500)
        alpha, beta, tau = ols_per_site(rough_panel, grid_3x3.site_count)

        np.testing.assert_allclose(result.alpha_hat, alpha, atol=1e-3)
        np.testing.assert_allclose(result.beta_hat, beta, atol=1e-3)
        np.testing.assert_allclose(result.tau_hat, tau, atol=1e-3)

    def test_roughness_decreases_with_sigma2(self, precision_3x3, rough_panel):
        roughness = []
        for sigma2 in (1e2, 1.0, 1e-2):
            result = fit_spatial_regression(
                3, 3, rough_panel, sigma2=sigma2,
                tol=1e-10, max_iter=1000, precision=precision_3x3
            )
            roughness.append(precision_3x3.quadratic_form(result.mode.x))

        assert roughness[0] > roughness[1] > roughness[2]

    def test_small_sigma2_flattens_sites(self, grid_3x3, precision_3x3, rough_panel):
        loose = fit_spatial_regression(3, 3, rough_panel, sigma2=1e2, tol=1e-10,
                                       max_iter=1000, precision=precision_3x3)
        tight = fit_spatial_regression(3, 3, rough_panel, sigma2=1e-2, tol=1e-10,
                                       max_iter=1000, precision=precision_3x3)
        alpha_ols, _, _ = ols_per_site(rough_panel, grid_3x3.site_count)

        assert np.std(tight.alpha_hat) < np.std(loose.alpha_hat)
        assert (np.mean(np.abs(tight.alpha_hat - alpha_ols))
                > np.mean(np.abs(loose.alpha_hat - alpha_ols)))


class TestLinearScenario:
    """Every site of a 2x2 grid follows y = 0.5 + 2 f."""

    @pytest.mark.parametrize("sigma2", [0.5, 1.0, 10.0])
    @pytest.mark.parametrize("tau", [-3.0, 0.0, 2.0])
    def test_noise_free_fit_is_stationary(self, sigma2, tau):
        """An exact linear fit zeroes the intercept and slope gradients for any sigma2."""
        grid, table = linear_panel(2, 2, np.zeros(3))
        model = SpatialRegressionGMRF(build_precision(grid), table, sigma2=sigma2)
        S = grid.site_count
        x = np.concatenate([np.full(S, 0.5), np.full(S, 2.0), np.full(S, tau)])

        grad = model.gradient(x)
        np.testing.assert_allclose(grad[:2 * S], 0.0, atol=1e-12)
        assert np.all(model.residuals(x) == 0.0)

    @pytest.mark.parametrize("sigma2", [0.5, 1.0, 10.0])
    def test_recovers_line_regardless_of_sigma2(self, sigma2):
        # Noise orthogonal to (1, f): the per-site fit is exact and identical
        # at every site, so the constant fields are the mode for any sigma2
        grid, table = linear_panel(2, 2, 0.01 * np.array([1.0, -2.0, 1.0]))
        result = fit_spatial_regression(2, 2, table, sigma2=sigma2, tol=1e-10, max_iter=500)

        np.testing.assert_allclose(result.alpha_hat, 0.5, atol=1e-4)
        np.testing.assert_allclose(result.beta_hat, 2.0, atol=1e-4)
        np.testing.assert_allclose(result.tau_hat, np.log(6e-4 / 3), atol=1e-3)

    @pytest.mark.parametrize("sigma2", [0.5, 1.0])
    def test_noise_free_fit_does_not_converge(self, sigma2):
        """With zero residuals tau falls by a constant step every iteration."""
        grid, table = linear_panel(2, 2, np.zeros(3))
        with pytest.raises(ConvergenceError) as excinfo:
            fit_spatial_regression(2, 2, table, sigma2=sigma2)

        steps = np.array([h["step_mse"] for h in excinfo.value.history])
        assert excinfo.value.n_iterations == 100
        assert steps.size == 100
        # Step in every tau_s is -1.5 / (Q_ss / sigma2) = -4 sigma2, with Q_ss = 0.375
        assert np.all(steps[-20:] > 1.0)
        assert steps[-1] == pytest.approx(16 * sigma2 ** 2 / 3, rel=0.05)

    def test_noise_free_fit_stalls_with_loose_prior(self):
        """A loose prior lets tau run to round-off, where the step test passes."""
        grid, table = linear_panel(2, 2, np.zeros(3))
        result = fit_spatial_regression(2, 2, table, sigma2=10.0)

        np.testing.assert_allclose(result.alpha_hat, 0.5, atol=0.05)
        np.testing.assert_allclose(result.beta_hat, 2.0, atol=0.05)
        assert np.all(result.tau_hat < -10)


class TestFailures:
    """Errors raised by the mode finder."""

    def test_iteration_cap(self, panel_3x3):
        with pytest.raises(ConvergenceError) as excinfo:
            fit_spatial_regression(3, 3, panel_3x3, sigma2=1.0, max_iter=1)

        error = excinfo.value
        assert isinstance(error, NumericalError)
        assert error.n_iterations == 1
        assert len(error.history) == 1
        assert error.last_step > 1e-4

    @pytest.mark.parametrize("solver", ["cholesky", "lu"])
    def test_indefinite_undamped_system(self, solver):
        """Without damping the Hessian far from the mode can be indefinite."""
        grid = Grid(2, 2)
        n_sites = grid.site_count
        site = np.repeat(np.arange(n_sites), 3)
        time = np.tile([0, 1, 2], n_sites)
        covariate = np.tile([-1.0, 0.0, 1.0], n_sites)
        table = ObservationTable(site, time, np.full(site.size, 5.0), covariate)

        model = SpatialRegressionGMRF(build_precision(grid), table, sigma2=1e6)
        with pytest.raises(NumericalError):
            NewtonRaphson(model, damping=0.0, solver=solver).fit(x0=np.zeros(model.n_params))

    def test_indefinite_step_rejected_by_lu(self):
        """The LU solver refuses a step from an indefinite damped Hessian."""
        grid = Grid(2, 2)
        n_sites = grid.site_count
        site = np.repeat(np.arange(n_sites), 3)
        time = np.tile([0, 1, 2], n_sites)
        covariate = np.tile([-1.0, 0.0, 1.0], n_sites)
        table = ObservationTable(site, time, np.full(site.size, 5.0), covariate)

        model = SpatialRegressionGMRF(build_precision(grid), table, sigma2=1e6)
        newton = NewtonRaphson(model, damping=0.0, solver="lu")
        _, grad, hess = model.evaluate(np.zeros(model.n_params))
        assert np.linalg.eigvalsh(-hess.toarray()).min() < 0
        with pytest.raises(NumericalError):
            newton.solve_step(newton.damp(hess), grad)

    def test_x0_wrong_shape(self, precision_3x3, panel_3x3):
        model = SpatialRegressionGMRF(precision_3x3, panel_3x3, sigma2=1.0)
        with pytest.raises(ValueError):
            NewtonRaphson(model).fit(x0=np.zeros(5))

    def test_invalid_sigma2(self, panel_3x3):
        with pytest.raises(ConfigurationError):
            fit_spatial_regression(3, 3, panel_3x3, sigma2=0.0)

    def test_degenerate_grid(self, panel_3x3):
        with pytest.raises(ConfigurationError):
            fit_spatial_regression(1, 9, panel_3x3, sigma2=1.0)

    def test_precision_for_other_grid(self, panel_3x3):
        with pytest.raises(ConfigurationError):
            fit_spatial_regression(3, 3, panel_3x3, sigma2=1.0, precision=build_precision(Grid(3, 4)))


class TestSharedPrecision:
    """One set of precision matrices serves many fits."""

    def test_precision_unchanged_by_fits(self, precision_3x3, panel_3x3):
        joint_before = precision_3x3.joint.toarray().copy()
        for sigma2 in (0.5, 2.0):
            fit_spatial_regression(3, 3, panel_3x3, sigma2=sigma2, precision=precision_3x3)
        np.testing.assert_array_equal(precision_3x3.joint.toarray(), joint_before)

    def test_same_result_as_fresh_precision(self, precision_3x3, panel_3x3):
        shared = fit_spatial_regression(3, 3, panel_3x3, sigma2=1.0, precision=precision_3x3)
        fresh = fit_spatial_regression(3, 3, panel_3x3, sigma2=1.0)
        np.testing.assert_array_equal(shared.mode.x, fresh.mode.x)


class TestEmptySites:
    """Sites without observations are estimated from their neighbours."""

    def test_empty_centre_site(self, panel_3x3):
        table = panel_3x3.subset(panel_3x3.site != 4)
        with pytest.warns(EmptySiteWarning):
            result = fit_spatial_regression(3, 3, table, sigma2=1.0)

        assert np.all(np.isfinite(result.alpha_hat))
        others = np.delete(np.arange(9), 4)
        assert result.sd_alpha[4] > result.sd_alpha[others].max()
        assert result.sd_tau[4] > result.sd_tau[others].max()
        assert 0.0 < result.alpha_hat[4] < 1.0

    def test_warning_attributed_to_fit_caller(self, panel_3x3):
        table = panel_3x3.subset(panel_3x3.site != 4)
        with pytest.warns(EmptySiteWarning) as record:
            fit_spatial_regression(3, 3, table, sigma2=1.0)
        empty = [w for w in record if issubclass(w.category, EmptySiteWarning)]
        assert len(empty) == 1
        assert os.path.basename(empty[0].filename) == os.path.basename(__file__)

    def test_warning_attributed_to_model_caller(self, precision_3x3, panel_3x3):
        table = panel_3x3.subset(panel_3x3.site != 4)
        with pytest.warns(EmptySiteWarning) as record:
            SpatialRegressionGMRF(precision_3x3, table, sigma2=1.0)
        assert os.path.basename(record[0].filename) == os.path.basename(__file__)
