"""
Spatial regression model with a GMRF smoothness prior.

At every grid site s the observations follow a local regression

    y_st = alpha_s + beta_s * f_st + eps_st,   eps_st ~ N(0, exp(tau_s))

and the three parameter fields alpha, beta, tau each carry the 2-D random-walk
prior N(0, sigma2 * Q^-1). This module evaluates the joint log-density of
x = [alpha, beta, tau] together with its analytic gradient and sparse
Hessian. The likelihood couples the three parameters of one site only;
coupling between sites comes from the prior alone.
"""
from dataclasses import dataclass
from typing import Tuple

import numpy as np
from scipy import sparse

from gmrf_regression.exceptions import ConfigurationError
from gmrf_regression.observations import ObservationTable, as_observation_table
from gmrf_regression.precision import PrecisionMatrices

N_BLOCKS = 3


@dataclass(frozen=True, eq=False)
class SufficientStatistics:
    """
    Per-site aggregates of the current residuals r = y - alpha_s - beta_s * f.

    Every attribute is an array of length site_count.
    """
    n: np.ndarray
    sum_resid: np.ndarray
    sum_resid_sq: np.ndarray
    sum_f_resid: np.ndarray
    sum_f: np.ndarray
    sum_f_sq: np.ndarray
    exp_neg_tau: np.ndarray


class SpatialRegressionGMRF:
    """
    Objective evaluator for the spatially smoothed site regressions.

    All evaluation methods are pure functions of x: the model holds only the
    immutable precision matrices, the observation table and sigma2, so one
    instance can be evaluated repeatedly (or from several threads) without
    side effects.

    Args:
        precision: Prior precision matrices (built once per grid)
        observations: ObservationTable, column mapping or record iterable
        sigma2: Prior scale of the smoothness prior (> 0); the prior term is
            -0.5 * x^T Q x / sigma2, so larger values smooth less
        warn_empty: Emit EmptySiteWarning for sites without records

    Example:
        >>> grid = Grid(3, 3)
        >>> model = SpatialRegressionGMRF(build_precision(grid), table, sigma2=1.0)
        >>> f, grad, hess = model.evaluate(np.zeros(model.n_params))
    """

    def __init__(
        self,
        precision: PrecisionMatrices,
        observations,
        sigma2: float,
        warn_empty: bool = True
    ):
        sigma2 = float(sigma2)
        if not np.isfinite(sigma2) or sigma2 <= 0:
            raise ConfigurationError(f"sigma2 must be positive and finite, got {sigma2}")

        self.precision = precision
        self.grid = precision.grid
        self.observations: ObservationTable = as_observation_table(observations)
        self.sigma2 = sigma2

        self.n_sites = self.grid.site_count
        self.n_params = N_BLOCKS * self.n_sites

        self.empty_sites = self.observations.validate(self.grid, warn_empty=warn_empty, stacklevel=3)
        # Data-only aggregates, fixed for the lifetime of the model
        self._n, self._sum_f, self._sum_f_sq = self.observations.site_totals(self.n_sites)

    def split(self, x: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Split a stacked parameter vector into (alpha, beta, tau) views."""
        x = np.asarray(x, dtype=np.float64)
        if x.shape != (self.n_params,):
            raise ValueError(
                f"Parameter vector must have shape ({self.n_params},), got {x.shape}"
            )
        S = self.n_sites
        return x[:S], x[S:2 * S], x[2 * S:]

    def residuals(self, x: np.ndarray) -> np.ndarray:
        """Residual y - alpha_s - beta_s * f for every record."""
        alpha, beta, _ = self.split(x)
        obs = self.observations
        return obs.observed - alpha[obs.site] - beta[obs.site] * obs.covariate

    def sufficient_statistics(self, x: np.ndarray) -> SufficientStatistics:
        """
        Aggregate the current residuals per site in a single grouping pass.

        Args:
            x: Stacked parameters [alpha, beta, tau] (3S,)

        Returns:
            SufficientStatistics for every site
        """
        _, _, tau = self.split(x)
        obs = self.observations
        S = self.n_sites

        resid = self.residuals(x)
        sum_resid = np.bincount(obs.site, weights=resid, minlength=S)
        sum_resid_sq = np.bincount(obs.site, weights=resid ** 2, minlength=S)
        sum_f_resid = np.bincount(obs.site, weights=obs.covariate * resid, minlength=S)

        return SufficientStatistics(
            n=self._n,
            sum_resid=sum_resid,
            sum_resid_sq=sum_resid_sq,
            sum_f_resid=sum_f_resid,
            sum_f=self._sum_f,
            sum_f_sq=self._sum_f_sq,
            exp_neg_tau=np.exp(-tau),
        )

    def _log_density(self, x, stats: SufficientStatistics) -> float:
        _, _, tau = self.split(x)
        prior = -0.5 * self.precision.quadratic_form(x) / self.sigma2
        likelihood = -np.sum(0.5 * stats.n * tau + 0.5 * stats.exp_neg_tau * stats.sum_resid_sq)
        return float(prior + likelihood)

    def _gradient(self, x, stats: SufficientStatistics) -> np.ndarray:
        x = np.asarray(x, dtype=np.float64)
        grad = -(self.precision.joint @ x) / self.sigma2
        S = self.n_sites
        e = stats.exp_neg_tau
        grad[:S] += e * stats.sum_resid
        grad[S:2 * S] += e * stats.sum_f_resid
        grad[2 * S:] += -0.5 * stats.n + 0.5 * e * stats.sum_resid_sq
        return grad

    def _hessian(self, stats: SufficientStatistics) -> sparse.csr_matrix:
        S = self.n_sites
        e = stats.exp_neg_tau
        sites = np.arange(S)
        a, b, t = sites, sites + S, sites + 2 * S

        d_aa = -stats.n * e
        d_bb = -e * stats.sum_f_sq
        d_tt = -0.5 * e * stats.sum_resid_sq
        d_ab = -e * stats.sum_f
        d_at = -e * stats.sum_resid
        d_bt = -e * stats.sum_f_resid

        # Same-site 3x3 blocks, both triangles of the cross terms
        rows = np.concatenate([a, b, t, a, b, a, t, b, t])
        cols = np.concatenate([a, b, t, b, a, t, a, t, b])
        data = np.concatenate([d_aa, d_bb, d_tt, d_ab, d_ab, d_at, d_at, d_bt, d_bt])
        likelihood = sparse.coo_matrix((data, (rows, cols)), shape=(self.n_params, self.n_params))

        hess = likelihood.tocsr() - self.precision.joint / self.sigma2
        return hess.tocsr()

    def log_density(self, x: np.ndarray) -> float:
        """
        Joint log-density (up to a constant) of the parameters and the data.

        f(x) = -1/2 x^T Q x / sigma2 - sum_s [n_s/2 tau_s + 1/2 exp(-tau_s) RSS_s]
        """
        return self._log_density(x, self.sufficient_statistics(x))

    def gradient(self, x: np.ndarray) -> np.ndarray:
        """Analytic gradient of log_density, block order (alpha, beta, tau)."""
        return self._gradient(x, self.sufficient_statistics(x))

    def hessian(self, x: np.ndarray) -> sparse.csr_matrix:
        """Analytic sparse Hessian of log_density (3S, 3S)."""
        return self._hessian(self.sufficient_statistics(x))

    def evaluate(self, x: np.ndarray) -> Tuple[float, np.ndarray, sparse.csr_matrix]:
        """
        Evaluate value, gradient and Hessian with one aggregation pass.

        Args:
            x: Stacked parameters [alpha, beta, tau] (3S,)

        Returns:
            f: Log-density value
            grad: Gradient (3S,)
            hess: Sparse Hessian (3S, 3S)
        """
        stats = self.sufficient_statistics(x)
        return self._log_density(x, stats), self._gradient(x, stats), self._hessian(stats)

    def fitted_values(self, x: np.ndarray) -> np.ndarray:
        """Fitted value alpha_s + beta_s * f for every record."""
        alpha, beta, _ = self.split(x)
        obs = self.observations
        return alpha[obs.site] + beta[obs.site] * obs.covariate
