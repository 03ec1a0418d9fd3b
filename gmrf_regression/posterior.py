"""
Laplace approximation of the posterior at the Newton mode.

The posterior of x = [alpha, beta, tau] is approximated by a Gaussian centred
at the mode with covariance (-H)^-1. By default H is the last damped Hessian
of the Newton iteration (its diagonal is scaled by 1 + damping), which
slightly overstates the precision and so understates the marginal variances.
Pass which='undamped' to re-evaluate the exact Hessian at the mode instead.
"""
import logging
from typing import Tuple

import numpy as np
from scipy import sparse

from gmrf_regression.exceptions import NumericalError
from gmrf_regression.utils.banded import BandedCholesky
from gmrf_regression.utils.diagnostics import compute_prediction_intervals
from gmrf_regression.utils.grid import Grid

logger = logging.getLogger(__name__)

# Above this many unknowns the dense inverse is refused unless forced
DENSE_INVERSE_LIMIT = 6000


class LaplaceApproximation:
    """
    Gaussian approximation N(mode, (-H)^-1) of the GMRF regression posterior.

    Args:
        mode: Posterior mode [alpha, beta, tau] (3S,)
        hessian: Sparse Hessian of the log-density at (or near) the mode (3S, 3S)
        grid: Grid the parameter fields live on

    Example:
        >>> laplace = LaplaceApproximation.from_mode(mode_result, model)
        >>> sd_alpha, sd_beta, sd_tau = laplace.marginal_sd()
    """

    def __init__(self, mode: np.ndarray, hessian: sparse.spmatrix, grid: Grid):
        mode = np.asarray(mode, dtype=np.float64)
        n = 3 * grid.site_count
        if mode.shape != (n,) or hessian.shape != (n, n):
            raise ValueError(
                f"Mode {mode.shape} and Hessian {hessian.shape} do not match "
                f"3 fields on {grid.site_count} sites"
            )
        self.mode = mode
        self.hessian = sparse.csr_matrix(hessian)
        self.grid = grid
        self._variances = {}

    @classmethod
    def from_mode(cls, mode_result, model, which: str = 'damped') -> 'LaplaceApproximation':
        """
        Build the approximation from a converged ModeResult.

        Args:
            mode_result: Output of NewtonRaphson.fit
            model: SpatialRegressionGMRF the mode was computed for
            which: 'damped' reuses the last damped Hessian of the iteration,
                'undamped' evaluates the exact Hessian at the mode
        """
        if which == 'damped':
            hessian = mode_result.hessian
        elif which == 'undamped':
            hessian = model.hessian(mode_result.x)
        else:
            raise ValueError(f"Unknown Hessian choice: {which}")
        return cls(mode_result.x, hessian, model.grid)

    @property
    def precision(self) -> sparse.csr_matrix:
        """Posterior precision -H."""
        return (-self.hessian).tocsr()

    def marginal_variances(self, method: str = 'banded', force: bool = False) -> np.ndarray:
        """
        Diagonal of the posterior covariance (-H)^-1.

        Args:
            method: 'banded' uses a banded Cholesky factor in site-interleaved
                order and the Takahashi recursion, O(S * min(rows, cols)^2).
                'dense' inverts the full matrix, O(S^3) time and O(S^2)
                memory; it does not scale and is meant for small grids and
                cross-checks.
            force: Allow method='dense' above DENSE_INVERSE_LIMIT unknowns

        Returns:
            variances: Marginal variances (3S,) in block order
        """
        if method in self._variances:
            return self._variances[method]

        if method == 'banded':
            variances = BandedCholesky(self.precision, self.grid).inverse_diagonal()

        elif method == 'dense':
            n = self.hessian.shape[0]
            if n > DENSE_INVERSE_LIMIT and not force:
                raise ValueError(
                    f"Dense inverse of a {n}x{n} matrix does not scale; "
                    "use method='banded' or pass force=True"
                )
            logger.warning("Dense inverse of a %dx%d precision matrix (non-scalable)", n, n)
            try:
                covariance = np.linalg.inv(self.precision.toarray())
            except np.linalg.LinAlgError as e:
                raise NumericalError(f"Posterior precision is singular: {e}") from e
            variances = np.diag(covariance).copy()

        else:
            raise ValueError(f"Unknown variance method: {method}")

        if not np.all(np.isfinite(variances)) or np.any(variances <= 0):
            raise NumericalError(
                "Marginal variances are not positive; the posterior precision "
                "is not positive definite"
            )

        self._variances[method] = variances
        return variances

    def marginal_sd(self, method: str = 'banded') -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Marginal posterior standard deviations.

        Returns:
            sd_alpha, sd_beta, sd_tau: Arrays of length S
        """
        sd = np.sqrt(self.marginal_variances(method))
        S = self.grid.site_count
        return sd[:S], sd[S:2 * S], sd[2 * S:]

    def credible_intervals(self, coverage: float = 0.95, method: str = 'banded'):
        """
        Equal-tailed Gaussian credible intervals for every parameter.

        Returns:
            lower, upper: Arrays (3S,) in block order
        """
        sd = np.sqrt(self.marginal_variances(method))
        return compute_prediction_intervals(self.mode, sd, coverage=coverage)

    def get_parameter_summary(self, method: str = 'banded') -> dict:
        """
        Summary of the posterior mode and marginal standard deviations.

        Returns:
            Dictionary with per-field modes and standard deviations
        """
        S = self.grid.site_count
        sd_alpha, sd_beta, sd_tau = self.marginal_sd(method)
        return {
            'alpha_mean': self.mode[:S],
            'alpha_std': sd_alpha,
            'beta_mean': self.mode[S:2 * S],
            'beta_std': sd_beta,
            'tau_mean': self.mode[2 * S:],
            'tau_std': sd_tau,
        }
