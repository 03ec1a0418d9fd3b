"""
Precision matrices for the 2-D random-walk smoothness prior.

The structural matrix D is a discrete Laplacian on the column-major grid with
free (Neumann) boundaries: each row of D sums to zero, so Q = D^T D has the
all-ones vector in its null space. The overall level of each parameter field
is therefore left to the likelihood.
"""
from dataclasses import dataclass

import numpy as np
from scipy import sparse

from gmrf_regression.utils.grid import Grid

NEIGHBOR_WEIGHT = 0.25


def build_structure_matrix(grid: Grid) -> sparse.csr_matrix:
    """
    Build the sparse structural matrix D of the 2-D random walk.

    The diagonal of D is 0.25 times the number of existing neighbours
    (1.0 interior, 0.75 edge, 0.5 corner). Off-diagonals at offset 1 link
    adjacent rows of the same column and are zeroed at the last row of each
    column, where offset 1 would otherwise alias into the first row of the
    next column. Off-diagonals at offset rows link adjacent columns and never
    cross a column boundary.

    Args:
        grid: Grid shape

    Returns:
        D: Symmetric sparse matrix (site_count, site_count)

    Example:
        >>> D = build_structure_matrix(Grid(2, 2))
        >>> D.toarray()
        array([[ 0.5 , -0.25, -0.25,  0.  ],
               [-0.25,  0.5 ,  0.  , -0.25],
               [-0.25,  0.  ,  0.5 , -0.25],
               [ 0.  , -0.25, -0.25,  0.5 ]])
    """
    n = grid.site_count
    rows = grid.rows

    main = NEIGHBOR_WEIGHT * grid.neighbor_counts().astype(np.float64)

    within_column = np.full(n - 1, -NEIGHBOR_WEIGHT)
    # Boundary fix: last row of column j must not connect to row 0 of column j+1
    within_column[rows - 1::rows] = 0.0

    across_columns = np.full(n - rows, -NEIGHBOR_WEIGHT)

    D = sparse.diags(
        [main, within_column, within_column, across_columns, across_columns],
        offsets=[0, 1, -1, rows, -rows],
        shape=(n, n),
        format='csr'
    )
    D.eliminate_zeros()
    return D


@dataclass(frozen=True, eq=False)
class PrecisionMatrices:
    """
    Prior precision matrices for the alpha, beta and tau fields.

    All three blocks share one smoothness model and therefore hold the same
    matrix D^T D; they are kept as separate attributes so callers can treat
    them as independent objects. Instances are immutable and can be shared
    read-only between independent fits on the same grid.

    Attributes:
        grid: Grid the matrices were built for
        structure: Structural matrix D (S, S)
        q_alpha: Precision of the intercept field (S, S)
        q_beta: Precision of the slope field (S, S)
        q_tau: Precision of the log-variance field (S, S)
        joint: Block-diagonal assembly diag(q_alpha, q_beta, q_tau) (3S, 3S)
    """
    grid: Grid
    structure: sparse.csr_matrix
    q_alpha: sparse.csr_matrix
    q_beta: sparse.csr_matrix
    q_tau: sparse.csr_matrix
    joint: sparse.csr_matrix

    @property
    def site_count(self) -> int:
        return self.grid.site_count

    @property
    def blocks(self):
        return (self.q_alpha, self.q_beta, self.q_tau)

    def quadratic_form(self, x: np.ndarray) -> float:
        """Compute x^T Q x for a stacked [alpha, beta, tau] vector."""
        return float(x @ (self.joint @ x))


def build_precision(grid: Grid) -> PrecisionMatrices:
    """
    Build the shared prior precision matrices for a grid.

    Args:
        grid: Grid shape (rows, cols >= 2, enforced by Grid)

    Returns:
        PrecisionMatrices with Q_alpha = Q_beta = Q_tau = D^T D

    Example:
        >>> precision = build_precision(Grid(3, 3))
        >>> np.allclose(precision.q_alpha @ np.ones(9), 0.0)
        True
    """
    D = build_structure_matrix(grid)
    Q = (D.T @ D).tocsr()
    Q.eliminate_zeros()

    joint = sparse.block_diag([Q, Q, Q], format='csr')

    return PrecisionMatrices(
        grid=grid,
        structure=D,
        q_alpha=Q,
        q_beta=Q.copy(),
        q_tau=Q.copy(),
        joint=joint,
    )
