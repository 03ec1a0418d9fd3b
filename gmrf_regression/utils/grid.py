"""
Grid indexing utilities for GMRF spatial regression.

Sites on a rows x cols lattice are flattened column-major: the site in row i,
column j (both 0-based) has index j * rows + i. The precision builder relies
on this ordering for its neighbour offsets (1 within a column, rows across
columns).
"""
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
from scipy import sparse

from gmrf_regression.exceptions import ConfigurationError


@dataclass(frozen=True)
class Grid:
    """
    Rectangular lattice with 4-neighbour (rook) topology and free boundaries.

    Args:
        rows: Number of grid rows (>= 2)
        cols: Number of grid columns (>= 2)

    Example:
        >>> grid = Grid(3, 4)
        >>> grid.site_of(2, 1)
        5
        >>> grid.coords_of(5)
        (2, 1)
    """
    rows: int
    cols: int

    def __post_init__(self):
        for name in ('rows', 'cols'):
            value = getattr(self, name)
            if isinstance(value, bool) or int(value) != value:
                raise ConfigurationError(f"{name} must be an integer, got {value!r}")
            object.__setattr__(self, name, int(value))
        if self.rows < 2 or self.cols < 2:
            raise ConfigurationError(
                f"Grid shape ({self.rows}, {self.cols}) is degenerate: "
                "the 2-D random walk needs at least 2 rows and 2 columns"
            )

    @property
    def shape(self) -> Tuple[int, int]:
        return (self.rows, self.cols)

    @property
    def site_count(self) -> int:
        return self.rows * self.cols

    def _check_coords(self, i: int, j: int):
        if not (0 <= i < self.rows and 0 <= j < self.cols):
            raise IndexError(f"Coordinates ({i}, {j}) outside grid of shape {self.shape}")

    def site_of(self, i: int, j: int) -> int:
        """Flat site index of row i, column j."""
        self._check_coords(i, j)
        return j * self.rows + i

    def coords_of(self, site: int) -> Tuple[int, int]:
        """Inverse of site_of: (row, column) of a flat site index."""
        if not 0 <= site < self.site_count:
            raise IndexError(f"Site {site} outside grid with {self.site_count} sites")
        j, i = divmod(int(site), self.rows)
        return i, j

    def neighbors(self, i: int, j: int) -> Tuple[Optional[int], ...]:
        """
        Neighbouring sites of (i, j) in the order up, down, left, right.

        Neighbours that fall outside the grid are reported as None; there is
        no wraparound.
        """
        self._check_coords(i, j)
        up = self.site_of(i - 1, j) if i > 0 else None
        down = self.site_of(i + 1, j) if i < self.rows - 1 else None
        left = self.site_of(i, j - 1) if j > 0 else None
        right = self.site_of(i, j + 1) if j < self.cols - 1 else None
        return (up, down, left, right)

    def neighbor_count(self, i: int, j: int) -> int:
        return sum(n is not None for n in self.neighbors(i, j))

    def neighbor_counts(self) -> np.ndarray:
        """
        Number of existing neighbours for every site, in site order.

        Returns:
            counts: Integer array (site_count,) with values 2 (corner),
                3 (edge) or 4 (interior)
        """
        counts = np.full((self.rows, self.cols), 4, dtype=np.int64)
        counts[0, :] -= 1
        counts[-1, :] -= 1
        counts[:, 0] -= 1
        counts[:, -1] -= 1
        return counts.reshape(-1, order='F')

    def adjacency(self) -> sparse.csr_matrix:
        """
        Sparse 0/1 rook adjacency matrix W (site_count, site_count).

        Example:
            >>> W = Grid(2, 2).adjacency()
            >>> W.sum(axis=1).A1
            array([2., 2., 2., 2.])
        """
        n = self.site_count
        sites = np.arange(n)
        i = sites % self.rows

        # Vertical edges: same column, adjacent rows
        vertical = sites[i < self.rows - 1]
        # Horizontal edges: same row, adjacent columns
        horizontal = sites[sites < n - self.rows]

        src = np.concatenate([vertical, horizontal])
        dst = np.concatenate([vertical + 1, horizontal + self.rows])
        data = np.ones(2 * len(src))

        W = sparse.coo_matrix(
            (data, (np.concatenate([src, dst]), np.concatenate([dst, src]))),
            shape=(n, n)
        )
        return W.tocsr()

    def to_field(self, values) -> np.ndarray:
        """Reshape a length site_count vector into a (rows, cols) array."""
        values = np.asarray(values)
        if values.shape != (self.site_count,):
            raise ValueError(
                f"Expected {self.site_count} values, got shape {values.shape}"
            )
        return values.reshape(self.shape, order='F')

    def from_field(self, field) -> np.ndarray:
        """Flatten a (rows, cols) array into site order."""
        field = np.asarray(field)
        if field.shape != self.shape:
            raise ValueError(f"Expected field of shape {self.shape}, got {field.shape}")
        return field.reshape(-1, order='F')
