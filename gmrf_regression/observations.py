"""
Observation table for GMRF spatial regression.

Holds the flat (site, time, observed, covariate) records supplied by the data
ingestion layer, checks them against a grid before any fitting starts, and
provides the data-only per-site totals used by the objective.
"""
import logging
import warnings
from typing import Iterable, Mapping, Sequence, Tuple

import numpy as np

from gmrf_regression.exceptions import DataError, EmptySiteWarning
from gmrf_regression.utils.grid import Grid

logger = logging.getLogger(__name__)

COLUMNS = ('site', 'time', 'observed', 'covariate')


class ObservationTable:
    """
    Ordered collection of (site, time, observed, covariate) records.

    Args:
        site: Flat site index of each record (n_records,), column-major
            convention of Grid
        time: Period label of each record (n_records,)
        observed: Observed value y (n_records,)
        covariate: Covariate value f (n_records,)

    Example:
        >>> table = ObservationTable.from_records([
        ...     (0, 2001, 1.2, 0.4),
        ...     (1, 2001, 0.9, 0.1),
        ... ])
        >>> len(table)
        2
    """

    def __init__(self, site, time, observed, covariate):
        site = np.asarray(site)
        time = np.asarray(time)
        observed = np.asarray(observed, dtype=np.float64)
        covariate = np.asarray(covariate, dtype=np.float64)

        lengths = {name: arr.shape for name, arr in zip(COLUMNS, (site, time, observed, covariate))}
        if any(len(shape) != 1 for shape in lengths.values()):
            raise DataError(f"Observation columns must be 1-D, got shapes {lengths}")
        if len({shape[0] for shape in lengths.values()}) != 1:
            raise DataError(f"Observation columns have mismatched lengths: {lengths}")
        if site.shape[0] == 0:
            raise DataError("Observation table is empty")

        if not np.issubdtype(site.dtype, np.integer):
            if not np.issubdtype(site.dtype, np.floating) or np.any(site != np.round(site)):
                raise DataError("Site indices must be integers")
        if not np.all(np.isfinite(observed)):
            raise DataError("Observed values contain NaN or infinite entries")
        if not np.all(np.isfinite(covariate)):
            raise DataError("Covariate values contain NaN or infinite entries")

        self.site = site.astype(np.int64)
        self.time = time
        self.observed = observed
        self.covariate = covariate

    @classmethod
    def from_arrays(cls, site, time, observed, covariate) -> 'ObservationTable':
        return cls(site, time, observed, covariate)

    @classmethod
    def from_records(cls, records: Iterable[Sequence]) -> 'ObservationTable':
        """Build a table from an iterable of (site, time, observed, covariate) tuples."""
        records = list(records)
        if not records:
            raise DataError("Observation table is empty")
        if any(len(record) != 4 for record in records):
            raise DataError("Each record must be a (site, time, observed, covariate) tuple")
        site, time, observed, covariate = zip(*records)
        return cls(site, time, observed, covariate)

    @classmethod
    def from_mapping(cls, columns: Mapping) -> 'ObservationTable':
        """Build a table from a column mapping with keys site, time, observed, covariate."""
        missing = [name for name in COLUMNS if name not in columns]
        if missing:
            raise DataError(f"Observation mapping is missing columns: {missing}")
        return cls(*(columns[name] for name in COLUMNS))

    def __len__(self) -> int:
        return self.site.shape[0]

    def __repr__(self) -> str:
        return f"ObservationTable(n_records={len(self)}, n_times={len(self.times)})"

    @property
    def times(self) -> np.ndarray:
        """Sorted distinct time labels."""
        return np.unique(self.time)

    def subset(self, mask) -> 'ObservationTable':
        """
        Return a new table with the records selected by a boolean mask or index array.

        Useful for external drivers that refit on folds of the data.
        """
        mask = np.asarray(mask)
        return ObservationTable(
            self.site[mask], self.time[mask], self.observed[mask], self.covariate[mask]
        )

    def records_per_site(self, site_count: int) -> np.ndarray:
        """Number of records at each site (site_count,)."""
        return np.bincount(self.site, minlength=site_count).astype(np.float64)

    def site_totals(self, site_count: int) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Per-site totals that depend on the data only.

        Returns:
            n: Record count per site (site_count,)
            sum_f: Sum of covariates per site (site_count,)
            sum_f_sq: Sum of squared covariates per site (site_count,)
        """
        n = self.records_per_site(site_count)
        sum_f = np.bincount(self.site, weights=self.covariate, minlength=site_count)
        sum_f_sq = np.bincount(self.site, weights=self.covariate ** 2, minlength=site_count)
        return n, sum_f, sum_f_sq

    def validate(self, grid: Grid, warn_empty: bool = True, stacklevel: int = 2) -> np.ndarray:
        """
        Check the records against a grid.

        Raises DataError for records outside the grid and for repeated
        (site, time) pairs. Sites without any record only trigger an
        EmptySiteWarning: their likelihood block is zero and the estimate at
        those sites is driven by the prior alone.

        Args:
            grid: Grid the records refer to
            warn_empty: Emit EmptySiteWarning for sites without records
            stacklevel: Frame the warning is attributed to, counted as in
                warnings.warn from the caller of validate

        Returns:
            empty_sites: Indices of sites that have no records
        """
        n_sites = grid.site_count
        outside = (self.site < 0) | (self.site >= n_sites)
        if np.any(outside):
            bad = np.unique(self.site[outside])
            raise DataError(
                f"{int(outside.sum())} records reference sites outside the "
                f"{grid.rows}x{grid.cols} grid (site indices {bad[:10].tolist()})"
            )

        _, time_codes = np.unique(self.time, return_inverse=True)
        n_times = int(time_codes.max()) + 1
        pair_codes = self.site * n_times + time_codes.reshape(-1)
        unique_pairs, pair_counts = np.unique(pair_codes, return_counts=True)
        if np.any(pair_counts > 1):
            dup_sites = np.unique(unique_pairs[pair_counts > 1] // n_times)
            raise DataError(
                f"Repeated (site, time) records at sites {dup_sites[:10].tolist()}"
            )

        counts = self.records_per_site(n_sites)
        empty_sites = np.flatnonzero(counts == 0)
        if warn_empty and empty_sites.size:
            warn_empty_sites(empty_sites, stacklevel=stacklevel)
        if np.any((counts > 0) & (counts < n_times)):
            logger.info(
                "Incomplete panel: %d of %d sites miss some of the %d time periods",
                int(np.sum((counts > 0) & (counts < n_times))), n_sites, n_times
            )
        return empty_sites


def as_observation_table(observations) -> ObservationTable:
    """Coerce an ObservationTable, column mapping or record iterable into an ObservationTable."""
    if isinstance(observations, ObservationTable):
        return observations
    if isinstance(observations, Mapping):
        return ObservationTable.from_mapping(observations)
    return ObservationTable.from_records(observations)


def warn_empty_sites(empty_sites: np.ndarray, stacklevel: int = 1):
    """Emit EmptySiteWarning, attributed like warnings.warn called from the caller."""
    warnings.warn(
        f"{empty_sites.size} sites have no observations "
        f"(sites {empty_sites[:10].tolist()}); their estimates are prior-driven",
        EmptySiteWarning,
        stacklevel=stacklevel + 1
    )
