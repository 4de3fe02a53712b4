"""
Module: prediction.py
Project: Abundance Corridors - Wildlife Abundance & Corridor Uncertainty

Description:
    Turns posterior draws into an ensemble of abundance surfaces.

    A fixed number of posterior samples is drawn without replacement using an
    explicitly passed random generator, so identical seeds reproduce identical
    ensembles. Rasters are computed on demand from the stored coefficient rows;
    the full ensemble is never held in memory unless `to_array()` is called.

    Predictions are true abundance (lambda), not expected counts: the
    detection probability plays no part here.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np

from .config import get_logger

log = get_logger(__name__)

# exp() of anything above this would overflow float64
MAX_LOG_LAMBDA = float(np.log(np.finfo(np.float64).max)) - 1.0


def expected_abundance(design, coefficients):
    """
    Computes lambda = exp(X beta) per row of the design matrix.

    The linear predictor is capped at MAX_LOG_LAMBDA, so lambda is always
    finite and non-negative for finite covariates. Rows with missing
    covariates stay NaN.

    Args:
        design (np.ndarray): (n_cells, n_coefficients) model matrix.
        coefficients (np.ndarray): Coefficient vector in the same column order.

    Returns:
        np.ndarray: Expected abundance per row.
    """
    eta = np.asarray(design, dtype=float) @ np.asarray(coefficients, dtype=float)
    n_capped = int(np.sum(eta > MAX_LOG_LAMBDA))
    if n_capped:
        log.warning(f"{n_capped} cell(s) had a log-abundance above {MAX_LOG_LAMBDA:.1f}; capped.")
        eta = np.minimum(eta, MAX_LOG_LAMBDA)
    return np.exp(eta)


@dataclass(frozen=True, eq=False)
class AbundanceRaster:
    """Expected abundance per grid cell; `sample_index` is None for summary surfaces."""

    values: np.ndarray
    grid: object
    sample_index: Optional[int] = None

    def to_array(self):
        return self.grid.to_array(self.values)

    def max(self):
        return float(np.nanmax(self.values))


class PosteriorEnsemble:
    """
    Lazily evaluated set of abundance rasters, one per selected posterior sample.

    Attributes:
        indices (np.ndarray): Row positions of the selected posterior samples.
        grid (StudyAreaGrid): Prediction grid.
        design (np.ndarray): Grid model matrix (covariate scaling applied).
        coefficients (np.ndarray): (n_selected, n_coefficients) coefficient rows.
    """

    def __init__(self, samples, grid, indices):
        grid.check_schema(samples.covariates)
        self.indices = np.asarray(indices, dtype=int)
        self.grid = grid
        self.design = grid.design_matrix(samples.scaler)
        self.coefficients = samples.coefficients()[self.indices]

    def __len__(self):
        return len(self.indices)

    def raster(self, k):
        values = expected_abundance(self.design, self.coefficients[k])
        return AbundanceRaster(values, self.grid, int(self.indices[k]))

    def __iter__(self):
        for k in range(len(self)):
            yield self.raster(k)

    def mean_raster(self):
        """Cell-wise ensemble mean, accumulated one raster at a time."""
        total = np.zeros(self.grid.n_cells)
        for raster in self:
            total += raster.values
        return AbundanceRaster(total / len(self), self.grid, None)

    def to_array(self):
        """Materialises the ensemble as a (n_selected, n_cells) array."""
        return np.stack([raster.values for raster in self])


class PosteriorPredictor:
    """Draws posterior samples and maps them onto a prediction grid."""

    def __init__(self, samples):
        self.samples = samples

    def draw_indices(self, sample_count, rng=None):
        """
        Selects posterior rows without replacement.

        Args:
            sample_count (int): Number of rasters to generate.
            rng (np.random.Generator | int | None): Random source or seed.

        Returns:
            np.ndarray: Selected row positions, in draw order.
        """
        n = len(self.samples)
        if not 1 <= sample_count <= n:
            raise ValueError(f"sample_count must be in [1, {n}], got {sample_count}")
        rng = np.random.default_rng(rng)
        return rng.choice(n, size=sample_count, replace=False)

    def predict(self, grid, sample_count, rng=None):
        """
        Builds the posterior abundance ensemble for a grid.

        Args:
            grid (StudyAreaGrid): Cells with the fitted covariate schema.
            sample_count (int): Number of posterior samples to use.
            rng (np.random.Generator | int | None): Random source or seed.

        Returns:
            PosteriorEnsemble

        Raises:
            DataValidationError: If the grid covariates differ from the fit.
        """
        indices = self.draw_indices(sample_count, rng)
        ensemble = PosteriorEnsemble(self.samples, grid, indices)
        log.info(f"Ensemble defined: {len(ensemble)} posterior samples x {grid.n_cells} cells.")
        return ensemble


def predict(samples, grid, sample_count, rng=None):
    return PosteriorPredictor(samples).predict(grid, sample_count, rng)
