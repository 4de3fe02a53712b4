"""
Module: survey.py
Project: Abundance Corridors - Wildlife Abundance & Corridor Uncertainty

Description:
    Data containers for the two tabular inputs of the pipeline.

    1. SurveyDataset: one row per site with coordinates, habitat covariates and
       repeated counts (missing occasions encoded as NaN, never as zero).
    2. StudyAreaGrid: one row per prediction cell with the same covariates.
       Cells sit on a regular lattice, so the grid also knows its raster
       shape and affine transform.

    Both share `design_matrix`, which builds the linear/quadratic covariate
    terms of the abundance model. Fitting and prediction therefore always use
    the identical linear predictor.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping

import numpy as np
import pandas as pd
from rasterio.transform import from_origin

from .config import COUNT_PREFIXES, COVARIATES, get_logger
from .errors import DataValidationError

log = get_logger(__name__)


# --- RECORDS -----------------------------------------------------------------

@dataclass(frozen=True)
class Site:
    """One surveyed site. Counts keep their occasion order; None marks a missed visit."""

    site_id: object
    x: float
    y: float
    covariates: Mapping[str, float]
    counts: tuple

    @property
    def n_occasions(self):
        return sum(c is not None for c in self.counts)


@dataclass(frozen=True)
class GridCell:
    index: int
    x: float
    y: float
    row: int
    col: int
    covariates: Mapping[str, float]


# --- COVARIATE HELPERS -------------------------------------------------------

def coefficient_names(covariates):
    """
    Names of the abundance coefficients in design-matrix column order.

    Args:
        covariates (Sequence[str]): Covariate names, e.g. ("forest", "elevation").

    Returns:
        list: ["b0", "b_forest", "b_forest2", "b_elevation", "b_elevation2"].
    """
    names = ["b0"]
    for cov in covariates:
        names.extend([f"b_{cov}", f"b_{cov}2"])
    return names


@dataclass(frozen=True)
class CovariateScaler:
    """Z-score standardisation fitted on the survey sites and reused on the grid."""

    means: Mapping[str, float]
    scales: Mapping[str, float]

    @classmethod
    def fit(cls, frame, covariates):
        means, scales = {}, {}
        for cov in covariates:
            values = frame[cov].to_numpy(dtype=float)
            means[cov] = float(np.nanmean(values))
            sd = float(np.nanstd(values))
            # A constant covariate is only centred
            scales[cov] = sd if sd > 0 else 1.0
        return cls(means=means, scales=scales)

    def transform(self, frame):
        out = frame.copy()
        for cov, mean in self.means.items():
            out[cov] = (frame[cov].astype(float) - mean) / self.scales[cov]
        return out

    def to_dict(self):
        return {"means": dict(self.means), "scales": dict(self.scales)}

    @classmethod
    def from_dict(cls, data):
        return cls(means=dict(data["means"]), scales=dict(data["scales"]))


def design_matrix(frame, covariates, scaler=None):
    """
    Builds the model matrix [1, c1, c1^2, c2, c2^2, ...].

    Args:
        frame (pd.DataFrame): Table holding the covariate columns.
        covariates (Sequence[str]): Covariates in model order.
        scaler (CovariateScaler, optional): Applied before squaring.

    Returns:
        np.ndarray: Float matrix of shape (n_rows, 1 + 2 * n_covariates).
    """
    if scaler is not None:
        frame = scaler.transform(frame[list(covariates)])
    columns = [np.ones(len(frame))]
    for cov in covariates:
        values = frame[cov].to_numpy(dtype=float)
        columns.extend([values, values ** 2])
    return np.column_stack(columns)


def _require_columns(frame, columns, what):
    missing = [c for c in columns if c not in frame.columns]
    if missing:
        raise DataValidationError(f"{what} table is missing required column(s): {missing}")


def _numeric(frame, columns, what, allow_missing):
    """Coerces columns to finite floats, rejecting text and (optionally) blanks."""
    out = pd.DataFrame(index=frame.index)
    for col in columns:
        raw = frame[col]
        values = pd.to_numeric(raw, errors="coerce")
        bad = values.isna() & raw.notna()
        if bad.any():
            raise DataValidationError(
                f"{what} column '{col}' has non-numeric values at rows {list(frame.index[bad][:5])}"
            )
        if not allow_missing and values.isna().any():
            raise DataValidationError(
                f"{what} column '{col}' has missing values at rows {list(frame.index[values.isna()][:5])}"
            )
        infinite = np.isinf(values.astype(float))
        if infinite.any():
            raise DataValidationError(
                f"{what} column '{col}' has infinite values at rows {list(frame.index[infinite][:5])}"
            )
        out[col] = values.astype(float)
    return out


def detect_count_columns(frame, prefixes=COUNT_PREFIXES):
    """
    Finds repeated-count columns such as count_1, count_2 or C1, C2.

    Returns:
        list: Column names ordered by occasion number.
    """
    pattern = re.compile(rf"^({'|'.join(map(re.escape, prefixes))})[_.]?(\d+)$")
    found = []
    for col in frame.columns:
        match = pattern.match(str(col))
        if match:
            found.append((int(match.group(2)), col))
    return [col for _, col in sorted(found)]


# --- SURVEY DATASET ----------------------------------------------------------

class SurveyDataset:
    """
    Validated repeated-count survey.

    Attributes:
        covariates (tuple): Covariate names in model order.
        site_ids (np.ndarray): Site identifiers.
        coords (np.ndarray): (n_sites, 2) x/y locations.
        covariate_frame (pd.DataFrame): Numeric covariates, one row per site.
        counts (np.ndarray): (n_sites, n_occasions) float counts, NaN = missing.
    """

    def __init__(self, site_ids, coords, covariate_frame, counts, covariates):
        self.site_ids = np.asarray(site_ids)
        self.coords = np.asarray(coords, dtype=float)
        self.covariate_frame = covariate_frame.reset_index(drop=True)
        self.counts = np.asarray(counts, dtype=float)
        self.covariates = tuple(covariates)

    @classmethod
    def from_frame(cls, frame, covariates=COVARIATES, count_columns=None,
                   x_col="x", y_col="y", id_col=None):
        """
        Validates a survey table and builds the dataset.

        Args:
            frame (pd.DataFrame): One row per site.
            covariates (Sequence[str]): Required covariate columns.
            count_columns (Sequence[str], optional): Repeated count columns in
                occasion order. Detected from the column names when omitted.
            x_col, y_col (str): Coordinate columns.
            id_col (str, optional): Site identifier column (row number otherwise).

        Returns:
            SurveyDataset

        Raises:
            DataValidationError: On schema problems, non-numeric or negative or
                fractional counts, or missing covariates.
        """
        if frame is None or len(frame) == 0:
            raise DataValidationError("Survey table is empty")

        covariates = tuple(covariates)
        if count_columns is None:
            count_columns = detect_count_columns(frame)
        count_columns = list(count_columns)
        if not count_columns:
            raise DataValidationError("Survey table has no repeated count columns")

        required = [x_col, y_col, *covariates, *count_columns]
        if id_col is not None:
            required.append(id_col)
        _require_columns(frame, required, "Survey")

        coords = _numeric(frame, [x_col, y_col], "Survey", allow_missing=False)
        cov_frame = _numeric(frame, covariates, "Survey", allow_missing=False)
        counts = _numeric(frame, count_columns, "Survey", allow_missing=True).to_numpy()

        observed = counts[~np.isnan(counts)]
        if (observed < 0).any():
            raise DataValidationError("Survey counts must be non-negative")
        if not np.all(observed == np.floor(observed)):
            raise DataValidationError("Survey counts must be whole numbers")

        n_occ = (~np.isnan(counts)).sum(axis=1)
        if (n_occ == 0).any():
            log.warning(f"{int((n_occ == 0).sum())} site(s) have no observed counts; "
                        f"they only inform the abundance prior.")

        site_ids = frame[id_col].to_numpy() if id_col is not None else np.arange(len(frame))
        dataset = cls(site_ids, coords.to_numpy(), cov_frame, counts, covariates)
        log.info(f"Survey loaded: {len(dataset)} sites, {counts.shape[1]} occasions, "
                 f"{int(n_occ.sum())} observed counts.")
        return dataset

    def __len__(self):
        return len(self.site_ids)

    @property
    def n_occasions(self):
        """Number of non-missing counts per site."""
        return (~np.isnan(self.counts)).sum(axis=1)

    @property
    def sites(self):
        records = []
        for i, site_id in enumerate(self.site_ids):
            counts = tuple(None if np.isnan(c) else int(c) for c in self.counts[i])
            covs = MappingProxyType({c: float(self.covariate_frame.at[i, c]) for c in self.covariates})
            records.append(Site(site_id, float(self.coords[i, 0]), float(self.coords[i, 1]), covs, counts))
        return tuple(records)

    def design_matrix(self, scaler=None):
        return design_matrix(self.covariate_frame, self.covariates, scaler)


# --- PREDICTION GRID ---------------------------------------------------------

def _lattice_step(values):
    """Returns the lattice spacing of a coordinate axis (None for a single value)."""
    unique = np.unique(values)
    if len(unique) < 2:
        return None
    step = float(np.min(np.diff(unique)))
    offsets = (unique - unique[0]) / step
    if not np.allclose(offsets, np.rint(offsets), atol=1e-6):
        raise DataValidationError("Grid coordinates do not form a regular lattice")
    return step


class StudyAreaGrid:
    """
    Prediction cells on a regular lattice.

    Row 0 is the northern-most (largest y) line of cells, following the
    GeoTIFF top-left origin convention.
    """

    def __init__(self, xs, ys, covariate_frame, covariates):
        self.xs = np.asarray(xs, dtype=float)
        self.ys = np.asarray(ys, dtype=float)
        self.covariate_frame = covariate_frame.reset_index(drop=True)
        self.covariates = tuple(covariates)

        res_x = _lattice_step(self.xs)
        res_y = _lattice_step(self.ys)
        res_x = res_x or res_y or 1.0
        res_y = res_y or res_x
        self.resolution = (res_x, res_y)

        xmin, ymax = self.xs.min(), self.ys.max()
        self.cols = np.rint((self.xs - xmin) / res_x).astype(int)
        self.rows = np.rint((ymax - self.ys) / res_y).astype(int)
        self.shape = (int(self.rows.max()) + 1, int(self.cols.max()) + 1)
        self.transform = from_origin(xmin - res_x / 2, ymax + res_y / 2, res_x, res_y)

        flat = self.rows * self.shape[1] + self.cols
        if len(np.unique(flat)) != len(flat):
            raise DataValidationError("Grid has more than one cell at the same location")

    @classmethod
    def from_frame(cls, frame, covariates=COVARIATES, x_col="x", y_col="y"):
        """
        Validates a prediction-grid table.

        Covariate values may be missing; such cells predict NaN and are later
        excluded from the cost surface.

        Raises:
            DataValidationError: On missing columns, text values or duplicate cells.
        """
        if frame is None or len(frame) == 0:
            raise DataValidationError("Grid table is empty")
        _require_columns(frame, [x_col, y_col, *covariates], "Grid")
        coords = _numeric(frame, [x_col, y_col], "Grid", allow_missing=False)
        cov_frame = _numeric(frame, covariates, "Grid", allow_missing=True)

        n_missing = int(cov_frame.isna().any(axis=1).sum())
        if n_missing:
            log.warning(f"{n_missing} grid cell(s) have missing covariates and will be impassable.")

        grid = cls(coords[x_col].to_numpy(), coords[y_col].to_numpy(), cov_frame, covariates)
        log.info(f"Grid loaded: {grid.n_cells} cells on a {grid.shape[0]}x{grid.shape[1]} lattice.")
        return grid

    @property
    def n_cells(self):
        return len(self.xs)

    def __len__(self):
        return self.n_cells

    def cell(self, index):
        covs = MappingProxyType({c: float(self.covariate_frame.at[index, c]) for c in self.covariates})
        return GridCell(index, float(self.xs[index]), float(self.ys[index]),
                        int(self.rows[index]), int(self.cols[index]), covs)

    def check_schema(self, covariates):
        """
        Ensures the grid carries exactly the covariates the model was fitted on.

        Raises:
            DataValidationError: If the covariate names or their order differ.
        """
        if tuple(covariates) != self.covariates:
            raise DataValidationError(
                f"Grid covariates {self.covariates} do not match the fitted schema {tuple(covariates)}"
            )

    def design_matrix(self, scaler=None):
        return design_matrix(self.covariate_frame, self.covariates, scaler)

    def to_array(self, values, fill=np.nan):
        """
        Places one value per cell onto the raster lattice.

        Args:
            values (np.ndarray): Vector of length n_cells.
            fill (float): Value for lattice positions without a cell.

        Returns:
            np.ndarray: 2-D array of shape `self.shape`.
        """
        values = np.asarray(values, dtype=float)
        if values.shape != (self.n_cells,):
            raise ValueError(f"Expected {self.n_cells} values, got shape {values.shape}")
        out = np.full(self.shape, fill, dtype=float)
        out[self.rows, self.cols] = values
        return out

    def covariate_raster(self, name):
        if name not in self.covariate_frame.columns:
            raise DataValidationError(f"Grid has no covariate '{name}'")
        return self.to_array(self.covariate_frame[name].to_numpy(dtype=float))
