"""
Module: io.py
Project: Abundance Corridors - Wildlife Abundance & Corridor Uncertainty

Description:
    Reading inputs and writing/caching pipeline products.

    Inputs:
    - Survey and grid tables (CSV) -> SurveyDataset / StudyAreaGrid.

    Cached intermediates (results/temp_files):
    - Posterior: draws CSV, diagnostics CSV (R-hat, ESS), metadata JSON
      (covariates, covariate scaler, convergence flag).
    - Abundance ensemble: compressed .npz of the drawn sample indices.

    Final products (results):
    - GeoTIFFs for the mean abundance and corridor frequency surfaces.
    - GeoPackages for hubs (points) and corridor paths (line strings).
    - CSV tables for the path ranking and bottlenecks.

Dependencies:
    - pandas, numpy, rasterio, geopandas, shapely
"""

import json
from pathlib import Path

import geopandas as gpd
import numpy as np
import pandas as pd
import rasterio
from shapely.geometry import LineString, Point

from .config import COVARIATES, get_logger
from .errors import DataValidationError
from .model import PosteriorSamples
from .survey import CovariateScaler, StudyAreaGrid, SurveyDataset

log = get_logger(__name__)

DRAWS_FILE = "draws.csv"
DIAGNOSTICS_FILE = "diagnostics.csv"
META_FILE = "meta.json"


# --- INPUT TABLES ------------------------------------------------------------

def _read_csv(path, what):
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"{what} file not found at {path}")
    try:
        return pd.read_csv(path)
    except pd.errors.EmptyDataError as e:
        raise DataValidationError(f"{what} file {path} is empty") from e


def read_survey_csv(path, covariates=COVARIATES, count_columns=None, x_col="x", y_col="y", id_col=None):
    """Reads and validates the survey table (one row per site)."""
    return SurveyDataset.from_frame(
        _read_csv(path, "Survey"), covariates,
        count_columns=count_columns, x_col=x_col, y_col=y_col, id_col=id_col,
    )


def read_grid_csv(path, covariates=COVARIATES, x_col="x", y_col="y"):
    """Reads and validates the prediction grid (one row per cell)."""
    return StudyAreaGrid.from_frame(_read_csv(path, "Grid"), covariates, x_col=x_col, y_col=y_col)


# --- POSTERIOR CACHE ---------------------------------------------------------

def save_posterior(samples, directory):
    """
    Writes the posterior draws and diagnostics to `directory`.

    Args:
        samples (PosteriorSamples): Fitted posterior.
        directory (Path): Target folder (created if missing).

    Returns:
        Path: The folder.
    """
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)

    samples.draws.to_csv(directory / DRAWS_FILE, index=False)
    diagnostics = pd.DataFrame({"rhat": samples.rhat})
    if samples.ess is not None:
        diagnostics["ess_bulk"] = samples.ess
    diagnostics.index.name = "parameter"
    diagnostics.to_csv(directory / DIAGNOSTICS_FILE)

    meta = {
        "covariates": list(samples.covariates),
        "scaler": samples.scaler.to_dict() if samples.scaler is not None else None,
        "converged": bool(samples.converged),
    }
    (directory / META_FILE).write_text(json.dumps(meta, indent=2))
    log.info(f"Posterior cached in {directory} ({len(samples)} samples).")
    return directory


def load_posterior(directory):
    """
    Reads a posterior written by `save_posterior`.

    Raises:
        FileNotFoundError: If any of the three files is missing.
    """
    directory = Path(directory)
    for name in (DRAWS_FILE, DIAGNOSTICS_FILE, META_FILE):
        if not (directory / name).exists():
            raise FileNotFoundError(f"Posterior cache incomplete: {directory / name} missing")

    meta = json.loads((directory / META_FILE).read_text())
    draws = pd.read_csv(directory / DRAWS_FILE)
    diagnostics = pd.read_csv(directory / DIAGNOSTICS_FILE, index_col="parameter")
    ess = diagnostics["ess_bulk"].rename("ess_bulk") if "ess_bulk" in diagnostics else None
    scaler = CovariateScaler.from_dict(meta["scaler"]) if meta.get("scaler") else None

    return PosteriorSamples(
        draws=draws,
        rhat=diagnostics["rhat"].rename("rhat"),
        covariates=tuple(meta["covariates"]),
        scaler=scaler,
        ess=ess,
        converged=meta.get("converged", True),
    )


# --- ENSEMBLE CACHE ----------------------------------------------------------

def save_ensemble(ensemble, path):
    """
    Records which posterior rows the ensemble uses.

    Only the indices are written; together with the cached posterior they
    rebuild every raster exactly, one at a time.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    np.savez_compressed(path, indices=ensemble.indices)
    log.info(f"Ensemble cached: {len(ensemble)} sample indices -> {path}")
    return path


def load_ensemble_indices(path):
    """
    Returns:
        np.ndarray: Posterior row positions, in draw order.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Ensemble cache not found at {path}")
    with np.load(path) as data:
        return data["indices"].astype(int)


# --- RASTERS -----------------------------------------------------------------

def write_raster(array, transform, path, crs=None):
    """
    Writes a single-band GeoTIFF.

    Float arrays use NaN as nodata; integer arrays (crossing counts) are
    written as int32 without nodata, so zero stays a valid count.
    """
    array = np.asarray(array)
    if array.ndim != 2:
        raise ValueError(f"Expected a 2-D array, got shape {array.shape}")
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    if np.issubdtype(array.dtype, np.integer):
        data, dtype, nodata = array.astype("int32"), "int32", None
    else:
        data, dtype, nodata = array.astype("float32"), "float32", np.nan

    meta = {
        'driver': 'GTiff',
        'dtype': dtype,
        'nodata': nodata,
        'width': array.shape[1],
        'height': array.shape[0],
        'count': 1,
        'crs': crs,
        'transform': transform,
    }
    with rasterio.open(path, 'w', **meta) as dst:
        dst.write(data, 1)
    log.info(f"Raster saved to {path}")
    return path


def read_raster(path):
    """
    Returns:
        tuple: (data, transform); nodata cells become NaN in float rasters.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Raster not found at {path}")
    with rasterio.open(path) as src:
        data = src.read(1)
        transform = src.transform
        nodata = src.nodata
    if nodata is not None and not np.isnan(nodata) and np.issubdtype(data.dtype, np.floating):
        data[data == nodata] = np.nan
    return data, transform


# --- VECTORS & TABLES --------------------------------------------------------

def hubs_frame(hubs, crs=None):
    return gpd.GeoDataFrame(
        {
            "label": [h.label for h in hubs],
            "n_cells": [h.n_cells for h in hubs],
        },
        geometry=[Point(h.x, h.y) for h in hubs],
        crs=crs,
    )


def paths_frame(paths, crs=None):
    """
    One line string per Path. A single-cell path becomes a zero-length line.
    Baseline paths (no posterior sample) get a NaN sample_index.
    """
    paths = list(paths)
    geometry = []
    for p in paths:
        coords = list(zip(p.xs.tolist(), p.ys.tolist()))
        if len(coords) == 1:
            coords = coords * 2
        geometry.append(LineString(coords))
    return gpd.GeoDataFrame(
        {
            "hub_a": [p.hub_a for p in paths],
            "hub_b": [p.hub_b for p in paths],
            "sample_index": [np.nan if p.sample_index is None else float(p.sample_index) for p in paths],
            "length": [p.length for p in paths],
            "cost": [p.cost for p in paths],
            "n_cells": [len(p) for p in paths],
        },
        geometry=geometry,
        crs=crs,
    )


def write_hubs(hubs, path, crs=None):
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    hubs_frame(hubs, crs).to_file(path, driver="GPKG", layer="hubs")
    log.info(f"{len(hubs)} hub(s) saved to {path}")
    return path


def write_paths(paths, path, crs=None, layer="paths"):
    """Writes Path objects as a GeoPackage layer (one file may hold several layers)."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    gdf = paths_frame(paths, crs)
    if gdf.empty:
        log.warning(f"No paths for layer '{layer}'; nothing written.")
        return path
    gdf.to_file(path, driver="GPKG", layer=layer)
    log.info(f"{len(gdf)} path(s) saved to {path} (layer '{layer}')")
    return path


def write_table(df, path):
    """CSV export for rankings, bottlenecks and posterior summaries."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=df.index.name is not None)
    log.info(f"Table saved to {path}")
    return path
