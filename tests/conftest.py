"""
Shared fixtures: small synthetic surveys, grids and posteriors.

Nothing here runs the sampler; hand-built PosteriorSamples stand in for a fit
wherever the test is about prediction, clustering or corridors.
"""

import numpy as np
import pandas as pd
import pytest

from abundance_corridors.clustering import Hub
from abundance_corridors.model import PosteriorSamples
from abundance_corridors.survey import StudyAreaGrid, coefficient_names

COVS = ("forest", "elevation")


@pytest.fixture
def survey_frame():
    """Five sites, three visits each, one missed visit."""
    return pd.DataFrame({
        "site": ["s1", "s2", "s3", "s4", "s5"],
        "x": [0.0, 10.0, 20.0, 30.0, 40.0],
        "y": [0.0, 5.0, 10.0, 15.0, 20.0],
        "forest": [0.1, 0.4, 0.5, 0.8, 0.9],
        "elevation": [200.0, 350.0, 500.0, 650.0, 800.0],
        "count_1": [2, 4, 5, 8, 9],
        "count_2": [3, np.nan, 6, 7, 10],
        "count_3": [1, 5, 4, 9, 8],
    })


def grid_frame(n_rows=6, n_cols=6, res=10.0, seed=0):
    """Regular lattice with smooth covariates, row 0 at the top."""
    rng = np.random.default_rng(seed)
    rows, cols = np.meshgrid(np.arange(n_rows), np.arange(n_cols), indexing="ij")
    return pd.DataFrame({
        "x": (cols.ravel() * res).astype(float),
        "y": ((n_rows - 1 - rows.ravel()) * res).astype(float),
        "forest": np.clip(cols.ravel() / max(n_cols - 1, 1) + rng.normal(0, 0.05, rows.size), 0, 1),
        "elevation": 100.0 + 50.0 * rows.ravel() + rng.uniform(0, 10, rows.size),
    })


@pytest.fixture
def grid():
    return StudyAreaGrid.from_frame(grid_frame(), COVS)


def fake_posterior(n=200, seed=1, covariates=COVS):
    """Posterior draws around a mild positive forest effect, two chains."""
    rng = np.random.default_rng(seed)
    names = coefficient_names(covariates)
    draws = pd.DataFrame({
        "chain": np.repeat([0, 1], n // 2),
        "draw": np.tile(np.arange(n // 2), 2),
    })
    centre = {"b0": 1.5, "b_forest": 0.8, "b_forest2": -0.1, "b_elevation": 0.002, "b_elevation2": 0.0}
    for name in names:
        draws[name] = centre.get(name, 0.0) + rng.normal(0, 0.05 if name == "b0" else 1e-4, n)
    draws["p"] = rng.uniform(0.4, 0.6, n)
    rhat = pd.Series(1.0, index=names + ["p"], name="rhat")
    return PosteriorSamples(draws=draws, rhat=rhat, covariates=tuple(covariates))


@pytest.fixture
def posterior():
    return fake_posterior()


@pytest.fixture
def two_hubs():
    return [Hub("A", 0.5, 1.5), Hub("B", 9.5, 1.5)]
