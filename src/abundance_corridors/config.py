"""
Module: config.py
Project: Abundance Corridors - Wildlife Abundance & Corridor Uncertainty

Description:
    Central configuration for the pipeline.

    It centralizes:
    1. Logging: a timestamped stdout logger shared by every module.
    2. Paths: data, results and cache folders (PROJECT_ROOT env var wins).
    3. Parameters: frozen dataclasses for priors, MCMC, clustering and corridors.
       They are immutable so no stage can mutate the settings of another.

Usage:
    from abundance_corridors.config import get_logger, PipelineParams
    log = get_logger(__name__)
"""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path


# --- LOGGING -----------------------------------------------------------------

def get_logger(name="abundance_corridors"):
    """
    Returns a timestamped logger that writes to stdout.

    The level defaults to INFO and can be changed with the LOG_LEVEL
    environment variable (e.g. LOG_LEVEL=DEBUG).

    Args:
        name (str): Logger name, usually __name__ of the calling module.

    Returns:
        logging.Logger: The configured logger.
    """
    logger = logging.getLogger(name)
    if not logger.handlers:
        logger.setLevel(os.environ.get("LOG_LEVEL", "INFO").upper())
        handler = logging.StreamHandler(stream=sys.stdout)
        handler.setFormatter(logging.Formatter(
            fmt="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
            datefmt="%H:%M:%S",
        ))
        logger.addHandler(handler)
        logger.propagate = False
    return logger


# --- CONFIGURATION & PATHS ---------------------------------------------------

def _detect_project_root():
    env = os.environ.get("PROJECT_ROOT")
    if env:
        return Path(env).expanduser().resolve()
    # <root>/src/abundance_corridors/config.py -> <root>
    return Path(__file__).resolve().parents[2]


PROJECT_ROOT = _detect_project_root()
DATA_DIR = PROJECT_ROOT / "data"
RESULTS_DIR = PROJECT_ROOT / "results"
TEMP_DIR = RESULTS_DIR / "temp_files"

# Input Files
SURVEY_CSV = DATA_DIR / "survey_counts.csv"
GRID_CSV = DATA_DIR / "prediction_grid.csv"

# Outputs (cached intermediates and final products)
POSTERIOR_DIR = TEMP_DIR / "posterior"
ENSEMBLE_NPZ = TEMP_DIR / "abundance_ensemble.npz"
MEAN_ABUNDANCE_TIF = RESULTS_DIR / "mean_abundance.tif"
CORRIDOR_FREQUENCY_TIF = RESULTS_DIR / "corridor_frequency.tif"
HUBS_GPKG = RESULTS_DIR / "hubs.gpkg"
PATHS_GPKG = RESULTS_DIR / "corridor_paths.gpkg"
RANKING_CSV = RESULTS_DIR / "corridor_ranking.csv"
BOTTLENECK_CSV = RESULTS_DIR / "corridor_bottlenecks.csv"
POSTERIOR_SUMMARY_CSV = RESULTS_DIR / "posterior_summary.csv"

# Model Parameters
COVARIATES = ("forest", "elevation")
RHAT_THRESHOLD = 1.1            # Potential scale reduction above this is 'not converged'
COUNT_PREFIXES = ("count", "C", "y")


# --- PARAMETER CONTAINERS ----------------------------------------------------

@dataclass(frozen=True)
class PriorBounds:
    """Uniform prior ranges for the abundance coefficients."""

    intercept: tuple = (-10.0, 10.0)
    slope: tuple = (-5.0, 5.0)

    def __post_init__(self):
        for name in ("intercept", "slope"):
            lower, upper = getattr(self, name)
            if not lower < upper:
                raise ValueError(f"{name} bounds must satisfy lower < upper, got {(lower, upper)}")


@dataclass(frozen=True)
class MCMCConfig:
    """
    Sampler settings.

    burn_in defaults to half of `iterations`. Samples kept per chain are
    (iterations - burn_in) // thin. `adapt` extra tuning steps precede burn-in.
    """

    chains: int = 3
    iterations: int = 2000
    burn_in: int | None = None
    adapt: int = 0
    thin: int = 1
    parallel: bool = False
    seed: int | None = None
    target_accept: float = 0.9
    rhat_threshold: float = RHAT_THRESHOLD
    rhat_tolerance: float = 0.0
    strict: bool = False

    def __post_init__(self):
        if self.chains < 2:
            raise ValueError("R-hat needs at least 2 chains")
        if self.iterations < 2:
            raise ValueError("iterations must be >= 2")
        if self.burn_in is None:
            object.__setattr__(self, "burn_in", self.iterations // 2)
        if not 0 <= self.burn_in < self.iterations:
            raise ValueError("burn_in must be in [0, iterations)")
        if self.adapt < 0 or self.thin < 1:
            raise ValueError("adapt must be >= 0 and thin >= 1")
        if not 0 <= self.rhat_tolerance < 1:
            raise ValueError("rhat_tolerance is a fraction in [0, 1)")

    @property
    def tune(self):
        return self.adapt + self.burn_in

    @property
    def draws(self):
        return self.iterations - self.burn_in

    @property
    def kept_per_chain(self):
        return len(range(0, self.draws, self.thin))


@dataclass(frozen=True)
class ClusterParams:
    """Hotspot selection and hub clustering settings."""

    abundance_threshold: float = 10.0
    linkage_distance: float = 1000.0
    k_max: int = 8
    n_bootstrap: int = 20


@dataclass(frozen=True)
class CorridorParams:
    """Corridor ensemble settings."""

    sample_count: int = 1000
    n_workers: int = 1
    both_directions: bool = False
    baseline_covariate: str = "elevation"
    bottleneck_percentile: float = 95.0
    min_barrier_resistance: float = 0.0
    cluster_gap_tolerance: int = 2

    def __post_init__(self):
        if self.sample_count < 1:
            raise ValueError("sample_count must be >= 1")
        if self.n_workers < 1:
            raise ValueError("n_workers must be >= 1")


@dataclass(frozen=True)
class PipelineParams:
    """Everything a full run needs, grouped per stage."""

    covariates: tuple = COVARIATES
    standardize: bool = True
    seed: int = 42
    priors: PriorBounds = field(default_factory=PriorBounds)
    mcmc: MCMCConfig = field(default_factory=MCMCConfig)
    clusters: ClusterParams = field(default_factory=ClusterParams)
    corridors: CorridorParams = field(default_factory=CorridorParams)
