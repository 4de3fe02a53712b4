"""
Module: run_pipeline.py
Project: Abundance Corridors - Wildlife Abundance & Corridor Uncertainty

Description:
    This script serves as the central automation engine for the project.
    It runs the analysis stages in the order required by their data
    dependencies and writes every product to the results folder.

    Key Features:
    1. Sequential Execution: survey fit -> abundance ensemble -> hubs ->
       corridor ensemble -> baselines & bottlenecks.
    2. Caching: the posterior (the slow MCMC step) and the drawn sample
       indices are cached in results/temp_files and reused on the next run.
       Delete the folder or set REFIT=1 to refit.
    3. Settings: PipelineParams defaults, with the most common overrides read
       from environment variables (SAMPLE_COUNT, N_WORKERS, ABUNDANCE_THRESHOLD,
       LINKAGE_DISTANCE, TARGET_CRS).

Usage:
    Install the package first (pip install -e .), place the inputs in data/,
    then run:
    $ python run_pipeline.py
"""

import os
import sys
from dataclasses import replace

from abundance_corridors import io
from abundance_corridors.config import (
    BOTTLENECK_CSV,
    CORRIDOR_FREQUENCY_TIF,
    ENSEMBLE_NPZ,
    GRID_CSV,
    HUBS_GPKG,
    MEAN_ABUNDANCE_TIF,
    PATHS_GPKG,
    POSTERIOR_DIR,
    POSTERIOR_SUMMARY_CSV,
    RANKING_CSV,
    RESULTS_DIR,
    SURVEY_CSV,
    PipelineParams,
    get_logger,
)
from abundance_corridors.clustering import HotspotClusterer
from abundance_corridors.errors import CorridorError
from abundance_corridors.model import AbundanceModel
from abundance_corridors.ensemble import (
    abundance_ensemble,
    corridor_baselines,
    ensemble_bottlenecks,
    identify_hubs,
    run_corridor_ensemble,
    stage_rngs,
)

log = get_logger("run_pipeline")

# --- CONFIGURATION -----------------------------------------------------------
TARGET_CRS = os.environ.get("TARGET_CRS")  # e.g. "EPSG:32632"; None writes unreferenced files


def load_params():
    """PipelineParams with environment overrides applied."""
    params = PipelineParams()
    corridors = params.corridors
    clusters = params.clusters
    if "SAMPLE_COUNT" in os.environ:
        corridors = replace(corridors, sample_count=int(os.environ["SAMPLE_COUNT"]))
    if "N_WORKERS" in os.environ:
        corridors = replace(corridors, n_workers=int(os.environ["N_WORKERS"]))
    if "ABUNDANCE_THRESHOLD" in os.environ:
        clusters = replace(clusters, abundance_threshold=float(os.environ["ABUNDANCE_THRESHOLD"]))
    if "LINKAGE_DISTANCE" in os.environ:
        clusters = replace(clusters, linkage_distance=float(os.environ["LINKAGE_DISTANCE"]))
    return replace(params, corridors=corridors, clusters=clusters)


# --- PIPELINE STEPS ----------------------------------------------------------

def fit_posterior(ctx):
    params = ctx["params"]
    ctx["dataset"] = io.read_survey_csv(SURVEY_CSV, params.covariates)
    ctx["grid"] = io.read_grid_csv(GRID_CSV, params.covariates)

    ctx["refit"] = not POSTERIOR_DIR.exists() or os.environ.get("REFIT") == "1"
    if ctx["refit"]:
        model = AbundanceModel(params.covariates, standardize=params.standardize)
        posterior = model.fit(ctx["dataset"], params.priors, params.mcmc)
        io.save_posterior(posterior, POSTERIOR_DIR)
    else:
        log.info(f"Using cached posterior from {POSTERIOR_DIR}")
        posterior = io.load_posterior(POSTERIOR_DIR)

    io.write_table(posterior.summary(), POSTERIOR_SUMMARY_CSV)
    ctx["posterior"] = posterior


def cached_indices(sample_count, n_posterior):
    """Sample indices from a previous run, if they fit the current settings."""
    if not ENSEMBLE_NPZ.exists():
        return None
    indices = io.load_ensemble_indices(ENSEMBLE_NPZ)
    if len(indices) != sample_count or indices.max(initial=-1) >= n_posterior:
        log.info(f"Cached ensemble in {ENSEMBLE_NPZ} does not match SAMPLE_COUNT; drawing again.")
        return None
    return indices


def build_ensemble(ctx):
    sample_count = ctx["params"].corridors.sample_count
    indices = None if ctx["refit"] else cached_indices(sample_count, len(ctx["posterior"]))

    ensemble, mean_raster = abundance_ensemble(ctx["posterior"], ctx["grid"], sample_count,
                                               ctx["draw_rng"], indices)
    if indices is None:
        io.save_ensemble(ensemble, ENSEMBLE_NPZ)

    io.write_raster(mean_raster.to_array(), ctx["grid"].transform, MEAN_ABUNDANCE_TIF, TARGET_CRS)
    ctx["ensemble"] = ensemble
    ctx["mean_raster"] = mean_raster


def find_hubs(ctx):
    clusters = ctx["params"].clusters
    gap, hubs = identify_hubs(ctx["mean_raster"], clusters, ctx["bootstrap_rng"])
    suggested = HotspotClusterer(clusters.abundance_threshold).suggest_linkage_distance(ctx["mean_raster"], gap.k)
    print(gap.table.to_string(index=False))
    print(f"Gap statistic suggests k={gap.k} (linkage distance ~{suggested:.1f}); "
          f"using linkage distance {clusters.linkage_distance}.")

    io.write_hubs(hubs, HUBS_GPKG, TARGET_CRS)
    ctx["hubs"] = hubs


def corridor_ensemble(ctx):
    corridors = ctx["params"].corridors
    summary = run_corridor_ensemble(
        ctx["ensemble"], ctx["hubs"],
        n_workers=corridors.n_workers,
        both_directions=corridors.both_directions,
    )
    grid = ctx["grid"]
    io.write_raster(summary.pixel_frequency, grid.transform, CORRIDOR_FREQUENCY_TIF, TARGET_CRS)
    io.write_table(summary.ranking.drop(columns="order"), RANKING_CSV)
    best = [summary.best_path(row.hub_a, row.hub_b) for row in summary.best_paths().itertuples()]
    io.write_paths([p for p in best if p is not None], PATHS_GPKG, TARGET_CRS, layer="best_paths")
    ctx["summary"] = summary


def baselines_and_bottlenecks(ctx):
    corridors = ctx["params"].corridors
    for name, paths in corridor_baselines(ctx["mean_raster"], ctx["hubs"], corridors).items():
        io.write_paths(paths.values(), PATHS_GPKG, TARGET_CRS, layer=f"baseline_{name}")

    bottlenecks = ensemble_bottlenecks(ctx["summary"], ctx["mean_raster"], corridors)
    if len(bottlenecks):
        io.write_table(bottlenecks, BOTTLENECK_CSV)
    else:
        print("No bottlenecks found.")


# Define the pipeline steps: (Function, Description)
STEPS = [
    (fit_posterior,             "Step 1: N-Mixture Model Fit (MCMC)"),
    (build_ensemble,            "Step 2: Posterior Abundance Ensemble"),
    (find_hubs,                 "Step 3: Hotspot Clustering & Hubs"),
    (corridor_ensemble,         "Step 4: Corridor Ensemble & Aggregation"),
    (baselines_and_bottlenecks, "Step 5: Baseline Corridors & Bottleneck Extraction"),
]


def run_step(step, description, ctx):
    """
    Executes a single pipeline stage.

    Args:
        step (callable): Stage function operating on the shared context.
        description (str): Banner describing the step.
        ctx (dict): Objects handed from one stage to the next.
    """
    print(f"\n{'='*60}")
    print(f">>> {description}")
    print(f"    Running: {step.__name__}")
    print(f"{'='*60}\n")

    try:
        step(ctx)
    except (CorridorError, FileNotFoundError) as e:
        log.error(f"{step.__name__} failed: {e}")
        sys.exit(1)


# --- MAIN LOGIC --------------------------------------------------------------

def main():
    """Main orchestration logic."""
    params = load_params()
    draw_rng, bootstrap_rng = stage_rngs(params.seed)
    ctx = {"params": params, "draw_rng": draw_rng, "bootstrap_rng": bootstrap_rng}

    for step, desc in STEPS:
        run_step(step, desc, ctx)

    print("\n" + "="*60)
    print("PIPELINE COMPLETED SUCCESSFULLY")
    print(f"Results available in: {RESULTS_DIR}")
    print("="*60)


if __name__ == "__main__":
    main()
